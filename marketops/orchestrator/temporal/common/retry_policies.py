# marketops/orchestrator/temporal/common/retry_policies.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Tuple

from temporalio.common import RetryPolicy

from marketops.common.errors import error_classes


@dataclass(frozen=True)
class StepPolicy:
    timeout_s: int
    initial_s: float
    max_interval_s: float
    max_attempts: int
    backoff: float = 2.0


# Activity kinds used by the workflows
STEP_POLICIES: Dict[str, StepPolicy] = {
    "store": StepPolicy(timeout_s=30, initial_s=1.0, max_interval_s=15.0, max_attempts=5),
    "policy": StepPolicy(timeout_s=30, initial_s=1.0, max_interval_s=15.0, max_attempts=3),
    "draft": StepPolicy(timeout_s=120, initial_s=2.0, max_interval_s=30.0, max_attempts=3),
    "execute": StepPolicy(timeout_s=60, initial_s=2.0, max_interval_s=30.0, max_attempts=3),
    "metrics": StepPolicy(timeout_s=60, initial_s=5.0, max_interval_s=60.0, max_attempts=5),
    "sweep": StepPolicy(timeout_s=120, initial_s=1.0, max_interval_s=10.0, max_attempts=2),
}


def _non_retryable_types() -> List[str]:
    # Temporal matches non-retryable failures on the class name
    return sorted(name for name, cls in error_classes().items() if not cls.retryable)


NON_RETRYABLE_TYPES = _non_retryable_types()


def activity_options_for(step: str) -> Tuple[Dict, RetryPolicy]:
    """
    Returns (**kwargs for workflow.execute_activity**, RetryPolicy) for a step kind.
    Unknown kinds get the ``store`` policy.

    Example:
        opts, rp = activity_options_for("execute")
        await workflow.execute_activity(..., retry_policy=rp, **opts)
    """
    p = STEP_POLICIES.get((step or "").lower(), STEP_POLICIES["store"])
    rp = RetryPolicy(
        initial_interval=timedelta(seconds=p.initial_s),
        backoff_coefficient=p.backoff,
        maximum_interval=timedelta(seconds=p.max_interval_s),
        maximum_attempts=p.max_attempts,
        non_retryable_error_types=NON_RETRYABLE_TYPES,
    )
    opts: Dict = {"start_to_close_timeout": timedelta(seconds=p.timeout_s)}
    return opts, rp
