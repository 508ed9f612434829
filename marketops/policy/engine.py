# marketops/policy/engine.py
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, Union, assert_never

from marketops.common import metrics
from marketops.data.models import utcnow
from marketops.data.store import RecordStore
from marketops.policy import checkers
from marketops.policy.loader import load_policies
from marketops.policy.models import (
    CheckFault,
    CheckOutcome,
    Checkpoint,
    Policy,
    PolicyKind,
    TaskSnapshot,
    ValidationContext,
    ValidationResult,
)
from marketops.policy.verdict import (
    build_feedback,
    fold,
    format_violation_summary,
    format_warning_summary,
    is_allowed,
    needs_escalation,
)

log = logging.getLogger("marketops.policy")

Checker = Callable[[Policy, Any, TaskSnapshot, ValidationContext], Awaitable[CheckOutcome]]

_PRE_DRAFT = frozenset({PolicyKind.RATE_LIMIT, PolicyKind.TIME_WINDOW, PolicyKind.BUDGET_LIMIT})
_CONTENT = frozenset(
    {
        PolicyKind.BANNED_PHRASE,
        PolicyKind.REQUIRED_PHRASE,
        PolicyKind.CLAIM_LOCK,
        PolicyKind.DOMAIN_ALLOWLIST,
        PolicyKind.CONTENT_RULE,
    }
)

STAGES: Dict[Checkpoint, FrozenSet[PolicyKind]] = {
    Checkpoint.PRE_DRAFT: _PRE_DRAFT,
    Checkpoint.CONTENT: _CONTENT,
    Checkpoint.PRE_EXECUTE: frozenset(PolicyKind),
}


def applies_at(kind: PolicyKind, checkpoint: Checkpoint) -> bool:
    return kind in STAGES[checkpoint]


def checker_for(kind: PolicyKind) -> Checker:
    match kind:
        case PolicyKind.RATE_LIMIT:
            return checkers.check_rate_limit
        case PolicyKind.BANNED_PHRASE:
            return checkers.check_banned_phrases
        case PolicyKind.REQUIRED_PHRASE:
            return checkers.check_required_phrases
        case PolicyKind.CLAIM_LOCK:
            return checkers.check_claim_lock
        case PolicyKind.DOMAIN_ALLOWLIST:
            return checkers.check_domain_allowlist
        case PolicyKind.SUPPRESSION:
            return checkers.check_suppression
        case PolicyKind.TIME_WINDOW:
            return checkers.check_time_window
        case PolicyKind.BUDGET_LIMIT:
            return checkers.check_budget_limit
        case PolicyKind.CONTENT_RULE:
            return checkers.check_content_rule
        case _:
            assert_never(kind)


async def run_checker(policy: Policy, task: TaskSnapshot, ctx: ValidationContext) -> Union[CheckOutcome, CheckFault]:
    """Evaluate one policy; anything raised (bad payload included) becomes a CheckFault."""
    try:
        rule = policy.parsed_rule()
        return await checker_for(policy.type)(policy, rule, task, ctx)
    except Exception as e:
        log.error(
            "Error checking policy %s (%s): %s",
            policy.id,
            policy.name,
            e,
            extra={"policy_id": policy.id, "policy_type": policy.type.value, "checkpoint": ctx.checkpoint.value},
        )
        metrics.CHECKER_FAULTS.labels(kind=policy.type.value).inc()
        return CheckFault(policy_id=policy.id, policy_type=policy.type, error=str(e))


async def _resolve_product_id(store: RecordStore, task: TaskSnapshot) -> Optional[str]:
    if not task.campaign_id:
        return None
    try:
        campaign = await store.get_campaign(task.campaign_id)
    except Exception as e:
        log.warning("Campaign lookup failed for task %s; evaluating without product scope: %s", task.id, e)
        return None
    return (campaign or {}).get("product_id")


async def validate_policies(
    task: Union[TaskSnapshot, Dict[str, Any]],
    organization_id: str,
    checkpoint: Union[Checkpoint, str],
    store: RecordStore,
    *,
    now: Optional[datetime] = None,
    budget_warning_ratio: float = 0.8,
) -> ValidationResult:
    """
    Evaluate every applicable policy for ``task`` at ``checkpoint``.

    Policy-list load failures propagate (PolicyLoadError). Individual checker
    failures are logged and dropped.
    """
    started = time.perf_counter()
    snapshot = task if isinstance(task, TaskSnapshot) else TaskSnapshot.model_validate(task)
    checkpoint = Checkpoint(checkpoint)

    product_id = await _resolve_product_id(store, snapshot)
    policies = await load_policies(store, organization_id, product_id)
    relevant = [p for p in policies if applies_at(p.type, checkpoint)]

    ctx = ValidationContext(
        organization_id=organization_id,
        product_id=product_id,
        checkpoint=checkpoint,
        store=store,
        timestamp=now or utcnow(),
        budget_warning_ratio=budget_warning_ratio,
    )
    results = await asyncio.gather(*(run_checker(p, snapshot, ctx) for p in relevant))

    violations, warnings = fold(results)
    result = ValidationResult(
        allowed=is_allowed(violations),
        violations=violations,
        warnings=warnings,
        feedback=build_feedback(violations, warnings),
    )

    verdict = "allowed" if result.allowed else "blocked"
    metrics.POLICY_VALIDATIONS.labels(checkpoint=checkpoint.value, verdict=verdict).inc()
    for v in violations:
        metrics.POLICY_VIOLATIONS.labels(kind=v.policy_type.value, severity=v.severity.value).inc()
    metrics.VALIDATION_LATENCY.observe(time.perf_counter() - started)

    if violations:
        log.info(
            "PolicyViolations task=%s checkpoint=%s\n%s",
            snapshot.id,
            checkpoint.value,
            format_violation_summary(result),
            extra={
                "task_id": snapshot.id,
                "checkpoint": checkpoint.value,
                "allowed": result.allowed,
                "escalate": needs_escalation(violations),
            },
        )
    if warnings:
        log.info("PolicyWarnings task=%s checkpoint=%s\n%s", snapshot.id, checkpoint.value, format_warning_summary(result))
    return result


async def can_draft_task(task: Union[TaskSnapshot, Dict[str, Any]], organization_id: str, store: RecordStore, **kw: Any) -> ValidationResult:
    return await validate_policies(task, organization_id, Checkpoint.PRE_DRAFT, store, **kw)


async def validate_content(task: Union[TaskSnapshot, Dict[str, Any]], organization_id: str, store: RecordStore, **kw: Any) -> ValidationResult:
    return await validate_policies(task, organization_id, Checkpoint.CONTENT, store, **kw)


async def can_execute_task(task: Union[TaskSnapshot, Dict[str, Any]], organization_id: str, store: RecordStore, **kw: Any) -> ValidationResult:
    return await validate_policies(task, organization_id, Checkpoint.PRE_EXECUTE, store, **kw)


def requires_escalation(result: ValidationResult) -> bool:
    return needs_escalation(result.violations)


__all__ = [
    "STAGES",
    "applies_at",
    "checker_for",
    "run_checker",
    "validate_policies",
    "can_draft_task",
    "validate_content",
    "can_execute_task",
    "requires_escalation",
]
