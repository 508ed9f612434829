# marketops/common/errors.py
from __future__ import annotations
from typing import Dict, Tuple, Type

# ---- Canonical error classes ------------------------------------------------

class MarketOpsError(Exception):
    code: str = "unknown"
    retryable: bool = False

    def __init__(self, message: str = ""):
        super().__init__(message)

class StoreError(MarketOpsError):
    code, retryable = "store_error", False

class TransientStoreError(StoreError):
    code, retryable = "store_unavailable", True

class PolicyLoadError(MarketOpsError):
    """The policy set could not be read; validation cannot proceed."""
    code, retryable = "policy_load_failed", True

class TaskNotFoundError(MarketOpsError):
    code, retryable = "task_not_found", False

class OrganizationNotFoundError(MarketOpsError):
    code, retryable = "organization_not_found", False

class DraftingError(MarketOpsError):
    code, retryable = "drafting_failed", True

class ChannelExecutionError(MarketOpsError):
    code, retryable = "channel_failed", True

class RateLimitExceededError(MarketOpsError):
    """Connector hourly/daily quota reached. Raised before any external call."""
    code, retryable = "connector_rate_limited", False

    def __init__(self, message: str = "", *, window: str = "", limit: int = 0, count: int = 0):
        super().__init__(message)
        self.window = window
        self.limit = limit
        self.count = count


# ---- Helpers used by workflows and activities --------------------------------

def error_classes() -> Dict[str, Type[MarketOpsError]]:
    """Every MarketOpsError subclass by class name (the name Temporal reports as the failure type)."""
    found: Dict[str, Type[MarketOpsError]] = {}
    pending = list(MarketOpsError.__subclasses__())
    while pending:
        cls = pending.pop()
        found[cls.__name__] = cls
        pending.extend(cls.__subclasses__())
    return found


def innermost(exc: BaseException) -> BaseException:
    # Temporal wraps activity failures: ActivityError -> ApplicationError(type=<class name>)
    seen = exc
    while getattr(seen, "cause", None) is not None:
        seen = seen.cause  # type: ignore[attr-defined]
    return seen


def classify_exception(exc: BaseException) -> Tuple[str, bool]:
    """
    Return (code, retryable) for any exception.
    MarketOpsError subclasses carry their own metadata, directly or through the
    failure type of a Temporal-wrapped error; everything else gets a
    best-effort guess from the class name and message.
    """
    inner = innermost(exc)
    if isinstance(inner, MarketOpsError):
        return inner.code, inner.retryable
    kind = getattr(inner, "type", None)
    known = error_classes().get(kind) if isinstance(kind, str) else None
    if known is not None:
        return known.code, known.retryable

    name = (kind if isinstance(kind, str) and kind else inner.__class__.__name__).lower()
    msg = str(inner).lower()

    if "timeout" in name or "timed out" in msg:
        return "timeout", True
    if "too many requests" in msg or "429" in msg or "rate limit" in msg:
        return "throttled", True
    if any(k in msg for k in ["connection reset", "connection refused", "dns", "ssl", "socket"]):
        return "network_glitch", True
    if any(k in msg for k in ["invalid", "schema", "payload", "validation"]):
        return "invalid_payload", False

    return "permanent_failure", False


def error_message(exc: BaseException) -> str:
    """Innermost message of an exception chain."""
    inner = innermost(exc)
    return str(inner) or inner.__class__.__name__

