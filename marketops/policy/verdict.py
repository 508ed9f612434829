"""Severity semantics and human-readable reports for policy results."""
from __future__ import annotations

from typing import Iterable, List, Optional, Tuple, Union

from marketops.policy.models import CheckFault, CheckOutcome, PolicyWarning, Severity, ValidationResult, Violation


def fail_open(result: Union[CheckOutcome, CheckFault]) -> Optional[CheckOutcome]:
    """A faulted checker has no opinion: its result is dropped, never counted as a failure."""
    if isinstance(result, CheckFault):
        return None
    return result


def is_allowed(violations: Iterable[Violation]) -> bool:
    """Only `block` stops a task. `escalate` and `warn` are surfaced but never deny."""
    return not any(v.severity == Severity.BLOCK for v in violations)


def needs_escalation(violations: Iterable[Violation]) -> bool:
    return any(v.severity == Severity.ESCALATE for v in violations)


def fold(results: Iterable[Union[CheckOutcome, CheckFault]]) -> Tuple[List[Violation], List[PolicyWarning]]:
    violations: List[Violation] = []
    warnings: List[PolicyWarning] = []
    for raw in results:
        outcome = fail_open(raw)
        if outcome is None:
            continue
        if not outcome.passed and outcome.violation is not None:
            violations.append(outcome.violation)
        if outcome.warning is not None:
            warnings.append(outcome.warning)
    return violations, warnings


def _by_severity(violations: List[Violation], severity: Severity) -> List[Violation]:
    return [v for v in violations if v.severity == severity]


def build_feedback(violations: List[Violation], warnings: List[PolicyWarning]) -> Optional[str]:
    if not violations and not warnings:
        return None

    if not violations:
        return f"{len(warnings)} policy warning(s) detected. Review recommended."

    blocking = _by_severity(violations, Severity.BLOCK)
    escalating = _by_severity(violations, Severity.ESCALATE)
    warn_level = _by_severity(violations, Severity.WARN)

    counts = []
    if blocking:
        counts.append(f"{len(blocking)} blocking violation(s)")
    if escalating:
        counts.append(f"{len(escalating)} requiring escalation")
    if warn_level:
        counts.append(f"{len(warn_level)} warning(s)")

    if blocking:
        tail = "Task cannot proceed."
    elif escalating:
        tail = "Manual approval required."
    else:
        tail = "Review recommended."
    return f"Policy validation found {', '.join(counts)}. {tail}"


def format_violation_summary(result: ValidationResult) -> str:
    """Multi-line report grouped by severity, as written to the task logs."""
    if not result.violations:
        return "No policy violations"

    lines: List[str] = []
    groups = [
        ("BLOCKING VIOLATIONS", Severity.BLOCK),
        ("ESCALATION REQUIRED", Severity.ESCALATE),
        ("WARNINGS", Severity.WARN),
    ]
    for title, severity in groups:
        found = _by_severity(result.violations, severity)
        if not found:
            continue
        if lines:
            lines.append("")
        lines.append(f"{title}:")
        lines.extend(f"  - [{v.policy_name}] {v.message}" for v in found)
    return "\n".join(lines)


def format_warning_summary(result: ValidationResult) -> str:
    if not result.warnings:
        return "No policy warnings"
    lines = ["POLICY WARNINGS:"]
    lines.extend(f"  - [{w.policy_name}] {w.message}" for w in result.warnings)
    return "\n".join(lines)
