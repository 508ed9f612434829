# marketops/policy/checkers.py
"""
One async checker per policy kind.

Every checker has the signature ``(policy, rule, task, ctx) -> CheckOutcome``.
Checkers only read from the store. Missing content for the current checkpoint
passes trivially, except for required phrases.
"""
from __future__ import annotations

import json
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse
from zoneinfo import ZoneInfo

from marketops.data.models import parse_ts, to_iso
from marketops.policy.models import (
    BannedPhraseRule,
    BudgetLimitRule,
    CheckOutcome,
    Checkpoint,
    ClaimLockRule,
    ContentRule,
    DomainAllowlistRule,
    Policy,
    PolicyWarning,
    RateLimitRule,
    RequiredPhraseRule,
    SuppressionRule,
    TaskSnapshot,
    TimeWindowRule,
    ValidationContext,
    Violation,
)

URL_RE = re.compile(
    r"https?://(www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b([-a-zA-Z0-9()@:%_+.~#?&/=]*)"
)

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

_WINDOWS = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}


# -----------------------------------------------------------------------------
# helpers
# -----------------------------------------------------------------------------

def task_content(task: TaskSnapshot, checkpoint: Checkpoint) -> str:
    """Compact JSON of the document under review at this checkpoint, or ''."""
    if checkpoint == Checkpoint.CONTENT and task.draft_content:
        doc = task.draft_content
    elif checkpoint == Checkpoint.PRE_EXECUTE and task.final_content:
        doc = task.final_content
    else:
        return ""
    return json.dumps(doc, separators=(",", ":"), ensure_ascii=False)


def _violation(policy: Policy, ctx: ValidationContext, message: str, details: Optional[Dict[str, Any]] = None) -> Violation:
    return Violation(
        policy_id=policy.id,
        policy_name=policy.name,
        policy_type=policy.type,
        severity=policy.severity,
        message=message,
        details=details or {},
        timestamp=to_iso(ctx.timestamp),
    )


def _warning(policy: Policy, ctx: ValidationContext, message: str, details: Optional[Dict[str, Any]] = None) -> PolicyWarning:
    return PolicyWarning(
        policy_id=policy.id,
        policy_name=policy.name,
        policy_type=policy.type,
        message=message,
        details=details or {},
        timestamp=to_iso(ctx.timestamp),
    )


def _fail(policy: Policy, ctx: ValidationContext, message: str, details: Optional[Dict[str, Any]] = None) -> CheckOutcome:
    return CheckOutcome(passed=False, violation=_violation(policy, ctx, message, details))


PASS = CheckOutcome(passed=True)


async def _campaign_ids_for(scope: str, task: TaskSnapshot, ctx: ValidationContext, product_id: Optional[str] = None) -> Optional[List[str]]:
    """Campaign ids a scope covers. None means "no campaign filter"."""
    if scope == "campaign":
        return [task.campaign_id] if task.campaign_id else []
    if scope == "product":
        pid = product_id or ctx.product_id
        if not pid:
            return []
        return [c["id"] for c in await ctx.store.list_campaigns(product_id=pid)]
    if scope == "organization":
        return [c["id"] for c in await ctx.store.list_campaigns(organization_id=ctx.organization_id)]
    return None


def _dollars(cents: int) -> str:
    return f"${cents / 100:.2f}"


# -----------------------------------------------------------------------------
# checkers
# -----------------------------------------------------------------------------

async def check_rate_limit(policy: Policy, rule: RateLimitRule, task: TaskSnapshot, ctx: ValidationContext) -> CheckOutcome:
    since = ctx.timestamp - _WINDOWS[rule.window]

    connector_id = None
    campaign_ids: Optional[List[str]] = None
    if rule.scope == "connector":
        if task.connector_id:
            connector_id = task.connector_id
        else:
            campaign_ids = await _campaign_ids_for("organization", task, ctx)
    else:
        campaign_ids = await _campaign_ids_for(rule.scope, task, ctx)

    count = await ctx.store.count_tasks(
        since=since,
        campaign_ids=campaign_ids,
        connector_id=connector_id,
        task_types=rule.task_types or None,
        exclude_task_id=task.id,
    )
    if count >= rule.limit:
        return _fail(
            policy,
            ctx,
            f"Rate limit exceeded: {count}/{rule.limit} tasks in the last {rule.window}",
            {"currentCount": count, "limit": rule.limit, "window": rule.window, "scope": rule.scope},
        )
    return PASS


async def check_banned_phrases(policy: Policy, rule: BannedPhraseRule, task: TaskSnapshot, ctx: ValidationContext) -> CheckOutcome:
    content = task_content(task, ctx.checkpoint)
    if not content:
        return PASS

    flags = 0 if rule.case_sensitive else re.IGNORECASE
    found: List[str] = []
    for phrase in rule.phrases:
        if rule.regex:
            hit = re.search(phrase, content, flags) is not None
        elif rule.whole_word:
            hit = re.search(r"\b" + re.escape(phrase) + r"\b", content, flags) is not None
        elif rule.case_sensitive:
            hit = phrase in content
        else:
            hit = phrase.lower() in content.lower()
        if hit:
            found.append(phrase)

    if found:
        return _fail(
            policy, ctx, f"Content contains banned phrase(s): {', '.join(found)}", {"foundPhrases": found}
        )
    return PASS


async def check_required_phrases(policy: Policy, rule: RequiredPhraseRule, task: TaskSnapshot, ctx: ValidationContext) -> CheckOutcome:
    content = task_content(task, ctx.checkpoint)
    if not content:
        return _fail(policy, ctx, "No content available to check for required phrases")

    haystack = content if rule.case_sensitive else content.lower()
    if rule.location == "footer":
        haystack = haystack[int(len(haystack) * 0.8):]
    elif rule.location == "header":
        haystack = haystack[: int(len(haystack) * 0.2)]

    found, missing = [], []
    for phrase in rule.phrases:
        needle = phrase if rule.case_sensitive else phrase.lower()
        (found if needle in haystack else missing).append(phrase)

    passed = bool(found) if rule.at_least_one else not missing
    if passed:
        return PASS

    if rule.at_least_one:
        message = f"Content must include at least one of: {', '.join(rule.phrases)}"
    else:
        message = f"Content is missing required phrase(s): {', '.join(missing)}"
    return _fail(
        policy,
        ctx,
        message,
        {"missingPhrases": missing, "requiredPhrases": rule.phrases, "location": rule.location},
    )


async def check_claim_lock(policy: Policy, rule: ClaimLockRule, task: TaskSnapshot, ctx: ValidationContext) -> CheckOutcome:
    content = task_content(task, ctx.checkpoint)
    if not content or not rule.require_verified:
        return PASS

    campaign = await ctx.store.get_campaign(task.campaign_id) if task.campaign_id else None
    if not campaign:
        return PASS

    product_id = campaign.get("product_id")
    product = await ctx.store.get_product(product_id) if product_id else None
    verified = (product or {}).get("verified_claims")
    if not verified:
        return _fail(policy, ctx, "No verified claims configured for this product", {"productId": product_id})

    verified_list = verified.get("claims", []) if isinstance(verified, dict) else list(verified)
    allowed = rule.allowed_claims or verified_list or []

    if rule.blocked_claims:
        lowered = content.lower()
        hits = [c for c in rule.blocked_claims if c.lower() in lowered]
        if hits:
            return _fail(
                policy,
                ctx,
                f"Content contains blocked claim(s): {', '.join(hits)}",
                {"foundBlocked": hits, "blockedClaims": rule.blocked_claims},
            )

    return CheckOutcome(
        passed=True,
        warning=_warning(policy, ctx, "Ensure all claims in content are verified and approved", {"allowedClaims": allowed}),
    )


def extract_domains(content: str) -> List[str]:
    domains = []
    for match in URL_RE.finditer(content):
        host = urlparse(match.group(0)).hostname
        if host:
            domains.append(host.replace("www.", "", 1))
    return domains


def _domain_allowed(domain: str, allowed: List[str]) -> bool:
    for entry in allowed:
        entry = entry.lower().lstrip(".")
        if entry.startswith("www."):
            entry = entry[4:]
        if domain == entry or domain.endswith("." + entry):
            return True
    return False


async def check_domain_allowlist(policy: Policy, rule: DomainAllowlistRule, task: TaskSnapshot, ctx: ValidationContext) -> CheckOutcome:
    content = task_content(task, ctx.checkpoint)
    if not content:
        return PASS

    domains = extract_domains(content)
    if rule.block_all:
        disallowed = domains
    else:
        disallowed = [d for d in domains if not _domain_allowed(d, rule.allowed_domains)]

    if disallowed:
        return _fail(
            policy,
            ctx,
            f"Content contains links to disallowed domain(s): {', '.join(disallowed)}",
            {"disallowedDomains": disallowed, "allowedDomains": rule.allowed_domains, "blockAll": rule.block_all},
        )
    return PASS


def _as_list(value: Any) -> List[str]:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


async def check_suppression(policy: Policy, rule: SuppressionRule, task: TaskSnapshot, ctx: ValidationContext) -> CheckOutcome:
    data = task.input_data or {}
    emails = _as_list(data.get("to")) + _as_list(data.get("recipients"))
    if not emails:
        return PASS
    return CheckOutcome(
        passed=True,
        warning=_warning(
            policy,
            ctx,
            f"Email suppression check recommended for {len(emails)} recipient(s)",
            {"emails": emails, "suppressionListId": rule.suppression_list_id},
        ),
    )


async def check_time_window(policy: Policy, rule: TimeWindowRule, task: TaskSnapshot, ctx: ValidationContext) -> CheckOutcome:
    scheduled = parse_ts(task.scheduled_for)
    if scheduled is None:
        return PASS

    local = scheduled.astimezone(ZoneInfo(rule.timezone))
    day = (local.weekday() + 1) % 7  # Sunday=0
    hour = local.hour

    if day not in rule.allowed_days:
        return _fail(
            policy,
            ctx,
            f"Task scheduled for {DAY_NAMES[day]}, which is not in allowed days",
            {"scheduledDay": day, "allowedDays": rule.allowed_days, "scheduledTime": task.scheduled_for, "timezone": rule.timezone},
        )

    start, end = rule.allowed_hours.start, rule.allowed_hours.end
    if hour < start or hour >= end:
        return _fail(
            policy,
            ctx,
            f"Task scheduled for hour {hour}, outside allowed window {start}-{end}",
            {
                "scheduledHour": hour,
                "allowedHours": {"start": start, "end": end},
                "scheduledTime": task.scheduled_for,
                "timezone": rule.timezone,
            },
        )
    return PASS


async def check_budget_limit(policy: Policy, rule: BudgetLimitRule, task: TaskSnapshot, ctx: ValidationContext) -> CheckOutcome:
    window = _WINDOWS.get(rule.window)
    since: Optional[datetime] = ctx.timestamp - window if window is not None else None

    campaign = await ctx.store.get_campaign(task.campaign_id) if task.campaign_id else None
    if not campaign:
        return PASS

    campaign_ids = await _campaign_ids_for(rule.scope, task, ctx, product_id=campaign.get("product_id"))
    results = await ctx.store.list_execution_results(campaign_ids=campaign_ids, since=since)
    spend = sum(int((r or {}).get("costCents") or 0) for r in results)
    cap = rule.max_spend_cents

    if spend >= cap:
        return _fail(
            policy,
            ctx,
            f"Budget limit exceeded: {_dollars(spend)} / {_dollars(cap)}",
            {"currentSpendCents": spend, "maxSpendCents": cap, "window": rule.window, "scope": rule.scope},
        )

    if spend >= cap * ctx.budget_warning_ratio:
        return CheckOutcome(
            passed=True,
            warning=_warning(
                policy,
                ctx,
                f"Approaching budget limit: {_dollars(spend)} / {_dollars(cap)}",
                {"currentSpendCents": spend, "maxSpendCents": cap, "percentUsed": round(spend * 100 / cap) if cap else 100},
            ),
        )
    return PASS


async def check_content_rule(policy: Policy, rule: ContentRule, task: TaskSnapshot, ctx: ValidationContext) -> CheckOutcome:
    content = task_content(task, ctx.checkpoint)
    if not content:
        return PASS

    problems: List[str] = []
    size = len(content)
    if rule.max_length is not None and size > rule.max_length:
        problems.append(f"Content exceeds maximum length: {size} / {rule.max_length} characters")
    if rule.min_length is not None and size < rule.min_length:
        problems.append(f"Content below minimum length: {size} / {rule.min_length} characters")

    missing = [e for e in (rule.required_elements or []) if e not in content]
    if missing:
        problems.append(f"Missing required elements: {', '.join(missing)}")

    forbidden = [e for e in (rule.forbidden_elements or []) if e in content]
    if forbidden:
        problems.append(f"Contains forbidden elements: {', '.join(forbidden)}")

    if problems:
        return _fail(policy, ctx, "; ".join(problems), {"violations": problems, "contentLength": size})
    return PASS
