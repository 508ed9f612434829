from __future__ import annotations

from typing import Any, Dict, Protocol

from marketops.data.models import parse_ts, utcnow


class MetricsCollector(Protocol):
    async def collect(self, task: Dict[str, Any], execution_result: Dict[str, Any]) -> Dict[str, Any]: ...


class BaselineMetricsCollector:
    """Zeroed delivery metrics per task type; provider webhooks fill in the real numbers later."""

    async def collect(self, task: Dict[str, Any], execution_result: Dict[str, Any]) -> Dict[str, Any]:
        now = utcnow()
        started = parse_ts(task.get("started_at"))
        base: Dict[str, Any] = {
            "collected_at": now.isoformat(),
            "execution_time_ms": int((now - started).total_seconds() * 1000) if started else 0,
        }
        kind = task.get("type")

        if kind in ("email_single", "email_sequence"):
            base.update(emails_sent=1, emails_delivered=0, emails_opened=0, emails_clicked=0, bounce_rate=0)
        elif kind in ("blog_post", "landing_page"):
            base.update(views=0, unique_visitors=0, avg_time_on_page=0, bounce_rate=0)
        elif kind == "social_post":
            base.update(impressions=0, engagements=0, likes=0, shares=0, comments=0)
        elif kind == "ad_campaign":
            base.update(
                impressions=0,
                clicks=0,
                conversions=0,
                cost_cents=int((execution_result or {}).get("costCents") or 0),
                ctr=0,
            )
        return base
