# marketops/channels/executor.py
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Protocol

from marketops.common import metrics
from marketops.common.errors import RateLimitExceededError
from marketops.data.models import Connector, channel_family, to_iso, utcnow
from marketops.data.store import RecordStore

logger = logging.getLogger("marketops.channels")


class ChannelExecutor(Protocol):
    async def execute(self, task: Dict[str, Any], connector: Optional[Dict[str, Any]], content: Dict[str, Any]) -> Dict[str, Any]: ...


async def enforce_connector_rate_limits(
    store: RecordStore, connector: Optional[Dict[str, Any]], now: Optional[datetime] = None
) -> None:
    """Raise RateLimitExceededError when this connector's completed tasks hit its hourly/daily cap."""
    if not connector:
        return
    c = Connector.model_validate(connector)
    now = now or utcnow()

    for window, limit, span in (
        ("hour", c.rate_limit_per_hour, timedelta(hours=1)),
        ("day", c.rate_limit_per_day, timedelta(days=1)),
    ):
        if not limit:
            continue
        count = await store.count_tasks(
            since=now - span,
            time_field="completed_at",
            connector_id=c.id,
            statuses=("completed", "evaluated"),
        )
        if count >= limit:
            metrics.CONNECTOR_RATE_LIMITED.labels(window=window).inc()
            raise RateLimitExceededError(
                f"Rate limit exceeded: {limit} tasks per {window}", window=window, limit=limit, count=count
            )


class StubChannelExecutor:
    """
    Channel executor that records what it would have sent.

    Dispatches on the connector family (email/cms/social/ads), falling back to
    the task type when the task has no connector.
    """

    async def execute(self, task: Dict[str, Any], connector: Optional[Dict[str, Any]], content: Dict[str, Any]) -> Dict[str, Any]:
        family = channel_family({**task, "connector": connector})
        handler = getattr(self, f"_send_{family}", self._send_generic)
        result = await handler(task, connector or {}, content or {})
        logger.info("Executed task %s via %s connector", task.get("id"), family)
        return result

    async def _send_email(self, task, connector, content) -> Dict[str, Any]:
        return {
            "type": "email",
            "connector": connector.get("type") or "email",
            "status": "sent",
            "message_id": f"stub-email-{uuid.uuid4().hex[:12]}",
            "subject": content.get("subject"),
            "recipients": len(content.get("recipients") or []),
            "timestamp": to_iso(utcnow()),
        }

    async def _send_cms(self, task, connector, content) -> Dict[str, Any]:
        base = (connector.get("config") or {}).get("site_url", "https://example.com").rstrip("/")
        return {
            "type": "cms",
            "connector": connector.get("type") or "cms",
            "status": "published",
            "url": f"{base}/blog/{content.get('slug') or task.get('id')}",
            "title": content.get("title"),
            "timestamp": to_iso(utcnow()),
        }

    async def _send_social(self, task, connector, content) -> Dict[str, Any]:
        return {
            "type": "social",
            "connector": connector.get("type") or "social",
            "status": "posted",
            "post_id": f"stub-post-{uuid.uuid4().hex[:12]}",
            "platform": (connector.get("config") or {}).get("platform", "unknown"),
            "content_length": len(content.get("text") or ""),
            "timestamp": to_iso(utcnow()),
        }

    async def _send_ads(self, task, connector, content) -> Dict[str, Any]:
        return {
            "type": "ad",
            "connector": connector.get("type") or "ads",
            "status": "created",
            "campaign_id": f"stub-campaign-{uuid.uuid4().hex[:12]}",
            "platform": (connector.get("config") or {}).get("platform", "unknown"),
            "costCents": int(content.get("budget_cents") or 0),
            "timestamp": to_iso(utcnow()),
        }

    async def _send_generic(self, task, connector, content) -> Dict[str, Any]:
        return {"type": task.get("type"), "status": "completed", "timestamp": to_iso(utcnow())}
