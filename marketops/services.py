# marketops/services.py
"""
Process-wide collaborators used by activities, the heartbeat and the web API.

Activities look the store/drafter/executor up here instead of receiving them
as arguments, so workflow histories only carry ids and JSON documents.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from marketops.channels.drafter import ContentDrafter, OpenAIDrafter, TemplateDrafter
from marketops.channels.executor import ChannelExecutor, StubChannelExecutor
from marketops.channels.metrics_collector import BaselineMetricsCollector, MetricsCollector
from marketops.data.inmemory_store import InMemoryStore
from marketops.data.store import RecordStore

log = logging.getLogger("marketops.services")


class TaskTrigger(Protocol):
    """Starts and signals task workflows."""

    async def queue_task(self, task_id: str, organization_id: str) -> bool: ...

    async def signal_task(self, task_id: str, signal: str, payload: Dict[str, Any]) -> bool: ...


@dataclass
class Services:
    store: RecordStore
    drafter: ContentDrafter = field(default_factory=TemplateDrafter)
    executor: ChannelExecutor = field(default_factory=StubChannelExecutor)
    metrics: MetricsCollector = field(default_factory=BaselineMetricsCollector)
    trigger: Optional[TaskTrigger] = None
    approval_timeout_seconds: int = 72 * 3600
    metrics_delay_seconds: int = 3600
    heartbeat_batch_limit: int = 10
    budget_warning_ratio: float = 0.8


_services: Optional[Services] = None


def configure_services(services: Services) -> Services:
    global _services
    _services = services
    return services


def get_services() -> Services:
    if _services is None:
        raise RuntimeError("Services not configured: call configure_services() at startup")
    return _services


def reset_services() -> None:
    global _services
    _services = None


def build_services(settings: Any, *, trigger: Optional[TaskTrigger] = None) -> Services:
    """Wire collaborators from Settings (store backend, drafter backend, timings)."""
    backend = (settings.MARKETOPS_STORE or "memory").lower()
    if backend == "supabase":
        from marketops.data.supabase_store import SupabaseStore, SupabaseStoreConfig

        store: RecordStore = SupabaseStore(SupabaseStoreConfig.from_settings(settings))
    elif backend == "memory":
        store = InMemoryStore()
    else:
        raise ValueError(f"Unknown MARKETOPS_STORE backend: {settings.MARKETOPS_STORE}")

    drafter_kind = (settings.MARKETOPS_DRAFTER or "template").lower()
    if drafter_kind == "openai":
        drafter: ContentDrafter = OpenAIDrafter(settings.OPENAI_API_KEY, settings.OPENAI_MODEL)
    elif drafter_kind == "template":
        drafter = TemplateDrafter()
    else:
        raise ValueError(f"Unknown MARKETOPS_DRAFTER backend: {settings.MARKETOPS_DRAFTER}")

    log.info("Services configured | store=%s drafter=%s", backend, drafter_kind)
    return Services(
        store=store,
        drafter=drafter,
        trigger=trigger,
        approval_timeout_seconds=settings.APPROVAL_TIMEOUT_HOURS * 3600,
        metrics_delay_seconds=settings.METRICS_DELAY_SECONDS,
        heartbeat_batch_limit=settings.HEARTBEAT_BATCH_LIMIT,
        budget_warning_ratio=settings.BUDGET_WARNING_RATIO,
    )
