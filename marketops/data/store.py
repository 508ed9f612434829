# marketops/data/store.py
"""
Record store contract.

Rows are plain dicts shaped like the PostgREST JSON the Supabase backend
returns. Every status transition goes through a conditional update
(``expected_status``) so concurrent writers race safely: the first commit wins
and the loser gets ``False``/``None`` back instead of overwriting.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

Row = Dict[str, Any]
StatusFilter = Union[str, Sequence[str], None]


class RecordStore(Protocol):
    # ---- reads --------------------------------------------------------------
    async def get_task(self, task_id: str) -> Optional[Row]:
        """Task row with ``campaign`` (incl. nested ``product``) and ``connector`` joined."""
        ...

    async def get_campaign(self, campaign_id: str) -> Optional[Row]: ...

    async def get_product(self, product_id: str) -> Optional[Row]: ...

    async def get_organization(self, organization_id: str) -> Optional[Row]: ...

    async def list_policies(self, organization_id: str, product_id: Optional[str]) -> List[Row]:
        """Active policies of the org that are unscoped or scoped to ``product_id``."""
        ...

    async def list_campaigns(
        self,
        *,
        organization_id: Optional[str] = None,
        product_id: Optional[str] = None,
        statuses: StatusFilter = None,
    ) -> List[Row]: ...

    async def list_tasks(
        self,
        *,
        campaign_ids: Optional[Sequence[str]] = None,
        statuses: StatusFilter = None,
        scheduled_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Row]: ...

    async def count_tasks(
        self,
        *,
        since: datetime,
        time_field: str = "created_at",
        campaign_ids: Optional[Sequence[str]] = None,
        connector_id: Optional[str] = None,
        task_types: Optional[Sequence[str]] = None,
        statuses: StatusFilter = None,
        exclude_task_id: Optional[str] = None,
    ) -> int: ...

    async def list_execution_results(
        self,
        *,
        campaign_ids: Optional[Sequence[str]] = None,
        since: Optional[datetime] = None,
    ) -> List[Row]:
        """``execution_result`` documents of tasks in ``SPEND_STATUSES``, filtered by ``completed_at``."""
        ...

    async def get_pending_approval(self, task_id: str) -> Optional[Row]: ...

    async def get_latest_approval(self, task_id: str) -> Optional[Row]: ...

    async def list_expired_approvals(self, now: datetime, limit: Optional[int] = None) -> List[Row]: ...

    # ---- writes -------------------------------------------------------------
    async def update_task(self, task_id: str, fields: Row, *, expected_status: StatusFilter = None) -> bool: ...

    async def append_task_error(
        self,
        task_id: str,
        entry: Row,
        *,
        fields: Optional[Row] = None,
        expected_status: StatusFilter = None,
    ) -> bool: ...

    async def insert_approval(self, row: Row) -> Row: ...

    async def resolve_approval(
        self,
        task_id: str,
        status: str,
        *,
        resolved_at: datetime,
        resolved_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Optional[Row]:
        """Flip the task's pending approval to ``status``; ``None`` when nothing was pending."""
        ...

    async def update_campaigns(self, campaign_ids: Sequence[str], fields: Row, *, expected_status: StatusFilter = None) -> List[str]: ...

    async def update_connector(self, connector_id: str, fields: Row) -> None: ...

    async def update_organization(self, organization_id: str, fields: Row) -> Optional[Row]: ...

    async def insert_audit_log(self, row: Row) -> Row: ...

    async def insert_event(self, name: str, data: Row) -> Row: ...

    async def ping(self) -> bool: ...


def status_list(statuses: StatusFilter) -> Optional[List[str]]:
    if statuses is None:
        return None
    if isinstance(statuses, str):
        return [statuses]
    return list(statuses)
