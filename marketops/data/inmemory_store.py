"""In-memory implementation of the record store."""

from __future__ import annotations

import copy
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from marketops.data.models import SPEND_STATUSES, parse_ts, to_iso, utcnow
from marketops.data.store import Row, StatusFilter, status_list

_TABLES = (
    "organizations",
    "products",
    "campaigns",
    "connectors",
    "tasks",
    "approvals",
    "policies",
    "audit_logs",
    "events",
)


class InMemoryStore:
    """Keep every table in local dicts.

    Useful for tests or when no Supabase project is configured. Each mutation
    runs without an intervening ``await``, so conditional updates are atomic
    with respect to other coroutines on the same loop.
    """

    def __init__(self) -> None:
        self.tables: Dict[str, Dict[str, Row]] = {name: {} for name in _TABLES}

    # ------------------------------------------------------------------
    # seeding helpers
    # ------------------------------------------------------------------
    def _put(self, table: str, row: Row) -> Row:
        row = dict(row)
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", to_iso(utcnow()))
        self.tables[table][row["id"]] = row
        return row

    def add_organization(self, **fields: Any) -> Row:
        fields.setdefault("settings", {})
        return self._put("organizations", fields)

    def add_product(self, **fields: Any) -> Row:
        fields.setdefault("verified_claims", None)
        return self._put("products", fields)

    def add_campaign(self, **fields: Any) -> Row:
        fields.setdefault("status", "active")
        return self._put("campaigns", fields)

    def add_connector(self, **fields: Any) -> Row:
        fields.setdefault("approval_required", True)
        fields.setdefault("auto_approve_types", [])
        fields.setdefault("active", True)
        return self._put("connectors", fields)

    def add_task(self, **fields: Any) -> Row:
        fields.setdefault("status", "queued")
        fields.setdefault("input_data", {})
        fields.setdefault("error_log", [])
        fields.setdefault("status_history", [])
        fields.setdefault("dry_run", False)
        fields.setdefault("scheduled_for", to_iso(utcnow()))
        return self._put("tasks", fields)

    def add_policy(self, **fields: Any) -> Row:
        fields.setdefault("active", True)
        fields.setdefault("product_id", None)
        fields.setdefault("rule", {})
        return self._put("policies", fields)

    def row(self, table: str, row_id: str) -> Optional[Row]:
        return self.tables[table].get(row_id)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    async def get_task(self, task_id: str) -> Optional[Row]:
        task = self.tables["tasks"].get(task_id)
        if task is None:
            return None
        out = copy.deepcopy(task)
        campaign = self.tables["campaigns"].get(task.get("campaign_id") or "")
        if campaign is not None:
            campaign = copy.deepcopy(campaign)
            campaign["product"] = copy.deepcopy(self.tables["products"].get(campaign.get("product_id") or ""))
        out["campaign"] = campaign
        out["connector"] = copy.deepcopy(self.tables["connectors"].get(task.get("connector_id") or ""))
        return out

    async def get_campaign(self, campaign_id: str) -> Optional[Row]:
        return copy.deepcopy(self.tables["campaigns"].get(campaign_id))

    async def get_product(self, product_id: str) -> Optional[Row]:
        return copy.deepcopy(self.tables["products"].get(product_id))

    async def get_organization(self, organization_id: str) -> Optional[Row]:
        return copy.deepcopy(self.tables["organizations"].get(organization_id))

    async def list_policies(self, organization_id: str, product_id: Optional[str]) -> List[Row]:
        out = []
        for p in self.tables["policies"].values():
            if p.get("organization_id") != organization_id or not p.get("active", True):
                continue
            if p.get("product_id") not in (None, product_id):
                continue
            out.append(copy.deepcopy(p))
        return out

    async def list_campaigns(
        self,
        *,
        organization_id: Optional[str] = None,
        product_id: Optional[str] = None,
        statuses: StatusFilter = None,
    ) -> List[Row]:
        wanted = status_list(statuses)
        out = []
        for c in self.tables["campaigns"].values():
            if product_id is not None and c.get("product_id") != product_id:
                continue
            if organization_id is not None:
                product = self.tables["products"].get(c.get("product_id") or "")
                if product is None or product.get("organization_id") != organization_id:
                    continue
            if wanted is not None and c.get("status") not in wanted:
                continue
            out.append(copy.deepcopy(c))
        return out

    def _select_tasks(self, campaign_ids: Optional[Sequence[str]], statuses: StatusFilter) -> List[Row]:
        wanted = status_list(statuses)
        out = []
        for t in self.tables["tasks"].values():
            if campaign_ids is not None and t.get("campaign_id") not in campaign_ids:
                continue
            if wanted is not None and t.get("status") not in wanted:
                continue
            out.append(t)
        return out

    async def list_tasks(
        self,
        *,
        campaign_ids: Optional[Sequence[str]] = None,
        statuses: StatusFilter = None,
        scheduled_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        rows = self._select_tasks(campaign_ids, statuses)
        if scheduled_before is not None:
            rows = [t for t in rows if (parse_ts(t.get("scheduled_for")) or scheduled_before) <= scheduled_before]
        rows.sort(key=lambda t: t.get("scheduled_for") or "")
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(t) for t in rows]

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
    ) -> int:
        n = 0
        for t in self._select_tasks(campaign_ids, statuses):
            if exclude_task_id is not None and t["id"] == exclude_task_id:
                continue
            if connector_id is not None and t.get("connector_id") != connector_id:
                continue
            if task_types and t.get("type") not in task_types:
                continue
            ts = parse_ts(t.get(time_field))
            if ts is None or ts < since:
                continue
            n += 1
        return n

    async def list_execution_results(
        self,
        *,
        campaign_ids: Optional[Sequence[str]] = None,
        since: Optional[datetime] = None,
    ) -> List[Row]:
        out = []
        for t in self._select_tasks(campaign_ids, SPEND_STATUSES):
            if t.get("execution_result") is None:
                continue
            if since is not None:
                ts = parse_ts(t.get("completed_at"))
                if ts is None or ts < since:
                    continue
            out.append(copy.deepcopy(t["execution_result"]))
        return out

    async def get_pending_approval(self, task_id: str) -> Optional[Row]:
        for a in self.tables["approvals"].values():
            if a.get("task_id") == task_id and a.get("status") == "pending":
                return copy.deepcopy(a)
        return None

    async def get_latest_approval(self, task_id: str) -> Optional[Row]:
        rows = [a for a in self.tables["approvals"].values() if a.get("task_id") == task_id]
        if not rows:
            return None
        return copy.deepcopy(max(rows, key=lambda a: a.get("created_at") or ""))

    async def list_expired_approvals(self, now: datetime, limit: Optional[int] = None) -> List[Row]:
        out = []
        for a in self.tables["approvals"].values():
            if a.get("status") != "pending":
                continue
            expires = parse_ts(a.get("expires_at"))
            if expires is not None and expires < now:
                out.append(copy.deepcopy(a))
        out.sort(key=lambda a: a.get("expires_at") or "")
        return out[:limit] if limit is not None else out

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    def _apply_task_fields(self, task: Row, fields: Row) -> None:
        new_status = fields.get("status")
        if new_status and new_status != task.get("status"):
            task.setdefault("status_history", []).append(
                {"status": new_status, "from": task.get("status"), "timestamp": to_iso(utcnow())}
            )
        task.update(copy.deepcopy(fields))
        task["updated_at"] = to_iso(utcnow())

    async def update_task(self, task_id: str, fields: Row, *, expected_status: StatusFilter = None) -> bool:
        task = self.tables["tasks"].get(task_id)
        if task is None:
            return False
        wanted = status_list(expected_status)
        if wanted is not None and task.get("status") not in wanted:
            return False
        self._apply_task_fields(task, fields)
        return True

    async def append_task_error(
        self,
        task_id: str,
        entry: Row,
        *,
        fields: Optional[Row] = None,
        expected_status: StatusFilter = None,
    ) -> bool:
        task = self.tables["tasks"].get(task_id)
        if task is None:
            return False
        wanted = status_list(expected_status)
        if wanted is not None and task.get("status") not in wanted:
            return False
        task["error_log"] = list(task.get("error_log") or []) + [copy.deepcopy(entry)]
        self._apply_task_fields(task, fields or {})
        return True

    async def insert_approval(self, row: Row) -> Row:
        return copy.deepcopy(self._put("approvals", row))

    async def resolve_approval(
        self,
        task_id: str,
        status: str,
        *,
        resolved_at: datetime,
        resolved_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Optional[Row]:
        for a in self.tables["approvals"].values():
            if a.get("task_id") == task_id and a.get("status") == "pending":
                a["status"] = status
                a["resolved_at"] = to_iso(resolved_at)
                if resolved_by is not None:
                    a["resolved_by"] = resolved_by
                if notes is not None:
                    a["resolution_notes"] = notes
                return copy.deepcopy(a)
        return None

    async def update_campaigns(self, campaign_ids: Sequence[str], fields: Row, *, expected_status: StatusFilter = None) -> List[str]:
        wanted = status_list(expected_status)
        changed = []
        for cid in campaign_ids:
            c = self.tables["campaigns"].get(cid)
            if c is None or (wanted is not None and c.get("status") not in wanted):
                continue
            c.update(copy.deepcopy(fields))
            changed.append(cid)
        return changed

    async def update_connector(self, connector_id: str, fields: Row) -> None:
        c = self.tables["connectors"].get(connector_id)
        if c is not None:
            c.update(copy.deepcopy(fields))

    async def update_organization(self, organization_id: str, fields: Row) -> Optional[Row]:
        org = self.tables["organizations"].get(organization_id)
        if org is None:
            return None
        org.update(copy.deepcopy(fields))
        return copy.deepcopy(org)

    async def insert_audit_log(self, row: Row) -> Row:
        return copy.deepcopy(self._put("audit_logs", row))

    async def insert_event(self, name: str, data: Row) -> Row:
        return copy.deepcopy(self._put("events", {"name": name, "data": data}))

    async def ping(self) -> bool:
        return True

    # ------------------------------------------------------------------
    def rows(self, table: str, **where: Any) -> List[Row]:
        """Test helper: rows matching simple equality filters."""
        return [
            r for r in self.tables[table].values()
            if all(r.get(k) == v for k, v in where.items())
        ]
