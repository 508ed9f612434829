# marketops/data/supabase_store.py
from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from marketops.common.errors import StoreError, TransientStoreError
from marketops.data.models import SPEND_STATUSES, to_iso, utcnow
from marketops.data.store import Row, StatusFilter, status_list

log = logging.getLogger("marketops.store")

DEFAULT_TIMEOUT = 15
RETRYABLE = (408, 429, 500, 502, 503, 504)

TASK_SELECT = "*,campaign:campaigns(*,product:products(*)),connector:connectors(*)"


class SupabaseStoreConfig(BaseModel):
    base_url: str
    service_key: str
    db_schema: str = "public"
    timeout_seconds: int = DEFAULT_TIMEOUT

    @classmethod
    def from_settings(cls, settings: Any) -> "SupabaseStoreConfig":
        url = (settings.SUPABASE_URL or "").rstrip("/")
        key = settings.SUPABASE_SERVICE_ROLE_KEY or ""
        if not url or not key:
            raise RuntimeError("Supabase not configured: set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
        return cls(base_url=url, service_key=key, db_schema=settings.SUPABASE_SCHEMA)


def _in(values: Sequence[str]) -> str:
    return "in.(" + ",".join(str(v) for v in values) + ")"


def _count_from(resp: httpx.Response) -> int:
    # Content-Range: "0-4/5" or "*/0"
    rng = resp.headers.get("content-range", "")
    total = rng.rsplit("/", 1)[-1] if "/" in rng else ""
    return int(total) if total.isdigit() else 0


class SupabaseStore:
    """
    Record store against PostgREST.

    - conditional PATCHes (``status=in.(...)``) for first-commit-wins transitions
    - exponential backoff (tenacity) for retryable HTTP statuses
    """

    def __init__(self, cfg: SupabaseStoreConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.cfg = cfg
        self._client = httpx.AsyncClient(
            base_url=f"{cfg.base_url}/rest/v1",
            timeout=cfg.timeout_seconds,
            transport=transport,
            headers={
                "apikey": cfg.service_key,
                "Authorization": f"Bearer {cfg.service_key}",
                "Accept-Profile": cfg.db_schema,
                "Content-Profile": cfg.db_schema,
                "Content-Type": "application/json",
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # -------------------- internal helpers --------------------

    @retry(
        reraise=True,
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=0.25, min=0.1, max=4),
        retry=retry_if_exception_type(TransientStoreError),
    )
    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[List[Tuple[str, str]]] = None,
        body: Any = None,
        prefer: Optional[str] = None,
    ) -> httpx.Response:
        headers = {"Prefer": prefer} if prefer else None
        try:
            resp = await self._client.request(
                method,
                f"/{table}",
                params=params,
                content=json.dumps(body) if body is not None else None,
                headers=headers,
            )
        except httpx.TransportError as e:
            raise TransientStoreError(f"{method} {table}: {e}") from e
        if resp.status_code in RETRYABLE:
            raise TransientStoreError(f"HTTP {resp.status_code} {method} {table}: {resp.text}")
        if resp.status_code >= 400:
            raise StoreError(f"HTTP {resp.status_code} {method} {table} params={params}: {resp.text}")
        return resp

    async def _select(self, table: str, params: List[Tuple[str, str]]) -> List[Row]:
        resp = await self._request("GET", table, params=params)
        return resp.json() or []

    async def _one(self, table: str, row_id: str, select: str = "*") -> Optional[Row]:
        rows = await self._select(table, [("id", f"eq.{row_id}"), ("select", select), ("limit", "1")])
        return rows[0] if rows else None

    async def _patch(self, table: str, params: List[Tuple[str, str]], fields: Row) -> List[Row]:
        resp = await self._request("PATCH", table, params=params, body=fields, prefer="return=representation")
        return resp.json() or []

    async def _insert(self, table: str, row: Row) -> Row:
        resp = await self._request("POST", table, body=row, prefer="return=representation")
        data = resp.json()
        return data[0] if isinstance(data, list) and data else data

    @staticmethod
    def _status_param(params: List[Tuple[str, str]], statuses: StatusFilter) -> None:
        wanted = status_list(statuses)
        if wanted is not None:
            params.append(("status", _in(wanted)))

    # -------------------- reads --------------------

    async def get_task(self, task_id: str) -> Optional[Row]:
        return await self._one("tasks", task_id, TASK_SELECT)

    async def get_campaign(self, campaign_id: str) -> Optional[Row]:
        return await self._one("campaigns", campaign_id)

    async def get_product(self, product_id: str) -> Optional[Row]:
        return await self._one("products", product_id)

    async def get_organization(self, organization_id: str) -> Optional[Row]:
        return await self._one("organizations", organization_id)

    async def list_policies(self, organization_id: str, product_id: Optional[str]) -> List[Row]:
        params = [
            ("select", "*"),
            ("organization_id", f"eq.{organization_id}"),
            ("active", "is.true"),
        ]
        if product_id:
            params.append(("or", f"(product_id.is.null,product_id.eq.{product_id})"))
        else:
            params.append(("product_id", "is.null"))
        return await self._select("policies", params)

    async def list_campaigns(
        self,
        *,
        organization_id: Optional[str] = None,
        product_id: Optional[str] = None,
        statuses: StatusFilter = None,
    ) -> List[Row]:
        params: List[Tuple[str, str]] = []
        if organization_id is not None:
            params.append(("select", "*,products!inner(organization_id)"))
            params.append(("products.organization_id", f"eq.{organization_id}"))
        else:
            params.append(("select", "*"))
        if product_id is not None:
            params.append(("product_id", f"eq.{product_id}"))
        self._status_param(params, statuses)
        rows = await self._select("campaigns", params)
        for r in rows:
            r.pop("products", None)
        return rows

    async def list_tasks(
        self,
        *,
        campaign_ids: Optional[Sequence[str]] = None,
        statuses: StatusFilter = None,
        scheduled_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        if campaign_ids is not None and not campaign_ids:
            return []
        params: List[Tuple[str, str]] = [("select", "*"), ("order", "scheduled_for.asc")]
        if campaign_ids is not None:
            params.append(("campaign_id", _in(campaign_ids)))
        self._status_param(params, statuses)
        if scheduled_before is not None:
            params.append(("scheduled_for", f"lte.{to_iso(scheduled_before)}"))
        if limit is not None:
            params.append(("limit", str(limit)))
        return await self._select("tasks", params)

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
        if campaign_ids is not None and not campaign_ids:
            return 0
        params: List[Tuple[str, str]] = [("select", "id"), (time_field, f"gte.{to_iso(since)}")]
        if campaign_ids is not None:
            params.append(("campaign_id", _in(campaign_ids)))
        if connector_id is not None:
            params.append(("connector_id", f"eq.{connector_id}"))
        if task_types:
            params.append(("type", _in(task_types)))
        if exclude_task_id is not None:
            params.append(("id", f"neq.{exclude_task_id}"))
        self._status_param(params, statuses)
        resp = await self._request("HEAD", "tasks", params=params, prefer="count=exact")
        return _count_from(resp)

    async def list_execution_results(
        self,
        *,
        campaign_ids: Optional[Sequence[str]] = None,
        since: Optional[datetime] = None,
    ) -> List[Row]:
        if campaign_ids is not None and not campaign_ids:
            return []
        params: List[Tuple[str, str]] = [
            ("select", "execution_result"),
            ("status", _in(SPEND_STATUSES)),
            ("execution_result", "not.is.null"),
        ]
        if campaign_ids is not None:
            params.append(("campaign_id", _in(campaign_ids)))
        if since is not None:
            params.append(("completed_at", f"gte.{to_iso(since)}"))
        rows = await self._select("tasks", params)
        return [r["execution_result"] for r in rows if r.get("execution_result") is not None]

    async def get_pending_approval(self, task_id: str) -> Optional[Row]:
        rows = await self._select(
            "approvals",
            [("select", "*"), ("task_id", f"eq.{task_id}"), ("status", "eq.pending"), ("limit", "1")],
        )
        return rows[0] if rows else None

    async def get_latest_approval(self, task_id: str) -> Optional[Row]:
        rows = await self._select(
            "approvals",
            [("select", "*"), ("task_id", f"eq.{task_id}"), ("order", "created_at.desc"), ("limit", "1")],
        )
        return rows[0] if rows else None

    async def list_expired_approvals(self, now: datetime, limit: Optional[int] = None) -> List[Row]:
        params = [
            ("select", "*"),
            ("status", "eq.pending"),
            ("expires_at", f"lt.{to_iso(now)}"),
            ("order", "expires_at.asc"),
        ]
        if limit is not None:
            params.append(("limit", str(limit)))
        return await self._select("approvals", params)

    # -------------------- writes --------------------

    async def update_task(self, task_id: str, fields: Row, *, expected_status: StatusFilter = None) -> bool:
        params = [("id", f"eq.{task_id}")]
        self._status_param(params, expected_status)
        rows = await self._patch("tasks", params, {**fields, "updated_at": to_iso(utcnow())})
        return bool(rows)

    async def append_task_error(
        self,
        task_id: str,
        entry: Row,
        *,
        fields: Optional[Row] = None,
        expected_status: StatusFilter = None,
    ) -> bool:
        current = await self._one("tasks", task_id, "id,status,error_log")
        if current is None:
            return False
        log_entries = list(current.get("error_log") or []) + [entry]
        return await self.update_task(
            task_id, {**(fields or {}), "error_log": log_entries}, expected_status=expected_status
        )

    async def insert_approval(self, row: Row) -> Row:
        return await self._insert("approvals", {"id": str(uuid.uuid4()), **row})

    async def resolve_approval(
        self,
        task_id: str,
        status: str,
        *,
        resolved_at: datetime,
        resolved_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Optional[Row]:
        fields: Row = {"status": status, "resolved_at": to_iso(resolved_at)}
        if resolved_by is not None:
            fields["resolved_by"] = resolved_by
        if notes is not None:
            fields["resolution_notes"] = notes
        rows = await self._patch("approvals", [("task_id", f"eq.{task_id}"), ("status", "eq.pending")], fields)
        return rows[0] if rows else None

    async def update_campaigns(self, campaign_ids: Sequence[str], fields: Row, *, expected_status: StatusFilter = None) -> List[str]:
        if not campaign_ids:
            return []
        params = [("id", _in(campaign_ids))]
        self._status_param(params, expected_status)
        rows = await self._patch("campaigns", params, fields)
        return [r["id"] for r in rows]

    async def update_connector(self, connector_id: str, fields: Row) -> None:
        await self._patch("connectors", [("id", f"eq.{connector_id}")], fields)

    async def update_organization(self, organization_id: str, fields: Row) -> Optional[Row]:
        rows = await self._patch("organizations", [("id", f"eq.{organization_id}")], fields)
        return rows[0] if rows else None

    async def insert_audit_log(self, row: Row) -> Row:
        return await self._insert("audit_logs", row)

    async def insert_event(self, name: str, data: Row) -> Row:
        return await self._insert("events", {"name": name, "data": data})

    async def ping(self) -> bool:
        try:
            await self._request("HEAD", "organizations", params=[("select", "id"), ("limit", "1")])
            return True
        except StoreError as e:
            log.warning("Supabase ping failed: %s", e)
            return False
