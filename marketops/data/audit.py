from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from marketops.data.store import RecordStore, Row

log = logging.getLogger("marketops.audit")


async def write_audit(
    store: RecordStore,
    *,
    organization_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str],
    metadata: Optional[Dict[str, Any]] = None,
    actor_type: str = "system",
    actor_id: Optional[str] = None,
) -> Row:
    row = {
        "organization_id": organization_id,
        "action": action,
        "actor_type": actor_type,
        "actor_id": actor_id,
        "resource_type": resource_type,
        "resource_id": resource_id,
        "metadata": metadata or {},
    }
    log.info("Audit %s %s/%s by %s:%s", action, resource_type, resource_id, actor_type, actor_id or "-")
    return await store.insert_audit_log(row)


def organization_id_of(task: Row) -> Optional[str]:
    """Organization of a joined task row (task -> campaign -> product)."""
    campaign = task.get("campaign") or {}
    product = campaign.get("product") or {}
    return product.get("organization_id") or campaign.get("organization_id")
