from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import ValidationError

from marketops.common.errors import PolicyLoadError
from marketops.data.store import RecordStore
from marketops.policy.models import Policy, Severity

log = logging.getLogger("marketops.policy")

_SEVERITY_ORDER = {Severity.BLOCK: 0, Severity.ESCALATE: 1, Severity.WARN: 2}


async def load_policies(store: RecordStore, organization_id: str, product_id: Optional[str] = None) -> List[Policy]:
    """
    Active policies for the org that are org-wide or scoped to ``product_id``,
    block first. A failed query raises PolicyLoadError; zero rows is a valid answer.
    """
    try:
        rows = await store.list_policies(organization_id, product_id)
    except Exception as e:
        raise PolicyLoadError(f"Failed to load policies for organization {organization_id}: {e}") from e

    policies: List[Policy] = []
    for row in rows:
        try:
            policy = Policy.model_validate(row)
        except ValidationError as e:
            log.warning("Skipping unreadable policy %s: %s", row.get("id"), e)
            continue
        if policy.active:
            policies.append(policy)

    policies.sort(key=lambda p: _SEVERITY_ORDER[p.severity])
    return policies
