# marketops/web/routes_organizations.py
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field

from marketops.common.errors import OrganizationNotFoundError
from marketops.orchestrator.emergency import disable_sandbox_mode, execute_emergency_stop, is_sandbox_mode
from marketops.services import Services
from marketops.web.deps import get_app_services

router = APIRouter(prefix="/api/v1/organizations", tags=["organizations"])


class EmergencyStopRequest(BaseModel):
    triggered_by: str = Field(..., min_length=1)
    reason: Optional[str] = None


@router.post("/{organization_id}/emergency-stop")
async def emergency_stop(
    organization_id: str,
    body: EmergencyStopRequest,
    services: Services = Depends(get_app_services),
) -> Dict[str, Any]:
    try:
        result = await execute_emergency_stop(services, organization_id, body.triggered_by, body.reason)
    except OrganizationNotFoundError:
        raise HTTPException(status_code=404, detail="Organization not found")
    return result.model_dump()


@router.get("/{organization_id}/sandbox")
async def sandbox_status(organization_id: str, services: Services = Depends(get_app_services)) -> Dict[str, Any]:
    return {"organization_id": organization_id, "sandbox_mode": await is_sandbox_mode(services.store, organization_id)}


@router.delete("/{organization_id}/sandbox")
async def disable_sandbox(
    organization_id: str,
    x_user_id: Optional[str] = Header(default=None),
    services: Services = Depends(get_app_services),
) -> Dict[str, Any]:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id")
    try:
        org = await disable_sandbox_mode(services, organization_id, x_user_id)
    except OrganizationNotFoundError:
        raise HTTPException(status_code=404, detail="Organization not found")
    return {"organization_id": org.id, "sandbox_mode": org.sandbox_mode}
