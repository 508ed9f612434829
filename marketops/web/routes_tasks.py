# marketops/web/routes_tasks.py
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from marketops.data.audit import organization_id_of
from marketops.data.store import Row
from marketops.orchestrator.approvals import approve_task, reject_task
from marketops.policy.engine import validate_policies
from marketops.policy.models import Checkpoint
from marketops.services import Services
from marketops.web.deps import get_app_services

router = APIRouter(prefix="/api/v1/tasks", tags=["tasks"])


class ApproveRequest(BaseModel):
    approver_id: str = Field(..., min_length=1)


class RejectRequest(BaseModel):
    approver_id: str = Field(..., min_length=1)
    notes: Optional[str] = None


async def _load_task(services: Services, task_id: str) -> Row:
    task = await services.store.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


def _org_or_422(task: Row) -> str:
    org_id = organization_id_of(task)
    if not org_id:
        raise HTTPException(status_code=422, detail="Task has no organization (campaign/product missing)")
    return org_id


@router.post("/{task_id}/queue")
async def queue_task(task_id: str, services: Services = Depends(get_app_services)) -> Dict[str, Any]:
    task = await _load_task(services, task_id)
    org_id = _org_or_422(task)
    if services.trigger is None:
        raise HTTPException(status_code=503, detail="Workflow trigger unavailable")
    started = await services.trigger.queue_task(task_id, org_id)
    return {"task_id": task_id, "organization_id": org_id, "started": started}


@router.post("/{task_id}/approve")
async def approve(task_id: str, body: ApproveRequest, services: Services = Depends(get_app_services)) -> Dict[str, Any]:
    await _load_task(services, task_id)
    if not await approve_task(services, task_id, body.approver_id):
        raise HTTPException(status_code=409, detail="No pending approval for task")
    return {"task_id": task_id, "status": "approved"}


@router.post("/{task_id}/reject")
async def reject(task_id: str, body: RejectRequest, services: Services = Depends(get_app_services)) -> Dict[str, Any]:
    await _load_task(services, task_id)
    if not await reject_task(services, task_id, body.approver_id, body.notes):
        raise HTTPException(status_code=409, detail="No pending approval for task")
    return {"task_id": task_id, "status": "rejected"}


@router.post("/{task_id}/validate")
async def validate(
    task_id: str,
    checkpoint: Checkpoint = Query(Checkpoint.PRE_EXECUTE),
    services: Services = Depends(get_app_services),
) -> Dict[str, Any]:
    """Dry evaluation of the task's policies; nothing is written."""
    task = await _load_task(services, task_id)
    result = await validate_policies(
        task,
        _org_or_422(task),
        checkpoint,
        services.store,
        budget_warning_ratio=services.budget_warning_ratio,
    )
    return result.to_payload()
