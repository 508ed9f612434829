from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field


class TaskStatus(str, Enum):
    QUEUED = "queued"
    DRAFTING = "drafting"
    DRAFTED = "drafted"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"
    EVALUATED = "evaluated"
    FAILED = "failed"
    CANCELLED = "cancelled"


NON_TERMINAL_STATUSES = (
    TaskStatus.QUEUED.value,
    TaskStatus.DRAFTING.value,
    TaskStatus.DRAFTED.value,
    TaskStatus.PENDING_APPROVAL.value,
    TaskStatus.APPROVED.value,
    TaskStatus.EXECUTING.value,
)

# statuses whose execution_result counts as spend; a cancelled task only has
# one when it was stopped mid-send
SPEND_STATUSES = (
    TaskStatus.COMPLETED.value,
    TaskStatus.EVALUATED.value,
    TaskStatus.CANCELLED.value,
)


class TaskType(str, Enum):
    EMAIL_SINGLE = "email_single"
    EMAIL_SEQUENCE = "email_sequence"
    BLOG_POST = "blog_post"
    LANDING_PAGE = "landing_page"
    SOCIAL_POST = "social_post"
    AD_CAMPAIGN = "ad_campaign"
    SEO_OPTIMIZATION = "seo_optimization"
    RESEARCH = "research"
    ANALYSIS = "analysis"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    AUTO_APPROVED = "auto_approved"


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    PLANNED = "planned"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Task type -> channel family used when a task has no connector
TASK_TYPE_FAMILY: Dict[str, str] = {
    TaskType.EMAIL_SINGLE.value: "email",
    TaskType.EMAIL_SEQUENCE.value: "email",
    TaskType.BLOG_POST.value: "cms",
    TaskType.LANDING_PAGE.value: "cms",
    TaskType.SOCIAL_POST.value: "social",
    TaskType.AD_CAMPAIGN.value: "ads",
}


class Connector(BaseModel):
    id: str
    type: str = ""
    name: Optional[str] = None
    approval_required: bool = True
    auto_approve_types: List[str] = Field(default_factory=list)
    rate_limit_per_hour: Optional[int] = None
    rate_limit_per_day: Optional[int] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    last_used_at: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def family(self) -> str:
        """email_resend -> email, cms_ghost -> cms, ..."""
        return (self.type or "").split("_", 1)[0]


class Organization(BaseModel):
    id: str
    name: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)

    @property
    def sandbox_mode(self) -> bool:
        return bool((self.settings or {}).get("sandbox_mode", False))


def approval_required(connector: Optional[Dict[str, Any]], task_type: str) -> bool:
    """Approval is needed only when the task's connector demands it and does not auto-approve the type."""
    if not connector:
        return False
    c = Connector.model_validate(connector)
    if not c.approval_required:
        return False
    return task_type not in (c.auto_approve_types or [])


def channel_family(task: Dict[str, Any]) -> str:
    connector = task.get("connector")
    if connector and connector.get("type"):
        return Connector.model_validate(connector).family
    return TASK_TYPE_FAMILY.get(task.get("type") or "", "generic")


# ---- timestamps ---------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def parse_ts(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO timestamp (Postgres/JS style included); naive values are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
