# marketops/policy/models.py
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class PolicyKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    BANNED_PHRASE = "banned_phrase"
    REQUIRED_PHRASE = "required_phrase"
    CLAIM_LOCK = "claim_lock"
    DOMAIN_ALLOWLIST = "domain_allowlist"
    SUPPRESSION = "suppression"
    TIME_WINDOW = "time_window"
    BUDGET_LIMIT = "budget_limit"
    CONTENT_RULE = "content_rule"


class Severity(str, Enum):
    WARN = "warn"
    BLOCK = "block"
    ESCALATE = "escalate"


class Checkpoint(str, Enum):
    PRE_DRAFT = "pre-draft"
    CONTENT = "content"
    PRE_EXECUTE = "pre-execute"


# -----------------------------------------------------------------------------
# Rule payloads (stored camelCase, e.g. {"maxSpendCents": 10000})
# -----------------------------------------------------------------------------

class _Rule(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class RateLimitRule(_Rule):
    limit: int = Field(ge=0)
    window: Literal["hour", "day", "week", "month"]
    scope: Literal["connector", "campaign", "product", "organization"] = "organization"
    task_types: Optional[List[str]] = None


class BannedPhraseRule(_Rule):
    phrases: List[str]
    case_sensitive: bool = False
    whole_word: bool = False
    regex: bool = False


class RequiredPhraseRule(_Rule):
    phrases: List[str]
    at_least_one: bool = False
    case_sensitive: bool = False
    location: Literal["anywhere", "header", "footer"] = "anywhere"


class ClaimLockRule(_Rule):
    require_verified: bool
    allowed_claims: Optional[List[str]] = None
    blocked_claims: Optional[List[str]] = None


class DomainAllowlistRule(_Rule):
    allowed_domains: List[str]
    block_all: bool = False


class SuppressionRule(_Rule):
    suppression_list_id: Optional[str] = None
    check_global_list: bool = True
    check_product_list: bool = True


class AllowedHours(_Rule):
    start: int = Field(ge=0, le=24)
    end: int = Field(ge=0, le=24)


class TimeWindowRule(_Rule):
    allowed_days: List[int]
    allowed_hours: AllowedHours
    timezone: str = "UTC"

    @model_validator(mode="after")
    def _days_in_range(self) -> "TimeWindowRule":
        bad = [d for d in self.allowed_days if d < 0 or d > 6]
        if bad:
            raise ValueError(f"allowedDays must be 0-6 (Sunday-Saturday), got {bad}")
        return self


class BudgetLimitRule(_Rule):
    max_spend_cents: int = Field(ge=0)
    window: Literal["day", "week", "month", "campaign", "lifetime"]
    scope: Literal["campaign", "product", "organization"]


class ContentRule(_Rule):
    max_length: Optional[int] = None
    min_length: Optional[int] = None
    required_elements: Optional[List[str]] = None
    forbidden_elements: Optional[List[str]] = None


RuleModel = Union[
    RateLimitRule,
    BannedPhraseRule,
    RequiredPhraseRule,
    ClaimLockRule,
    DomainAllowlistRule,
    SuppressionRule,
    TimeWindowRule,
    BudgetLimitRule,
    ContentRule,
]

RULE_MODELS: Dict[PolicyKind, type] = {
    PolicyKind.RATE_LIMIT: RateLimitRule,
    PolicyKind.BANNED_PHRASE: BannedPhraseRule,
    PolicyKind.REQUIRED_PHRASE: RequiredPhraseRule,
    PolicyKind.CLAIM_LOCK: ClaimLockRule,
    PolicyKind.DOMAIN_ALLOWLIST: DomainAllowlistRule,
    PolicyKind.SUPPRESSION: SuppressionRule,
    PolicyKind.TIME_WINDOW: TimeWindowRule,
    PolicyKind.BUDGET_LIMIT: BudgetLimitRule,
    PolicyKind.CONTENT_RULE: ContentRule,
}


class Policy(BaseModel):
    """A stored compliance rule. `rule` stays raw until a checker parses it."""

    id: str
    name: str
    organization_id: str
    product_id: Optional[str] = None
    type: PolicyKind
    severity: Severity
    active: bool = True
    rule: Dict[str, Any] = Field(default_factory=dict)

    def parsed_rule(self) -> RuleModel:
        """Validate the payload against its kind; raises pydantic.ValidationError."""
        return RULE_MODELS[self.type].model_validate(self.rule)


# -----------------------------------------------------------------------------
# Validation inputs / outputs
# -----------------------------------------------------------------------------

class TaskSnapshot(BaseModel):
    """The task fields checkers look at."""

    model_config = ConfigDict(extra="ignore")

    id: str
    campaign_id: Optional[str] = None
    type: str
    title: str = ""
    description: Optional[str] = None
    scheduled_for: Optional[str] = None
    connector_id: Optional[str] = None
    input_data: Dict[str, Any] = Field(default_factory=dict)
    draft_content: Optional[Dict[str, Any]] = None
    final_content: Optional[Dict[str, Any]] = None


class ValidationContext(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    organization_id: str
    product_id: Optional[str] = None
    checkpoint: Checkpoint
    store: Any
    timestamp: datetime
    budget_warning_ratio: float = 0.8


class _Finding(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    policy_id: str
    policy_name: str
    policy_type: PolicyKind
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str


class Violation(_Finding):
    severity: Severity


class PolicyWarning(_Finding):
    pass


class CheckOutcome(BaseModel):
    passed: bool
    violation: Optional[Violation] = None
    warning: Optional[PolicyWarning] = None


class CheckFault(BaseModel):
    """A checker that raised instead of answering."""

    policy_id: str
    policy_type: PolicyKind
    error: str


class ValidationResult(BaseModel):
    allowed: bool
    violations: List[Violation] = Field(default_factory=list)
    warnings: List[PolicyWarning] = Field(default_factory=list)
    feedback: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        """camelCase JSON-ready form, as written to error logs and returned by the API."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
