"""Pydantic models returned by the ledger services."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

AllocationType = Literal["add", "subtract", "set"]


class TokenBalance(BaseModel):
    allocated: int = 0
    used: int = 0
    remaining: int = 0
    scope: str | None = None

    @classmethod
    def from_totals(cls, allocated: int, used: int, scope: str | None = None) -> "TokenBalance":
        return cls(
            allocated=allocated,
            used=used,
            remaining=max(0, allocated - used),
            scope=scope,
        )


class AllocationRequest(BaseModel):
    user_id: int
    token_amount: int = Field(ge=1)
    allocation_type: AllocationType = "add"
    reason: str = Field(min_length=1)
    expires_at: datetime | None = None
    notify_user: bool = True

    @field_validator("reason")
    @classmethod
    def _strip_reason(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Reason is required")
        return value


class AllocationModel(BaseModel):
    id: int
    user_id: int
    token_amount: int
    allocated_by: str
    reason: str | None = None
    expires_at: datetime | None = None
    is_active: bool
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class AllocationResult(BaseModel):
    allocation: AllocationModel
    previous_tokens: int
    current_tokens: int
    message: str


class AffectedUser(BaseModel):
    user_id: int
    name: str
    email: str | None = None
    tokens_removed: int


class ReconciliationReport(BaseModel):
    free_user_count: int = 0
    deactivated: int = 0
    affected_users: list[AffectedUser] = Field(default_factory=list)
    message: str = ""


class UsageEntry(BaseModel):
    id: int
    tokens_used: int
    cost: float
    request_type: str
    model_id: str | None = None
    timestamp: datetime | None = None
    metadata: dict | None = None


class UserTokenDetail(BaseModel):
    user_id: int
    user_name: str
    email: str
    balance: TokenBalance
    total_cost: float
    subscription_plan: str
    last_refresh: datetime | None = None
    last_activity: datetime | None = None
    expires_at: datetime | None = None
    allocations: list[AllocationModel] = Field(default_factory=list)
    recent_usage: list[UsageEntry] = Field(default_factory=list)
    usage_by_type: dict[str, int] = Field(default_factory=dict)
    usage_by_model: dict[str, int] = Field(default_factory=dict)


class UserTokenRow(BaseModel):
    user_id: int
    user_name: str
    email: str
    current_tokens: int
    allocated: int
    tokens_used: int
    subscription_plan: str


class UserTokenPage(BaseModel):
    users: list[UserTokenRow] = Field(default_factory=list)
    page: int
    limit: int
    total_count: int


class DailyUsage(BaseModel):
    date: str
    tokens: int
    cost: float


class TokenUsageMetrics(BaseModel):
    total_tokens_allocated: int
    total_tokens_used: int
    total_cost: float
    utilization_rate: float
    cost_per_token: float
    users_with_tokens: int
    top_users: list[UserTokenRow] = Field(default_factory=list)
    usage_by_model: dict[str, int] = Field(default_factory=dict)
    usage_by_day: list[DailyUsage] = Field(default_factory=list)


class DuplicateSubscriptions(BaseModel):
    user_id: int
    subscription_ids: list[int]
    plan_names: list[str]


__all__ = [
    "AffectedUser",
    "AllocationModel",
    "AllocationRequest",
    "AllocationResult",
    "AllocationType",
    "DailyUsage",
    "DuplicateSubscriptions",
    "ReconciliationReport",
    "TokenBalance",
    "TokenUsageMetrics",
    "UsageEntry",
    "UserTokenDetail",
    "UserTokenPage",
    "UserTokenRow",
]
