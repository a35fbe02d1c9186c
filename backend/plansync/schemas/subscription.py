from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

Interval = Literal["month", "year"]


class PlanInfo(BaseModel):
    plan_id: str
    name: str
    intervals: list[str]
    included_units: int
    concurrency_limit: int
    allows_overage: bool
    is_default: bool
    upgrade_targets: list[str]
    downgrade_targets: list[str]


class StartSubscriptionRequest(BaseModel):
    plan_id: str = Field(min_length=1, max_length=64)
    interval: Interval = "month"


class PlanChangeRequest(BaseModel):
    plan_id: str = Field(min_length=1, max_length=64)
    interval: Interval


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=64)
    feedback: Optional[str] = Field(default=None, max_length=1000)


class AdminCancelRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=255)


class ScheduledChangeInfo(BaseModel):
    target_plan_id: str
    target_interval: str
    effective_at: Optional[datetime] = None
    reason: str

    model_config = {"from_attributes": True}


class SubscriptionInfo(BaseModel):
    id: int
    user_id: int
    plan_id: str
    billing_interval: str
    status: str
    cancel_at_period_end: bool
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    scheduled_change: Optional[ScheduledChangeInfo] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class PlanChangeResponse(BaseModel):
    strategy: str
    subscription: SubscriptionInfo
