from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum as SAEnum, ForeignKey, func
from plansync.core.database import Base
from plansync.core.timeutil import utcnow

SUBSCRIPTION_STATUSES = (
    "incomplete",
    "incomplete_expired",
    "trialing",
    "active",
    "past_due",
    "unpaid",
    "paused",
    "canceled",
)
BILLING_INTERVALS = ("month", "year")
SCHEDULED_CHANGE_REASONS = ("downgrade", "interval_switch", "cancellation")


@dataclass(frozen=True)
class ScheduledChange:
    target_plan_id: str
    target_interval: str
    target_price_id: Optional[str]
    effective_at: Optional[datetime]
    reason: str


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    # user_id while the row is live, NULL once terminal: one live row per user
    live_user_id = Column(Integer, nullable=True, unique=True)

    stripe_subscription_id = Column(String(255), nullable=True, unique=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_schedule_id = Column(String(255), nullable=True, index=True)

    plan_id = Column(String(64), nullable=False)
    billing_interval = Column(SAEnum(*BILLING_INTERVALS, name="billing_interval"), nullable=False, default="month")
    status = Column(
        SAEnum(*SUBSCRIPTION_STATUSES, name="subscription_status"),
        nullable=False,
        default="incomplete",
    )
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)

    scheduled_plan_id = Column(String(64), nullable=True)
    scheduled_interval = Column(SAEnum(*BILLING_INTERVALS, name="scheduled_interval"), nullable=True)
    scheduled_price_id = Column(String(255), nullable=True)
    scheduled_change_at = Column(DateTime, nullable=True)
    scheduled_change_reason = Column(SAEnum(*SCHEDULED_CHANGE_REASONS, name="scheduled_change_reason"), nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def scheduled_change(self) -> Optional[ScheduledChange]:
        if not self.scheduled_plan_id:
            return None
        return ScheduledChange(
            target_plan_id=self.scheduled_plan_id,
            target_interval=self.scheduled_interval,
            target_price_id=self.scheduled_price_id,
            effective_at=self.scheduled_change_at,
            reason=self.scheduled_change_reason,
        )

    def set_scheduled_change(self, change: Optional[ScheduledChange]):
        if change is None:
            self.scheduled_plan_id = None
            self.scheduled_interval = None
            self.scheduled_price_id = None
            self.scheduled_change_at = None
            self.scheduled_change_reason = None
            return
        self.scheduled_plan_id = change.target_plan_id
        self.scheduled_interval = change.target_interval
        self.scheduled_price_id = change.target_price_id
        self.scheduled_change_at = change.effective_at
        self.scheduled_change_reason = change.reason

    @property
    def is_live(self) -> bool:
        return self.status not in ("canceled", "incomplete_expired")
