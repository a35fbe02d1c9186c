from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, func
from plansync.core.database import Base


class SubscriptionPlanChange(Base):
    __tablename__ = "subscription_plan_changes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    old_plan_id = Column(String(64), nullable=True)
    old_interval = Column(String(8), nullable=True)
    new_plan_id = Column(String(64), nullable=True)
    new_interval = Column(String(8), nullable=True)
    strategy = Column(String(40), nullable=False, comment="transition strategy or cancellation")
    effective_at = Column(DateTime, nullable=True, comment="NULL when applied immediately")
    applied = Column(Boolean, nullable=False, default=False)
    stripe_event_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
