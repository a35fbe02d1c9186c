# Import every model so Alembic autogenerate sees the full metadata
from plansync.models.user import User
from plansync.models.subscription import Subscription, ScheduledChange
from plansync.models.processed_stripe_event import ProcessedStripeEvent
from plansync.models.subscription_plan_change import SubscriptionPlanChange

__all__ = [
    "User",
    "Subscription",
    "ScheduledChange",
    "ProcessedStripeEvent",
    "SubscriptionPlanChange",
]
