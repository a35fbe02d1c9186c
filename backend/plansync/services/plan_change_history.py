"""Plan change history: the persisted "plan change requested" fact"""
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from plansync.models.subscription import Subscription
from plansync.models.subscription_plan_change import SubscriptionPlanChange
from plansync.core.logging import get_logger

logger = get_logger(__name__)


def record_plan_change(
    db: Session,
    sub: Subscription,
    old_plan_id: str,
    old_interval: str,
    new_plan_id: str,
    new_interval: str,
    strategy: str,
    effective_at: Optional[datetime] = None,
    applied: bool = False,
) -> SubscriptionPlanChange:
    """Append a history row (caller commits) and log the fact for analytics consumers"""
    change = SubscriptionPlanChange(
        subscription_id=sub.id,
        old_plan_id=old_plan_id,
        old_interval=old_interval,
        new_plan_id=new_plan_id,
        new_interval=new_interval,
        strategy=strategy,
        effective_at=effective_at,
        applied=applied,
    )
    db.add(change)
    logger.info(
        f"Plan change requested: subscription_id={sub.id}, "
        f"{old_plan_id}/{old_interval} -> {new_plan_id}/{new_interval} [{strategy}]",
        extra={"extra_data": {
            "event": "plan_change_requested",
            "subscription_id": sub.id,
            "user_id": sub.user_id,
            "old_plan_id": old_plan_id,
            "old_interval": old_interval,
            "new_plan_id": new_plan_id,
            "new_interval": new_interval,
            "strategy": strategy,
            "effective_at": effective_at.isoformat() if effective_at else None,
            "applied": applied,
        }},
    )
    return change


def close_pending_plan_changes(db: Session, subscription_id: int, stripe_event_id: Optional[str] = None) -> int:
    """Mark unapplied history rows as settled (taken effect, superseded or released)"""
    pending = db.query(SubscriptionPlanChange).filter(
        SubscriptionPlanChange.subscription_id == subscription_id,
        SubscriptionPlanChange.applied == False,
    ).all()
    for p in pending:
        p.applied = True
        if stripe_event_id:
            p.stripe_event_id = stripe_event_id
    if pending:
        db.flush()
    return len(pending)


def change_sequence(db: Session, subscription_id: int) -> int:
    """Number of history rows so far; part of Stripe idempotency keys so a
    repeated request after an undo is not answered from Stripe's key cache.
    """
    return db.query(SubscriptionPlanChange).filter(
        SubscriptionPlanChange.subscription_id == subscription_id,
    ).count()
