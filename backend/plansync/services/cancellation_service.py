"""Cancellation and reactivation

A cancellation at period end is a deferred downgrade to the default plan:
``cancel_at_period_end`` is set and ``scheduled_change`` points at the default
plan with reason ``cancellation``. Until the period ends the user keeps access
and can reactivate.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from plansync.models.subscription import Subscription, ScheduledChange
from plansync.core.exceptions import SubscriptionStateError
from plansync.core.logging import get_logger
from plansync.core.timeutil import utcnow, to_unix
from plansync.services import stripe_service
from plansync.services.plan_catalog import PlanCatalog
from plansync.services.plan_change_history import record_plan_change, close_pending_plan_changes, change_sequence
from plansync.services.subscription_service import apply_remote_state
from plansync.services.subscription_state import apply_provider_status

logger = get_logger(__name__)


def _idempotency_key(db: Session, sub: Subscription, action: str) -> str:
    period = to_unix(sub.current_period_end) if sub.current_period_end else 0
    return f"{action}:{sub.stripe_subscription_id}:{period}:{change_sequence(db, sub.id)}"


def _release_remote_schedule(sub: Subscription):
    """Release whatever schedule Stripe has attached (the local id may be stale)"""
    current = stripe_service.retrieve_subscription(sub.stripe_subscription_id)
    if current.schedule_id:
        stripe_service.release_schedule(current.schedule_id)


def is_cancelling(sub: Subscription) -> bool:
    if sub.scheduled_change_reason == "cancellation":
        return True
    # set outside this service (e.g. Stripe dashboard) with no local schedule
    return bool(sub.cancel_at_period_end) and sub.scheduled_change_reason is None


def cancel_at_period_end(
    db: Session,
    sub: Subscription,
    reason: Optional[str],
    feedback: Optional[str],
    catalog: PlanCatalog,
) -> Subscription:
    """Stop renewal at the end of the paid period"""
    if not sub.is_live or not sub.stripe_subscription_id:
        raise SubscriptionStateError("subscription_not_live", "No active subscription to cancel")
    if is_cancelling(sub):
        raise SubscriptionStateError("already_cancelling", "Subscription is already scheduled for cancellation")

    # a pending downgrade or interval switch is superseded by the cancellation
    _release_remote_schedule(sub)
    state = stripe_service.set_cancel_at_period_end(
        sub.stripe_subscription_id,
        True,
        reason=reason,
        feedback=feedback,
        idempotency_key=_idempotency_key(db, sub, "cancel"),
    )

    apply_remote_state(sub, state, catalog)
    sub.cancel_at_period_end = True
    sub.set_scheduled_change(ScheduledChange(
        target_plan_id=catalog.default_plan_id,
        target_interval=sub.billing_interval,
        target_price_id=None,
        effective_at=sub.current_period_end,
        reason="cancellation",
    ))
    close_pending_plan_changes(db, sub.id)
    record_plan_change(
        db, sub, sub.plan_id, sub.billing_interval, catalog.default_plan_id, sub.billing_interval,
        "cancellation", effective_at=sub.current_period_end,
    )
    db.commit()
    db.refresh(sub)
    logger.info(f"Cancellation scheduled: subscription_id={sub.id}, reason={reason}, at={sub.current_period_end}")
    return sub


def cancel_immediately(
    db: Session,
    sub: Subscription,
    admin_reason: str,
    catalog: PlanCatalog,
) -> Subscription:
    """Admin only: end the subscription now with a prorated credit.

    The Stripe call is synchronous and authoritative here, so the terminal
    status is written directly instead of waiting for the event.
    """
    if not sub.stripe_subscription_id or sub.status == "canceled":
        raise SubscriptionStateError("subscription_not_live", "Subscription is not active")

    state = stripe_service.cancel_subscription(
        sub.stripe_subscription_id,
        prorate=True,
        idempotency_key=f"cancel-now:{sub.stripe_subscription_id}",
    )

    old_plan_id, old_interval = sub.plan_id, sub.billing_interval
    apply_remote_state(sub, state, catalog)
    apply_provider_status(sub, "canceled")
    sub.cancel_at_period_end = False
    sub.stripe_schedule_id = None
    sub.set_scheduled_change(None)
    close_pending_plan_changes(db, sub.id)
    record_plan_change(
        db, sub, old_plan_id, old_interval, catalog.default_plan_id, old_interval,
        "cancel_immediately", applied=True,
    )
    db.commit()
    db.refresh(sub)
    logger.warning(
        f"Subscription canceled immediately: subscription_id={sub.id}, reason={admin_reason}",
        extra={"extra_data": {"subscription_id": sub.id, "admin_reason": admin_reason}},
    )
    return sub


def reactivate(
    db: Session,
    sub: Subscription,
    catalog: PlanCatalog,
    now: Optional[datetime] = None,
) -> Subscription:
    """Undo a pending cancellation (or downgrade) while the paid period lasts"""
    now = now or utcnow()
    if not sub.cancel_at_period_end:
        raise SubscriptionStateError("not_cancelling", "Subscription is not scheduled for cancellation")
    if not sub.is_live or not sub.current_period_end or now >= sub.current_period_end:
        raise SubscriptionStateError("grace_period_expired", "The grace period has ended")

    _release_remote_schedule(sub)
    state = stripe_service.set_cancel_at_period_end(
        sub.stripe_subscription_id,
        False,
        idempotency_key=_idempotency_key(db, sub, "reactivate"),
    )

    apply_remote_state(sub, state, catalog)
    sub.set_scheduled_change(None)
    close_pending_plan_changes(db, sub.id)
    db.commit()
    db.refresh(sub)
    logger.info(f"Subscription reactivated: subscription_id={sub.id}")
    return sub
