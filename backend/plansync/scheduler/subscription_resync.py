"""Repair rows whose scheduled change is overdue

A scheduled change should be cleared by the provider event that carries it
out. When that event is lost, the row is re-read from Stripe and written
through the same field-level writer the reconciler uses.
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from plansync.core.config import settings
from plansync.core.database import SessionLocal
from plansync.core.exceptions import BillingError
from plansync.core.logging import get_logger
from plansync.core.timeutil import utcnow
from plansync.models.subscription import Subscription
from plansync.services import stripe_service
from plansync.services.plan_catalog import PlanCatalog, get_plan_catalog
from plansync.services.plan_change_history import close_pending_plan_changes
from plansync.services.subscription_service import apply_remote_state
from plansync.services.subscription_state import TERMINAL_STATUSES

logger = get_logger(__name__)


def _resync_one(db: Session, sub: Subscription, catalog: PlanCatalog):
    state = stripe_service.retrieve_subscription(sub.stripe_subscription_id)
    apply_remote_state(sub, state, catalog)
    change = sub.scheduled_change
    if change is None:
        return
    if sub.status in TERMINAL_STATUSES:
        done = True
    elif change.reason == "cancellation":
        # still pending unless reactivated outside this service
        done = not state.cancel_at_period_end
    else:
        done = not state.schedule_id
    if done:
        sub.set_scheduled_change(None)
        close_pending_plan_changes(db, sub.id)


def resync_overdue_subscriptions(
    db: Session, catalog: PlanCatalog, now: Optional[datetime] = None
) -> int:
    """Returns the number of rows re-read successfully"""
    now = now or utcnow()
    threshold = now - timedelta(minutes=settings.RESYNC_GRACE_MINUTES)
    overdue = db.query(Subscription).filter(
        Subscription.status.notin_(TERMINAL_STATUSES),
        Subscription.stripe_subscription_id.isnot(None),
        Subscription.scheduled_change_at.isnot(None),
        Subscription.scheduled_change_at < threshold,
    ).all()

    count = 0
    for sub in overdue:
        try:
            _resync_one(db, sub, catalog)
            db.commit()
            count += 1
        except BillingError as e:
            db.rollback()
            logger.error(f"Resync failed: subscription_id={sub.id}, code={e.code}: {e.message}")
        except Exception as e:
            db.rollback()
            logger.error(f"Resync failed: subscription_id={sub.id}: {e}")
    return count


def resync_job():
    """Called by the scheduler"""
    db = SessionLocal()
    try:
        count = resync_overdue_subscriptions(db, get_plan_catalog())
        if count > 0:
            logger.info(f"Overdue subscriptions resynced: {count}")
    except Exception as e:
        logger.error(f"Resync job error: {e}")
    finally:
        db.close()
