"""Subscription record: read interface, creation and the provider-state writer"""
from typing import Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.exc import IntegrityError

from plansync.models.subscription import Subscription
from plansync.models.user import User
from plansync.core.exceptions import SubscriptionStateError, ValidationError
from plansync.core.logging import get_logger
from plansync.services import stripe_service
from plansync.services.plan_catalog import PlanCatalog
from plansync.services.stripe_service import RemoteSubscriptionState
from plansync.services.subscription_state import apply_provider_status, TERMINAL_STATUSES

logger = get_logger(__name__)


def get_current_subscription(db: Session, user_id: int) -> Optional[Subscription]:
    """The user's live subscription. With transient duplicates the latest write wins."""
    return db.query(Subscription).filter(
        Subscription.user_id == user_id,
        Subscription.status.notin_(TERMINAL_STATUSES),
    ).order_by(Subscription.updated_at.desc(), Subscription.id.desc()).first()


def get_subscription_by_remote_id(
    db: Session, stripe_subscription_id: str, for_update: bool = False
) -> Optional[Subscription]:
    query = db.query(Subscription).filter(
        Subscription.stripe_subscription_id == stripe_subscription_id
    )
    if for_update:
        query = query.with_for_update()
    return query.first()


def get_subscription_by_schedule_id(
    db: Session, stripe_schedule_id: str, for_update: bool = False
) -> Optional[Subscription]:
    query = db.query(Subscription).filter(
        Subscription.stripe_schedule_id == stripe_schedule_id
    )
    if for_update:
        query = query.with_for_update()
    return query.first()


def apply_remote_state(sub: Subscription, state: RemoteSubscriptionState, catalog: PlanCatalog) -> bool:
    """Overwrite status, terms, period bounds and cancel flag with Stripe's values.

    Field-level overwrite, never a merge: whichever provider state is written
    last wins for these fields. ``scheduled_change`` is not touched here.
    Returns False when the row is terminal and the report was ignored.
    """
    if state.status and not apply_provider_status(sub, state.status):
        return False

    if state.price_id:
        terms = catalog.plan_for_price_id(state.price_id)
        if terms:
            sub.plan_id, sub.billing_interval = terms
        else:
            logger.warning(
                f"Unknown Stripe price on subscription: id={sub.id}, price={state.price_id}"
            )

    if state.current_period_start:
        sub.current_period_start = state.current_period_start
    if state.current_period_end:
        sub.current_period_end = state.current_period_end
    sub.cancel_at_period_end = state.cancel_at_period_end
    sub.stripe_schedule_id = state.schedule_id
    # written even when unchanged against the loaded row, a concurrent
    # webhook may have committed a different value since
    flag_modified(sub, "cancel_at_period_end")
    flag_modified(sub, "stripe_schedule_id")
    if state.customer_id:
        sub.stripe_customer_id = state.customer_id
    return True


def create_subscription_record(
    db: Session,
    user_id: int,
    state: RemoteSubscriptionState,
    catalog: PlanCatalog,
    plan_id: str,
    interval: str,
) -> Subscription:
    """Insert the local row for a newly created remote subscription (caller commits)"""
    sub = Subscription(
        user_id=user_id,
        stripe_subscription_id=state.subscription_id,
        plan_id=plan_id,
        billing_interval=interval,
        status="incomplete",
        cancel_at_period_end=False,
    )
    apply_remote_state(sub, state, catalog)
    db.add(sub)
    return sub


def start_subscription(
    db: Session,
    user: User,
    plan_id: str,
    interval: str,
    catalog: PlanCatalog,
) -> Subscription:
    """Create the remote subscription, then the local row from what Stripe returned"""
    if get_current_subscription(db, user.id):
        raise SubscriptionStateError("already_subscribed", "A subscription is already active")

    if catalog.get(plan_id) is None:
        raise ValidationError("unknown_plan", f"Unknown plan: {plan_id}")
    price_id = catalog.resolve_price_id(plan_id, interval)
    if not price_id:
        raise ValidationError("price_not_found", f"Plan {plan_id} is not offered with a {interval} interval")

    if not user.stripe_customer_id:
        customer_id = stripe_service.create_customer(
            email=user.email,
            metadata={"user_id": str(user.id)},
            idempotency_key=f"customer:{user.id}",
        )
        user.stripe_customer_id = customer_id
        db.commit()

    # distinguishes a resubscribe from a retry of the same request
    attempt = db.query(Subscription).filter(Subscription.user_id == user.id).count()
    state = stripe_service.create_subscription(
        customer_id=user.stripe_customer_id,
        price_id=price_id,
        metadata={"user_id": str(user.id), "plan_id": plan_id},
        idempotency_key=f"subscribe:{user.id}:{price_id}:{attempt}",
    )

    existing = get_subscription_by_remote_id(db, state.subscription_id)
    if existing:
        # the subscription.created webhook got here first
        apply_remote_state(existing, state, catalog)
        db.commit()
        return existing

    try:
        sub = create_subscription_record(db, user.id, state, catalog, plan_id, interval)
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_subscription_by_remote_id(db, state.subscription_id)
        if existing:
            return existing
        raise
    db.refresh(sub)
    logger.info(
        f"Subscription started: user_id={user.id}, subscription_id={sub.id}, plan={plan_id}/{interval}, status={sub.status}"
    )
    return sub
