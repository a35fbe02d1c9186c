"""Plan change orchestration

Two-phase protocol: the Stripe call completes and returns the provider's
state, and only then is the local row written. A failed remote call leaves
the local row untouched, so user retries are safe.
"""
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from plansync.models.subscription import Subscription, ScheduledChange
from plansync.core.exceptions import RemoteGatewayError, SubscriptionStateError
from plansync.core.logging import get_logger
from plansync.core.timeutil import to_unix
from plansync.services import stripe_service, cancellation_service
from plansync.services.plan_catalog import PlanCatalog
from plansync.services.plan_change_history import record_plan_change, close_pending_plan_changes, change_sequence
from plansync.services.stripe_service import RemoteSubscriptionState, SchedulePhase
from plansync.services.subscription_service import apply_remote_state
from plansync.services.transition_policy import Strategy, TransitionPlan, select_strategy

logger = get_logger(__name__)


@dataclass(frozen=True)
class PlanChangeOutcome:
    subscription: Subscription
    strategy: Strategy


def _idempotency_key(db: Session, sub: Subscription, step: str, price_id: str) -> str:
    period = to_unix(sub.current_period_end) if sub.current_period_end else 0
    seq = change_sequence(db, sub.id)
    return f"plan-change:{sub.stripe_subscription_id}:{step}:{price_id}:{period}:{seq}"


def _call_with_outcome_check(
    mutate: Callable[[], RemoteSubscriptionState],
    stripe_subscription_id: str,
    confirm: Callable[[RemoteSubscriptionState], bool],
) -> RemoteSubscriptionState:
    """Run a Stripe mutation. When it times out without a clear answer, re-read
    the remote subscription and accept it only if the change is visible there.
    """
    try:
        return mutate()
    except RemoteGatewayError as e:
        if not e.outcome_unknown:
            raise
        logger.warning(f"Stripe outcome unknown, re-reading: subscription={stripe_subscription_id}")
        state = stripe_service.retrieve_subscription(stripe_subscription_id)
        if confirm(state):
            logger.info(f"Stripe change confirmed after re-read: subscription={stripe_subscription_id}")
            return state
        raise RemoteGatewayError(
            "gateway_outcome_unknown",
            "The billing provider did not confirm the change. Please retry.",
            retryable=True,
        ) from e


def _require_live(sub: Subscription):
    if not sub.is_live or not sub.stripe_subscription_id:
        raise SubscriptionStateError("subscription_not_live", "No active subscription to change")
    if cancellation_service.is_cancelling(sub):
        raise SubscriptionStateError("already_cancelling", "Subscription is scheduled for cancellation")


def _apply_immediate_step(db: Session, sub: Subscription, plan: TransitionPlan, catalog: PlanCatalog):
    price_id = plan.immediate_price_id
    current = stripe_service.retrieve_subscription(sub.stripe_subscription_id)

    if current.price_id == price_id:
        # an earlier attempt already went through
        logger.info(f"Price already applied remotely: subscription_id={sub.id}, price={price_id}")
        state = current
    else:
        if current.schedule_id:
            # a pending deferred change is superseded by this upgrade
            stripe_service.release_schedule(current.schedule_id)
        state = _call_with_outcome_check(
            lambda: stripe_service.modify_subscription_price(
                sub.stripe_subscription_id,
                price_id,
                prorate=True,
                idempotency_key=_idempotency_key(db, sub, "price", price_id),
            ),
            sub.stripe_subscription_id,
            confirm=lambda s: s.price_id == price_id,
        )

    apply_remote_state(sub, state, catalog)
    if not state.schedule_id:
        sub.set_scheduled_change(None)
        close_pending_plan_changes(db, sub.id)


def _apply_deferred_step(db: Session, sub: Subscription, plan: TransitionPlan, catalog: PlanCatalog):
    current_price_id = catalog.resolve_price_id(sub.plan_id, sub.billing_interval)
    if not current_price_id or not sub.current_period_end:
        raise SubscriptionStateError("period_unknown", "Current billing terms are unknown; try again shortly")

    period_end = sub.current_period_end
    phases = [
        SchedulePhase(price_id=current_price_id, end_date=period_end),
        SchedulePhase(price_id=plan.deferred_price_id, iterations=1),
    ]
    state = stripe_service.create_schedule_from_subscription(
        sub.stripe_subscription_id,
        phases,
        metadata={
            "plansync_reason": plan.deferred_reason,
            "subscription_id": str(sub.id),
            "target_plan_id": plan.target_plan_id,
            "target_interval": plan.target_interval,
        },
        idempotency_key=_idempotency_key(db, sub, "schedule", plan.deferred_price_id),
    )

    effective_at = state.current_period_end or period_end
    apply_remote_state(sub, state, catalog)
    sub.set_scheduled_change(ScheduledChange(
        target_plan_id=plan.target_plan_id,
        target_interval=plan.target_interval,
        target_price_id=plan.deferred_price_id,
        effective_at=effective_at,
        reason=plan.deferred_reason,
    ))
    # current terms do not renew past a downgrade
    sub.cancel_at_period_end = plan.deferred_reason == "downgrade"
    flag_modified(sub, "cancel_at_period_end")
    return effective_at


def request_plan_change(
    db: Session,
    sub: Subscription,
    target_plan_id: str,
    target_interval: str,
    catalog: PlanCatalog,
) -> PlanChangeOutcome:
    """Execute a user's plan/interval change request"""
    _require_live(sub)
    plan = select_strategy(catalog, sub.plan_id, sub.billing_interval, target_plan_id, target_interval)

    if plan.is_cancellation:
        cancellation_service.cancel_at_period_end(
            db, sub, reason="downgrade_to_default_plan", feedback=None, catalog=catalog
        )
        return PlanChangeOutcome(subscription=sub, strategy=plan.strategy)

    old_plan_id, old_interval = sub.plan_id, sub.billing_interval

    if plan.strategy == Strategy.IMMEDIATE_SAME_INTERVAL:
        _apply_immediate_step(db, sub, plan, catalog)
        record_plan_change(
            db, sub, old_plan_id, old_interval, sub.plan_id, sub.billing_interval,
            plan.strategy.value, applied=True,
        )
        db.commit()

    elif plan.strategy == Strategy.MIXED_UPGRADE:
        _apply_immediate_step(db, sub, plan, catalog)
        record_plan_change(
            db, sub, old_plan_id, old_interval, sub.plan_id, sub.billing_interval,
            plan.strategy.value, applied=True,
        )
        db.commit()
        # the upgrade stands even if scheduling the interval switch fails;
        # a retry resolves to a plain deferred interval switch
        effective_at = _apply_deferred_step(db, sub, plan, catalog)
        record_plan_change(
            db, sub, sub.plan_id, sub.billing_interval, plan.target_plan_id, plan.target_interval,
            plan.strategy.value, effective_at=effective_at,
        )
        db.commit()

    else:
        effective_at = _apply_deferred_step(db, sub, plan, catalog)
        close_pending_plan_changes(db, sub.id)
        record_plan_change(
            db, sub, old_plan_id, old_interval, plan.target_plan_id, plan.target_interval,
            plan.strategy.value, effective_at=effective_at,
        )
        db.commit()

    db.refresh(sub)
    return PlanChangeOutcome(subscription=sub, strategy=plan.strategy)
