"""Stripe API operations

Every mutating call returns the provider's resulting subscription state,
which callers must write verbatim. Stripe SDK exceptions do not leave this
module: they are wrapped into RemoteGatewayError.
"""
import functools
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import stripe

from plansync.core.config import settings
from plansync.core.exceptions import RemoteGatewayError
from plansync.core.logging import get_logger
from plansync.core.timeutil import from_unix, to_unix

logger = get_logger(__name__)


@dataclass(frozen=True)
class RemoteSubscriptionState:
    subscription_id: str
    customer_id: Optional[str]
    status: str
    price_id: Optional[str]
    item_id: Optional[str]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    schedule_id: Optional[str]


@dataclass(frozen=True)
class SchedulePhase:
    price_id: str
    end_date: Optional[datetime] = None
    iterations: Optional[int] = None


def _init_stripe():
    stripe.api_key = settings.STRIPE_SECRET_KEY
    # Mutations are never retried blindly; callers re-read state instead
    stripe.max_network_retries = 0
    stripe.default_http_client = stripe.new_default_http_client(
        timeout=settings.STRIPE_TIMEOUT_SECONDS
    )


def _request_options(idempotency_key: Optional[str]) -> dict:
    return {"idempotency_key": idempotency_key} if idempotency_key else {}


def _wrap_stripe_errors(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except stripe.APIConnectionError as e:
            logger.error(f"Stripe unreachable in {func.__name__}: {e}")
            raise RemoteGatewayError(
                "gateway_unreachable",
                "Billing provider did not respond",
                retryable=True,
                outcome_unknown=True,
            ) from e
        except stripe.RateLimitError as e:
            logger.error(f"Stripe rate limited {func.__name__}: {e}")
            raise RemoteGatewayError("gateway_rate_limited", "Billing provider is busy", retryable=True) from e
        except stripe.InvalidRequestError as e:
            logger.error(f"Stripe rejected {func.__name__}: {e.user_message or e}")
            raise RemoteGatewayError(
                "gateway_rejected",
                e.user_message or "Billing provider rejected the request",
                retryable=False,
            ) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe error in {func.__name__}: {e}")
            raise RemoteGatewayError("gateway_error", "Billing provider error", retryable=True) from e

    return wrapper


def _first_item(sub) -> Optional[dict]:
    items = (sub.get("items") or {}).get("data") or []
    return items[0] if items else None


def state_from_subscription(sub) -> RemoteSubscriptionState:
    """Map a Stripe Subscription object (or its webhook dict) to our state.

    Newer API versions report period bounds on the subscription item
    instead of the subscription, so both places are read.
    """
    item = _first_item(sub) or {}
    price = item.get("price") or {}
    period_start = sub.get("current_period_start") or item.get("current_period_start")
    period_end = sub.get("current_period_end") or item.get("current_period_end")
    schedule = sub.get("schedule")
    if isinstance(schedule, dict):
        schedule = schedule.get("id")
    customer = sub.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    return RemoteSubscriptionState(
        subscription_id=sub["id"],
        customer_id=customer,
        status=sub.get("status"),
        price_id=price.get("id") if isinstance(price, dict) else price,
        item_id=item.get("id"),
        current_period_start=from_unix(period_start),
        current_period_end=from_unix(period_end),
        cancel_at_period_end=bool(sub.get("cancel_at_period_end", False)),
        schedule_id=schedule,
    )


@_wrap_stripe_errors
def create_customer(email: str, metadata: dict = None, idempotency_key: Optional[str] = None) -> str:
    """Create a Stripe Customer"""
    _init_stripe()
    customer = stripe.Customer.create(
        email=email,
        metadata=metadata or {},
        **_request_options(idempotency_key),
    )
    return customer.id


@_wrap_stripe_errors
def create_subscription(
    customer_id: str,
    price_id: str,
    metadata: dict = None,
    idempotency_key: Optional[str] = None,
) -> RemoteSubscriptionState:
    """Create a subscription; payment is confirmed client side, so it starts incomplete"""
    _init_stripe()
    sub = stripe.Subscription.create(
        customer=customer_id,
        items=[{"price": price_id, "quantity": 1}],
        payment_behavior="default_incomplete",
        metadata=metadata or {},
        **_request_options(idempotency_key),
    )
    logger.info(f"Stripe subscription created: customer={customer_id}, subscription={sub.id}")
    return state_from_subscription(sub)


@_wrap_stripe_errors
def retrieve_subscription(subscription_id: str) -> RemoteSubscriptionState:
    """Read the current remote subscription"""
    _init_stripe()
    return state_from_subscription(stripe.Subscription.retrieve(subscription_id))


@_wrap_stripe_errors
def modify_subscription_price(
    subscription_id: str,
    price_id: str,
    prorate: bool = True,
    idempotency_key: Optional[str] = None,
) -> RemoteSubscriptionState:
    """Swap the subscription item's price now"""
    _init_stripe()
    current = stripe.Subscription.retrieve(subscription_id)
    item = _first_item(current)
    if item is None:
        raise RemoteGatewayError("gateway_rejected", "Remote subscription has no items", retryable=False)

    sub = stripe.Subscription.modify(
        subscription_id,
        items=[{"id": item["id"], "price": price_id}],
        proration_behavior="create_prorations" if prorate else "none",
        **_request_options(idempotency_key),
    )
    logger.info(f"Stripe price changed: subscription={subscription_id}, price={price_id}, prorate={prorate}")
    return state_from_subscription(sub)


@_wrap_stripe_errors
def create_schedule_from_subscription(
    subscription_id: str,
    phases: list[SchedulePhase],
    metadata: dict = None,
    idempotency_key: Optional[str] = None,
) -> RemoteSubscriptionState:
    """Attach (or rewrite) a phased schedule on an existing subscription.

    The first phase must start where the subscription's current phase
    started, so its start date is taken from the schedule Stripe creates.
    """
    _init_stripe()
    current = stripe.Subscription.retrieve(subscription_id)
    schedule_id = current.get("schedule")
    if isinstance(schedule_id, dict):
        schedule_id = schedule_id.get("id")

    if schedule_id:
        schedule = stripe.SubscriptionSchedule.retrieve(schedule_id)
    else:
        # subscription_schedule.created carries only the create-time metadata
        schedule = stripe.SubscriptionSchedule.create(
            from_subscription=subscription_id,
            metadata=metadata or {},
            **_request_options(f"{idempotency_key}:create" if idempotency_key else None),
        )

    start_date = schedule["phases"][0]["start_date"] if schedule.get("phases") else "now"
    phase_params = []
    for i, phase in enumerate(phases):
        params = {"items": [{"price": phase.price_id, "quantity": 1}]}
        if i == 0:
            params["start_date"] = start_date
        if phase.end_date is not None:
            params["end_date"] = to_unix(phase.end_date)
        if phase.iterations is not None:
            params["iterations"] = phase.iterations
        if i > 0:
            params["proration_behavior"] = "none"
        phase_params.append(params)

    stripe.SubscriptionSchedule.modify(
        schedule["id"],
        end_behavior="release",
        phases=phase_params,
        metadata=metadata or {},
        **_request_options(f"{idempotency_key}:phases" if idempotency_key else None),
    )
    logger.info(
        f"Stripe schedule set: subscription={subscription_id}, schedule={schedule['id']}, phases={len(phases)}"
    )
    return state_from_subscription(stripe.Subscription.retrieve(subscription_id))


@_wrap_stripe_errors
def release_schedule(schedule_id: str):
    """Detach a schedule; the subscription keeps its current terms"""
    _init_stripe()
    stripe.SubscriptionSchedule.release(schedule_id)
    logger.info(f"Stripe schedule released: schedule={schedule_id}")


@_wrap_stripe_errors
def set_cancel_at_period_end(
    subscription_id: str,
    cancel: bool,
    reason: Optional[str] = None,
    feedback: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> RemoteSubscriptionState:
    """Set or clear cancel_at_period_end"""
    _init_stripe()
    params = {"cancel_at_period_end": cancel, **_request_options(idempotency_key)}
    if cancel:
        params["metadata"] = {"cancel_reason": reason or ""}
        if feedback:
            params["cancellation_details"] = {"comment": feedback[:500]}
    sub = stripe.Subscription.modify(subscription_id, **params)
    logger.info(f"Stripe cancel_at_period_end={cancel}: subscription={subscription_id}")
    return state_from_subscription(sub)


@_wrap_stripe_errors
def cancel_subscription(
    subscription_id: str,
    prorate: bool = True,
    idempotency_key: Optional[str] = None,
) -> RemoteSubscriptionState:
    """Cancel immediately, crediting the unused part of the period"""
    _init_stripe()
    sub = stripe.Subscription.cancel(
        subscription_id,
        prorate=prorate,
        invoice_now=prorate,
        **_request_options(idempotency_key),
    )
    logger.info(f"Stripe subscription canceled: subscription={subscription_id}, prorate={prorate}")
    return state_from_subscription(sub)


def verify_webhook_signature(payload: str, sig_header: str, secret: str) -> bool:
    """Check the Stripe-Signature header. Timestamp tolerance is checked by the caller."""
    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance=None)
    except stripe.SignatureVerificationError:
        return False
    return True
