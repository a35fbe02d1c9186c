"""Subscription status state machine

Every status write goes through ``apply_provider_status``. Statuses come from
Stripe (events or the state returned by a Stripe call); local code never
decides on its own that money moved.
"""
from plansync.models.subscription import Subscription
from plansync.core.logging import get_logger

logger = get_logger(__name__)

TERMINAL_STATUSES = frozenset({"canceled", "incomplete_expired"})

ALLOWED_TRANSITIONS = {
    "incomplete": frozenset({"active", "incomplete_expired", "canceled"}),
    "trialing": frozenset({"active", "past_due", "unpaid", "paused", "canceled"}),
    # a trial that ended without a payment method; resumes once one is added
    "paused": frozenset({"active", "canceled"}),
    "active": frozenset({"past_due", "unpaid", "canceled"}),
    "past_due": frozenset({"active", "unpaid", "canceled"}),
    "unpaid": frozenset({"active", "canceled"}),
    "incomplete_expired": frozenset(),
    "canceled": frozenset(),
}


def is_allowed(current: str, new: str) -> bool:
    return new == current or new in ALLOWED_TRANSITIONS.get(current, frozenset())


def apply_provider_status(sub: Subscription, status: str) -> bool:
    """Apply a provider-reported status. Returns False when it was ignored.

    Stripe is authoritative, so a transition outside the table is still
    applied (and logged). The one exception is a terminal row: Stripe never
    revives a canceled subscription, so a later non-terminal report for one
    can only be an out-of-order delivery.
    """
    if status not in ALLOWED_TRANSITIONS:
        raise ValueError(f"unknown subscription status: {status}")

    current = sub.status
    if current in TERMINAL_STATUSES and status != current:
        logger.warning(
            f"Ignored status report for terminal subscription: id={sub.id}, {current} -> {status}"
        )
        return False

    if current is not None and not is_allowed(current, status):
        logger.warning(f"Unexpected status transition: id={sub.id}, {current} -> {status}")

    sub.status = status
    sub.live_user_id = None if status in TERMINAL_STATUSES else sub.user_id
    return True
