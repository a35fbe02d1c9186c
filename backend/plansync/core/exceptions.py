"""Billing error taxonomy

Services raise these; routers translate them into HTTP responses.
"""
from typing import Optional


class BillingError(Exception):
    """Base class. ``code`` is a stable machine readable identifier."""

    status_code = 400

    def __init__(self, code: str, message: Optional[str] = None):
        self.code = code
        self.message = message or code
        super().__init__(self.message)

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(BillingError):
    """Bad plan id, interval or transition. Raised before any remote call."""

    status_code = 400


class NotFoundError(BillingError):
    status_code = 404


class SubscriptionStateError(BillingError):
    """The request conflicts with the subscription's current state."""

    status_code = 409


class RemoteGatewayError(BillingError):
    """Stripe call failed. Local state is left unchanged.

    ``outcome_unknown`` is set when the call timed out or the connection
    dropped, so the mutation may or may not have been applied remotely.
    """

    status_code = 502

    def __init__(
        self,
        code: str,
        message: Optional[str] = None,
        retryable: bool = True,
        outcome_unknown: bool = False,
    ):
        super().__init__(code, message)
        self.retryable = retryable
        self.outcome_unknown = outcome_unknown


class SecurityError(BillingError):
    """Webhook rejected: bad signature, stale or malformed event.

    ``code`` is the rejection reason; nothing from the event has been applied.
    """

    status_code = 400

    def __init__(self, code: str, message: Optional[str] = None, event_id: Optional[str] = None):
        super().__init__(code, message)
        self.event_id = event_id


class ReconciliationConflict(BillingError):
    """An event references a subscription that does not exist locally.

    The reconciler logs and acknowledges it; it never reaches a router.
    """

    status_code = 409
