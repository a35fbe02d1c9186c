"""Stripe webhook payload schemas

Only the fields the reconciler reads are declared; anything else Stripe sends
is ignored. A payload missing a declared field, or carrying one of the wrong
shape, fails validation and the event is rejected as malformed.
"""
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

SubscriptionStatus = Literal[
    "incomplete",
    "incomplete_expired",
    "trialing",
    "active",
    "past_due",
    "unpaid",
    "paused",
    "canceled",
]


class _StripeModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class EventData(_StripeModel):
    object: dict[str, Any]


class StripeEventEnvelope(_StripeModel):
    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int
    data: EventData


# ---------------------------------------------------------
# Invoice
# ---------------------------------------------------------

class Period(_StripeModel):
    start: int
    end: int


class LineItemDetails(_StripeModel):
    proration: Optional[bool] = False


class InvoiceLineParent(_StripeModel):
    subscription_item_details: Optional[LineItemDetails] = None


class InvoiceLine(_StripeModel):
    period: Period
    proration: Optional[bool] = False
    # newer API versions report proration under parent
    parent: Optional[InvoiceLineParent] = None

    @property
    def is_proration(self) -> bool:
        if self.proration:
            return True
        details = self.parent.subscription_item_details if self.parent else None
        return bool(details and details.proration)


class InvoiceLines(_StripeModel):
    data: list[InvoiceLine] = []


class InvoiceSubscriptionDetails(_StripeModel):
    subscription: Optional[str] = None


class InvoiceParent(_StripeModel):
    subscription_details: Optional[InvoiceSubscriptionDetails] = None


class InvoiceObject(_StripeModel):
    id: str
    subscription: Optional[str] = None
    # newer API versions move the subscription id under parent
    parent: Optional[InvoiceParent] = None
    lines: InvoiceLines = InvoiceLines()

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.subscription
        return None

    @property
    def period(self) -> Optional[Period]:
        """Billing period the invoice renews.

        Proration lines cover the remainder of the previous period, so they are
        skipped; of the rest the line reaching furthest ahead wins.
        """
        lines = [line for line in self.lines.data if not line.is_proration] or self.lines.data
        if not lines:
            return None
        return max((line.period for line in lines), key=lambda p: p.end)


# ---------------------------------------------------------
# Subscription
# ---------------------------------------------------------

class Price(_StripeModel):
    id: str


class SubscriptionItem(_StripeModel):
    id: str
    price: Price
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class SubscriptionItems(_StripeModel):
    data: list[SubscriptionItem] = Field(min_length=1)


class SubscriptionObject(_StripeModel):
    id: str
    customer: Optional[str] = None
    status: SubscriptionStatus
    items: SubscriptionItems
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    schedule: Optional[str] = None
    metadata: dict[str, str] = {}


# ---------------------------------------------------------
# Subscription schedule
# ---------------------------------------------------------

class PhaseItem(_StripeModel):
    price: Union[str, Price]

    @property
    def price_id(self) -> str:
        return self.price if isinstance(self.price, str) else self.price.id


class SchedulePhaseObject(_StripeModel):
    start_date: int
    end_date: Optional[int] = None
    items: list[PhaseItem] = Field(min_length=1)


class CurrentPhase(_StripeModel):
    start_date: int
    end_date: Optional[int] = None


class ScheduleObject(_StripeModel):
    id: str
    status: str
    subscription: Optional[str] = None
    released_subscription: Optional[str] = None
    current_phase: Optional[CurrentPhase] = None
    phases: list[SchedulePhaseObject] = []
    metadata: dict[str, str] = {}

    @property
    def subscription_id(self) -> Optional[str]:
        return self.subscription or self.released_subscription

    @property
    def final_phase(self) -> Optional[SchedulePhaseObject]:
        return self.phases[-1] if len(self.phases) >= 2 else None

    @property
    def in_final_phase(self) -> bool:
        """True once a multi-phase schedule has moved into its last phase"""
        final = self.final_phase
        return (
            final is not None
            and self.current_phase is not None
            and self.current_phase.start_date >= final.start_date
        )
