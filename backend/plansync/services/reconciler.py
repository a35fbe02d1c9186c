"""Stripe event reconciler

Pipeline, strictly in order: signature, freshness, structure, duplicate
check, effect. The processed-event record and the effect commit in one
transaction, so a failed write leaves the event unprocessed and Stripe's
redelivery repairs the state. Applying the same event twice is a no-op.
"""
import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from plansync.core.config import settings
from plansync.core.exceptions import ReconciliationConflict, SecurityError
from plansync.core.logging import get_logger
from plansync.core.timeutil import from_unix, to_unix, utcnow
from plansync.models.processed_stripe_event import ProcessedStripeEvent
from plansync.models.subscription import Subscription
from plansync.models.user import User
from plansync.schemas.stripe_events import (
    StripeEventEnvelope, InvoiceObject, SubscriptionObject, ScheduleObject,
)
from plansync.services import stripe_service
from plansync.services.plan_catalog import PlanCatalog
from plansync.services.plan_change_history import close_pending_plan_changes
from plansync.services.subscription_service import (
    apply_remote_state, create_subscription_record, get_current_subscription, get_subscription_by_remote_id,
    get_subscription_by_schedule_id,
)
from plansync.services.subscription_state import apply_provider_status

logger = get_logger(__name__)


class RejectReason(str, Enum):
    INVALID_SIGNATURE = "invalid_signature"
    STALE_EVENT = "stale_event"
    MALFORMED_EVENT = "malformed_event"


@dataclass(frozen=True)
class IngestResult:
    ok: bool
    duplicate: bool = False
    reject_reason: Optional[RejectReason] = None
    event_id: Optional[str] = None
    event_type: Optional[str] = None

    @classmethod
    def accepted(cls, event_id: str, event_type: str, duplicate: bool = False) -> "IngestResult":
        return cls(ok=True, duplicate=duplicate, event_id=event_id, event_type=event_type)

    @classmethod
    def rejected(cls, reason: RejectReason, event_id: Optional[str] = None) -> "IngestResult":
        return cls(ok=False, reject_reason=reason, event_id=event_id)


@dataclass(frozen=True)
class _Handler:
    schema: type[BaseModel]
    apply: Callable


# =========================================================
# Pipeline
# =========================================================

def ingest(
    db: Session,
    raw_payload: bytes,
    signature_header: str,
    catalog: PlanCatalog,
    secret: Optional[str] = None,
    tolerance_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> IngestResult:
    """Verify, validate, deduplicate and apply one Stripe event"""
    secret = secret if secret is not None else settings.STRIPE_WEBHOOK_SECRET
    tolerance = tolerance_seconds if tolerance_seconds is not None else settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
    now = now or utcnow()

    try:
        payload_text = _authenticate(raw_payload, signature_header, secret)
        data = _check_freshness(payload_text, now, tolerance)
        envelope, handler, obj = _validate_structure(data)
    except SecurityError as e:
        logger.warning(f"Stripe webhook rejected ({e.code}): {e.message}, event={e.event_id}")
        return IngestResult.rejected(RejectReason(e.code), e.event_id)

    # 4. Idempotency
    if _is_event_processed(db, envelope.id):
        logger.info(f"Stripe webhook duplicate skipped: {envelope.id} ({envelope.type})")
        return IngestResult.accepted(envelope.id, envelope.type, duplicate=True)

    if handler is None:
        logger.info(f"Unhandled Stripe event type: {envelope.type}")
        return IngestResult.accepted(envelope.id, envelope.type)

    # 5-6. Effect and processed record, one transaction
    try:
        ProcessedStripeEvent.record(db, envelope.id, envelope.type, envelope.created)
    except IntegrityError:
        # a concurrent delivery of the same event holds the record
        db.rollback()
        logger.info(f"Stripe webhook duplicate (concurrent) skipped: {envelope.id} ({envelope.type})")
        return IngestResult.accepted(envelope.id, envelope.type, duplicate=True)

    try:
        handler.apply(db, obj, envelope, catalog)
        db.commit()
    except ReconciliationConflict as e:
        # not fatal: the row may not exist yet, a later event or the user flow creates it
        logger.warning(f"Stripe event not applied: {envelope.id} ({envelope.type}): {e.code} {e.message}")
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(f"Stripe webhook processing failed: {envelope.id} ({envelope.type})")
        raise

    logger.info(f"Stripe webhook applied: {envelope.id} ({envelope.type})")
    return IngestResult.accepted(envelope.id, envelope.type)


# =========================================================
# Rejection checks (steps 1-3)
# =========================================================

def _authenticate(raw_payload: bytes, signature_header: str, secret: str) -> str:
    """1. Authenticity, before anything looks inside the payload"""
    if not secret:
        logger.error("Stripe webhook secret is not configured; rejecting event")
        raise SecurityError(RejectReason.INVALID_SIGNATURE.value, "webhook secret is not configured")
    try:
        payload_text = raw_payload.decode("utf-8")
    except UnicodeDecodeError:
        raise SecurityError(RejectReason.INVALID_SIGNATURE.value, "payload is not UTF-8")
    if not stripe_service.verify_webhook_signature(payload_text, signature_header or "", secret):
        raise SecurityError(RejectReason.INVALID_SIGNATURE.value, "invalid signature")
    return payload_text


def _check_freshness(payload_text: str, now: datetime, tolerance: int) -> dict:
    """2. The event's own created timestamp must be within tolerance, either way"""
    try:
        data = json.loads(payload_text)
    except ValueError:
        raise SecurityError(RejectReason.MALFORMED_EVENT.value, "body is not JSON")
    if not isinstance(data, dict):
        raise SecurityError(RejectReason.MALFORMED_EVENT.value, "body is not an object")
    event_id = data.get("id") if isinstance(data.get("id"), str) else None
    created = data.get("created")
    if not isinstance(created, int) or isinstance(created, bool):
        raise SecurityError(RejectReason.MALFORMED_EVENT.value, "missing created timestamp", event_id)
    age = to_unix(now) - created
    if abs(age) > tolerance:
        raise SecurityError(RejectReason.STALE_EVENT.value, f"event age {age}s", event_id)
    return data


def _validate_structure(data: dict) -> tuple[StripeEventEnvelope, Optional[_Handler], Optional[BaseModel]]:
    """3. Envelope, then the object schema of a handled type"""
    event_id = data.get("id") if isinstance(data.get("id"), str) else None
    try:
        envelope = StripeEventEnvelope.model_validate(data)
    except PydanticValidationError as e:
        raise SecurityError(
            RejectReason.MALFORMED_EVENT.value, f"malformed envelope: {e.error_count()} errors", event_id,
        ) from e

    handler = HANDLERS.get(envelope.type)
    if handler is None:
        return envelope, None, None
    try:
        return envelope, handler, handler.schema.model_validate(envelope.data.object)
    except PydanticValidationError as e:
        raise SecurityError(
            RejectReason.MALFORMED_EVENT.value, f"malformed {envelope.type}: {e.error_count()} errors", envelope.id,
        ) from e


# =========================================================
# Idempotency helpers
# =========================================================

def _is_event_processed(db: Session, event_id: str) -> bool:
    return ProcessedStripeEvent.exists(db, event_id)


def _lock_subscription(db: Session, stripe_subscription_id: Optional[str]) -> Subscription:
    if not stripe_subscription_id:
        raise ReconciliationConflict("missing_subscription", "Event carries no subscription id")
    sub = get_subscription_by_remote_id(db, stripe_subscription_id, for_update=True)
    if sub is None:
        raise ReconciliationConflict("unknown_subscription", f"stripe_subscription_id={stripe_subscription_id}")
    return sub


# =========================================================
# Effects
# =========================================================

def _handle_payment_succeeded(db: Session, invoice: InvoiceObject, event: StripeEventEnvelope, catalog: PlanCatalog):
    """invoice.paid: money moved, the subscription is active for the invoiced period"""
    if not invoice.subscription_id:
        logger.info(f"Invoice without subscription ignored: {invoice.id}")
        return
    sub = _lock_subscription(db, invoice.subscription_id)
    apply_provider_status(sub, "active")
    period = invoice.period
    if period:
        sub.current_period_start = from_unix(period.start)
        sub.current_period_end = from_unix(period.end)


def _handle_payment_failed(db: Session, invoice: InvoiceObject, event: StripeEventEnvelope, catalog: PlanCatalog):
    """invoice.payment_failed: past_due until a retry succeeds"""
    if not invoice.subscription_id:
        logger.info(f"Invoice without subscription ignored: {invoice.id}")
        return
    sub = _lock_subscription(db, invoice.subscription_id)
    apply_provider_status(sub, "past_due")
    logger.warning(f"Payment failed: subscription_id={sub.id}, invoice={invoice.id}")


def _handle_subscription_updated(db: Session, obj: SubscriptionObject, event: StripeEventEnvelope, catalog: PlanCatalog):
    """customer.subscription.updated: copy status, terms, period and cancel flag verbatim"""
    sub = _lock_subscription(db, obj.id)
    apply_remote_state(sub, stripe_service.state_from_subscription(obj.model_dump()), catalog)


def _handle_subscription_created(db: Session, obj: SubscriptionObject, event: StripeEventEnvelope, catalog: PlanCatalog):
    """customer.subscription.created: establish the local row if the user flow has not"""
    state = stripe_service.state_from_subscription(obj.model_dump())
    existing = get_subscription_by_remote_id(db, obj.id, for_update=True)
    if existing:
        apply_remote_state(existing, state, catalog)
        return

    user = None
    user_id = obj.metadata.get("user_id")
    if user_id and user_id.isdigit():
        user = db.query(User).filter(User.id == int(user_id)).first()
    if user is None and obj.customer:
        user = db.query(User).filter(User.stripe_customer_id == obj.customer).first()
    if user is None:
        raise ReconciliationConflict("unknown_customer", f"customer={obj.customer}")

    terms = catalog.plan_for_price_id(state.price_id) if state.price_id else None
    if terms is None:
        raise ReconciliationConflict("unknown_price", f"price={state.price_id}")

    if get_current_subscription(db, user.id):
        raise ReconciliationConflict("user_already_subscribed", f"user_id={user.id}")

    plan_id, interval = terms
    sub = create_subscription_record(db, user.id, state, catalog, plan_id, interval)
    db.flush()
    logger.info(f"Subscription created from event: user_id={user.id}, subscription_id={sub.id}, status={sub.status}")


def _handle_subscription_deleted(db: Session, obj: SubscriptionObject, event: StripeEventEnvelope, catalog: PlanCatalog):
    """customer.subscription.deleted: terminal"""
    sub = _lock_subscription(db, obj.id)
    apply_remote_state(sub, stripe_service.state_from_subscription(obj.model_dump()), catalog)
    apply_provider_status(sub, "canceled")
    sub.cancel_at_period_end = False
    sub.stripe_schedule_id = None
    sub.set_scheduled_change(None)
    close_pending_plan_changes(db, sub.id, stripe_event_id=event.id)
    logger.info(f"Subscription ended: subscription_id={sub.id}")


def _lock_schedule_subscription(db: Session, schedule: ScheduleObject) -> Subscription:
    if schedule.subscription_id:
        return _lock_subscription(db, schedule.subscription_id)
    sub = get_subscription_by_schedule_id(db, schedule.id, for_update=True)
    if sub is None:
        raise ReconciliationConflict("unknown_schedule", f"schedule={schedule.id}")
    return sub


def _schedule_is_stale(sub: Subscription, schedule: ScheduleObject) -> bool:
    return bool(sub.stripe_schedule_id) and sub.stripe_schedule_id != schedule.id


def _handle_schedule_created(db: Session, obj: ScheduleObject, event: StripeEventEnvelope, catalog: PlanCatalog):
    """subscription_schedule.created: a downgrade stops renewal of current terms, an interval switch does not"""
    sub = _lock_schedule_subscription(db, obj)
    sub.stripe_schedule_id = obj.id
    reason = sub.scheduled_change_reason or obj.metadata.get("plansync_reason")
    if reason == "downgrade":
        sub.cancel_at_period_end = True
    elif reason is None:
        # the orchestrator that created it writes the cancel flag itself
        logger.info(f"Schedule {obj.id} created without a reason: subscription_id={sub.id}")


def _handle_schedule_updated(db: Session, obj: ScheduleObject, event: StripeEventEnvelope, catalog: PlanCatalog):
    """subscription_schedule.updated: entering the final phase means the deferred change took effect"""
    if not obj.in_final_phase:
        return
    sub = _lock_schedule_subscription(db, obj)
    if _schedule_is_stale(sub, obj):
        logger.info(f"Ignored update for detached schedule {obj.id}: subscription_id={sub.id}")
        return

    price_id = obj.final_phase.items[0].price_id
    terms = catalog.plan_for_price_id(price_id)
    if terms:
        sub.plan_id, sub.billing_interval = terms
    elif sub.scheduled_change:
        sub.plan_id = sub.scheduled_change.target_plan_id
        sub.billing_interval = sub.scheduled_change.target_interval
    else:
        logger.warning(f"Unknown price in schedule phase: schedule={obj.id}, price={price_id}")

    if sub.scheduled_change_reason == "downgrade":
        sub.cancel_at_period_end = False
    sub.set_scheduled_change(None)
    close_pending_plan_changes(db, sub.id, stripe_event_id=event.id)
    logger.info(f"Scheduled change took effect: subscription_id={sub.id}, now {sub.plan_id}/{sub.billing_interval}")


def _handle_schedule_released(db: Session, obj: ScheduleObject, event: StripeEventEnvelope, catalog: PlanCatalog):
    """subscription_schedule.released/canceled/completed: the deferred change will not happen"""
    sub = _lock_schedule_subscription(db, obj)
    if _schedule_is_stale(sub, obj):
        logger.info(f"Ignored release of detached schedule {obj.id}: subscription_id={sub.id}")
        return
    sub.stripe_schedule_id = None
    if sub.scheduled_change_reason == "cancellation":
        # cancellation is carried by cancel_at_period_end, not by the schedule
        return
    sub.set_scheduled_change(None)
    sub.cancel_at_period_end = False
    close_pending_plan_changes(db, sub.id, stripe_event_id=event.id)


HANDLERS = {
    "invoice.paid": _Handler(InvoiceObject, _handle_payment_succeeded),
    "invoice.payment_succeeded": _Handler(InvoiceObject, _handle_payment_succeeded),
    "invoice.payment_failed": _Handler(InvoiceObject, _handle_payment_failed),
    "customer.subscription.created": _Handler(SubscriptionObject, _handle_subscription_created),
    "customer.subscription.updated": _Handler(SubscriptionObject, _handle_subscription_updated),
    "customer.subscription.deleted": _Handler(SubscriptionObject, _handle_subscription_deleted),
    "subscription_schedule.created": _Handler(ScheduleObject, _handle_schedule_created),
    "subscription_schedule.updated": _Handler(ScheduleObject, _handle_schedule_updated),
    "subscription_schedule.released": _Handler(ScheduleObject, _handle_schedule_released),
    "subscription_schedule.canceled": _Handler(ScheduleObject, _handle_schedule_released),
    "subscription_schedule.completed": _Handler(ScheduleObject, _handle_schedule_released),
}
