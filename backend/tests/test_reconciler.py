"""Tests for the Stripe event reconciler pipeline and its effects."""
import time
from datetime import timedelta
from unittest.mock import patch

import pytest

from plansync.core.exceptions import SecurityError
from plansync.core.timeutil import from_unix, to_unix, utcnow
from plansync.models import ProcessedStripeEvent, Subscription, SubscriptionPlanChange
from plansync.services import reconciler
from plansync.services.reconciler import RejectReason, ingest

from conftest import encode, schedule_object, sign, stripe_event, subscription_object


def _ingest(db, catalog, event, **kwargs):
    payload = encode(event)
    return ingest(db, payload, sign(payload), catalog, **kwargs)


def _processed_count(db, event_id):
    return db.query(ProcessedStripeEvent).filter(ProcessedStripeEvent.event_id == event_id).count()


class TestRejections:
    """Signature, freshness and structure are checked before anything else."""

    def test_invalid_signature(self, db, catalog):
        payload = encode(stripe_event("invoice.paid", {"id": "in_1"}))
        result = ingest(db, payload, sign(payload, secret="whsec_wrong"), catalog)
        assert not result.ok
        assert result.reject_reason == RejectReason.INVALID_SIGNATURE
        assert db.query(ProcessedStripeEvent).count() == 0

    def test_missing_signature(self, db, catalog):
        payload = encode(stripe_event("invoice.paid", {"id": "in_1"}))
        result = ingest(db, payload, "", catalog)
        assert result.reject_reason == RejectReason.INVALID_SIGNATURE

    def test_tampered_payload(self, db, catalog):
        payload = encode(stripe_event("invoice.paid", {"id": "in_1"}))
        header = sign(payload)
        result = ingest(db, payload.replace(b"in_1", b"in_2"), header, catalog)
        assert result.reject_reason == RejectReason.INVALID_SIGNATURE

    def test_unconfigured_secret_rejects(self, db, catalog):
        payload = encode(stripe_event("invoice.paid", {"id": "in_1"}))
        result = ingest(db, payload, sign(payload), catalog, secret="")
        assert result.reject_reason == RejectReason.INVALID_SIGNATURE

    def test_stale_event(self, db, catalog):
        old = int(time.time()) - 3600
        result = _ingest(db, catalog, stripe_event("invoice.paid", {"id": "in_1"}, created=old))
        assert result.reject_reason == RejectReason.STALE_EVENT

    def test_event_from_the_future(self, db, catalog):
        future = int(time.time()) + 3600
        result = _ingest(db, catalog, stripe_event("invoice.paid", {"id": "in_1"}, created=future))
        assert result.reject_reason == RejectReason.STALE_EVENT

    def test_not_json(self, db, catalog):
        payload = b"not json"
        result = ingest(db, payload, sign(payload), catalog)
        assert result.reject_reason == RejectReason.MALFORMED_EVENT

    def test_missing_event_id(self, db, catalog):
        event = stripe_event("invoice.paid", {"id": "in_1"})
        del event["id"]
        result = _ingest(db, catalog, event)
        assert result.reject_reason == RejectReason.MALFORMED_EVENT

    def test_malformed_subscription_object(self, db, catalog):
        obj = subscription_object("sub_1", "price_pro_monthly")
        obj["items"] = {"data": []}
        result = _ingest(db, catalog, stripe_event("customer.subscription.updated", obj))
        assert result.reject_reason == RejectReason.MALFORMED_EVENT
        assert db.query(ProcessedStripeEvent).count() == 0

    def test_unknown_status_is_malformed(self, db, catalog):
        obj = subscription_object("sub_1", "price_pro_monthly", status="paused_forever")
        result = _ingest(db, catalog, stripe_event("customer.subscription.updated", obj))
        assert result.reject_reason == RejectReason.MALFORMED_EVENT

    def test_rejection_carries_reason_and_event_id(self):
        payload = encode(stripe_event("invoice.paid", {"id": "in_1"}, event_id="evt_old", created=1_000_000))
        with pytest.raises(SecurityError) as exc_info:
            reconciler._check_freshness(payload.decode("utf-8"), utcnow(), 300)
        assert exc_info.value.code == RejectReason.STALE_EVENT.value
        assert exc_info.value.event_id == "evt_old"


class TestIdempotency:
    def test_second_delivery_is_duplicate(self, db, catalog, user, make_subscription):
        sub = make_subscription(user, "starter", "month")
        obj = subscription_object(sub.stripe_subscription_id, "price_pro_monthly", status="past_due")
        event = stripe_event("customer.subscription.updated", obj, event_id="evt_dup")

        first = _ingest(db, catalog, event)
        db.refresh(sub)
        snapshot = (sub.plan_id, sub.status, sub.current_period_end, sub.updated_at)

        second = _ingest(db, catalog, event)
        db.refresh(sub)

        assert first.ok and not first.duplicate
        assert second.ok and second.duplicate
        assert (sub.plan_id, sub.status, sub.current_period_end, sub.updated_at) == snapshot
        assert _processed_count(db, "evt_dup") == 1

    def test_concurrent_delivery_applies_once(self, db, catalog, user, make_subscription):
        """The losing delivery passed the read check but loses on the unique insert"""
        sub = make_subscription(user, "starter", "month")
        obj = subscription_object(sub.stripe_subscription_id, "price_pro_monthly")
        event = stripe_event("customer.subscription.updated", obj, event_id="evt_E2")

        assert _ingest(db, catalog, event).ok
        db.refresh(sub)
        updated_at = sub.updated_at

        with patch.object(reconciler, "_is_event_processed", return_value=False):
            result = _ingest(db, catalog, event)

        assert result.duplicate
        db.refresh(sub)
        assert sub.updated_at == updated_at
        assert _processed_count(db, "evt_E2") == 1

    def test_failed_effect_is_not_recorded(self, db, catalog, user, make_subscription):
        sub = make_subscription(user, "starter", "month")
        obj = subscription_object(sub.stripe_subscription_id, "price_pro_monthly")
        event = stripe_event("customer.subscription.updated", obj, event_id="evt_fail")

        with patch.object(reconciler, "apply_remote_state", side_effect=RuntimeError("db down")):
            with pytest.raises(RuntimeError):
                _ingest(db, catalog, event)

        assert _processed_count(db, "evt_fail") == 0
        # redelivery succeeds
        assert _ingest(db, catalog, event).ok
        db.refresh(sub)
        assert sub.plan_id == "pro"

    def test_processed_record_keeps_event_created_time(self, db, catalog, user, make_subscription):
        sub = make_subscription(user, "starter", "month")
        created = int(time.time()) - 60
        obj = subscription_object(sub.stripe_subscription_id, "price_pro_monthly")
        assert _ingest(db, catalog, stripe_event("customer.subscription.updated", obj, event_id="evt_rec", created=created)).ok

        row = db.query(ProcessedStripeEvent).filter(ProcessedStripeEvent.event_id == "evt_rec").one()
        assert row.event_type == "customer.subscription.updated"
        assert row.event_created_at == from_unix(created)
        assert row.processed_at is not None
        assert ProcessedStripeEvent.exists(db, "evt_rec")
        assert not ProcessedStripeEvent.exists(db, "evt_other")

    def test_unknown_event_type_acknowledged(self, db, catalog):
        result = _ingest(db, catalog, stripe_event("customer.created", {"id": "cus_1"}, event_id="evt_other"))
        assert result.ok
        assert _processed_count(db, "evt_other") == 0


class TestSubscriptionEvents:
    def test_updated_event_is_authoritative(self, db, catalog, user, make_subscription, period_end):
        sub = make_subscription(user, "starter", "month", cancel_at_period_end=True)
        new_end = period_end + timedelta(days=30)
        obj = subscription_object(
            sub.stripe_subscription_id, "price_pro_annual",
            status="past_due", period_end=new_end, cancel_at_period_end=False,
        )

        assert _ingest(db, catalog, stripe_event("customer.subscription.updated", obj)).ok
        db.refresh(sub)

        item = obj["items"]["data"][0]
        assert sub.status == "past_due"
        assert (sub.plan_id, sub.billing_interval) == ("pro", "year")
        assert sub.current_period_start == from_unix(item["current_period_start"])
        assert sub.current_period_end == new_end
        assert sub.cancel_at_period_end is False

    def test_updated_for_unknown_subscription_is_acknowledged(self, db, catalog):
        obj = subscription_object("sub_nowhere", "price_pro_monthly")
        result = _ingest(db, catalog, stripe_event("customer.subscription.updated", obj, event_id="evt_orphan"))
        assert result.ok
        assert _processed_count(db, "evt_orphan") == 1

    def test_paused_trial_is_applied_and_resumes(self, db, catalog, user, make_subscription):
        """A trial that ends without a payment method is paused, not malformed"""
        sub = make_subscription(user, "pro", "month", status="trialing")
        paused = subscription_object(sub.stripe_subscription_id, "price_pro_monthly", status="paused")
        result = _ingest(db, catalog, stripe_event("customer.subscription.updated", paused, event_id="evt_paused"))
        assert result.ok
        db.refresh(sub)
        assert sub.status == "paused"
        assert sub.live_user_id == user.id

        resumed = subscription_object(sub.stripe_subscription_id, "price_pro_monthly", status="active")
        assert _ingest(db, catalog, stripe_event("customer.subscription.updated", resumed, event_id="evt_resumed")).ok
        db.refresh(sub)
        assert sub.status == "active"

    def test_canceled_is_terminal(self, db, catalog, user, make_subscription):
        sub = make_subscription(user, "pro", "month")
        deleted = subscription_object(sub.stripe_subscription_id, "price_pro_monthly", status="canceled")
        assert _ingest(db, catalog, stripe_event("customer.subscription.deleted", deleted, event_id="evt_del")).ok

        late = subscription_object(sub.stripe_subscription_id, "price_pro_monthly", status="active")
        assert _ingest(db, catalog, stripe_event("customer.subscription.updated", late, event_id="evt_late")).ok

        db.refresh(sub)
        assert sub.status == "canceled"
        assert sub.live_user_id is None

    def test_created_event_establishes_row(self, db, catalog, make_user):
        user = make_user(stripe_customer_id="cus_new")
        obj = subscription_object(
            "sub_created_1", "price_starter_monthly", status="incomplete",
            customer="cus_new", metadata={"user_id": str(user.id)},
        )
        assert _ingest(db, catalog, stripe_event("customer.subscription.created", obj)).ok

        sub = db.query(Subscription).filter(Subscription.stripe_subscription_id == "sub_created_1").one()
        assert sub.user_id == user.id
        assert (sub.plan_id, sub.billing_interval, sub.status) == ("starter", "month", "incomplete")
        assert sub.live_user_id == user.id

    def test_created_event_with_unknown_price_is_not_applied(self, db, catalog, user):
        obj = subscription_object("sub_created_2", "price_legacy", metadata={"user_id": str(user.id)})
        assert _ingest(db, catalog, stripe_event("customer.subscription.created", obj)).ok
        assert db.query(Subscription).count() == 0


class TestInvoiceEvents:
    def test_payment_failed_marks_past_due(self, db, catalog, user, make_subscription):
        sub = make_subscription(user, "pro", "month")
        invoice = {"id": "in_1", "subscription": sub.stripe_subscription_id, "lines": {"data": []}}
        assert _ingest(db, catalog, stripe_event("invoice.payment_failed", invoice)).ok
        db.refresh(sub)
        assert sub.status == "past_due"

    def test_paid_invoice_reactivates_and_moves_period(self, db, catalog, user, make_subscription, period_end):
        sub = make_subscription(user, "pro", "month", status="past_due")
        start, end = to_unix(period_end), to_unix(period_end + timedelta(days=30))
        invoice = {
            "id": "in_2",
            "parent": {"subscription_details": {"subscription": sub.stripe_subscription_id}},
            "lines": {"data": [{"period": {"start": start, "end": end}}]},
        }
        assert _ingest(db, catalog, stripe_event("invoice.paid", invoice)).ok
        db.refresh(sub)
        assert sub.status == "active"
        assert sub.current_period_end == from_unix(end)

    def test_renewal_after_proration_takes_the_new_period(self, db, catalog, user, make_subscription, period_end):
        """A leading proration line must not pull the period end backwards"""
        sub = make_subscription(user, "scale", "month")
        old_start = to_unix(period_end - timedelta(days=10))
        start, end = to_unix(period_end), to_unix(period_end + timedelta(days=30))
        invoice = {
            "id": "in_3",
            "subscription": sub.stripe_subscription_id,
            "lines": {"data": [
                {"period": {"start": old_start, "end": start}, "proration": True},
                {"period": {"start": start, "end": end}, "proration": False},
            ]},
        }
        assert _ingest(db, catalog, stripe_event("invoice.paid", invoice)).ok
        db.refresh(sub)
        assert sub.current_period_start == from_unix(start)
        assert sub.current_period_end == from_unix(end)

    def test_proration_flag_under_line_parent_is_honoured(self, db, catalog, user, make_subscription, period_end):
        sub = make_subscription(user, "scale", "month")
        start, end = to_unix(period_end), to_unix(period_end + timedelta(days=30))
        invoice = {
            "id": "in_4",
            "subscription": sub.stripe_subscription_id,
            "lines": {"data": [
                {"period": {"start": start, "end": end}, "parent": {"subscription_item_details": {"proration": False}}},
                {
                    "period": {"start": start - 86400, "end": end + 86400},
                    "parent": {"subscription_item_details": {"proration": True}},
                },
            ]},
        }
        assert _ingest(db, catalog, stripe_event("invoice.paid", invoice)).ok
        db.refresh(sub)
        assert sub.current_period_end == from_unix(end)


class TestScheduleEvents:
    def _deferred(self, user, make_subscription, **fields):
        values = dict(
            stripe_schedule_id="sub_sched_1",
            cancel_at_period_end=True,
            scheduled_plan_id="scale",
            scheduled_interval="month",
            scheduled_price_id="price_scale_monthly",
            scheduled_change_reason="downgrade",
        )
        values.update(fields)
        return make_subscription(user, "pro", "month", **values)

    def test_phase_advanced_applies_scheduled_change(self, db, catalog, user, make_subscription):
        sub = self._deferred(
            user, make_subscription,
            scheduled_change_reason="interval_switch", cancel_at_period_end=False,
        )
        db.add(SubscriptionPlanChange(
            subscription_id=sub.id, old_plan_id="pro", old_interval="month",
            new_plan_id="scale", new_interval="month", strategy="mixed_upgrade", applied=False,
        ))
        db.commit()
        obj = schedule_object(
            "sub_sched_1", sub.stripe_subscription_id, ["price_pro_monthly", "price_scale_monthly"], 1,
        )

        assert _ingest(db, catalog, stripe_event("subscription_schedule.updated", obj, event_id="E1")).ok
        db.refresh(sub)

        assert sub.scheduled_change is None
        assert sub.plan_id == "scale"
        change = db.query(SubscriptionPlanChange).filter(SubscriptionPlanChange.subscription_id == sub.id).one()
        assert change.applied is True
        assert change.stripe_event_id == "E1"

    def test_downgrade_taking_effect_clears_cancel_flag(self, db, catalog, user, make_subscription):
        sub = self._deferred(user, make_subscription, scheduled_plan_id="starter", scheduled_price_id="price_starter_monthly")
        obj = schedule_object(
            "sub_sched_1", sub.stripe_subscription_id, ["price_pro_monthly", "price_starter_monthly"], 1,
        )
        assert _ingest(db, catalog, stripe_event("subscription_schedule.updated", obj)).ok
        db.refresh(sub)
        assert sub.plan_id == "starter"
        assert sub.cancel_at_period_end is False

    def test_update_in_first_phase_changes_nothing(self, db, catalog, user, make_subscription):
        sub = self._deferred(user, make_subscription)
        obj = schedule_object(
            "sub_sched_1", sub.stripe_subscription_id, ["price_pro_monthly", "price_scale_monthly"], 0,
        )
        assert _ingest(db, catalog, stripe_event("subscription_schedule.updated", obj)).ok
        db.refresh(sub)
        assert sub.plan_id == "pro"
        assert sub.scheduled_change is not None

    def test_released_schedule_clears_change(self, db, catalog, user, make_subscription):
        sub = self._deferred(user, make_subscription)
        obj = schedule_object(
            "sub_sched_1", None, ["price_pro_monthly", "price_scale_monthly"], 0,
            status="released", released_subscription=sub.stripe_subscription_id,
        )
        assert _ingest(db, catalog, stripe_event("subscription_schedule.released", obj)).ok
        db.refresh(sub)
        assert sub.scheduled_change is None
        assert sub.stripe_schedule_id is None
        assert sub.cancel_at_period_end is False

    def test_release_of_replaced_schedule_ignored(self, db, catalog, user, make_subscription):
        sub = self._deferred(user, make_subscription, stripe_schedule_id="sub_sched_new")
        obj = schedule_object(
            "sub_sched_old", sub.stripe_subscription_id, ["price_pro_monthly", "price_scale_monthly"], 0,
            status="released",
        )
        assert _ingest(db, catalog, stripe_event("subscription_schedule.released", obj)).ok
        db.refresh(sub)
        assert sub.stripe_schedule_id == "sub_sched_new"
        assert sub.scheduled_change is not None

    def test_release_keeps_pending_cancellation(self, db, catalog, user, make_subscription):
        sub = self._deferred(
            user, make_subscription,
            scheduled_plan_id="free", scheduled_price_id=None, scheduled_change_reason="cancellation",
        )
        obj = schedule_object(
            "sub_sched_1", sub.stripe_subscription_id, ["price_pro_monthly", "price_starter_monthly"], 0,
            status="released",
        )
        assert _ingest(db, catalog, stripe_event("subscription_schedule.released", obj)).ok
        db.refresh(sub)
        assert sub.scheduled_change.reason == "cancellation"
        assert sub.cancel_at_period_end is True
        assert sub.stripe_schedule_id is None

    def test_created_schedule_for_downgrade_stops_renewal(self, db, catalog, user, make_subscription):
        sub = make_subscription(user, "pro", "month")
        obj = schedule_object(
            "sub_sched_9", sub.stripe_subscription_id, ["price_pro_monthly", "price_starter_monthly"], 0,
            metadata={"plansync_reason": "downgrade"},
        )
        assert _ingest(db, catalog, stripe_event("subscription_schedule.created", obj)).ok
        db.refresh(sub)
        assert sub.stripe_schedule_id == "sub_sched_9"
        assert sub.cancel_at_period_end is True

    def test_created_schedule_for_interval_switch_keeps_renewal(self, db, catalog, user, make_subscription):
        sub = make_subscription(user, "pro", "month", scheduled_change_reason="interval_switch",
                                scheduled_plan_id="pro", scheduled_interval="year")
        obj = schedule_object(
            "sub_sched_10", sub.stripe_subscription_id, ["price_pro_monthly", "price_pro_annual"], 0,
        )
        assert _ingest(db, catalog, stripe_event("subscription_schedule.created", obj)).ok
        db.refresh(sub)
        assert sub.cancel_at_period_end is False

    def test_created_schedule_without_reason_leaves_cancel_flag(self, db, catalog, user, make_subscription):
        sub = make_subscription(user, "pro", "month")
        obj = schedule_object(
            "sub_sched_11", sub.stripe_subscription_id, ["price_pro_monthly", "price_pro_annual"], 0,
        )
        assert _ingest(db, catalog, stripe_event("subscription_schedule.created", obj)).ok
        db.refresh(sub)
        assert sub.stripe_schedule_id == "sub_sched_11"
        assert sub.cancel_at_period_end is False
