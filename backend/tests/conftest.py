"""Shared fixtures: in-memory database, plan catalog, Stripe payload builders"""
import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timedelta

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from plansync.core.database import Base, get_db
from plansync.core.rate_limit import limiter
from plansync.core.timeutil import to_unix, utcnow
from plansync.models import Subscription, User
from plansync.services.plan_catalog import get_plan_catalog
from plansync.services.stripe_service import RemoteSubscriptionState

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def catalog():
    return get_plan_catalog()


@pytest.fixture
def period_end():
    """A period end well in the future, second precision"""
    return (utcnow() + timedelta(days=20)).replace(microsecond=0)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="user", stripe_customer_id=None):
        counter["n"] += 1
        user = User(
            email=f"user{counter['n']}@example.com",
            role=role,
            is_active=True,
            stripe_customer_id=stripe_customer_id,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def user(make_user):
    return make_user(stripe_customer_id="cus_test_1")


@pytest.fixture
def make_subscription(db, period_end):
    def _make(user, plan_id="starter", interval="month", status="active", **fields):
        values = dict(
            user_id=user.id,
            live_user_id=user.id if status not in ("canceled", "incomplete_expired") else None,
            stripe_subscription_id=f"sub_{user.id}_{plan_id}",
            stripe_customer_id=user.stripe_customer_id,
            plan_id=plan_id,
            billing_interval=interval,
            status=status,
            cancel_at_period_end=False,
            current_period_start=period_end - timedelta(days=30),
            current_period_end=period_end,
        )
        values.update(fields)
        sub = Subscription(**values)
        db.add(sub)
        db.commit()
        db.refresh(sub)
        return sub

    return _make


def remote_state(sub, price_id, **overrides) -> RemoteSubscriptionState:
    """Provider state as a Stripe call would return it for ``sub``"""
    values = dict(
        subscription_id=sub.stripe_subscription_id,
        customer_id=sub.stripe_customer_id,
        status="active",
        price_id=price_id,
        item_id="si_test",
        current_period_start=sub.current_period_start,
        current_period_end=sub.current_period_end,
        cancel_at_period_end=False,
        schedule_id=None,
    )
    values.update(overrides)
    return RemoteSubscriptionState(**values)


def stripe_event(event_type, obj, event_id="evt_test_1", created=None) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()) if created is None else created,
        "data": {"object": obj},
    }


def subscription_object(sub_id, price_id, status="active", period_end: datetime = None, **extra) -> dict:
    end = to_unix(period_end) if period_end else int(time.time()) + 86400 * 20
    obj = {
        "id": sub_id,
        "object": "subscription",
        "customer": "cus_test_1",
        "status": status,
        "cancel_at_period_end": False,
        "schedule": None,
        "metadata": {},
        "items": {"data": [{
            "id": "si_test",
            "price": {"id": price_id},
            "current_period_start": end - 86400 * 30,
            "current_period_end": end,
        }]},
    }
    obj.update(extra)
    return obj


def schedule_object(schedule_id, sub_id, prices, current_index, start=None, **extra) -> dict:
    """subscription_schedule with 30-day phases, one per price"""
    start = start or int(time.time()) - 86400 * 30
    phases = []
    for i, price in enumerate(prices):
        phase_start = start + i * 86400 * 30
        phases.append({
            "start_date": phase_start,
            "end_date": phase_start + 86400 * 30,
            "items": [{"price": price, "quantity": 1}],
        })
    current = phases[current_index]
    obj = {
        "id": schedule_id,
        "object": "subscription_schedule",
        "status": "active",
        "subscription": sub_id,
        "current_phase": {"start_date": current["start_date"], "end_date": current["end_date"]},
        "phases": phases,
        "metadata": {},
    }
    obj.update(extra)
    return obj


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Stripe-Signature header for ``payload``"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def encode(event: dict) -> bytes:
    return json.dumps(event).encode("utf-8")


@pytest.fixture
def app_client(db):
    """TestClient bound to the test database; ``login(user)`` sets the current user"""
    from plansync.main import app
    from plansync.routers.deps import get_current_user

    state = {"user": None}

    def _get_db():
        yield db

    async def _current_user():
        return state["user"]

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_current_user] = _current_user
    limiter.enabled = False

    client = TestClient(app)
    client.login = lambda u: state.update(user=u)
    yield client

    app.dependency_overrides.clear()
    limiter.enabled = True
