"""Subscription router: start, plan change, cancel, reactivate"""
from typing import Optional
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from plansync.core.config import settings
from plansync.core.database import get_db
from plansync.core.exceptions import BillingError
from plansync.core.logging import get_logger
from plansync.core.rate_limit import limiter
from plansync.models.subscription import Subscription
from plansync.models.user import User
from plansync.routers.deps import require_login, require_subscription, get_catalog, http_error
from plansync.schemas.subscription import (
    StartSubscriptionRequest, PlanChangeRequest, CancelRequest, SubscriptionInfo, PlanChangeResponse,
)
from plansync.services import cancellation_service, plan_change_service, subscription_service
from plansync.services.plan_catalog import PlanCatalog

router = APIRouter(prefix="/api/subscription", tags=["subscriptions"])
logger = get_logger(__name__)


@router.get("", response_model=Optional[SubscriptionInfo])
async def get_subscription(
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
):
    """The user's live subscription, or null"""
    return subscription_service.get_current_subscription(db, user.id)


@router.post("", response_model=SubscriptionInfo, status_code=201)
async def start_subscription(
    req: StartSubscriptionRequest,
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
    catalog: PlanCatalog = Depends(get_catalog),
):
    try:
        return subscription_service.start_subscription(db, user, req.plan_id, req.interval, catalog)
    except BillingError as e:
        logger.info(f"Subscribe rejected: user_id={user.id}, code={e.code}")
        raise http_error(e)


@router.post("/plan-change", response_model=PlanChangeResponse)
@limiter.limit(settings.PLAN_CHANGE_RATE_LIMIT)
async def change_plan(
    request: Request,
    req: PlanChangeRequest,
    user: User = Depends(require_login),
    sub: Subscription = Depends(require_subscription),
    db: Session = Depends(get_db),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """Upgrade now, or arrange a downgrade / interval switch for period end"""
    try:
        outcome = plan_change_service.request_plan_change(db, sub, req.plan_id, req.interval, catalog)
    except BillingError as e:
        logger.info(f"Plan change rejected: user_id={user.id}, code={e.code}")
        raise http_error(e)
    return PlanChangeResponse(
        strategy=outcome.strategy.value,
        subscription=SubscriptionInfo.model_validate(outcome.subscription),
    )


@router.post("/cancel", response_model=SubscriptionInfo)
async def cancel_subscription(
    req: CancelRequest,
    sub: Subscription = Depends(require_subscription),
    db: Session = Depends(get_db),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """Stop renewal at the end of the current period"""
    try:
        return cancellation_service.cancel_at_period_end(db, sub, req.reason, req.feedback, catalog)
    except BillingError as e:
        raise http_error(e)


@router.post("/reactivate", response_model=SubscriptionInfo)
async def reactivate_subscription(
    sub: Subscription = Depends(require_subscription),
    db: Session = Depends(get_db),
    catalog: PlanCatalog = Depends(get_catalog),
):
    try:
        return cancellation_service.reactivate(db, sub, catalog)
    except BillingError as e:
        raise http_error(e)
