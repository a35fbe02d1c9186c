"""Admin: subscription interventions"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from plansync.core.database import get_db
from plansync.core.exceptions import BillingError, NotFoundError
from plansync.models.subscription import Subscription
from plansync.models.user import User
from plansync.routers.deps import require_admin, get_catalog, http_error
from plansync.schemas.subscription import AdminCancelRequest, SubscriptionInfo
from plansync.services import cancellation_service
from plansync.services.plan_catalog import PlanCatalog

router = APIRouter(prefix="/api/admin/subscriptions", tags=["admin-subscriptions"])


@router.post("/{subscription_id}/cancel-immediately", response_model=SubscriptionInfo)
async def cancel_immediately(
    subscription_id: int,
    req: AdminCancelRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """End a subscription now with a prorated credit"""
    try:
        sub = db.query(Subscription).filter(Subscription.id == subscription_id).first()
        if sub is None:
            raise NotFoundError("subscription_not_found", "Subscription not found")
        return cancellation_service.cancel_immediately(
            db, sub, f"{req.reason} (admin_id={admin.id})", catalog
        )
    except BillingError as e:
        raise http_error(e)
