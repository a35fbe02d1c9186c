"""Stripe webhook router"""
from fastapi import APIRouter, Depends, Request, HTTPException
from sqlalchemy.orm import Session

from plansync.core.database import get_db
from plansync.core.logging import get_logger
from plansync.routers.deps import get_catalog
from plansync.services import reconciler
from plansync.services.plan_catalog import PlanCatalog
from plansync.services.reconciler import RejectReason

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])

_REJECT_STATUS = {
    RejectReason.INVALID_SIGNATURE: 401,
    RejectReason.STALE_EVENT: 400,
    RejectReason.MALFORMED_EVENT: 400,
}


@router.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """Stripe webhook endpoint (signature verified, no session)"""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        result = reconciler.ingest(db, payload, sig_header, catalog)
    except Exception:
        # not recorded as processed; Stripe redelivers
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    if not result.ok:
        raise HTTPException(
            status_code=_REJECT_STATUS[result.reject_reason],
            detail={"code": result.reject_reason.value, "message": "Event rejected"},
        )
    return {"received": True, "duplicate": result.duplicate}
