"""Public plan catalog API"""
from fastapi import APIRouter, Depends

from plansync.routers.deps import get_catalog
from plansync.schemas.subscription import PlanInfo
from plansync.services.plan_catalog import INTERVALS, PlanCatalog

router = APIRouter(prefix="/api/plans", tags=["plans"])


@router.get("", response_model=list[PlanInfo])
async def list_plans(catalog: PlanCatalog = Depends(get_catalog)):
    """Every plan with the intervals it is offered on and where it can move"""
    return [
        PlanInfo(
            plan_id=p.plan_id,
            name=p.name,
            intervals=[i for i in INTERVALS if p.price_id_for(i)],
            included_units=p.included_units,
            concurrency_limit=p.concurrency_limit,
            allows_overage=p.allows_overage,
            is_default=p.plan_id == catalog.default_plan_id,
            upgrade_targets=list(p.upgrade_targets),
            downgrade_targets=list(p.downgrade_targets),
        )
        for p in catalog.plans()
    ]
