from fastapi import APIRouter, Depends
from plansync.core.database import check_db_connection
from plansync.core.redis import check_redis_connection
from plansync.routers.deps import get_catalog
from plansync.services.plan_catalog import PlanCatalog

router = APIRouter()


@router.get("/health")
@router.get("/api/health")
async def health_check(catalog: PlanCatalog = Depends(get_catalog)):
    """Liveness, backing stores, and the size of the loaded plan catalog"""
    db_ok = check_db_connection()
    redis_ok = await check_redis_connection()

    return {
        "status": "ok" if (db_ok and redis_ok) else "degraded",
        "db": "connected" if db_ok else "disconnected",
        "redis": "connected" if redis_ok else "disconnected",
        "plans": len(catalog.plans()),
    }
