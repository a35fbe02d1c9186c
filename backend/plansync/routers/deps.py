"""Shared dependencies: current user, role guard, current subscription, billing error translation"""
from typing import Optional
from fastapi import Request, HTTPException, Depends
from sqlalchemy.orm import Session

from plansync.core.database import get_db
from plansync.core.exceptions import BillingError, NotFoundError
from plansync.core.redis import get_redis
from plansync.core.session import get_session
from plansync.models.subscription import Subscription
from plansync.models.user import User
from plansync.services.plan_catalog import PlanCatalog, get_plan_catalog
from plansync.services.subscription_service import get_current_subscription


async def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
    r=Depends(get_redis),
) -> Optional[User]:
    """Session cookie to Redis session to active user; None when any link is missing"""
    session_id = request.cookies.get("session_id")
    session_data = await get_session(r, session_id) if session_id else None
    user_id = int((session_data or {}).get("user_id", 0))
    if not user_id:
        return None
    return db.query(User).filter(User.id == user_id, User.is_active == True).first()


async def require_login(
    user: Optional[User] = Depends(get_current_user),
) -> User:
    if user is None:
        raise HTTPException(status_code=401, detail="Login required")
    return user


async def require_admin(
    user: User = Depends(require_login),
) -> User:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="Admin role required")
    return user


async def require_subscription(
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
) -> Subscription:
    """The caller's live subscription, 404 when there is none"""
    sub = get_current_subscription(db, user.id)
    if sub is None:
        raise http_error(NotFoundError("subscription_not_found", "No active subscription"))
    return sub


def get_catalog() -> PlanCatalog:
    return get_plan_catalog()


def http_error(e: BillingError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_detail())
