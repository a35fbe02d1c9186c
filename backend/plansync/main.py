from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from plansync.core.config import settings
from plansync.core.logging import setup_logging, get_logger
from plansync.core.redis import close_redis
from plansync.core.security_headers import SecurityHeadersMiddleware
from plansync.core.rate_limit import limiter, rate_limit_exceeded_handler
from plansync.routers import health, plans, subscriptions, admin_subscriptions, webhooks_stripe
from plansync.services.plan_catalog import get_plan_catalog

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(debug=settings.DEBUG, service=settings.SITE_NAME)
    # fail at startup, not on the first request, if the catalog is broken
    catalog = get_plan_catalog()
    logger.info(f"Application started: {len(catalog.plans())} plans, env={settings.ENV}")
    yield
    await close_redis()
    logger.info("Application stopped")


app = FastAPI(
    title=settings.SITE_NAME,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# middleware registered last runs first
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(plans.router)
app.include_router(subscriptions.router)
app.include_router(admin_subscriptions.router)
app.include_router(webhooks_stripe.router)
