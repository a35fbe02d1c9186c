from pathlib import Path
from pydantic_settings import BaseSettings

_PACKAGE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings"""

    # Database
    DATABASE_URL: str = "mysql+pymysql://plansync:plansync@db:3306/plansync?charset=utf8mb4"

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_TIMEOUT_SECONDS: int = 20

    # Plan catalog
    PLAN_CATALOG_PATH: str = str(_PACKAGE_DIR / "plan_catalog.json")

    # Service
    SITE_NAME: str = "plansync"
    ALLOWED_ORIGINS: str = "http://localhost:8000,http://localhost:3000"
    PLAN_CHANGE_RATE_LIMIT: str = "10/minute"

    # Session
    SESSION_TIMEOUT_MINUTES: int = 60

    # Scheduler
    RESYNC_GRACE_MINUTES: int = 60

    # Environment
    ENV: str = "development"
    DEBUG: bool = False

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
