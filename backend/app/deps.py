"""Dependency providers and settings management."""

from functools import lru_cache
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .models import Company


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD: str = "change-this-in-production"
    ADMIN_SECRET_KEY: str = "supersecretkey-change-this-in-production"

    # Redis Configuration (arq worker)
    REDIS_URL: str = "redis://localhost:6379/0"

    # WooCommerce REST client
    WOO_REQUEST_TIMEOUT_SECONDS: float = 30.0
    WOO_PAGE_SIZE: int = 100

    # Sync pipeline
    ORDER_SYNC_WINDOW_DAYS: int = 30
    ORDER_SYNC_STATUSES: str = "processing,completed,cancelled,refunded"
    SYNC_POLL_INTERVAL_SECONDS: int = 2
    SCHEDULED_SYNC_ENABLED: bool = True
    # Hand manual syncs to the arq worker instead of running them in the API process
    SYNC_IN_WORKER: bool = False

    # Observability
    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def order_sync_statuses(self) -> List[str]:
        return [s.strip() for s in self.ORDER_SYNC_STATUSES.split(",") if s.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_company(company_id: UUID, db: Session = Depends(get_db)) -> Company:
    """Resolve the tenant from the `company_id` path parameter.

    Authentication and membership checks happen upstream; this only
    guarantees the company exists before any store or mapping is touched.
    """
    company = db.query(Company).filter(Company.id == company_id).first()
    if not company:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Company not found")
    return company
