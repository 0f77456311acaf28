"""WooCommerce store endpoints.

WHAT:
    Connect/list/update/disconnect stores, test credentials, trigger a sync
    and poll its progress.

WHY:
    - Routers handle request parsing and error mapping only
    - Business logic lives in services and is shared with the arq worker
    - The sync trigger returns immediately; progress is read back from the
      Store row through /sync-status

REFERENCES:
    - app/services/store_service.py
    - app/services/store_sync_service.py
    - app/services/sync_state.py
"""

from __future__ import annotations

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app import schemas
from app.database import get_db
from app.deps import Settings, get_company, get_settings
from app.models import Company
from app.services import store_service, store_sync_service, sync_state
from app.services.store_service import (
    StoreConflictError,
    StoreCredentialsError,
    StoreNotFoundError,
    StoreValidationError,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/companies/{company_id}/stores",
    tags=["Stores"],
)


def _raise_http(error: Exception) -> None:
    """Map store service errors to HTTP responses."""
    if isinstance(error, StoreNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, StoreConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, (StoreValidationError, StoreCredentialsError)):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    raise error


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/test", response_model=schemas.ConnectionTestResponse)
async def test_credentials(
    payload: schemas.StoreConnectionTest,
    company: Company = Depends(get_company),
) -> schemas.ConnectionTestResponse:
    """Test credentials without saving anything."""
    try:
        result = await store_service.test_connection_with_credentials(
            payload.url, payload.consumer_key, payload.consumer_secret
        )
    except StoreValidationError as e:
        _raise_http(e)
    return schemas.ConnectionTestResponse(**result)


@router.get("", response_model=List[schemas.StoreOut])
def list_stores(
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    return store_service.list_stores(db, company.id)


@router.post("", response_model=schemas.StoreOut, status_code=status.HTTP_201_CREATED)
async def create_store(
    payload: schemas.StoreCreate,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    """Connect a store. The connection is tested before anything is saved."""
    logger.info("[STORE] HTTP create requested: company=%s url=%s", company.id, payload.url)
    try:
        return await store_service.create_store(
            db,
            company.id,
            name=payload.name,
            url=payload.url,
            consumer_key=payload.consumer_key,
            consumer_secret=payload.consumer_secret,
            currency=payload.currency,
            commission_rate=payload.commission_rate,
            shipping_cost=payload.shipping_cost,
        )
    except (StoreValidationError, StoreConflictError) as e:
        _raise_http(e)


@router.get("/{store_id}", response_model=schemas.StoreOut)
def get_store(
    store_id: UUID,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    try:
        return store_service.get_store(db, company.id, store_id)
    except StoreNotFoundError as e:
        _raise_http(e)


@router.put("/{store_id}", response_model=schemas.StoreOut)
async def update_store(
    store_id: UUID,
    payload: schemas.StoreUpdate,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    try:
        return await store_service.update_store(
            db, company.id, store_id, payload.model_dump(exclude_unset=True)
        )
    except (StoreNotFoundError, StoreValidationError, StoreConflictError, StoreCredentialsError) as e:
        _raise_http(e)


@router.delete("/{store_id}", response_model=schemas.MessageResponse)
def delete_store(
    store_id: UUID,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    """Disconnect a store and delete everything synced from it."""
    try:
        store_service.delete_store(db, company.id, store_id)
    except (StoreNotFoundError, StoreConflictError) as e:
        _raise_http(e)
    return schemas.MessageResponse(detail="Store disconnected")


@router.post("/{store_id}/test-connection", response_model=schemas.ConnectionTestResponse)
async def test_store_connection(
    store_id: UUID,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
) -> schemas.ConnectionTestResponse:
    """Re-test saved credentials; moves the store to ACTIVE or ERROR."""
    try:
        result = await store_service.test_store_connection(db, company.id, store_id)
    except StoreNotFoundError as e:
        _raise_http(e)
    return schemas.ConnectionTestResponse(**result)


@router.post("/{store_id}/sync", response_model=schemas.SyncStartResponse)
async def sync_store(
    store_id: UUID,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
) -> schemas.SyncStartResponse:
    """Start a background sync.

    Returns immediately. While a sync is already running the request is
    answered with started=false and nothing new is launched.
    """
    logger.info("[STORE_SYNC] HTTP sync requested: company=%s store=%s", company.id, store_id)
    try:
        result = await store_sync_service.start_store_sync(db, company.id, store_id)
    except StoreNotFoundError as e:
        _raise_http(e)
    return schemas.SyncStartResponse(
        success=result.success,
        message=result.message,
        started=result.started,
    )


@router.get("/{store_id}/sync-status", response_model=schemas.SyncStatusResponse)
def get_sync_status(
    store_id: UUID,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Progress snapshot for dashboard polling."""
    try:
        store = store_service.get_store(db, company.id, store_id)
    except StoreNotFoundError as e:
        _raise_http(e)
    return sync_state.get_sync_status(
        db, store.id, poll_interval_seconds=settings.SYNC_POLL_INTERVAL_SECONDS
    )
