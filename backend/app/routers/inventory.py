"""Inventory edit endpoints (stock push and local purchase price).

REFERENCES:
    - app/services/inventory_service.py
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app import schemas
from app.database import get_db
from app.deps import get_company
from app.models import Company
from app.services import inventory_service
from app.services.inventory_service import (
    InventoryNotFoundError,
    InventoryValidationError,
    StockPushError,
)
from app.services.store_service import StoreCredentialsError

router = APIRouter(
    prefix="/companies/{company_id}/inventory",
    tags=["Inventory"],
)


def _raise_http(error: Exception) -> None:
    if isinstance(error, InventoryNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, (InventoryValidationError, StoreCredentialsError)):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, StockPushError):
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(error))
    raise error


_ERRORS = (InventoryNotFoundError, InventoryValidationError, StockPushError, StoreCredentialsError)


def _stock_response(result: inventory_service.StockEditResult) -> schemas.StockEditResponse:
    item = schemas.InventoryItemOut.model_validate(result.item)
    return schemas.StockEditResponse(
        **item.model_dump(),
        synced_stores=result.synced_stores,
        failed_stores=result.failed_stores,
    )


@router.put("/products/{product_id}/stock", response_model=schemas.StockEditResponse)
async def update_product_stock(
    product_id: UUID,
    payload: schemas.StockUpdate,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    """Push a new stock level to the store, then save it locally.

    When the product is the source of a mapping the level is also pushed to
    the mapped stores; `failed_stores` lists the ones that did not take it.
    """
    try:
        result = await inventory_service.update_product_stock(db, company.id, product_id, payload.stock_quantity)
    except _ERRORS as e:
        _raise_http(e)
    return _stock_response(result)


@router.put("/variations/{variation_id}/stock", response_model=schemas.StockEditResponse)
async def update_variation_stock(
    variation_id: UUID,
    payload: schemas.StockUpdate,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    try:
        result = await inventory_service.update_variation_stock(db, company.id, variation_id, payload.stock_quantity)
    except _ERRORS as e:
        _raise_http(e)
    return _stock_response(result)


@router.put("/products/{product_id}/purchase-price", response_model=schemas.InventoryItemOut)
def update_product_purchase_price(
    product_id: UUID,
    payload: schemas.PurchasePriceUpdate,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    try:
        return inventory_service.update_product_purchase_price(db, company.id, product_id, payload.purchase_price)
    except _ERRORS as e:
        _raise_http(e)


@router.put("/variations/{variation_id}/purchase-price", response_model=schemas.InventoryItemOut)
def update_variation_purchase_price(
    variation_id: UUID,
    payload: schemas.PurchasePriceUpdate,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    try:
        return inventory_service.update_variation_purchase_price(db, company.id, variation_id, payload.purchase_price)
    except _ERRORS as e:
        _raise_http(e)
