"""Cross-store product mapping endpoints.

WHAT:
    Manual mapping CRUD, suggestion review (dismiss/restore), auto-match,
    product search for the mapping picker and the consolidated inventory view.

REFERENCES:
    - app/services/product_mapping_service.py
"""

from __future__ import annotations

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app import schemas
from app.database import get_db
from app.deps import get_company
from app.models import Company
from app.services import product_mapping_service as mappings
from app.services.product_mapping_service import (
    MappingConflictError,
    MappingNotFoundError,
    MappingValidationError,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/companies/{company_id}/product-mappings",
    tags=["Product Mappings"],
)


def _raise_http(error: Exception) -> None:
    if isinstance(error, MappingNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, MappingConflictError):
        detail = {"message": str(error)}
        if error.product_ids:
            detail["product_ids"] = [str(pid) for pid in error.product_ids]
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(error, MappingValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    raise error


_MAPPING_ERRORS = (MappingNotFoundError, MappingConflictError, MappingValidationError)


# =============================================================================
# Collection-level routes (declared before /{mapping_id})
# =============================================================================

@router.get("", response_model=List[schemas.MappingOut])
def list_mappings(
    search: Optional[str] = Query(default=None, description="Filter by master SKU or name"),
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    return mappings.list_mappings(db, company.id, search=search)


@router.post("", response_model=schemas.MappingOut, status_code=status.HTTP_201_CREATED)
def create_mapping(
    payload: schemas.MappingCreate,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    try:
        return mappings.create_mapping(
            db, company.id, master_sku=payload.master_sku, product_ids=payload.product_ids, name=payload.name
        )
    except _MAPPING_ERRORS as e:
        _raise_http(e)


@router.get("/suggestions", response_model=List[schemas.MappingSuggestionOut])
def get_suggestions(
    store_ids: Optional[List[UUID]] = Query(default=None),
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    """Groups of unmapped products that look like the same item across stores."""
    return mappings.suggest_mappings(db, company.id, store_ids=store_ids)


@router.get("/suggestions/dismissed", response_model=List[schemas.DismissedSuggestionOut])
def list_dismissed(
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    return mappings.list_dismissed_suggestions(db, company.id)


@router.post("/suggestions/dismiss", response_model=schemas.MessageResponse)
def dismiss_suggestion(
    payload: schemas.SuggestionDismiss,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    try:
        mappings.dismiss_suggestion(db, company.id, payload.suggestion_key)
    except MappingValidationError as e:
        _raise_http(e)
    return schemas.MessageResponse(detail="Suggestion dismissed")


@router.post("/suggestions/restore", response_model=schemas.MessageResponse)
def restore_suggestion(
    payload: schemas.SuggestionDismiss,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    if not mappings.restore_suggestion(db, company.id, payload.suggestion_key):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Suggestion was not dismissed")
    return schemas.MessageResponse(detail="Suggestion restored")


@router.post("/auto-match", response_model=schemas.AutoMatchResponse)
def auto_match(
    payload: schemas.AutoMatchRequest = schemas.AutoMatchRequest(),
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    """Create a mapping for every current suggestion."""
    result = mappings.auto_match(db, company.id, store_ids=payload.store_ids)
    return schemas.AutoMatchResponse(**result)


@router.get("/search", response_model=List[schemas.ProductSearchHitOut])
def search_products(
    q: str = Query(description="Name or SKU fragment (2+ characters)"),
    store_id: Optional[UUID] = Query(default=None),
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    return mappings.search_products(db, company.id, q, store_id=store_id)


@router.get("/consolidated-inventory", response_model=List[schemas.ConsolidatedInventoryRowOut])
def consolidated_inventory(
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    return mappings.get_consolidated_inventory(db, company.id)


# =============================================================================
# Single mapping
# =============================================================================

@router.get("/{mapping_id}", response_model=schemas.MappingOut)
def get_mapping(
    mapping_id: UUID,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    try:
        return mappings.get_mapping(db, company.id, mapping_id)
    except MappingNotFoundError as e:
        _raise_http(e)


@router.put("/{mapping_id}", response_model=schemas.MappingOut)
def update_mapping(
    mapping_id: UUID,
    payload: schemas.MappingUpdate,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    try:
        return mappings.update_mapping(
            db, company.id, mapping_id, master_sku=payload.master_sku, name=payload.name
        )
    except _MAPPING_ERRORS as e:
        _raise_http(e)


@router.delete("/{mapping_id}", response_model=schemas.MessageResponse)
def delete_mapping(
    mapping_id: UUID,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    try:
        mappings.delete_mapping(db, company.id, mapping_id)
    except MappingNotFoundError as e:
        _raise_http(e)
    return schemas.MessageResponse(detail="Mapping deleted")


@router.post("/{mapping_id}/products", response_model=schemas.MappingOut)
def add_products(
    mapping_id: UUID,
    payload: schemas.MappingProducts,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    try:
        return mappings.add_products_to_mapping(db, company.id, mapping_id, payload.product_ids)
    except _MAPPING_ERRORS as e:
        _raise_http(e)


@router.post("/{mapping_id}/products/remove", response_model=schemas.MappingOut)
def remove_products(
    mapping_id: UUID,
    payload: schemas.MappingProducts,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    try:
        return mappings.remove_products_from_mapping(db, company.id, mapping_id, payload.product_ids)
    except _MAPPING_ERRORS as e:
        _raise_http(e)


@router.put("/{mapping_id}/source", response_model=schemas.MappingOut)
def set_source(
    mapping_id: UUID,
    payload: schemas.MappingSource,
    company: Company = Depends(get_company),
    db: Session = Depends(get_db),
):
    try:
        return mappings.set_source_item(db, company.id, mapping_id, payload.product_id)
    except _MAPPING_ERRORS as e:
        _raise_http(e)
