"""Store connection management.

WHAT:
    Create, list, update and delete connected WooCommerce stores, and test
    their REST credentials before anything is persisted.

WHY:
    A store row is only created after a successful connection test, with the
    consumer key/secret encrypted at rest. Later connection tests move the
    store between ACTIVE and ERROR so the dashboard can flag broken stores.

REFERENCES:
    - app/services/woocommerce_client.py (connection test)
    - app/security.py (credential encryption)
    - app/routers/stores.py (HTTP surface)
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from app.deps import get_settings
from app.models import Store, StoreStatusEnum, utcnow
from app.security import decrypt_secret, encrypt_secret
from app.services.woocommerce_client import WooCommerceClient, normalize_store_url

logger = logging.getLogger(__name__)


class StoreNotFoundError(Exception):
    """Store does not exist or belongs to another company."""


class StoreValidationError(Exception):
    """Input rejected, including a failed connection test."""


class StoreConflictError(Exception):
    """Duplicate store URL, or the store is busy syncing."""


class StoreCredentialsError(Exception):
    """Stored credentials cannot be decrypted."""


# =============================================================================
# HELPERS
# =============================================================================

def make_client(url: str, consumer_key: str, consumer_secret: str) -> WooCommerceClient:
    settings = get_settings()
    return WooCommerceClient(
        url,
        consumer_key,
        consumer_secret,
        timeout=settings.WOO_REQUEST_TIMEOUT_SECONDS,
    )


def store_credentials(store: Store) -> Tuple[str, str]:
    """Decrypt the store's consumer key and secret.

    Raises:
        StoreCredentialsError: If either value cannot be decrypted.
    """
    try:
        key = decrypt_secret(store.consumer_key_enc, context=f"store:{store.id}:key")
        secret = decrypt_secret(store.consumer_secret_enc, context=f"store:{store.id}:secret")
    except ValueError as e:
        raise StoreCredentialsError(
            "Stored API credentials could not be decrypted. Re-enter the Consumer Key and Secret."
        ) from e
    return key, secret


def client_for_store(store: Store) -> WooCommerceClient:
    key, secret = store_credentials(store)
    return make_client(store.url, key, secret)


def _validate_credentials(url: str, consumer_key: str, consumer_secret: str) -> None:
    if not url or not url.strip():
        raise StoreValidationError("Store URL is required")
    if not consumer_key or not consumer_key.strip():
        raise StoreValidationError("Consumer Key is required")
    if not consumer_secret or not consumer_secret.strip():
        raise StoreValidationError("Consumer Secret is required")


# =============================================================================
# CONNECTION TESTS
# =============================================================================

async def test_connection_with_credentials(url: str, consumer_key: str, consumer_secret: str) -> Dict[str, Any]:
    """Test credentials before a store exists. Never raises for remote failures.

    Returns:
        {"success": bool, "error"?: str}
    """
    _validate_credentials(url, consumer_key, consumer_secret)
    client = make_client(normalize_store_url(url), consumer_key.strip(), consumer_secret.strip())
    return await client.test_connection()


async def test_store_connection(db: Session, company_id: UUID, store_id: UUID) -> Dict[str, Any]:
    """Re-test a persisted store and record the outcome on its status.

    sync_error is only written when no sync is running, since a running sync
    owns that field.
    """
    store = get_store(db, company_id, store_id)

    try:
        client = client_for_store(store)
    except StoreCredentialsError as e:
        result: Dict[str, Any] = {"success": False, "error": str(e)}
    else:
        result = await client.test_connection()

    store.status = StoreStatusEnum.active if result["success"] else StoreStatusEnum.error
    if not store.is_syncing:
        store.sync_error = None if result["success"] else result.get("error")
    db.commit()

    logger.info(
        "[STORE] Connection test for %s: success=%s", store.id, result["success"]
    )
    return result


# =============================================================================
# CRUD
# =============================================================================

def list_stores(db: Session, company_id: UUID) -> List[Store]:
    return (
        db.query(Store)
        .filter(Store.company_id == company_id)
        .order_by(Store.created_at.asc())
        .all()
    )


def get_store(db: Session, company_id: UUID, store_id: UUID) -> Store:
    store = (
        db.query(Store)
        .filter(Store.id == store_id, Store.company_id == company_id)
        .first()
    )
    if not store:
        raise StoreNotFoundError(f"Store {store_id} not found")
    return store


def _ensure_unique_url(db: Session, company_id: UUID, url: str, exclude_id: Optional[UUID] = None) -> None:
    query = db.query(Store).filter(Store.company_id == company_id, Store.url == url)
    if exclude_id is not None:
        query = query.filter(Store.id != exclude_id)
    if query.first():
        raise StoreConflictError("A store with this URL is already connected")


async def create_store(
    db: Session,
    company_id: UUID,
    name: str,
    url: str,
    consumer_key: str,
    consumer_secret: str,
    currency: str = "USD",
    commission_rate: Decimal = Decimal("0"),
    shipping_cost: Decimal = Decimal("0"),
) -> Store:
    """Connect a new store after a successful connection test.

    Raises:
        StoreValidationError: Missing fields or the connection test failed
        StoreConflictError: The company already connected this URL
    """
    if not name or not name.strip():
        raise StoreValidationError("Store name is required")
    _validate_credentials(url, consumer_key, consumer_secret)

    normalized_url = normalize_store_url(url)
    _ensure_unique_url(db, company_id, normalized_url)

    result = await test_connection_with_credentials(normalized_url, consumer_key, consumer_secret)
    if not result["success"]:
        raise StoreValidationError(f"Connection test failed: {result.get('error')}")

    store = Store(
        company_id=company_id,
        name=name.strip(),
        url=normalized_url,
        consumer_key_enc=encrypt_secret(consumer_key.strip(), context=f"{normalized_url}:key"),
        consumer_secret_enc=encrypt_secret(consumer_secret.strip(), context=f"{normalized_url}:secret"),
        status=StoreStatusEnum.active,
        currency=currency.upper(),
        commission_rate=commission_rate,
        shipping_cost=shipping_cost,
    )
    db.add(store)
    db.commit()
    db.refresh(store)

    logger.info("[STORE] Connected store %s (%s) for company %s", store.id, normalized_url, company_id)
    return store


async def update_store(db: Session, company_id: UUID, store_id: UUID, changes: Dict[str, Any]) -> Store:
    """Apply a partial update.

    Changing the URL or either credential re-runs the connection test with the
    merged values and re-encrypts the credentials.
    """
    store = get_store(db, company_id, store_id)

    new_url = normalize_store_url(changes["url"]) if changes.get("url") else store.url
    new_key = changes.get("consumer_key")
    new_secret = changes.get("consumer_secret")

    if new_url != store.url or new_key or new_secret:
        if new_url != store.url:
            _ensure_unique_url(db, company_id, new_url, exclude_id=store.id)
        current_key, current_secret = store_credentials(store) if not (new_key and new_secret) else (None, None)
        key = new_key or current_key
        secret = new_secret or current_secret
        result = await test_connection_with_credentials(new_url, key, secret)
        if not result["success"]:
            raise StoreValidationError(f"Connection test failed: {result.get('error')}")
        store.url = new_url
        store.consumer_key_enc = encrypt_secret(key.strip(), context=f"{new_url}:key")
        store.consumer_secret_enc = encrypt_secret(secret.strip(), context=f"{new_url}:secret")
        store.status = StoreStatusEnum.active

    if changes.get("name") is not None:
        if not changes["name"].strip():
            raise StoreValidationError("Store name cannot be empty")
        store.name = changes["name"].strip()
    if changes.get("currency") is not None:
        store.currency = changes["currency"].upper()
    if changes.get("commission_rate") is not None:
        store.commission_rate = changes["commission_rate"]
    if changes.get("shipping_cost") is not None:
        store.shipping_cost = changes["shipping_cost"]
    if changes.get("status") is not None:
        try:
            status = StoreStatusEnum(changes["status"])
        except ValueError:
            raise StoreValidationError(f"Unknown store status: {changes['status']!r}")
        if status == StoreStatusEnum.error:
            raise StoreValidationError("ERROR status is set by connection tests, not manually")
        store.status = status

    store.updated_at = utcnow()
    db.commit()
    db.refresh(store)
    logger.info("[STORE] Updated store %s (%s)", store.id, sorted(k for k, v in changes.items() if v is not None))
    return store


def delete_store(db: Session, company_id: UUID, store_id: UUID) -> None:
    """Disconnect a store; products, variations, orders and mapping items cascade.

    Raises:
        StoreConflictError: While a sync is running for the store.
    """
    store = get_store(db, company_id, store_id)
    if store.is_syncing:
        raise StoreConflictError("Store is syncing. Wait for the sync to finish before disconnecting it.")

    db.delete(store)
    db.commit()
    logger.info("[STORE] Deleted store %s for company %s", store_id, company_id)
