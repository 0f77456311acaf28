"""Pytest configuration for app integration tests

WHAT: Provides shared fixtures for HTTP endpoint and service-level tests
WHY: Ensures consistent test setup, database isolation, and fake storefronts
REFERENCES:
    - app/main.py: FastAPI application
    - app/database.py: Database configuration
    - app/services/store_sync_service.py: background sync (own sessions)
"""

import pytest
import os
from decimal import Decimal
from typing import Any, Dict, Generator, List, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

# Ensure backend is in path
import sys
from pathlib import Path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
# Must be URL-safe base64-encoded 32-byte string (app.security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("SCHEDULED_SYNC_ENABLED", "true")


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory database shared by every session of a test.

    StaticPool keeps a single connection, so the background sync (which opens
    its own sessions) sees the rows the test inserted.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from app.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    """Session factory handed to code that opens its own sessions."""
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(session_factory):
    """Create FastAPI test application."""
    from app.main import create_app

    test_app = create_app()

    from app.database import get_db

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    test_app.dependency_overrides[get_db] = override_get_db

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


# ============================================================================
# Model Fixtures
# ============================================================================

def _create_store(db: Session, company, name: str, url: str, **overrides):
    from app.models import Store, StoreStatusEnum
    from app.security import encrypt_secret

    store = Store(
        company_id=company.id,
        name=name,
        url=url,
        consumer_key_enc=encrypt_secret("ck_test", context="test"),
        consumer_secret_enc=encrypt_secret("cs_test", context="test"),
        status=overrides.pop("status", StoreStatusEnum.active),
        **overrides,
    )
    db.add(store)
    db.commit()
    db.refresh(store)
    return store


@pytest.fixture
def company(test_db_session):
    from app.models import Company

    company = Company(name="Test Company")
    test_db_session.add(company)
    test_db_session.commit()
    test_db_session.refresh(company)
    return company


@pytest.fixture
def other_company(test_db_session):
    """Second tenant (for isolation tests)."""
    from app.models import Company

    company = Company(name="Other Company")
    test_db_session.add(company)
    test_db_session.commit()
    test_db_session.refresh(company)
    return company


@pytest.fixture
def store(test_db_session, company):
    return _create_store(test_db_session, company, "Main Shop", "https://main.example.com")


@pytest.fixture
def second_store(test_db_session, company):
    return _create_store(test_db_session, company, "Outlet", "https://outlet.example.com")


@pytest.fixture
def make_product(test_db_session):
    """Factory for local products (as if already synced)."""
    from app.models import Product
    from app.services.reconciliation import derive_stock_status

    def _make(store, wc_product_id: int, name: str, sku: Optional[str] = None, stock: int = 0,
              price: Optional[str] = "10.00", product_type: str = "simple"):
        product = Product(
            store_id=store.id,
            wc_product_id=wc_product_id,
            name=name,
            sku=sku,
            product_type=product_type,
            price=Decimal(price) if price is not None else None,
            stock_quantity=stock,
            stock_status=derive_stock_status(stock),
        )
        test_db_session.add(product)
        test_db_session.commit()
        test_db_session.refresh(product)
        return product

    return _make


# ============================================================================
# Fake storefront
# ============================================================================

class FakeWooClient:
    """In-memory stand-in for WooCommerceClient used by sync tests.

    Records are served in pages of `page_size`. `fail_on` names a method
    ("ping", "get_products", "get_variations", "get_orders") that raises
    `error` instead of answering.
    """

    def __init__(
        self,
        products: Optional[List[Dict[str, Any]]] = None,
        variations: Optional[Dict[int, List[Dict[str, Any]]]] = None,
        orders: Optional[List[Dict[str, Any]]] = None,
        page_size: int = 100,
        fail_on: Optional[str] = None,
        error: Optional[Exception] = None,
    ):
        self.products = products or []
        self.variations = variations or {}
        self.orders = orders or []
        self.page_size = page_size
        self.fail_on = fail_on
        self.error = error
        self.calls: List[str] = []
        self.stock_updates: List[tuple] = []

    def _maybe_fail(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_on == name:
            raise self.error

    def _page(self, records: List[Dict[str, Any]], page: int):
        from app.services.woocommerce_client import RemotePage

        start = (page - 1) * self.page_size
        total_pages = max(1, -(-len(records) // self.page_size))
        return RemotePage(
            records=records[start:start + self.page_size],
            page=page,
            total_pages=total_pages,
            total=len(records),
        )

    async def ping(self) -> None:
        self._maybe_fail("ping")

    async def test_connection(self) -> Dict[str, Any]:
        from app.services.woocommerce_client import RemoteStoreError, describe_remote_error

        try:
            await self.ping()
        except RemoteStoreError as e:
            return {"success": False, "error": describe_remote_error(e)}
        return {"success": True}

    async def get_products(self, page: int = 1, per_page: int = 100):
        self._maybe_fail("get_products")
        return self._page(self.products, page)

    async def get_variations(self, wc_product_id: int, page: int = 1, per_page: int = 100):
        self._maybe_fail("get_variations")
        return self._page(self.variations.get(wc_product_id, []), page)

    async def get_orders(self, page: int = 1, per_page: int = 100, after=None, status=None):
        self._maybe_fail("get_orders")
        records = [o for o in self.orders if status is None or o.get("status") == status]
        return self._page(records, page)

    async def update_product_stock(self, wc_product_id: int, quantity: int) -> Dict[str, Any]:
        self._maybe_fail("update_product_stock")
        self.stock_updates.append((wc_product_id, quantity))
        return {"id": wc_product_id, "stock_quantity": quantity}

    async def update_variation_stock(self, wc_product_id: int, wc_variation_id: int, quantity: int) -> Dict[str, Any]:
        self._maybe_fail("update_variation_stock")
        self.stock_updates.append((wc_product_id, wc_variation_id, quantity))
        return {"id": wc_variation_id, "stock_quantity": quantity}


@pytest.fixture
def fake_client_cls():
    return FakeWooClient


def _remote_product(remote_id: int, name: str, sku: str = "", stock: Any = 0, price: str = "10.00",
                   product_type: str = "simple", status: str = "publish") -> Dict[str, Any]:
    """WooCommerce-shaped product payload."""
    return {
        "id": remote_id,
        "name": name,
        "sku": sku,
        "type": product_type,
        "status": status,
        "price": price,
        "stock_quantity": stock,
        "stock_status": "instock",
        "manage_stock": True,
        "images": [{"src": f"https://cdn.example.com/{remote_id}.jpg"}],
    }


def _remote_order(remote_id: int, status: str = "processing", total: str = "25.00",
                 created: str = "2026-10-01T10:00:00") -> Dict[str, Any]:
    """WooCommerce-shaped order payload."""
    return {
        "id": remote_id,
        "number": str(remote_id),
        "status": status,
        "currency": "EUR",
        "total": total,
        "total_tax": "4.00",
        "shipping_total": "5.00",
        "discount_total": "0.00",
        "date_created": created,
        "date_created_gmt": created,
        "payment_method_title": "Credit card",
        "billing": {"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com"},
        "line_items": [
            {"quantity": 2, "subtotal": "8.00"},
            {"quantity": 1, "subtotal": "8.00"},
        ],
    }


@pytest.fixture
def remote_product():
    return _remote_product


@pytest.fixture
def remote_order():
    return _remote_order
