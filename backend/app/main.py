"""FastAPI application entrypoint.

Configures CORS, Sentry, the admin panel, includes routers, and exposes a
healthcheck endpoint.
"""

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqladmin import Admin, ModelView
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware
import logging
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .authentication import SimpleAuth
from .database import engine, get_db, get_sync_session
from .deps import get_settings
from .routers import stores as stores_router
from .routers import product_mappings as product_mappings_router
from .routers import inventory as inventory_router
from .services.sync_state import SYNC_CLAIM_TIMEOUT, reset_stuck_syncs
from .telemetry import init_sentry
from .workers.arq_enqueue import reset_arq_pool
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


# SQLAdmin ModelView classes for each model
# WHEN MAKING CHANGES TO THESE CLASSES, MAKE SURE TO UPDATE THE __str__ METHODS IN THE MODELS.PY FILE

class CompanyAdmin(ModelView, model=models.Company):
    column_list = [models.Company.id, models.Company.name, models.Company.created_at]
    form_columns = ["name"]
    column_searchable_list = ["name"]
    column_sortable_list = ["name", "created_at"]
    name = "Company"
    name_plural = "Companies"
    icon = "fa-solid fa-building"


class StoreAdmin(ModelView, model=models.Store):
    """Admin view for Store model.

    Credentials are encrypted and never shown or edited here; reconnect the
    store through the API to change them.
    """
    column_list = [
        models.Store.id,
        models.Store.name,
        models.Store.url,
        models.Store.company,
        models.Store.status,
        models.Store.is_syncing,
        models.Store.sync_step,
        models.Store.last_sync_at,
    ]
    column_details_exclude_list = ["consumer_key_enc", "consumer_secret_enc"]
    form_columns = ["name", "status", "currency", "commission_rate", "shipping_cost"]
    column_searchable_list = ["name", "url"]
    column_sortable_list = ["name", "status", "last_sync_at"]
    name = "Store"
    name_plural = "Stores"
    icon = "fa-solid fa-store"


class ProductAdmin(ModelView, model=models.Product):
    column_list = [
        models.Product.id,
        models.Product.store,
        models.Product.wc_product_id,
        models.Product.sku,
        models.Product.name,
        models.Product.product_type,
        models.Product.stock_quantity,
        models.Product.stock_status,
        models.Product.synced_at,
    ]
    # Remote-owned fields are overwritten by the next sync; only local ones are editable
    form_columns = ["purchase_price"]
    column_searchable_list = ["sku", "name"]
    column_sortable_list = ["name", "stock_quantity", "synced_at"]
    name = "Product"
    name_plural = "Products"
    icon = "fa-solid fa-box"


class ProductVariationAdmin(ModelView, model=models.ProductVariation):
    column_list = [
        models.ProductVariation.id,
        models.ProductVariation.product,
        models.ProductVariation.wc_variation_id,
        models.ProductVariation.sku,
        models.ProductVariation.attribute_string,
        models.ProductVariation.stock_quantity,
        models.ProductVariation.stock_status,
    ]
    form_columns = ["purchase_price"]
    column_searchable_list = ["sku"]
    name = "Variation"
    name_plural = "Variations"
    icon = "fa-solid fa-boxes-stacked"


class OrderAdmin(ModelView, model=models.Order):
    column_list = [
        models.Order.id,
        models.Order.store,
        models.Order.order_number,
        models.Order.status,
        models.Order.total,
        models.Order.currency,
        models.Order.order_date,
    ]
    can_create = False
    can_edit = False
    column_searchable_list = ["order_number", "customer_email"]
    column_sortable_list = ["order_date", "total", "status"]
    name = "Order"
    name_plural = "Orders"
    icon = "fa-solid fa-receipt"


class ProductMappingAdmin(ModelView, model=models.ProductMapping):
    column_list = [
        models.ProductMapping.id,
        models.ProductMapping.company,
        models.ProductMapping.master_sku,
        models.ProductMapping.name,
        models.ProductMapping.created_at,
    ]
    form_columns = ["master_sku", "name"]
    column_searchable_list = ["master_sku", "name"]
    name = "Product Mapping"
    name_plural = "Product Mappings"
    icon = "fa-solid fa-link"


def create_app() -> FastAPI:
    app = FastAPI(
        title="StoreSync API",
        description="""
        StoreSync keeps a local mirror of several WooCommerce stores.

        This API provides endpoints for:
        - Connecting stores and testing their REST credentials
        - Starting a background sync and polling its progress
        - Linking the same product across stores (product mappings)
        - Editing stock (pushed to the store) and purchase prices (local)

        ## Data Model

        - **Companies**: Tenants owning stores and mappings
        - **Stores**: Connected WooCommerce storefronts
        - **Products / Variations / Orders**: Local mirror of each store
        - **Product Mappings**: One master SKU across several stores
        """,
        version="1.0.0",
    )

    init_sentry()

    # Trust X-Forwarded-Proto from the load balancer
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()

    if settings.ADMIN_SECRET_KEY == "supersecretkey-change-this-in-production":
        logger.warning("[ADMIN] Using default admin secret key. Set ADMIN_SECRET_KEY for production.")

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.ADMIN_SECRET_KEY
    )

    allowed_origins = settings.cors_origins
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(stores_router.router)
    app.include_router(product_mappings_router.router)
    app.include_router(inventory_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="""
        Health check endpoint for load balancers.

        Does not require authentication. Reports the database as
        "error" (with status "degraded") when a trivial query fails.
        """
    )
    def health(db: Session = Depends(get_db)):
        try:
            db.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error("[HEALTH] Database check failed: %s", e)
            return schemas.HealthResponse(status="degraded", checks={"database": "error"})
        return schemas.HealthResponse(status="ok", checks={"database": "ok"})

    @app.on_event("startup")
    async def startup_event():
        """Release stores left mid-sync by a previous process.

        In-process syncs all die with this process, so every claim is
        released. Worker-run syncs outlive it; then only claims past the job
        timeout are.
        """
        older_than = SYNC_CLAIM_TIMEOUT if settings.SYNC_IN_WORKER else None
        try:
            with get_sync_session() as db:
                reset_stuck_syncs(db, older_than=older_than)
        except SQLAlchemyError as e:
            # Don't block startup; the next restart retries
            logger.warning("[STARTUP] Could not reset stuck syncs: %s", e)

    @app.on_event("shutdown")
    async def shutdown_event():
        await reset_arq_pool()

    authentication_backend = SimpleAuth(secret_key=settings.ADMIN_SECRET_KEY)

    admin = Admin(
        app,
        engine,
        title="StoreSync Admin",
        authentication_backend=authentication_backend
    )

    admin.add_view(CompanyAdmin)
    admin.add_view(StoreAdmin)
    admin.add_view(ProductAdmin)
    admin.add_view(ProductVariationAdmin)
    admin.add_view(OrderAdmin)
    admin.add_view(ProductMappingAdmin)

    return app


app = create_app()
