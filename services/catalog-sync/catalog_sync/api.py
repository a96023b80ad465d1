"""
HTTP application: the 1C exchange endpoint, the storefront catalog, cart and
order endpoints, the JSON sync API and operator maintenance endpoints.
"""

import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException

from catalog_sync.backend import CatalogBackend, build_backend
from catalog_sync.config import Settings
from catalog_sync.exceptions import (
    AuthenticationError,
    ConfigurationError,
    StorageError,
    SyncError,
    ValidationError,
)
from catalog_sync.exchange import ExchangeHandler, ExchangeRequest
from catalog_sync.images import ImagePipeline, ImageUrlResolver
from catalog_sync.importer import CatalogImporter
from catalog_sync.logging_config import configure_logging, set_correlation_id
from catalog_sync.maintenance import MaintenanceService
from catalog_sync.models import (
    CartItemCreate,
    InventoryUpdate,
    OrderCreate,
    OrderStatusUpdate,
    ProductCreate,
    SyncProductPayload,
)
from catalog_sync.object_store import LocalObjectStore, ObjectStore, build_media_store
from catalog_sync.reconciler import ReconciliationJob
from catalog_sync.staging import StagingArea
from catalog_sync.store import CatalogStore

logger = logging.getLogger(__name__)

CATALOG_CACHE_CONTROL = "public, max-age=60, s-maxage=300"


@dataclass
class Services:
    """Wired components of one running service."""
    settings: Settings
    store: CatalogStore
    media_store: object
    resolver: ImageUrlResolver
    pipeline: ImagePipeline
    staging: StagingArea
    importer: CatalogImporter
    exchange: ExchangeHandler
    reconciler: ReconciliationJob
    maintenance: MaintenanceService


def build_services(
    settings: Settings,
    backend: Optional[CatalogBackend] = None,
    object_store: Optional[ObjectStore] = None,
) -> Services:
    """
    Wire every component from settings.

    Args:
        settings: Service settings
        backend: Row backend (default: selected by ``settings.backend``)
        object_store: Remote object store (default: built from settings, if configured)
    """
    media_store = object_store if object_store is not None else build_media_store(settings)
    remote = None if isinstance(media_store, LocalObjectStore) else media_store

    store = CatalogStore(backend or build_backend(settings), cache_ttl=settings.cache_ttl_seconds)
    resolver = ImageUrlResolver(media_store, prefix=settings.object_store_prefix)
    pipeline = ImagePipeline.from_settings(media_store, settings)
    staging = StagingArea(settings.exchange_dir, remote=remote)
    importer = CatalogImporter(store, resolver)
    exchange = ExchangeHandler(settings, store, importer, staging, pipeline)
    reconciler = ReconciliationJob(importer, staging, store, interval=settings.reconcile_interval_seconds)
    maintenance = MaintenanceService(store, pipeline, reconciler, batch_limit=settings.batch_limit)

    return Services(
        settings=settings,
        store=store,
        media_store=media_store,
        resolver=resolver,
        pipeline=pipeline,
        staging=staging,
        importer=importer,
        exchange=exchange,
        reconciler=reconciler,
        maintenance=maintenance,
    )


def _key_matches(provided: Optional[str], expected: str) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message, **extra})


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Service settings (default: from environment)
        services: Pre-wired components (default: built from settings)
    """
    if services is None:
        settings = settings or Settings.from_env()
        services = build_services(settings)
    settings = services.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.reconcile_interval_seconds > 0:
            services.reconciler.start()
        yield
        await services.reconciler.stop()

    app = FastAPI(title="Catalog Sync API", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    # Error handlers

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
        return _error(400, first.get("msg", "Invalid request"), field=".".join(loc))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError):
        if isinstance(exc, ValidationError):
            return _error(400, exc.message, field=exc.field_name)
        if isinstance(exc, AuthenticationError):
            return _error(401, exc.message, error=exc.__class__.__name__)
        status_code = 503 if isinstance(exc, StorageError) else 500
        logger.error(f"Request failed: {exc.message}", extra={"extra_data": exc.to_dict()})
        return _error(status_code, exc.message, error=exc.__class__.__name__)

    # Credentials

    def require_admin(
        x_admin_key: Optional[str] = Header(None),
        key: Optional[str] = Query(None),
    ) -> None:
        if not settings.admin_api_key:
            raise HTTPException(status_code=403, detail="Admin API is disabled")
        if not _key_matches(x_admin_key or key, settings.admin_api_key):
            raise HTTPException(status_code=401, detail="Unauthorized")

    def require_sync_key(x_api_key: Optional[str] = Header(None)) -> None:
        if not settings.sync_api_key:
            raise HTTPException(status_code=403, detail="Sync API is disabled")
        if not _key_matches(x_api_key, settings.sync_api_key):
            raise HTTPException(status_code=401, detail="Unauthorized")

    # Health

    @app.get("/health")
    async def health():
        return {"status": "ok", "backend": settings.backend, "objectStore": settings.object_store_enabled}

    # 1C exchange

    @app.api_route("/api/1c-exchange", methods=["GET", "POST"])
    async def exchange(
        request: Request,
        exchange_type: str = Query("", alias="type"),
        mode: str = Query(""),
        filename: Optional[str] = Query(None),
    ):
        authorization = request.headers.get("Authorization")
        # Credentials are checked before the body is buffered
        try:
            services.exchange.authenticate(authorization)
        except AuthenticationError as e:
            result = services.exchange.unauthorized(e, mode)
        else:
            body = await request.body() if request.method == "POST" else b""
            result = await services.exchange.handle(
                ExchangeRequest(
                    method=request.method,
                    type=exchange_type,
                    mode=mode,
                    filename=filename,
                    body=body,
                    authorization=authorization,
                )
            )
        return Response(
            content=result.body,
            status_code=result.status,
            media_type=result.content_type,
            headers=result.headers,
        )

    # Storefront catalog

    @app.get("/api/products")
    async def list_products(
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        category: Optional[str] = None,
        subcategory: Optional[str] = None,
        sale: bool = False,
    ):
        products, pagination = await services.store.list_products(
            category=category,
            subcategory=subcategory,
            sale=sale,
            page=page,
            limit=limit,
        )
        return JSONResponse(
            content={"products": [p.to_api() for p in products], "pagination": pagination},
            headers={"Cache-Control": CATALOG_CACHE_CONTROL},
        )

    @app.get("/api/products/{product_id}")
    async def get_product(product_id: int):
        product = await services.store.get_product(product_id)
        if product is None:
            return _error(404, "Product not found")
        return JSONResponse(content=product.to_api(), headers={"Cache-Control": CATALOG_CACHE_CONTROL})

    @app.post("/api/products", status_code=201)
    async def create_product(data: ProductCreate):
        product = await services.store.create_product(data)
        services.store.clear_cache()
        return product.to_api()

    # Cart

    @app.get("/api/cart/{session_id}")
    async def get_cart(session_id: str):
        return [line.to_api() for line in await services.store.get_cart_items(session_id)]

    @app.post("/api/cart")
    async def add_to_cart(data: CartItemCreate):
        item = await services.store.add_to_cart(data)
        return item.model_dump(mode="json", by_alias=True)

    @app.delete("/api/cart/{session_id}/items/{product_id}")
    async def remove_from_cart(
        session_id: str,
        product_id: int,
        size: Optional[str] = None,
        color: Optional[str] = None,
    ):
        removed = await services.store.remove_from_cart(session_id, product_id, size, color)
        return {"removed": removed}

    @app.delete("/api/cart/{session_id}")
    async def clear_cart(session_id: str):
        return {"removed": await services.store.clear_cart(session_id)}

    # Orders

    @app.post("/api/orders", status_code=201)
    async def create_order(data: OrderCreate):
        order = await services.store.create_order(data)
        return order.to_api()

    # JSON sync API

    @app.post("/api/sync/products", dependencies=[Depends(require_sync_key)])
    async def sync_products(payloads: list[SyncProductPayload]):
        results = await services.importer.apply_sync_products(payloads)
        return {"success": True, "results": results}

    @app.post("/api/sync/inventory", dependencies=[Depends(require_sync_key)])
    async def sync_inventory(updates: list[InventoryUpdate]):
        results = await services.importer.apply_inventory(updates)
        return {"success": True, "results": results}

    @app.get("/api/sync/orders", dependencies=[Depends(require_sync_key)])
    async def sync_orders():
        orders = await services.store.list_orders(settings.sale_export_statuses)
        return [order.to_api() for order in orders]

    @app.patch("/api/sync/orders/{order_id}", dependencies=[Depends(require_sync_key)])
    async def sync_order_status(order_id: int, data: OrderStatusUpdate):
        order = await services.store.update_order_status(order_id, data.status)
        if order is None:
            return _error(404, "Order not found")
        return order.to_api()

    # Maintenance

    @app.post("/api/admin/images/convert", dependencies=[Depends(require_admin)])
    async def convert_images(limit: Optional[int] = Query(None, ge=1, le=500)):
        return await services.maintenance.convert_images(limit)

    @app.post("/api/admin/images/thumbnails", dependencies=[Depends(require_admin)])
    async def generate_thumbnails(limit: Optional[int] = Query(None, ge=1, le=500)):
        return await services.maintenance.generate_thumbnails(limit)

    @app.post("/api/admin/categories/backfill", dependencies=[Depends(require_admin)])
    async def backfill_categories():
        return await services.maintenance.backfill_categories()

    @app.post("/api/admin/resync", dependencies=[Depends(require_admin)])
    async def force_resync(source: Optional[str] = None):
        try:
            return await services.maintenance.force_resync(source)
        except ValueError as e:
            raise ValidationError(message=str(e), field_name="source", actual=source)
        except ConfigurationError as e:
            raise ValidationError(message=e.message, field_name="source", actual=source)

    @app.post("/api/admin/cache/clear", dependencies=[Depends(require_admin)])
    async def clear_cache():
        services.store.clear_cache()
        return {"status": "cleared"}

    if isinstance(services.media_store, LocalObjectStore):
        app.mount(
            "/media",
            StaticFiles(directory=str(services.media_store.root), check_dir=False),
            name="media",
        )

    return app


def run() -> None:
    """Entry point: configure logging and serve with uvicorn."""
    settings = Settings.from_env()
    configure_logging(
        level=settings.log_level,
        service_name="catalog-sync",
        json_format=settings.log_format == "json",
    )
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
