"""
FastAPI application exposing the catalog, the synchronized cart, checkout and logistics.
"""
import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cartsync.artifacts import ArtifactStore, FileArtifactStore, MemoryArtifactStore, PendingOrderStore
from cartsync.cache import TTLCache
from cartsync.cart_service import LOGIN_REQUIRED_MESSAGE, CartService
from cartsync.catalog import CatalogResolver, CatalogService
from cartsync.checkout_service import CheckoutService
from cartsync.config import Config
from cartsync.document_store import DocumentStore
from cartsync.exceptions import (
    CartException,
    CartPersistenceError,
    CatalogItemNotFoundError,
    CategoryNotFoundError,
    CheckoutPersistenceError,
    DocumentStoreError,
    IdentityRequiredError,
    LogisticsError,
    OrderNotFoundError,
    OrderVerificationError,
    PaymentGatewayError,
    PreconditionError,
    ShipmentNotFoundError,
    ValidationError,
)
from cartsync.logistics import DistanceCalculator, LogisticsService
from cartsync.middleware import MetricsMiddleware
from cartsync.models import (
    CartItemRequest,
    CartResponse,
    CatalogItem,
    CatalogItemInput,
    CatalogItemUpdate,
    Category,
    CategoryRequest,
    CheckoutHandle,
    Identity,
    Notification,
    Order,
    PaymentRequest,
    QuantityRequest,
    RemoveItemRequest,
    ShipmentRequest,
    ShippingQuoteRequest,
    ShippingRate,
    TrackingInfo,
)
from cartsync.notifications import Notifier
from cartsync.payment_client import PaymentClient
from cartsync.redis_client import get_document_store
from cartsync.session import CartContextRegistry

logger = logging.getLogger(__name__)

# Most specific class first
ERROR_STATUS = [
    (IdentityRequiredError, 401, "Authentication required"),
    (PreconditionError, 400, "Precondition failed"),
    (ValidationError, 400, "Validation error"),
    (CatalogItemNotFoundError, 404, "Item not found"),
    (CategoryNotFoundError, 404, "Category not found"),
    (OrderNotFoundError, 404, "Order not found"),
    (ShipmentNotFoundError, 404, "Shipment not found"),
    (LogisticsError, 400, "Logistics error"),
    (PaymentGatewayError, 502, "Payment gateway error"),
    (OrderVerificationError, 500, "Order not confirmed"),
    (CartPersistenceError, 503, "Service unavailable"),
    (CheckoutPersistenceError, 503, "Service unavailable"),
    (DocumentStoreError, 503, "Service unavailable"),
]


class Services:
    """Everything the handlers need, built once per application"""

    def __init__(
        self,
        store: DocumentStore,
        payment_client: PaymentClient,
        artifacts: ArtifactStore,
        distance_calculator: Optional[DistanceCalculator] = None
    ):
        self.store = store
        self.notifier = Notifier()
        cache = TTLCache(Config.CATALOG_CACHE_TTL_SECONDS, max_size=Config.CATALOG_CACHE_MAX_SIZE)
        self.catalog = CatalogResolver(store, cache)
        self.catalog_admin = CatalogService(store, cache)
        self.cart_service = CartService(store, self.catalog, self.notifier)
        self.contexts = CartContextRegistry(self.cart_service, self.catalog)
        self.payment_client = payment_client
        self.checkout_service = CheckoutService(
            store,
            self.cart_service,
            payment_client,
            PendingOrderStore(artifacts),
            self.notifier,
        )
        self.logistics = LogisticsService(store, distance_calculator)

    async def close(self) -> None:
        await self.contexts.close_all()
        await self.cart_service.close()
        await self.store.close()


def default_artifacts() -> ArtifactStore:
    if Config.PENDING_ORDER_DIR:
        return FileArtifactStore(Config.PENDING_ORDER_DIR)
    return MemoryArtifactStore()


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_identity(
    user_id: Optional[str] = Header(None, alias="X-User-ID", description="Authenticated user identifier"),
    user_email: Optional[str] = Header(None, alias="X-User-Email", description="Authenticated user email")
) -> Optional[Identity]:
    if not user_id or not user_id.strip():
        return None
    return Identity(uid=user_id.strip(), email=user_email)


def require_identity(identity: Optional[Identity] = Depends(get_identity)) -> Identity:
    if identity is None:
        raise IdentityRequiredError("Missing X-User-ID header")
    return identity


async def cart_response(services: Services, identity: Identity) -> CartResponse:
    context = await services.contexts.open(identity)
    projection = await context.settled()
    return CartResponse(
        user_id=identity.uid,
        items=projection.items,
        total_items=projection.item_count,
        total_price=projection.total_price,
    )


def _login_required() -> HTTPException:
    return HTTPException(status_code=401, detail=LOGIN_REQUIRED_MESSAGE)


def create_app(
    document_store: Optional[DocumentStore] = None,
    payment_client: Optional[PaymentClient] = None,
    artifacts: Optional[ArtifactStore] = None,
    distance_calculator: Optional[DistanceCalculator] = None
) -> FastAPI:
    services = Services(
        document_store or get_document_store(),
        payment_client or PaymentClient(),
        artifacts or default_artifacts(),
        distance_calculator,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await services.close()

    app = FastAPI(
        title="Cart Sync API",
        description="Remote-synchronized shopping cart with checkout",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(MetricsMiddleware)

    @app.get("/health")
    async def health_check(services: Services = Depends(get_services)):
        """Always 200 while the app runs; reports document store reachability"""
        ping_start = time.time()
        store_ok = await services.store.ping()
        return {
            "status": "healthy",
            "service": "cart-api",
            "document_store": {
                "status": "healthy" if store_ok else "unhealthy",
                "latency_ms": round((time.time() - ping_start) * 1000, 2)
            },
            "timestamp": time.time()
        }

    # Catalog endpoints
    @app.get("/items", response_model=List[CatalogItem])
    async def list_items(
        category: Optional[str] = Query(None, description="Only items in this category"),
        services: Services = Depends(get_services)
    ):
        return await services.catalog_admin.list_items(category)

    @app.get("/items/search", response_model=List[CatalogItem])
    async def search_items(
        q: str = Query("", description="Case-insensitive name fragment"),
        services: Services = Depends(get_services)
    ):
        return await services.catalog_admin.search(q)

    @app.get("/items/{item_id}", response_model=CatalogItem)
    async def get_item(item_id: str, services: Services = Depends(get_services)):
        return await services.catalog.resolve(item_id)

    @app.post("/items", response_model=CatalogItem, status_code=201)
    async def add_item(request: CatalogItemInput, services: Services = Depends(get_services)):
        return await services.catalog_admin.add_item(request)

    @app.patch("/items/{item_id}", response_model=CatalogItem)
    async def update_item(
        item_id: str,
        request: CatalogItemUpdate,
        services: Services = Depends(get_services)
    ):
        return await services.catalog_admin.update_item(item_id, request)

    @app.delete("/items/{item_id}", response_model=dict)
    async def delete_item(item_id: str, services: Services = Depends(get_services)):
        await services.catalog_admin.delete_item(item_id)
        return {"success": True, "message": "Item deleted"}

    @app.get("/categories", response_model=List[Category])
    async def list_categories(services: Services = Depends(get_services)):
        return await services.catalog_admin.list_categories()

    @app.put("/categories/{name}", response_model=Category)
    async def update_category(
        name: str,
        request: CategoryRequest,
        services: Services = Depends(get_services)
    ):
        category = Category(name=name, groups=request.groups)
        if request.icon:
            category.icon = request.icon
        return await services.catalog_admin.update_category(category)

    @app.delete("/categories/{name}", response_model=dict)
    async def delete_category(name: str, services: Services = Depends(get_services)):
        await services.catalog_admin.delete_category(name)
        return {"success": True, "message": "Category deleted"}

    # Cart endpoints
    @app.get("/cart", response_model=CartResponse)
    async def get_cart(
        identity: Identity = Depends(require_identity),
        services: Services = Depends(get_services)
    ):
        return await cart_response(services, identity)

    @app.post("/cart/items", response_model=CartResponse)
    async def add_cart_item(
        request: CartItemRequest,
        identity: Optional[Identity] = Depends(get_identity),
        services: Services = Depends(get_services)
    ):
        """Add one unit of an item; the same item and variations share a line"""
        if identity is not None:
            await services.contexts.open(identity)
        result = await services.cart_service.add(identity, request.item_id, request.selected_variations)
        if result is None:
            raise _login_required()
        return await cart_response(services, identity)

    @app.put("/cart/items/{item_id}", response_model=CartResponse)
    async def update_cart_item(
        item_id: str,
        request: QuantityRequest,
        identity: Optional[Identity] = Depends(get_identity),
        services: Services = Depends(get_services)
    ):
        if identity is not None:
            await services.contexts.open(identity)
        result = await services.cart_service.set_quantity(
            identity, item_id, request.quantity, request.selected_variations
        )
        if result is None:
            raise _login_required()
        return await cart_response(services, identity)

    @app.delete("/cart/items/{item_id}", response_model=CartResponse)
    async def remove_cart_item(
        item_id: str,
        request: Optional[RemoveItemRequest] = None,
        identity: Optional[Identity] = Depends(get_identity),
        services: Services = Depends(get_services)
    ):
        if identity is not None:
            await services.contexts.open(identity)
        selected = request.selected_variations if request else None
        result = await services.cart_service.remove(identity, item_id, selected)
        if result is None:
            raise _login_required()
        return await cart_response(services, identity)

    @app.delete("/cart", response_model=CartResponse)
    async def clear_cart(
        identity: Optional[Identity] = Depends(get_identity),
        services: Services = Depends(get_services)
    ):
        if identity is not None:
            await services.contexts.open(identity)
        result = await services.cart_service.clear(identity)
        if result is None:
            raise _login_required()
        return await cart_response(services, identity)

    # Checkout endpoints
    @app.post("/checkout/start", response_model=CheckoutHandle)
    async def start_checkout(
        identity: Identity = Depends(require_identity),
        services: Services = Depends(get_services)
    ):
        """Record the order and return the payment page URL"""
        context = await services.contexts.open(identity)
        projection = await context.settled()
        return await services.checkout_service.start_checkout(identity, projection)

    @app.post("/checkout/confirm")
    async def confirm_checkout(
        identity: Identity = Depends(require_identity),
        services: Services = Depends(get_services)
    ):
        await services.contexts.open(identity)
        order_id = await services.checkout_service.confirm_payment(identity)
        return {
            "order_id": order_id,
            "state": services.checkout_service.state(identity.uid).value
        }

    @app.post("/checkout/cancel")
    async def cancel_checkout(
        identity: Identity = Depends(require_identity),
        services: Services = Depends(get_services)
    ):
        pending = await services.checkout_service.cancel_payment(identity)
        return {
            "state": services.checkout_service.state(identity.uid).value,
            "pending_order": pending.model_dump(mode="json", by_alias=True) if pending else None
        }

    @app.delete("/checkout/pending")
    async def discard_pending_checkout(
        identity: Identity = Depends(require_identity),
        services: Services = Depends(get_services)
    ):
        discarded = await services.checkout_service.discard_pending(identity)
        return {"discarded": discarded}

    @app.get("/checkout/state")
    async def checkout_state(
        identity: Identity = Depends(require_identity),
        services: Services = Depends(get_services)
    ):
        pending = services.checkout_service.pending_orders.load(identity.uid)
        return {
            "state": services.checkout_service.state(identity.uid).value,
            "has_pending_order": pending is not None
        }

    @app.get("/orders/{order_id}", response_model=Order)
    async def get_order(
        order_id: str,
        identity: Identity = Depends(require_identity),
        services: Services = Depends(get_services)
    ):
        return await services.checkout_service.get_order(identity, order_id)

    @app.post("/api/payment")
    async def create_payment(request: PaymentRequest, services: Services = Depends(get_services)):
        """Create a hosted checkout session for the given lines"""
        try:
            checkout_url = await services.payment_client.create_checkout_session(request)
        except PaymentGatewayError as e:
            logger.error(f"Payment creation error: {e}")
            return JSONResponse(status_code=500, content={"error": e.user_message})
        return {"checkoutUrl": checkout_url}

    # Logistics endpoints
    @app.post("/shipping/quote", response_model=List[ShippingRate])
    async def shipping_quote(request: ShippingQuoteRequest, services: Services = Depends(get_services)):
        return await services.logistics.quote(request.origin, request.destination, request.weight)

    @app.post("/shipments", response_model=TrackingInfo, status_code=201)
    async def create_shipment(request: ShipmentRequest, services: Services = Depends(get_services)):
        return await services.logistics.create_shipment(
            request.origin, request.destination, request.weight, request.courier
        )

    @app.get("/shipments/{tracking_number}", response_model=TrackingInfo)
    async def track_shipment(tracking_number: str, services: Services = Depends(get_services)):
        return await services.logistics.track_shipment(tracking_number)

    @app.get("/notifications", response_model=List[Notification])
    async def list_notifications(
        identity: Optional[Identity] = Depends(get_identity),
        services: Services = Depends(get_services)
    ):
        return services.notifier.active(identity.uid if identity else None)

    # Error handlers
    @app.exception_handler(CartException)
    async def cart_exception_handler(request: Request, exc: CartException):
        for exc_type, status_code, label in ERROR_STATUS:
            if isinstance(exc, exc_type):
                break
        else:
            status_code, label = 500, "Internal server error"
        if status_code >= 500:
            logger.error(f"{type(exc).__name__}: {exc}")
        else:
            logger.info(f"{type(exc).__name__}: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={"error": label, "message": exc.user_message}
        )

    # Generic exception handler for unhandled errors
    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            f"Unhandled exception: {type(exc).__name__}: {exc}",
            exc_info=True
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": "Something went wrong. Please try again."
            }
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.APP_PORT)
