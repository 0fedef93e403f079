"""
Checkout service: snapshots the cart, records the order and hands off to the
payment page.

State per user:
    idle -> snapshotting -> order_persisting -> awaiting_payment -> confirmed | abandoned
"""
import hashlib
import logging
import uuid
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from cartsync.artifacts import PendingOrderStore
from cartsync.cart_service import CartService
from cartsync.document_store import DocumentStore
from cartsync.exceptions import (
    CartException,
    CheckoutPersistenceError,
    DocumentStoreError,
    EmptyCartError,
    IdentityRequiredError,
    NoPendingCheckoutError,
    OrderNotFoundError,
    OrderVerificationError,
    PaymentGatewayError,
)
from cartsync.models import (
    CartItem,
    CheckoutHandle,
    CheckoutState,
    Identity,
    Order,
    OrderStatus,
    PaymentItem,
    PaymentRequest,
    PendingOrder,
    cart_total,
)
from cartsync.notifications import Notifier
from cartsync.payment_client import PaymentClient
from cartsync.projection import CartProjection

logger = logging.getLogger(__name__)


def order_path(order_id: str) -> str:
    return f"orders/{order_id}"


def _hash(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:8]


class CheckoutService:
    """Service for checkout operations"""

    def __init__(
        self,
        store: DocumentStore,
        cart_service: CartService,
        payment_client: PaymentClient,
        pending_orders: PendingOrderStore,
        notifier: Notifier
    ):
        self.store = store
        self.cart_service = cart_service
        self.payment_client = payment_client
        self.pending_orders = pending_orders
        self.notifier = notifier
        self._states: Dict[str, CheckoutState] = {}

    def state(self, uid: str) -> CheckoutState:
        return self._states.get(uid, CheckoutState.IDLE)

    def _set_state(self, uid: str, state: CheckoutState) -> None:
        logger.info(f"Checkout for user {_hash(uid)}: {self.state(uid).value} -> {state.value}")
        self._states[uid] = state

    def _require_identity(self, identity: Optional[Identity]) -> Identity:
        if identity is None:
            self.notifier.add(IdentityRequiredError.user_message, "warning")
            raise IdentityRequiredError("Checkout requires an authenticated user")
        return identity

    async def start_checkout(self, identity: Optional[Identity], projection: CartProjection) -> CheckoutHandle:
        """
        Start checkout process:
        1. Snapshot the pending order if one exists, else the projected cart
        2. Write the order record with status pending and read it back
        3. Create the payment session
        4. Save the snapshot as the pending order

        Args:
            identity: Authenticated user
            projection: The user's current cart view

        Returns:
            CheckoutHandle with the payment page URL

        Raises:
            IdentityRequiredError, EmptyCartError: nothing was written
            CheckoutPersistenceError: the order could not be written
            OrderVerificationError: the order could not be read back
            PaymentGatewayError: the payment session was rejected
        """
        identity = self._require_identity(identity)
        uid = identity.uid

        pending = self.pending_orders.load(uid)
        resumed = pending is not None and bool(pending.items)
        items: List[CartItem] = [item.model_copy(deep=True) for item in (pending.items if resumed else projection.items)]

        if not items:
            self.notifier.add(EmptyCartError.user_message, "error", uid)
            raise EmptyCartError("Cannot checkout empty cart")

        self._set_state(uid, CheckoutState.SNAPSHOTTING)
        total = cart_total(items)
        if resumed:
            logger.info(f"Resuming pending order for user {_hash(uid)}")

        try:
            self._set_state(uid, CheckoutState.ORDER_PERSISTING)
            order = None
            if resumed and pending.order_id:
                order = await self._reusable_order(pending.order_id)
            reused = order is not None
            if order is None:
                order = await self._create_order(identity, items, total)

            payment_request = PaymentRequest(
                amount=total,
                items=[PaymentItem.from_cart_item(item) for item in items],
            )
            try:
                checkout_url = await self.payment_client.create_checkout_session(payment_request)
            except PaymentGatewayError:
                if not reused:
                    await self._cancel_order(order.id)
                raise

            self.pending_orders.save(uid, PendingOrder(order_id=order.id, items=items, total_price=total))
        except CartException as e:
            self._set_state(uid, CheckoutState.IDLE)
            self.notifier.add(e.user_message, "error", uid)
            raise

        self._set_state(uid, CheckoutState.AWAITING_PAYMENT)
        return CheckoutHandle(
            order_id=order.id,
            checkout_url=checkout_url,
            total_price=total,
            items=items,
            resumed=resumed,
        )

    async def _create_order(self, identity: Identity, items: List[CartItem], total: Decimal) -> Order:
        order = Order(
            id=uuid.uuid4().hex,
            user_id=identity.uid,
            items=items,
            total_price=total,
            status=OrderStatus.PENDING,
            user_email=identity.email,
        )
        try:
            await self.store.set(order_path(order.id), order.to_document())
        except DocumentStoreError as e:
            logger.error(f"Failed to write order {order.id}: {e}")
            raise CheckoutPersistenceError(f"Failed to write order: {e}") from e

        try:
            data = await self.store.get(order_path(order.id))
        except DocumentStoreError as e:
            logger.error(f"Order {order.id} written but read-back failed: {e}")
            raise OrderVerificationError(order.id, str(e)) from e

        if data is None:
            raise OrderVerificationError(order.id, "order missing on read-back")
        try:
            stored = Order.model_validate(data)
        except PydanticValidationError as e:
            raise OrderVerificationError(order.id, f"stored order is invalid ({e.error_count()} errors)") from e
        if stored.id != order.id or stored.total_price != order.total_price:
            raise OrderVerificationError(order.id, "stored order does not match")

        logger.info(f"Order {order.id} created, total {total}")
        return stored

    async def _reusable_order(self, order_id: str) -> Optional[Order]:
        try:
            data = await self.store.get(order_path(order_id))
        except DocumentStoreError as e:
            raise CheckoutPersistenceError(f"Failed to read order {order_id}: {e}") from e
        if data is None:
            return None
        try:
            order = Order.model_validate(data)
        except PydanticValidationError:
            return None
        return order if order.status == OrderStatus.PENDING else None

    async def _set_order_status(self, order_id: str, status: OrderStatus) -> None:
        await self.store.set(order_path(order_id), {"status": status.value}, merge=True)

    async def _cancel_order(self, order_id: str) -> None:
        try:
            await self._set_order_status(order_id, OrderStatus.CANCELLED)
        except DocumentStoreError as e:
            logger.error(f"Could not cancel order {order_id}: {e}")

    async def confirm_payment(self, identity: Optional[Identity]) -> Optional[str]:
        """
        Payment succeeded: advance the order, drop the pending order and clear the cart.

        Returns:
            The confirmed order id

        Raises:
            NoPendingCheckoutError: no checkout is awaiting payment; the cart is left alone
        """
        identity = self._require_identity(identity)
        uid = identity.uid
        pending = self.pending_orders.load(uid)
        if pending is None:
            logger.warning(f"Payment confirmation for user {_hash(uid)} without a pending order")
            raise NoPendingCheckoutError("No pending order to confirm")
        order_id = pending.order_id

        if order_id:
            try:
                await self._set_order_status(order_id, OrderStatus.PROCESSING)
            except DocumentStoreError as e:
                logger.error(f"Failed to confirm order {order_id}: {e}")
                self.notifier.add(CheckoutPersistenceError.user_message, "error", uid)
                raise CheckoutPersistenceError(f"Failed to confirm order: {e}") from e

        self.pending_orders.clear(uid)
        await self.cart_service.clear(identity)
        self._set_state(uid, CheckoutState.CONFIRMED)
        self.notifier.add("Payment successful! Your order is being processed.", "success", uid)
        return order_id

    async def cancel_payment(self, identity: Optional[Identity]) -> Optional[PendingOrder]:
        """Payment page was cancelled; the pending order stays so checkout can resume"""
        identity = self._require_identity(identity)
        uid = identity.uid
        pending = self.pending_orders.load(uid)
        if pending is None:
            return None
        self._set_state(uid, CheckoutState.ABANDONED)
        self.notifier.add("Payment was cancelled. You can resume checkout anytime.", "info", uid)
        return pending

    async def discard_pending(self, identity: Optional[Identity]) -> bool:
        """Give up on the pending attempt: cancel its order and delete the snapshot"""
        identity = self._require_identity(identity)
        uid = identity.uid
        pending = self.pending_orders.load(uid)
        if pending is None:
            return False
        if pending.order_id and await self._reusable_order(pending.order_id):
            await self._cancel_order(pending.order_id)
        self.pending_orders.clear(uid)
        self._set_state(uid, CheckoutState.IDLE)
        return True

    async def get_order(self, identity: Optional[Identity], order_id: str) -> Order:
        identity = self._require_identity(identity)
        data = await self.store.get(order_path(order_id))
        if data is None:
            raise OrderNotFoundError(order_id)
        try:
            order = Order.model_validate(data)
        except PydanticValidationError as e:
            logger.error(f"Order {order_id} is unreadable ({e.error_count()} errors)")
            raise OrderNotFoundError(order_id) from e
        if order.user_id != identity.uid:
            raise OrderNotFoundError(order_id)
        return order
