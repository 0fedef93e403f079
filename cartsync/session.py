"""
Cart contexts: one consuming view (a browser tab, an API session) bound to an
identity, wiring the reference list to its projection.
"""
import asyncio
import logging
from typing import Callable, Dict, Optional

from cartsync.cart_service import CartService, hash_uid
from cartsync.catalog import CatalogResolver
from cartsync.models import Identity
from cartsync.projection import CartProjection

logger = logging.getLogger(__name__)


class CartContext:
    """
    Keeps a projection in step with one user's cart.

    Switching identity or closing the context releases the cart feed and every
    catalog watch; callbacks still in flight for the old identity are ignored.
    """

    def __init__(self, cart_service: CartService, catalog: CatalogResolver, watch_items: bool = True):
        self.cart_service = cart_service
        self.catalog = catalog
        self.watch_items = watch_items
        self.identity: Optional[Identity] = None
        self.projection: Optional[CartProjection] = None
        self._remove_listener: Optional[Callable[[], None]] = None

    async def set_identity(self, identity: Optional[Identity]) -> None:
        if identity == self.identity and self.projection is not None:
            return
        await self._teardown()
        self.identity = identity
        self.projection = CartProjection(self.catalog, watch_items=self.watch_items)
        if identity is None:
            return

        projection = self.projection
        self._remove_listener = self.cart_service.add_listener(identity.uid, projection.schedule)
        references = await self.cart_service.get_references(identity)
        await self.cart_service.subscribe_to_remote_changes(identity)
        await projection.apply(references or [])
        logger.info(f"Cart context opened for user {hash_uid(identity.uid)}")

    async def _teardown(self) -> None:
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        if self.projection is not None:
            await self.projection.close()
        if self.identity is not None:
            await self.cart_service.unsubscribe(self.identity.uid)
            logger.info(f"Cart context closed for user {hash_uid(self.identity.uid)}")
        self.projection = None

    async def settled(self) -> CartProjection:
        """The projection once every pending reference change is applied"""
        await self.projection.settled()
        return self.projection

    async def close(self) -> None:
        await self._teardown()
        self.identity = None


class CartContextRegistry:
    """One open cart context per user, shared by the HTTP handlers"""

    def __init__(self, cart_service: CartService, catalog: CatalogResolver):
        self.cart_service = cart_service
        self.catalog = catalog
        self._contexts: Dict[str, CartContext] = {}
        self._lock = asyncio.Lock()

    async def open(self, identity: Identity) -> CartContext:
        async with self._lock:
            context = self._contexts.get(identity.uid)
            if context is None:
                context = CartContext(self.cart_service, self.catalog)
                await context.set_identity(identity)
                self._contexts[identity.uid] = context
            elif context.identity != identity:
                # same uid, different email
                context.identity = identity
            return context

    async def close(self, uid: str) -> None:
        context = self._contexts.pop(uid, None)
        if context is not None:
            await context.close()

    async def close_all(self) -> None:
        for uid in list(self._contexts):
            await self.close(uid)
