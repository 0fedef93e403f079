"""
Cart projection: the reference list joined with live catalog data.
"""
import asyncio
import logging
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Set

from cartsync.catalog import CatalogResolver, CatalogWatch
from cartsync.exceptions import CatalogItemNotFoundError, DocumentStoreError
from cartsync.models import CartItem, CartReference, CatalogItem, cart_total

logger = logging.getLogger(__name__)

ProjectionListener = Callable[[List[CartItem]], None]


class CartProjection:
    """
    Materialized cart view.

    Catalog data for every distinct item in the cart is resolved once and then
    kept fresh by one live watch per item. Lines whose catalog item is missing
    are left out of the view instead of failing it.
    """

    def __init__(self, catalog: CatalogResolver, watch_items: bool = True):
        self.catalog = catalog
        self.watch_items = watch_items
        self._references: List[CartReference] = []
        self._catalog_items: Dict[str, CatalogItem] = {}
        self._items: List[CartItem] = []
        self._watches: Dict[str, asyncio.Task] = {}
        self._pending: Set[asyncio.Task] = set()
        self._listeners: List[ProjectionListener] = []
        self._version = 0
        self._closed = False

    @property
    def items(self) -> List[CartItem]:
        return list(self._items)

    @property
    def references(self) -> List[CartReference]:
        return list(self._references)

    @property
    def total_price(self) -> Decimal:
        return cart_total(self._items)

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self._items)

    @property
    def watched_item_ids(self) -> Set[str]:
        return set(self._watches)

    def add_listener(self, listener: ProjectionListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def _rebuild(self) -> None:
        self._items = [
            CartItem.from_catalog(reference, self._catalog_items[reference.item_id])
            for reference in self._references
            if reference.item_id in self._catalog_items
        ]
        for listener in list(self._listeners):
            try:
                listener(self.items)
            except Exception:
                logger.exception("Projection listener failed")

    # =====================================================
    # REFERENCE CHANGES
    # =====================================================
    def schedule(self, references: List[CartReference]) -> asyncio.Task:
        """Apply a reference list in the background; the newest list always wins"""
        self._version += 1
        task = asyncio.create_task(self._apply(list(references), self._version))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def apply(self, references: List[CartReference]) -> List[CartItem]:
        self._version += 1
        await self._apply(list(references), self._version)
        return self.items

    async def settled(self) -> None:
        """Wait until every scheduled reference list has been applied"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _resolve(self, item_id: str) -> Optional[CatalogItem]:
        try:
            return await self.catalog.resolve(item_id)
        except CatalogItemNotFoundError:
            logger.info(f"Dropping cart line for missing catalog item {item_id}")
        except DocumentStoreError as e:
            logger.error(f"Failed to resolve catalog item {item_id}: {e}")
        return None

    async def _apply(self, references: List[CartReference], version: int) -> None:
        if self._closed:
            return
        wanted = {reference.item_id for reference in references}
        missing = sorted(wanted - set(self._catalog_items))
        resolved = await asyncio.gather(*(self._resolve(item_id) for item_id in missing))

        if self._closed or version != self._version:
            # a newer reference list arrived while resolving; keep what we fetched
            for item in resolved:
                if item is not None:
                    self._catalog_items.setdefault(item.id, item)
            return

        for item_id, item in zip(missing, resolved):
            if item is not None:
                self._catalog_items[item_id] = item
        for item_id in set(self._catalog_items) - wanted:
            del self._catalog_items[item_id]

        self._references = references
        self._rebuild()
        await self._sync_watches(wanted)

    # =====================================================
    # CATALOG WATCHES
    # =====================================================
    async def _sync_watches(self, wanted: Set[str]) -> None:
        if not self.watch_items:
            return
        for item_id in set(self._watches) - wanted:
            await self._stop_watch(item_id)
        for item_id in wanted - set(self._watches):
            self._watches[item_id] = asyncio.create_task(self._watch(item_id))

    async def _stop_watch(self, item_id: str) -> None:
        task = self._watches.pop(item_id, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _watch(self, item_id: str) -> None:
        try:
            watch: CatalogWatch = await self.catalog.watch(item_id)
        except DocumentStoreError as e:
            logger.error(f"Cannot watch catalog item {item_id}: {e}")
            self._watches.pop(item_id, None)
            return
        try:
            async for item in watch:
                if self._closed or item_id not in self._watches:
                    break
                self._on_catalog_change(item_id, item)
        finally:
            await watch.close()

    def _on_catalog_change(self, item_id: str, item: Optional[CatalogItem]) -> None:
        if not any(reference.item_id == item_id for reference in self._references):
            return
        if item is None:
            logger.info(f"Catalog item {item_id} was deleted; dropping its cart lines")
            self._catalog_items.pop(item_id, None)
        else:
            self._catalog_items[item_id] = item
        self._rebuild()

    async def close(self) -> None:
        """Tear down every watch; late catalog events are ignored afterwards"""
        self._closed = True
        for task in list(self._pending):
            task.cancel()
        await asyncio.gather(*list(self._pending), return_exceptions=True)
        for item_id in list(self._watches):
            await self._stop_watch(item_id)
