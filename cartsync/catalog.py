"""
Item catalog: resolves product documents at items/{itemId} for carts, and
lists, searches and maintains items and categories (itemcategory/{name}).
"""
import logging
import uuid
from typing import Callable, Dict, Generic, List, Optional, TypeVar

from pydantic import ValidationError as PydanticValidationError

from cartsync.cache import TTLCache
from cartsync.document_store import ChangeEvent, DocumentStore, Subscription, child_id, merge_documents
from cartsync.exceptions import (
    CatalogItemNotFoundError,
    CategoryNotFoundError,
    DocumentStoreError,
    ValidationError,
)
from cartsync.models import (
    DEFAULT_CATEGORY_ICON,
    CatalogItem,
    CatalogItemInput,
    CatalogItemUpdate,
    Category,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def item_path(item_id: str) -> str:
    return f"items/{item_id}"


def parse_catalog_item(item_id: str, data: Optional[dict]) -> Optional[CatalogItem]:
    """Build a CatalogItem from a stored document; None when absent or unusable"""
    if data is None:
        return None
    try:
        return CatalogItem.model_validate({**data, "id": item_id})
    except PydanticValidationError as e:
        logger.warning(f"Ignoring malformed catalog document {item_id}: {e.error_count()} errors")
        return None


class CatalogWatch:
    """Live catalog updates for one item; yields None once the item is deleted"""

    def __init__(self, item_id: str, subscription: Subscription, cache: Optional[TTLCache] = None):
        self.item_id = item_id
        self.subscription = subscription
        self._cache = cache

    def _apply(self, event: ChangeEvent) -> Optional[CatalogItem]:
        item = parse_catalog_item(self.item_id, event.data)
        if self._cache is not None:
            if item is None:
                self._cache.delete(self.item_id)
            else:
                self._cache.set(self.item_id, item)
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> Optional[CatalogItem]:
        event = await self.subscription.__anext__()
        return self._apply(event)

    async def close(self) -> None:
        await self.subscription.close()


class CatalogResolver:
    """Resolve item ids to catalog items"""

    def __init__(self, store: DocumentStore, cache: Optional[TTLCache] = None):
        self.store = store
        self.cache = cache

    async def resolve(self, item_id: str) -> CatalogItem:
        """
        Fetch the catalog item for ``item_id``.

        Raises:
            CatalogItemNotFoundError: no document exists for the id
            DocumentStoreError: the store could not be read
        """
        if self.cache is not None:
            cached = self.cache.get(item_id)
            if cached is not None:
                return cached

        item = parse_catalog_item(item_id, await self.store.get(item_path(item_id)))
        if item is None:
            raise CatalogItemNotFoundError(item_id)

        if self.cache is not None:
            self.cache.set(item_id, item)
        return item

    async def watch(self, item_id: str) -> CatalogWatch:
        """Subscribe to changes of one catalog item, starting with its current state"""
        subscription = await self.store.subscribe(item_path(item_id))
        return CatalogWatch(item_id, subscription, self.cache)


CATEGORY_COLLECTION = "itemcategory"
ITEM_COLLECTION = "items"
SEARCH_RESULT_LIMIT = 5


def category_path(name: str) -> str:
    return f"{CATEGORY_COLLECTION}/{name}"


def parse_category(name: str, data: Optional[dict]) -> Optional[Category]:
    """Category documents hold group -> subcategory lists next to an optional icon"""
    if data is None:
        return None
    groups = {
        group: [str(entry) for entry in entries]
        for group, entries in data.items()
        if group != "icon" and isinstance(entries, list)
    }
    return Category(name=name, groups=groups, icon=data.get("icon") or DEFAULT_CATEGORY_ICON)


class CollectionWatch(Generic[T]):
    """
    Live view of a whole collection.

    The first iteration yields the current contents; every later one yields
    the contents after the next change. Entries are ordered by document id.
    """

    def __init__(
        self,
        collection: str,
        subscription: Subscription,
        documents: Dict[str, dict],
        parse: Callable[[str, Optional[dict]], Optional[T]]
    ):
        self.collection = collection
        self.subscription = subscription
        self._parse = parse
        self._entries: Dict[str, T] = {}
        self._initial = True
        for doc_id, data in documents.items():
            self._put(doc_id, data)

    def _put(self, doc_id: str, data: Optional[dict]) -> None:
        entry = self._parse(doc_id, data)
        if entry is None:
            self._entries.pop(doc_id, None)
        else:
            self._entries[doc_id] = entry

    @property
    def entries(self) -> List[T]:
        return [self._entries[doc_id] for doc_id in sorted(self._entries)]

    def __aiter__(self):
        return self

    async def __anext__(self) -> List[T]:
        if self._initial:
            self._initial = False
            return self.entries
        while True:
            event = await self.subscription.__anext__()
            doc_id = child_id(self.collection, event.path)
            if doc_id is not None:
                self._put(doc_id, event.data)
                return self.entries

    async def close(self) -> None:
        await self.subscription.close()


class CatalogService:
    """
    Catalog maintenance and browsing: item and category listing, create,
    update, delete, search and live collection views.

    Writes drop the touched item from the shared cache so the resolver never
    serves a stale copy afterwards.
    """

    def __init__(self, store: DocumentStore, cache: Optional[TTLCache] = None):
        self.store = store
        self.cache = cache

    def _forget(self, item_id: str) -> None:
        if self.cache is not None:
            self.cache.delete(item_id)

    # =====================================================
    # ITEMS
    # =====================================================
    async def list_items(self, category: Optional[str] = None) -> List[CatalogItem]:
        try:
            documents = await self.store.list_documents(ITEM_COLLECTION)
        except DocumentStoreError as e:
            logger.error(f"Error fetching items: {e}")
            raise
        items = [
            item for item in (parse_catalog_item(item_id, data) for item_id, data in documents.items())
            if item is not None
        ]
        if category is not None:
            items = [item for item in items if item.category == category]
        return items

    async def search(self, query: str, limit: int = SEARCH_RESULT_LIMIT) -> List[CatalogItem]:
        """Items whose name contains ``query``, case-insensitive; blank queries match nothing"""
        needle = query.strip().lower()
        if not needle:
            return []
        matches = [item for item in await self.list_items() if needle in item.item_name.lower()]
        return matches[:limit]

    async def add_item(self, item: CatalogItemInput) -> CatalogItem:
        item_id = uuid.uuid4().hex
        document = item.model_copy(update={"created_at": item.created_at or utcnow()}).to_document()
        try:
            await self.store.set(item_path(item_id), document)
        except DocumentStoreError as e:
            logger.error(f"Error adding item: {e}")
            raise
        logger.info(f"Catalog item {item_id} added")
        return parse_catalog_item(item_id, document)

    async def update_item(self, item_id: str, update: CatalogItemUpdate) -> CatalogItem:
        """
        Merge the fields present in ``update`` into the item.

        Raises:
            CatalogItemNotFoundError: no document exists for the id
            ValidationError: the merged document is not a valid item
        """
        existing = await self.store.get(item_path(item_id))
        if existing is None:
            raise CatalogItemNotFoundError(item_id)

        changes = update.changes()
        item = parse_catalog_item(item_id, merge_documents(existing, changes))
        if item is None:
            raise ValidationError(f"Update would leave item {item_id} invalid")
        if changes:
            try:
                await self.store.set(item_path(item_id), changes, merge=True)
            except DocumentStoreError as e:
                logger.error(f"Error updating item: {e}")
                raise
            self._forget(item_id)
        return item

    async def delete_item(self, item_id: str) -> None:
        try:
            deleted = await self.store.delete(item_path(item_id))
        except DocumentStoreError as e:
            logger.error(f"Error deleting item: {e}")
            raise
        self._forget(item_id)
        if not deleted:
            raise CatalogItemNotFoundError(item_id)
        logger.info(f"Catalog item {item_id} deleted")

    async def watch_items(self) -> CollectionWatch[CatalogItem]:
        # subscribe before listing so no change between the two is missed
        subscription = await self.store.subscribe(f"{ITEM_COLLECTION}/*")
        try:
            documents = await self.store.list_documents(ITEM_COLLECTION)
        except DocumentStoreError:
            await subscription.close()
            raise
        return CollectionWatch(ITEM_COLLECTION, subscription, documents, parse_catalog_item)

    # =====================================================
    # CATEGORIES
    # =====================================================
    async def list_categories(self) -> List[Category]:
        try:
            documents = await self.store.list_documents(CATEGORY_COLLECTION)
        except DocumentStoreError as e:
            logger.error(f"Error fetching categories: {e}")
            raise
        return [parse_category(name, data) for name, data in documents.items()]

    async def update_category(self, category: Category) -> Category:
        """Replace the category document"""
        if "/" in category.name:
            raise ValidationError("Category name cannot contain '/'")
        try:
            await self.store.set(category_path(category.name), category.to_document())
        except DocumentStoreError as e:
            logger.error(f"Error updating categories: {e}")
            raise
        return category

    async def delete_category(self, name: str) -> None:
        try:
            deleted = await self.store.delete(category_path(name))
        except DocumentStoreError as e:
            logger.error(f"Error deleting category: {e}")
            raise
        if not deleted:
            raise CategoryNotFoundError(name)

    async def watch_categories(self) -> CollectionWatch[Category]:
        subscription = await self.store.subscribe(f"{CATEGORY_COLLECTION}/*")
        try:
            documents = await self.store.list_documents(CATEGORY_COLLECTION)
        except DocumentStoreError:
            await subscription.close()
            raise
        return CollectionWatch(CATEGORY_COLLECTION, subscription, documents, parse_category)
