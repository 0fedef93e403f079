"""
Cart service: the authoritative per-user reference list, persisted as one
remote document and mirrored locally.
"""
import asyncio
import hashlib
import logging
import uuid
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from cartsync.catalog import CatalogResolver
from cartsync.document_store import ChangeEvent, DocumentStore, Subscription
from cartsync.exceptions import (
    CartPersistenceError,
    CatalogItemNotFoundError,
    DocumentStoreError,
    ValidationError,
)
from cartsync.models import CartDocument, CartReference, Identity, identity_key, normalize_variations
from cartsync.notifications import Notifier

logger = logging.getLogger(__name__)

LOGIN_REQUIRED_MESSAGE = "Please log in to manage your cart"

Listener = Callable[[List[CartReference]], None]


def cart_path(uid: str) -> str:
    return f"users/{uid}/cart/items"


def hash_uid(uid: str) -> str:
    """Hash user ID for logging (no PII)"""
    return hashlib.sha256(uid.encode()).hexdigest()[:8]


def parse_cart_document(data: Optional[dict]) -> List[CartReference]:
    """
    Read the reference list out of a stored cart document.

    Invalid entries are skipped and duplicate lines are folded together so the
    list never holds two references with the same identity key.
    """
    if not data:
        return []
    references: List[CartReference] = []
    positions: Dict[tuple, int] = {}
    for raw in data.get("items") or []:
        try:
            reference = CartReference.model_validate(raw)
        except PydanticValidationError:
            logger.warning(f"Skipping invalid cart entry: {raw!r}")
            continue
        key = reference.identity_key
        if key in positions:
            existing = references[positions[key]]
            references[positions[key]] = existing.model_copy(
                update={"quantity": existing.quantity + reference.quantity}
            )
        else:
            positions[key] = len(references)
            references.append(reference)
    return references


class _RemoteFeed:
    def __init__(self):
        self.subscription: Optional[Subscription] = None
        self.task: Optional[asyncio.Task] = None
        self.closed = False
        # ids of our own writes whose change events have not arrived yet, oldest first
        self.unconfirmed: List[str] = []

    def confirm(self, write_id: Optional[str]) -> bool:
        """Mark ``write_id`` (and every older own write) as echoed back"""
        if write_id not in self.unconfirmed:
            return False
        del self.unconfirmed[:self.unconfirmed.index(write_id) + 1]
        return True


class CartService:
    """
    Service for cart operations.

    Every operation takes the identity explicitly. Without one the call does
    nothing and a warning notification is raised. Mutations for one user are
    serialized, and each writes the whole reference list back to the cart
    document before updating the local mirror.
    """

    def __init__(self, store: DocumentStore, catalog: CatalogResolver, notifier: Notifier):
        self.store = store
        self.catalog = catalog
        self.notifier = notifier
        self._mirrors: Dict[str, List[CartReference]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._listeners: Dict[str, List[Listener]] = {}
        self._feeds: Dict[str, _RemoteFeed] = {}

    def _lock(self, uid: str) -> asyncio.Lock:
        lock = self._locks.get(uid)
        if lock is None:
            lock = self._locks[uid] = asyncio.Lock()
        return lock

    def _has_identity(self, identity: Optional[Identity], action: str) -> bool:
        if identity is None:
            logger.warning(f"Cart {action} ignored: no authenticated user")
            self.notifier.add(LOGIN_REQUIRED_MESSAGE, "warning")
            return False
        return True

    # =====================================================
    # LISTENERS
    # =====================================================
    def add_listener(self, uid: str, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with the new reference list after every change"""
        self._listeners.setdefault(uid, []).append(listener)

        def remove() -> None:
            listeners = self._listeners.get(uid, [])
            if listener in listeners:
                listeners.remove(listener)

        return remove

    def _notify(self, uid: str, references: List[CartReference]) -> None:
        for listener in list(self._listeners.get(uid, [])):
            try:
                listener(list(references))
            except Exception:
                logger.exception(f"Cart listener failed for user {hash_uid(uid)}")

    # =====================================================
    # PERSISTENCE
    # =====================================================
    async def _load(self, uid: str) -> List[CartReference]:
        """Mirror of the user's references; creates the empty document on first access"""
        if uid in self._mirrors:
            return self._mirrors[uid]

        try:
            data = await self.store.get(cart_path(uid))
        except DocumentStoreError as e:
            logger.error(f"Failed to load cart for user {hash_uid(uid)}: {e}")
            self.notifier.add(CartPersistenceError.user_message, "error", uid)
            raise CartPersistenceError(f"Failed to load cart: {e}") from e

        if data is None:
            logger.info(f"Creating empty cart for user {hash_uid(uid)}")
            await self._persist(uid, [])
        else:
            self._mirrors[uid] = parse_cart_document(data)
        return self._mirrors[uid]

    async def _persist(self, uid: str, references: List[CartReference]) -> List[CartReference]:
        document = CartDocument(items=references, write_id=uuid.uuid4().hex)
        feed = self._feeds.get(uid)
        if feed is not None:
            # registered before the write; the echo can arrive before set() returns
            feed.unconfirmed.append(document.write_id)
        try:
            await self.store.set(cart_path(uid), document.to_document())
        except DocumentStoreError as e:
            if feed is not None and document.write_id in feed.unconfirmed:
                feed.unconfirmed.remove(document.write_id)
            logger.error(f"Failed to save cart for user {hash_uid(uid)}: {e}")
            self.notifier.add(CartPersistenceError.user_message, "error", uid)
            raise CartPersistenceError(f"Failed to save cart: {e}") from e

        self._mirrors[uid] = references
        self._notify(uid, references)
        return list(references)

    # =====================================================
    # QUERY
    # =====================================================
    async def get_references(self, identity: Optional[Identity]) -> Optional[List[CartReference]]:
        if not self._has_identity(identity, "read"):
            return None
        async with self._lock(identity.uid):
            return list(await self._load(identity.uid))

    # =====================================================
    # COMMANDS
    # =====================================================
    async def add(
        self,
        identity: Optional[Identity],
        item_id: str,
        selected_variations: Optional[Dict[str, str]] = None
    ) -> Optional[List[CartReference]]:
        """
        Add one unit of an item.

        An existing line with the same item and variations gets its quantity
        incremented; otherwise a new line with quantity 1 is appended.

        Raises:
            CatalogItemNotFoundError: the item does not exist in the catalog
            CartPersistenceError: the cart document could not be written
        """
        if not self._has_identity(identity, "add"):
            return None
        if not item_id:
            raise ValidationError("Item ID is required")

        uid = identity.uid
        try:
            item = await self.catalog.resolve(item_id)
        except CatalogItemNotFoundError as e:
            logger.warning(f"Cannot add missing catalog item {item_id}")
            self.notifier.add(e.user_message, "error", uid)
            raise
        except DocumentStoreError as e:
            logger.error(f"Catalog lookup for {item_id} failed: {e}")
            self.notifier.add(e.user_message, "error", uid)
            raise

        key = identity_key(item_id, selected_variations)
        async with self._lock(uid):
            references = list(await self._load(uid))
            for index, reference in enumerate(references):
                if reference.identity_key == key:
                    references[index] = reference.model_copy(
                        update={"quantity": reference.quantity + 1}
                    )
                    message = f"Updated quantity of {item.item_name or 'item'} in cart"
                    break
            else:
                references.append(CartReference(
                    item_id=item_id,
                    quantity=1,
                    selected_variations=normalize_variations(selected_variations),
                ))
                message = f"Added {item.item_name or 'item'} to cart"

            result = await self._persist(uid, references)

        self.notifier.add(message, "success", uid)
        return result

    async def remove(
        self,
        identity: Optional[Identity],
        item_id: str,
        selected_variations: Optional[Dict[str, str]] = None
    ) -> Optional[List[CartReference]]:
        """Delete the line matching the item and variations"""
        if not self._has_identity(identity, "remove"):
            return None

        uid = identity.uid
        key = identity_key(item_id, selected_variations)
        async with self._lock(uid):
            references = await self._load(uid)
            remaining = [r for r in references if r.identity_key != key]
            if len(remaining) == len(references):
                return list(references)
            return await self._persist(uid, remaining)

    async def set_quantity(
        self,
        identity: Optional[Identity],
        item_id: str,
        quantity: int,
        selected_variations: Optional[Dict[str, str]] = None
    ) -> Optional[List[CartReference]]:
        """Set a line's quantity; zero or less removes the line"""
        if not self._has_identity(identity, "update"):
            return None
        if quantity <= 0:
            return await self.remove(identity, item_id, selected_variations)

        uid = identity.uid
        key = identity_key(item_id, selected_variations)
        async with self._lock(uid):
            references = list(await self._load(uid))
            for index, reference in enumerate(references):
                if reference.identity_key == key:
                    references[index] = reference.model_copy(update={"quantity": quantity})
                    return await self._persist(uid, references)

        logger.info(f"Quantity update for {item_id} ignored: not in cart")
        return list(references)

    async def clear(self, identity: Optional[Identity]) -> Optional[List[CartReference]]:
        if not self._has_identity(identity, "clear"):
            return None
        async with self._lock(identity.uid):
            return await self._persist(identity.uid, [])

    # =====================================================
    # REMOTE CHANGES
    # =====================================================
    async def subscribe_to_remote_changes(self, identity: Optional[Identity]) -> bool:
        """
        Follow the user's cart document. Installing twice is a no-op.

        Returns True when a new feed was installed.
        """
        if not self._has_identity(identity, "subscribe"):
            return False

        uid = identity.uid
        if uid in self._feeds:
            return False
        feed = self._feeds[uid] = _RemoteFeed()

        try:
            subscription = await self.store.subscribe(cart_path(uid))
        except DocumentStoreError as e:
            self._feeds.pop(uid, None)
            logger.error(f"Failed to follow cart for user {hash_uid(uid)}: {e}")
            self.notifier.add(e.user_message, "error", uid)
            raise

        if feed.closed:
            # torn down while subscribing
            await subscription.close()
            return False

        feed.subscription = subscription
        feed.task = asyncio.create_task(self._consume(uid, feed))
        logger.info(f"Following cart changes for user {hash_uid(uid)}")
        return True

    async def _consume(self, uid: str, feed: _RemoteFeed) -> None:
        async for event in feed.subscription:
            if feed.closed:
                break
            async with self._lock(uid):
                if feed.closed:
                    break
                self._apply_remote(uid, feed, event)

    def _apply_remote(self, uid: str, feed: _RemoteFeed, event: ChangeEvent) -> None:
        """
        Replace the mirror with a remote version of the cart.

        Events are delivered in store order, so while one of our own writes is
        still unconfirmed every event seen is older than the mirror and is
        skipped. The echo of our latest write carries nothing new either.
        """
        write_id = (event.data or {}).get("writeId")
        own = feed.confirm(write_id)
        if own or feed.unconfirmed:
            return

        references = parse_cart_document(event.data)
        self._mirrors[uid] = references
        self._notify(uid, references)

    def is_subscribed(self, uid: str) -> bool:
        return uid in self._feeds

    async def unsubscribe(self, uid: str) -> None:
        """Stop following the user's cart and forget the local mirror"""
        feed = self._feeds.pop(uid, None)
        self._mirrors.pop(uid, None)
        if feed is None:
            return
        feed.closed = True
        if feed.subscription is not None:
            await feed.subscription.close()
        if feed.task is not None:
            feed.task.cancel()
            try:
                await feed.task
            except asyncio.CancelledError:
                pass
        logger.info(f"Stopped following cart for user {hash_uid(uid)}")

    async def close(self) -> None:
        for uid in list(self._feeds):
            await self.unsubscribe(uid)
