import asyncio
import copy

import pytest

from cartsync.artifacts import MemoryArtifactStore, PendingOrderStore
from cartsync.cart_service import CartService
from cartsync.catalog import CatalogResolver
from cartsync.checkout_service import CheckoutService
from cartsync.document_store import MemoryDocumentStore
from cartsync.exceptions import DocumentStoreError
from cartsync.models import Identity
from cartsync.notifications import Notifier

CATALOG = {
    "A": {
        "itemName": "Keyboard",
        "price": 100,
        "thumbnail": "keyboard.png",
        "category": "Peripherals",
    },
    "B": {
        "itemName": "Phone",
        "price": 50,
        "thumbnail": "phone.png",
        "category": "Mobile",
        "variations": {"Color": ["red", "blue"]},
        "productVariations": [
            {"id": "b-red", "name": "Red", "price": 40, "combinations": {"Color": "red"}},
            {"id": "b-blue", "name": "Blue", "combinations": {"Color": "blue"}},
        ],
    },
}


class FailingStore(MemoryDocumentStore):
    """Memory store whose reads or writes fail for chosen path prefixes"""

    def __init__(self):
        super().__init__()
        self.fail_get = set()
        self.fail_set = set()
        self.vanish = set()

    def _matches(self, prefixes, path):
        return any(path.startswith(prefix) for prefix in prefixes)

    async def get(self, path):
        if self._matches(self.fail_get, path):
            raise DocumentStoreError(f"read failed: {path}")
        if self._matches(self.vanish, path):
            return None
        return await super().get(path)

    async def set(self, path, value, merge=False):
        if self._matches(self.fail_set, path):
            raise DocumentStoreError(f"write failed: {path}")
        await super().set(path, value, merge=merge)


class HeldEventsStore(MemoryDocumentStore):
    """Memory store that can hold change events back and deliver them later"""

    def __init__(self):
        super().__init__()
        self.holding = False
        self.held = []

    def _publish(self, path, data):
        if self.holding:
            self.held.append((path, copy.deepcopy(data)))
        else:
            super()._publish(path, data)

    def release(self, count=1):
        for _ in range(count):
            path, data = self.held.pop(0)
            super()._publish(path, data)


class FakePaymentClient:
    def __init__(self, url="https://pay.example.com/session/1", error=None):
        self.url = url
        self.error = error
        self.requests = []

    async def create_checkout_session(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.url


async def seed_catalog(store):
    for item_id, data in CATALOG.items():
        await store.set(f"items/{item_id}", data)


async def eventually(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
async def store():
    store = FailingStore()
    await seed_catalog(store)
    yield store
    await store.close()


@pytest.fixture
def notifier():
    return Notifier(ttl_seconds=60)


@pytest.fixture
def catalog(store):
    return CatalogResolver(store)


@pytest.fixture
async def cart_service(store, catalog, notifier):
    service = CartService(store, catalog, notifier)
    yield service
    await service.close()


@pytest.fixture
def identity():
    return Identity(uid="user-1", email="shopper@example.com")


@pytest.fixture
def payment_client():
    return FakePaymentClient()


@pytest.fixture
def pending_orders():
    return PendingOrderStore(MemoryArtifactStore())


@pytest.fixture
def checkout_service(store, cart_service, payment_client, pending_orders, notifier):
    return CheckoutService(store, cart_service, payment_client, pending_orders, notifier)
