from decimal import Decimal

from cartsync.cart_service import cart_path
from cartsync.models import Identity
from cartsync.session import CartContext, CartContextRegistry

from conftest import eventually


async def test_context_follows_cart_changes(cart_service, catalog, identity):
    context = CartContext(cart_service, catalog)
    await context.set_identity(identity)

    await cart_service.add(identity, "A")
    await cart_service.add(identity, "B", {"Color": "red"})

    projection = await context.settled()
    assert projection.total_price == Decimal("140")
    await context.close()


async def test_context_picks_up_other_device_writes(cart_service, catalog, identity, store):
    context = CartContext(cart_service, catalog)
    await context.set_identity(identity)

    await store.set(cart_path(identity.uid), {"items": [{"itemId": "A", "quantity": 3}]})

    await eventually(lambda: context.projection.item_count == 3)
    await context.close()


async def test_switching_identity_releases_old_subscriptions(cart_service, catalog, identity, store):
    await cart_service.add(identity, "A")
    context = CartContext(cart_service, catalog)
    await context.set_identity(identity)
    await eventually(lambda: store.subscription_count == 2)
    old_projection = context.projection

    other = Identity(uid="user-2")
    await context.set_identity(other)

    assert not cart_service.is_subscribed(identity.uid)
    assert cart_service.is_subscribed(other.uid)
    assert old_projection.watched_item_ids == set()
    assert context.projection.items == []

    # late writes to the old cart no longer reach the context
    await store.set(cart_path(identity.uid), {"items": [{"itemId": "B", "quantity": 1}]})
    await eventually(lambda: store.subscription_count == 1)
    assert context.projection.items == []
    await context.close()


async def test_logging_out_leaves_an_empty_view(cart_service, catalog, identity, store):
    context = CartContext(cart_service, catalog)
    await context.set_identity(identity)

    await context.set_identity(None)

    assert context.projection.items == []
    assert store.subscription_count == 0


async def test_registry_shares_one_context_per_user(cart_service, catalog, identity, store):
    registry = CartContextRegistry(cart_service, catalog)

    first = await registry.open(identity)
    second = await registry.open(identity)

    assert first is second
    await registry.close_all()
    assert store.subscription_count == 0
