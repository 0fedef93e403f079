import asyncio

import pytest

from cartsync.cart_service import LOGIN_REQUIRED_MESSAGE, CartService, cart_path, parse_cart_document
from cartsync.catalog import CatalogResolver
from cartsync.exceptions import CartPersistenceError, CatalogItemNotFoundError
from cartsync.models import Identity

from conftest import HeldEventsStore, eventually, seed_catalog


def quantities(references):
    return {(r.item_id, tuple(sorted((r.selected_variations or {}).items()))): r.quantity for r in references}


async def test_adding_same_item_twice_increments_one_line(cart_service, identity, store):
    await cart_service.add(identity, "A")
    references = await cart_service.add(identity, "A")

    assert len(references) == 1
    assert references[0].quantity == 2

    document = await store.get(cart_path(identity.uid))
    assert document["items"] == [{"itemId": "A", "quantity": 2, "selectedVariations": None}]
    assert "lastUpdated" in document


async def test_different_variations_are_separate_lines(cart_service, identity):
    await cart_service.add(identity, "B", {"Color": "red"})
    references = await cart_service.add(identity, "B", {"Color": "blue"})

    assert quantities(references) == {
        ("B", (("Color", "red"),)): 1,
        ("B", (("Color", "blue"),)): 1,
    }


async def test_variation_key_order_does_not_split_lines(cart_service, identity):
    await cart_service.add(identity, "B", {"Color": "red", "Size": "M"})
    references = await cart_service.add(identity, "B", {"Size": "M", "Color": "red"})

    assert len(references) == 1
    assert references[0].quantity == 2


async def test_empty_variations_match_no_variations(cart_service, identity):
    await cart_service.add(identity, "A", {})
    references = await cart_service.add(identity, "A")

    assert len(references) == 1
    assert references[0].selected_variations is None


async def test_add_notifies_success(cart_service, identity, notifier):
    await cart_service.add(identity, "A")
    await cart_service.add(identity, "A")

    messages = [n.message for n in notifier.active(identity.uid)]
    assert "Added Keyboard to cart" in messages
    assert "Updated quantity of Keyboard in cart" in messages


async def test_set_quantity_replaces_quantity(cart_service, identity):
    await cart_service.add(identity, "A")
    references = await cart_service.set_quantity(identity, "A", 5)

    assert references[0].quantity == 5


async def test_set_quantity_zero_removes_line(cart_service, identity):
    await cart_service.add(identity, "A")
    await cart_service.add(identity, "B", {"Color": "red"})
    references = await cart_service.set_quantity(identity, "A", 0)

    assert [r.item_id for r in references] == ["B"]


async def test_set_quantity_for_missing_line_writes_nothing(cart_service, identity, store):
    await cart_service.add(identity, "A")
    before = await store.get(cart_path(identity.uid))

    references = await cart_service.set_quantity(identity, "B", 3)

    assert [r.item_id for r in references] == ["A"]
    assert await store.get(cart_path(identity.uid)) == before


async def test_remove_matches_variations(cart_service, identity):
    await cart_service.add(identity, "B", {"Color": "red"})
    await cart_service.add(identity, "B", {"Color": "blue"})

    references = await cart_service.remove(identity, "B", {"Color": "red"})

    assert len(references) == 1
    assert references[0].selected_variations == {"Color": "blue"}


async def test_clear_writes_empty_list(cart_service, identity, store):
    await cart_service.add(identity, "A")
    references = await cart_service.clear(identity)

    assert references == []
    assert (await store.get(cart_path(identity.uid)))["items"] == []


async def test_first_access_creates_empty_document(cart_service, identity, store):
    assert await store.get(cart_path(identity.uid)) is None

    references = await cart_service.get_references(identity)

    assert references == []
    assert (await store.get(cart_path(identity.uid)))["items"] == []


async def test_without_identity_nothing_is_written(cart_service, notifier, store):
    assert await cart_service.add(None, "A") is None
    assert await cart_service.clear(None) is None
    assert await cart_service.subscribe_to_remote_changes(None) is False

    assert store.paths("users/") == []
    warnings = [n for n in notifier.active() if n.type == "warning"]
    assert warnings and warnings[0].message == LOGIN_REQUIRED_MESSAGE


async def test_adding_missing_catalog_item_fails(cart_service, identity, notifier):
    await cart_service.add(identity, "A")

    with pytest.raises(CatalogItemNotFoundError):
        await cart_service.add(identity, "ghost")

    assert [r.item_id for r in await cart_service.get_references(identity)] == ["A"]
    errors = [n for n in notifier.active(identity.uid) if n.type == "error"]
    assert errors[0].message == "This product is no longer available."


async def test_concurrent_adds_are_not_lost(cart_service, identity, store):
    await asyncio.gather(*(cart_service.add(identity, "A") for _ in range(5)))

    references = await cart_service.get_references(identity)
    assert references[0].quantity == 5
    assert (await store.get(cart_path(identity.uid)))["items"][0]["quantity"] == 5


async def test_carts_are_isolated_per_user(cart_service, identity):
    other = Identity(uid="user-2")
    await cart_service.add(identity, "A")
    await cart_service.add(other, "B", {"Color": "red"})

    assert [r.item_id for r in await cart_service.get_references(identity)] == ["A"]
    assert [r.item_id for r in await cart_service.get_references(other)] == ["B"]


async def test_write_failure_raises_and_keeps_mirror(cart_service, identity, store, notifier):
    await cart_service.add(identity, "A")
    store.fail_set.add("users/")

    with pytest.raises(CartPersistenceError):
        await cart_service.add(identity, "A")

    references = await cart_service.get_references(identity)
    assert references[0].quantity == 1
    assert any(n.type == "error" for n in notifier.active(identity.uid))


async def test_remote_changes_update_mirror_and_listeners(cart_service, identity, store):
    await cart_service.get_references(identity)
    seen = []
    cart_service.add_listener(identity.uid, seen.append)
    assert await cart_service.subscribe_to_remote_changes(identity) is True

    # written by another device
    await store.set(cart_path(identity.uid), {"items": [{"itemId": "B", "quantity": 3}]})

    await eventually(lambda: seen and seen[-1] and seen[-1][0].item_id == "B")
    references = await cart_service.get_references(identity)
    assert references[0].quantity == 3


async def test_subscribing_twice_installs_one_feed(cart_service, identity, store):
    assert await cart_service.subscribe_to_remote_changes(identity) is True
    assert await cart_service.subscribe_to_remote_changes(identity) is False

    assert store.subscription_count == 1
    assert cart_service.is_subscribed(identity.uid)


async def test_unsubscribe_stops_remote_updates(cart_service, identity, store):
    await cart_service.subscribe_to_remote_changes(identity)
    seen = []
    cart_service.add_listener(identity.uid, seen.append)
    await cart_service.unsubscribe(identity.uid)

    await store.set(cart_path(identity.uid), {"items": [{"itemId": "B", "quantity": 3}]})
    await asyncio.sleep(0.05)

    assert store.subscription_count == 0
    assert not any(seen)
    assert not cart_service.is_subscribed(identity.uid)


def test_parse_cart_document_skips_invalid_and_folds_duplicates():
    references = parse_cart_document({
        "items": [
            {"itemId": "A", "quantity": 1},
            {"itemId": "A", "quantity": 2, "selectedVariations": {}},
            {"quantity": 4},
            {"itemId": "B", "quantity": 0},
        ]
    })

    assert len(references) == 1
    assert references[0].quantity == 3


async def test_late_echo_of_own_write_does_not_roll_back_cart(notifier, identity):
    store = HeldEventsStore()
    await seed_catalog(store)
    service = CartService(store, CatalogResolver(store), notifier)
    await service.get_references(identity)
    await service.subscribe_to_remote_changes(identity)
    await asyncio.sleep(0.01)

    store.holding = True
    await service.add(identity, "A")
    await service.add(identity, "A")
    # the first write's change event shows up after the second write
    store.release()
    await asyncio.sleep(0.01)
    await service.add(identity, "A")
    store.release(len(store.held))
    await asyncio.sleep(0.01)

    assert (await store.get(cart_path(identity.uid)))["items"][0]["quantity"] == 3
    assert (await service.get_references(identity))[0].quantity == 3
    await service.close()
    await store.close()


async def test_other_device_write_after_own_write_is_applied(notifier, identity):
    store = HeldEventsStore()
    await seed_catalog(store)
    service = CartService(store, CatalogResolver(store), notifier)
    await service.get_references(identity)
    await service.subscribe_to_remote_changes(identity)
    await asyncio.sleep(0.01)

    store.holding = True
    await service.add(identity, "A")
    await store.set(cart_path(identity.uid), {"items": [{"itemId": "B", "quantity": 4}]})
    store.release(len(store.held))

    await eventually(lambda: service._mirrors[identity.uid][0].item_id == "B")
    await service.close()
    await store.close()
