import asyncio

from cartsync.document_store import ChangeEvent, MemoryDocumentStore


async def next_event(subscription):
    return await asyncio.wait_for(subscription.__anext__(), timeout=1)


async def test_document_subscription_starts_with_snapshot():
    store = MemoryDocumentStore()
    await store.set("items/A", {"price": 1})

    async with await store.subscribe("items/A") as subscription:
        assert await next_event(subscription) == ChangeEvent("items/A", {"price": 1})

        await store.set("items/A", {"price": 2})
        assert (await next_event(subscription)).data == {"price": 2}

        await store.delete("items/A")
        assert (await next_event(subscription)).deleted

    assert store.subscription_count == 0


async def test_pattern_subscription_yields_changes_only():
    store = MemoryDocumentStore()
    await store.set("items/A", {"price": 1})
    subscription = await store.subscribe("items/*")

    await store.set("items/B", {"price": 2})
    await store.set("users/u/cart/items", {"items": []})

    event = await next_event(subscription)
    assert event.path == "items/B"
    assert subscription._queue.empty()
    await subscription.close()


async def test_closed_subscription_stops_iteration():
    store = MemoryDocumentStore()
    subscription = await store.subscribe("items/A")
    received = []

    async def consume():
        async for event in subscription:
            received.append(event)

    task = asyncio.create_task(consume())
    await asyncio.sleep(0)
    await store.close()
    await asyncio.wait_for(task, timeout=1)

    assert received == [ChangeEvent("items/A", None)]


async def test_merge_set_keeps_other_fields():
    store = MemoryDocumentStore()
    await store.set("orders/1", {"status": "pending", "totalPrice": "10"})

    await store.set("orders/1", {"status": "processing"}, merge=True)

    assert await store.get("orders/1") == {"status": "processing", "totalPrice": "10"}


async def test_stored_documents_are_copies():
    store = MemoryDocumentStore()
    document = {"items": [{"itemId": "A"}]}
    await store.set("users/u/cart/items", document)

    document["items"].clear()
    fetched = await store.get("users/u/cart/items")
    fetched["items"].append({"itemId": "B"})

    assert await store.get("users/u/cart/items") == {"items": [{"itemId": "A"}]}


async def test_document_subscription_does_not_match_like_a_pattern():
    store = MemoryDocumentStore()
    subscription = await store.subscribe("items/A?")
    assert (await next_event(subscription)).data is None

    await store.set("items/AB", {"price": 1})
    await store.set("items/A?", {"price": 2})

    assert (await next_event(subscription)).path == "items/A?"
    assert subscription._queue.empty()
    await subscription.close()
