import asyncio
import itertools

import pytest

from bhejo.documents import DocumentNotFound, InMemoryDocumentStore


def sequential_ids():
    counter = itertools.count(1)
    return lambda: f"doc-{next(counter)}"


def test_add_get_set_update(documents):
    async def scenario():
        doc_id = await documents.add("orders", {"status": "pending", "price": {"total": 99}})
        await documents.update("orders", doc_id, {"status": "assigned"})
        await documents.set("users", "u1", {"name": "Asha"})
        return doc_id, await documents.get("orders", doc_id), await documents.get("users", "u1")

    doc_id, order, user = asyncio.run(scenario())
    assert doc_id
    assert order == {"status": "assigned", "price": {"total": 99}}
    assert user == {"name": "Asha"}


def test_missing_document(documents):
    assert asyncio.run(documents.get("orders", "nope")) is None
    with pytest.raises(DocumentNotFound):
        asyncio.run(documents.update("orders", "nope", {"status": "assigned"}))
    with pytest.raises(DocumentNotFound):
        asyncio.run(documents.compare_and_set("orders", "nope", {}, {"status": "assigned"}))


def test_reads_are_copies(documents):
    data = {"tags": ["fragile"]}
    doc_id = asyncio.run(documents.add("orders", data))
    data["tags"].append("mutated")
    fetched = asyncio.run(documents.get("orders", doc_id))
    fetched["tags"].append("also mutated")

    assert asyncio.run(documents.get("orders", doc_id)) == {"tags": ["fragile"]}


def test_compare_and_set(documents):
    asyncio.run(documents.set("orders", "o1", {"status": "pending", "partner_id": None}))

    claimed = asyncio.run(documents.compare_and_set(
        "orders", "o1", {"status": "pending", "partner_id": None}, {"status": "assigned", "partner_id": "p1"}
    ))
    again = asyncio.run(documents.compare_and_set(
        "orders", "o1", {"status": "pending", "partner_id": None}, {"status": "assigned", "partner_id": "p2"}
    ))

    assert claimed is True
    assert again is False
    assert asyncio.run(documents.get("orders", "o1"))["partner_id"] == "p1"


def test_compare_and_set_distinguishes_missing_from_none(documents):
    asyncio.run(documents.set("orders", "o1", {"status": "pending"}))
    assert asyncio.run(documents.compare_and_set("orders", "o1", {"partner_id": None}, {"x": 1})) is False


def test_concurrent_compare_and_set_has_one_winner(documents):
    asyncio.run(documents.set("orders", "o1", {"status": "pending", "partner_id": None}))

    async def claim(partner_id):
        return await documents.compare_and_set(
            "orders", "o1",
            {"status": "pending", "partner_id": None},
            {"status": "assigned", "partner_id": partner_id},
        )

    async def race():
        return await asyncio.gather(*(claim(f"p{i}") for i in range(10)))

    results = asyncio.run(race())
    assert results.count(True) == 1
    winner = f"p{results.index(True)}"
    assert asyncio.run(documents.get("orders", "o1"))["partner_id"] == winner


def test_transaction_merges_and_aborts(documents):
    asyncio.run(documents.set("users", "p1", {"rating": 4.0, "total_ratings": 3}))

    def add_five(current):
        count = current["total_ratings"]
        return {"rating": (current["rating"] * count + 5) / (count + 1), "total_ratings": count + 1}

    after = asyncio.run(documents.transaction("users", "p1", add_five))
    assert after == {"rating": 4.25, "total_ratings": 4}

    assert asyncio.run(documents.transaction("users", "p1", lambda current: None)) is None
    assert asyncio.run(documents.get("users", "p1")) == after


def test_transaction_can_create_document(documents):
    created = asyncio.run(documents.transaction("users", "new", lambda current: {"seen": current is None}))
    assert created == {"seen": True}


def test_concurrent_transactions_do_not_lose_updates(documents):
    asyncio.run(documents.set("counters", "c", {"n": 0}))

    async def bump():
        await documents.transaction("counters", "c", lambda current: {"n": current["n"] + 1})

    async def race():
        await asyncio.gather(*(bump() for _ in range(25)))

    asyncio.run(race())
    assert asyncio.run(documents.get("counters", "c")) == {"n": 25}


def test_query_filters_order_and_limit():
    store = InMemoryDocumentStore(id_factory=sequential_ids())

    async def scenario():
        await store.add("orders", {"customer_id": "c1", "status": "pending", "created_at": 3})
        await store.add("orders", {"customer_id": "c1", "status": "delivered", "created_at": 1})
        await store.add("orders", {"customer_id": "c1", "status": "assigned", "created_at": 2})
        await store.add("orders", {"customer_id": "c2", "status": "pending", "created_at": 4})
        await store.add("orders", {"customer_id": "c1", "status": "pending"})
        return (
            await store.query("orders", [("customer_id", "==", "c1")], order_by="created_at", descending=True),
            await store.query("orders", [("status", "in", ["assigned", "delivered"])], order_by="created_at"),
            await store.query("orders", [("status", "!=", "pending"), ("created_at", ">=", 2)]),
            await store.query("orders", [("created_at", "<=", 2)], order_by="created_at", limit=1),
        )

    newest_first, active, filtered, oldest = asyncio.run(scenario())
    assert [doc_id for doc_id, _ in newest_first] == ["doc-1", "doc-3", "doc-2", "doc-5"]
    assert [doc["status"] for _, doc in active] == ["delivered", "assigned"]
    assert [doc_id for doc_id, _ in filtered] == ["doc-3"]
    assert [doc_id for doc_id, _ in oldest] == ["doc-2"]


def test_query_rejects_unknown_operator(documents):
    asyncio.run(documents.set("orders", "o1", {"status": "pending"}))
    with pytest.raises(ValueError):
        asyncio.run(documents.query("orders", [("status", "~=", "pend")]))


def test_on_snapshot(documents):
    seen = []
    unsubscribe = documents.on_snapshot("orders", "o1", seen.append)

    asyncio.run(documents.set("orders", "o1", {"status": "pending"}))
    asyncio.run(documents.update("orders", "o1", {"status": "assigned"}))
    asyncio.run(documents.set("orders", "o2", {"status": "pending"}))
    unsubscribe()
    asyncio.run(documents.update("orders", "o1", {"status": "in-transit"}))

    assert seen == [None, {"status": "pending"}, {"status": "assigned"}]


def test_failing_snapshot_callback_does_not_break_writes(documents):
    def broken(_):
        raise RuntimeError("subscriber bug")

    documents.on_snapshot("orders", "o1", broken)
    asyncio.run(documents.set("orders", "o1", {"status": "pending"}))
    assert asyncio.run(documents.get("orders", "o1")) == {"status": "pending"}
