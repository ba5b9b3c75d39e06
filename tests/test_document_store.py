"""Document store contract over the SQL backend."""

import pytest

from app.core.exceptions import ContentionError, NotFoundError, ValidationError
from app.store import DOCUMENT_ID, SERVER_TIMESTAMP, ArrayUnion, DocRef, Filter, WriteOp


@pytest.mark.asyncio
async def test_get_missing_document_returns_none(store) -> None:
    assert await store.get("pupils", "nobody") is None


@pytest.mark.asyncio
async def test_set_replaces_and_merge_upserts_fields(store) -> None:
    await store.set("pupils", "p1", {"name": "Ada", "class": {"id": "c1", "name": "Nursery1"}, "gender": "F"})
    await store.set("pupils", "p1", {"class": {"name": "Nursery One"}}, merge=True)

    doc = await store.get("pupils", "p1")
    assert doc.data == {"name": "Ada", "class": {"id": "c1", "name": "Nursery One"}, "gender": "F"}

    await store.set("pupils", "p1", {"name": "Ada Lovelace"})
    doc = await store.get("pupils", "p1")
    assert doc.data == {"name": "Ada Lovelace"}


@pytest.mark.asyncio
async def test_server_timestamp_and_array_union_are_resolved_on_commit(store) -> None:
    await store.set("pupils", "p1", {"history": [{"n": 1}], "createdAt": SERVER_TIMESTAMP})
    await store.update("pupils", "p1", {"history": ArrayUnion({"n": 1}, {"n": 2}), "class.id": "c2"})

    doc = await store.get("pupils", "p1")
    assert isinstance(doc.data["createdAt"], str)
    assert doc.data["history"] == [{"n": 1}, {"n": 2}]
    assert doc.data["class"] == {"id": "c2"}


@pytest.mark.asyncio
async def test_query_filters_order_and_limit(store) -> None:
    await store.set("pupils", "p1", {"name": "Chidi", "class": {"id": "c1"}})
    await store.set("pupils", "p2", {"name": "Ada", "class": {"id": "c1"}})
    await store.set("pupils", "p3", {"name": "Bola", "class": {"id": "c2"}})

    docs = await store.query("pupils", [Filter.eq("class.id", "c1")], order_by="name")
    assert [d.id for d in docs] == ["p2", "p1"]

    docs = await store.query("pupils", [Filter.is_in(DOCUMENT_ID, ["p1", "p3"])], order_by="name", descending=True)
    assert [d.id for d in docs] == ["p1", "p3"]

    docs = await store.query("pupils", order_by="name", limit=1)
    assert [d.id for d in docs] == ["p2"]


@pytest.mark.asyncio
async def test_in_filter_is_capped(store) -> None:
    with pytest.raises(ValidationError):
        await store.query("pupils", [Filter.is_in(DOCUMENT_ID, [f"p{i}" for i in range(11)])])


@pytest.mark.asyncio
async def test_batch_commit_is_all_or_nothing(store) -> None:
    await store.set("pupils", "p1", {"name": "Ada"})
    ops = [
        WriteOp.update("pupils", "p1", {"name": "Changed"}),
        WriteOp.set("alumni", "p1", {"name": "Ada"}),
        WriteOp.update("pupils", "ghost", {"name": "Nobody"}),
    ]
    with pytest.raises(NotFoundError):
        await store.batch_commit(ops)

    assert (await store.get("pupils", "p1")).data["name"] == "Ada"
    assert await store.get("alumni", "p1") is None


@pytest.mark.asyncio
async def test_batch_commit_rejects_oversized_batches(store) -> None:
    ops = [WriteOp.set("items", str(i), {"i": i}) for i in range(store.max_batch_ops + 1)]
    with pytest.raises(ValidationError):
        await store.batch_commit(ops)


@pytest.mark.asyncio
async def test_move_semantics_in_one_batch(store) -> None:
    await store.set("pupils", "p1", {"name": "Ada"})
    await store.batch_commit([WriteOp.set("alumni", "p1", {"name": "Ada"}), WriteOp.delete("pupils", "p1")])
    assert await store.get("pupils", "p1") is None
    assert (await store.get("alumni", "p1")).data == {"name": "Ada"}


@pytest.mark.asyncio
async def test_transaction_retries_after_concurrent_change(store) -> None:
    await store.set("classes", "c1", {"name": "Nursery1", "subjects": []})
    ref = DocRef("classes", "c1")
    calls = {"n": 0}

    async def build(results):
        calls["n"] += 1
        if calls["n"] == 1:
            # Another writer touches the document between read and commit.
            await store.set("classes", "c1", {"note": "edited"}, merge=True)
        return [WriteOp.update("classes", "c1", {"subjects": ["Math"]})]

    await store.transaction([ref], build)

    assert calls["n"] == 2
    doc = await store.get("classes", "c1")
    assert doc.data["subjects"] == ["Math"]
    assert doc.data["note"] == "edited"


@pytest.mark.asyncio
async def test_transaction_gives_up_with_contention_error(store) -> None:
    await store.set("classes", "c1", {"name": "Nursery1"})

    async def build(results):
        await store.set("classes", "c1", {"touched": True}, merge=True)
        return [WriteOp.update("classes", "c1", {"subjects": ["Math"]})]

    with pytest.raises(ContentionError):
        await store.transaction([DocRef("classes", "c1")], build)
    assert "subjects" not in (await store.get("classes", "c1")).data
