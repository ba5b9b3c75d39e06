import pytest

from app.api.v1.class_hierarchy import service as hierarchy_service
from app.api.v1.classes import service as class_service
from app.core.exceptions import ValidationError

from tests.factories import make_class


@pytest.mark.asyncio
async def test_scenario_nursery_to_primary(store, school) -> None:
    assert await hierarchy_service.get_next(store, "Nursery1") == "Nursery2"
    assert await hierarchy_service.get_next(store, "Nursery2") == "Primary1"
    assert await hierarchy_service.is_terminal(store, "Primary1") is True
    assert await hierarchy_service.is_terminal(store, "Nursery2") is False


@pytest.mark.asyncio
async def test_last_class_is_terminal_and_has_no_next(store, school) -> None:
    hierarchy = await hierarchy_service.get_hierarchy(store)
    last = (await class_service.get_class(store, hierarchy.ordered_class_ids[-1])).name
    assert await hierarchy_service.is_terminal(store, last) is True
    assert await hierarchy_service.get_next(store, last) is None


@pytest.mark.asyncio
async def test_unknown_class_has_no_next(store, school) -> None:
    assert await hierarchy_service.get_next(store, "JSS1") is None
    assert await hierarchy_service.is_terminal(store, "JSS1") is False


@pytest.mark.asyncio
async def test_initialize_builds_alphabetical_order_once(store, admin) -> None:
    b = await make_class(store, "Orange")
    a = await make_class(store, "Apple")

    first = await hierarchy_service.initialize(store, initiated_by=admin.id)
    assert first.created is True
    assert first.class_count == 2
    assert (await hierarchy_service.get_hierarchy(store)).ordered_class_ids == [a.id, b.id]

    await make_class(store, "Banana")
    second = await hierarchy_service.initialize(store, initiated_by=admin.id)
    assert second.created is False
    assert (await hierarchy_service.get_hierarchy(store)).ordered_class_ids == [a.id, b.id]


@pytest.mark.asyncio
async def test_initialize_with_no_classes_is_empty_not_an_error(store) -> None:
    result = await hierarchy_service.initialize(store)
    assert result.created is True
    assert result.is_empty is True
    assert (await hierarchy_service.get_hierarchy(store)).ordered_class_ids == []
    assert await hierarchy_service.is_terminal(store, "Anything") is False


@pytest.mark.asyncio
async def test_save_rejects_empty_and_unknown_ids(store, school) -> None:
    with pytest.raises(ValidationError):
        await hierarchy_service.save(store, [])
    with pytest.raises(ValidationError):
        await hierarchy_service.save(store, [school["Nursery1"].id, "missing-class"])
    with pytest.raises(ValidationError):
        await hierarchy_service.save(store, [school["Nursery1"].id, school["Nursery1"].id])


@pytest.mark.asyncio
async def test_save_replaces_order(store, school) -> None:
    ids = [school["Primary1"].id, school["Nursery1"].id, school["Nursery2"].id]
    saved = await hierarchy_service.save(store, ids, updated_by="admin-1")
    assert saved.ordered_class_ids == ids
    assert await hierarchy_service.get_next(store, "Primary1") == "Nursery1"
    assert await hierarchy_service.is_terminal(store, "Nursery2") is True


@pytest.mark.asyncio
async def test_deleted_class_is_skipped_in_display_but_kept_in_stored_order(store, school) -> None:
    await class_service.delete_class(store, school["Nursery2"].id)

    display = await hierarchy_service.list_classes_in_order(store)
    assert [c.name for c in display] == ["Nursery1", "Primary1"]

    stored = await hierarchy_service.get_hierarchy(store)
    assert school["Nursery2"].id in stored.ordered_class_ids
    # The raw order still has the dangling id after Nursery1, so no silent renumbering to Primary1.
    assert await hierarchy_service.get_next(store, "Nursery1") is None
    assert await hierarchy_service.is_terminal(store, "Primary1") is True


@pytest.mark.asyncio
async def test_new_classes_are_appended_to_display_list(store, school) -> None:
    await make_class(store, "Basic1")
    display = await hierarchy_service.list_classes_in_order(store)
    assert [c.name for c in display] == ["Nursery1", "Nursery2", "Primary1", "Basic1"]
    assert await hierarchy_service.get_grade_level(store, "Nursery2") == 2
    assert await hierarchy_service.get_grade_level(store, "Basic1") == 4
    assert await hierarchy_service.get_grade_level(store, "Ghost") == 0
