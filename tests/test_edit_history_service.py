import asyncio

from scriptvault.services.edit_history_service import edit_history_service, get_object_changes


def test_get_object_changes_normalizes_blank_and_boolean_values():
    old = {"name": "Orders", "description": None, "is_scheduled": False, "scope": " eu "}
    new = {"name": "Orders", "description": "", "is_scheduled": "false", "scope": "eu", "sql_content": "SELECT 1"}

    changes = get_object_changes(old, new)

    assert changes == [{"field": "sql_content", "old_value": None, "new_value": "SELECT 1"}]


def test_get_object_changes_ignores_untracked_fields():
    changes = get_object_changes({"updated_at": 1, "name": "a"}, {"updated_at": 2, "name": "b"})

    assert changes == [{"field": "name", "old_value": "a", "new_value": "b"}]


def test_get_object_changes_for_delete_lists_removed_values():
    changes = get_object_changes({"name": "Orders", "sql_content": "SELECT 1"}, None)

    assert {change["field"] for change in changes} == {"name", "sql_content"}
    assert all(change["new_value"] is None for change in changes)


def test_record_and_list_for_script(session_factory):
    async def scenario():
        async with session_factory() as session:
            await edit_history_service.record(
                session, "orders", "create", new_data={"name": "Orders", "sql_content": "SELECT 1"}
            )
            await edit_history_service.record(
                session,
                "orders",
                "update",
                old_data={"name": "Orders", "sql_content": "SELECT 1"},
                new_data={"name": "Orders", "sql_content": "SELECT 2"},
                description="tweak",
            )
            return await edit_history_service.list_for_script(session, "orders")

    rows = asyncio.run(scenario())

    assert [row.operation for row in rows] == ["update", "create"]
    assert rows[0].description == "tweak"
    assert edit_history_service.parse_changes(rows[0]) == [
        {"field": "sql_content", "old_value": "SELECT 1", "new_value": "SELECT 2"}
    ]
    assert rows[1].old_data_json is None
