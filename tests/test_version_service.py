import asyncio

import pytest
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from scriptvault.core.errors import NotFoundError
from scriptvault.core.rbac import Actor
from scriptvault.models.script import SqlScript
from scriptvault.models.user_role import Role
from scriptvault.models.version import ChangeType, ScriptSnapshot, ScriptVersion, VersionBump
from scriptvault.services import version_service as version_module
from scriptvault.services.script_service import script_service
from scriptvault.services.version_service import next_version, parse_version, version_service


AUTHOR = Actor(id="u_admin", email="admin@example.com", role=Role.ADMIN)


def _snapshot(sql: str, name: str = "Daily orders") -> ScriptSnapshot:
    return ScriptSnapshot(name=name, author="ops", hashtags=["orders"], sql_content=sql)


async def _current_versions(session, script_id):
    result = await session.exec(
        select(ScriptVersion).where(
            ScriptVersion.script_id == script_id,
            ScriptVersion.is_current_version == True,  # noqa: E712
        )
    )
    return result.all()


def test_parse_version_defaults_missing_parts():
    assert parse_version("1.10.3") == (1, 10, 3)
    assert parse_version("2") == (2, 0, 0)
    assert parse_version("") == (1, 0, 0)
    assert parse_version(None) == (1, 0, 0)
    assert parse_version("x.y.z") == (1, 0, 0)


def test_next_version_from_nothing_uses_one_zero_zero_base():
    assert next_version(None, VersionBump.MINOR) == "1.1.0"
    assert next_version(None, VersionBump.PATCH) == "1.0.1"
    assert next_version(None, VersionBump.MAJOR) == "2.0.0"


def test_next_version_zeroes_lower_components():
    assert next_version("1.9.4", "minor") == "1.10.0"
    assert next_version("1.9.4", "major") == "2.0.0"
    assert next_version("1.9.4", "patch") == "1.9.5"


def test_minor_patch_patch_then_rollback_mints_new_number(session_factory):
    async def scenario():
        async with session_factory() as session:
            await script_service.create_script(
                session,
                "orders_daily",
                {"name": "Daily orders", "sql_content": "SELECT 0;"},
            )
            first = await version_service.create_version(
                session, "orders_daily", _snapshot("SELECT 1;"), AUTHOR, ChangeType.CREATE, bump=VersionBump.MINOR
            )
            second = await version_service.create_version(
                session, "orders_daily", _snapshot("SELECT 2;"), AUTHOR, ChangeType.UPDATE, bump=VersionBump.PATCH
            )
            third = await version_service.create_version(
                session, "orders_daily", _snapshot("SELECT 3;"), AUTHOR, ChangeType.UPDATE, bump=VersionBump.PATCH
            )
            result = await version_service.rollback(session, "orders_daily", "1.1.0", AUTHOR)
            first_id = first.version_id
            versions = [first.version, second.version, third.version]
            previous_ids = [second.previous_version_id, third.previous_version_id]
            expected_previous = [first.version_id, second.version_id]

        async with session_factory() as session:
            rolled = await version_service.get_version(session, "orders_daily", "1.1.3")
            target = await version_service.get_version(session, "orders_daily", "1.1.0")
            current = await _current_versions(session, "orders_daily")
            script = await script_service.get_script(session, "orders_daily")
            return result, first_id, versions, previous_ids, expected_previous, rolled, target, current, script

    result, first_id, versions, previous_ids, expected_previous, rolled, target, current, script = asyncio.run(scenario())

    assert versions == ["1.1.0", "1.1.1", "1.1.2"]
    assert previous_ids == expected_previous
    assert result.version.version == "1.1.3"
    assert result.target_version == "1.1.0"
    assert result.message == "Rolled back to version 1.1.0"

    assert rolled.sql_content == "SELECT 1;"
    assert rolled.change_type == ChangeType.ROLLBACK.value
    assert rolled.change_description == "Rollback to version 1.1.0"
    assert rolled.version_id != first_id
    assert target.rollback_count == 1
    assert target.is_current_version is False

    assert [row.version for row in current] == ["1.1.3"]
    assert script.sql_content == "SELECT 1;"
    assert script.current_version == "1.1.3"
    assert script.current_version_id == rolled.version_id


def test_versions_sort_numerically_not_lexicographically(session_factory):
    async def scenario():
        async with session_factory() as session:
            for _ in range(10):
                await version_service.create_version(
                    session, "weekly", _snapshot("SELECT 1;"), AUTHOR, ChangeType.UPDATE, bump=VersionBump.MINOR
                )
            listed = await version_service.list_versions(session, "weekly", limit=3)
            following = await version_service.create_version(
                session, "weekly", _snapshot("SELECT 2;"), AUTHOR, ChangeType.UPDATE, bump=VersionBump.PATCH
            )
            return [row.version for row in listed], following.version

    listed, following = asyncio.run(scenario())

    assert listed == ["1.10.0", "1.9.0", "1.8.0"]
    assert following == "1.10.1"


def test_concurrent_version_creation_keeps_one_current_version(session_factory):
    async def create(sql):
        async with session_factory() as session:
            return await version_service.create_version(
                session, "shared", _snapshot(sql), AUTHOR, ChangeType.UPDATE, bump=VersionBump.PATCH
            )

    async def scenario():
        created = await asyncio.gather(*(create(f"SELECT {index};") for index in range(4)))
        async with session_factory() as session:
            current = await _current_versions(session, "shared")
            listed = await version_service.list_versions(session, "shared")
        return created, current, listed

    created, current, listed = asyncio.run(scenario())

    assert sorted(row.version for row in created) == ["1.0.1", "1.0.2", "1.0.3", "1.0.4"]
    assert len(current) == 1
    assert current[0].version == "1.0.4"
    assert len(listed) == 4


def test_lost_race_is_retried(session_factory, monkeypatch: pytest.MonkeyPatch):
    original = version_service._insert_next_version
    calls = {"count": 0}

    async def _flaky_insert(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise version_module._CurrentVersionMoved("ver_old is no longer current")
        return await original(*args, **kwargs)

    monkeypatch.setattr(version_service, "_insert_next_version", _flaky_insert)

    async def scenario():
        async with session_factory() as session:
            return await version_service.create_version(
                session, "retry", _snapshot("SELECT 1;"), AUTHOR, ChangeType.CREATE, bump=VersionBump.MINOR
            )

    version = asyncio.run(scenario())

    assert calls["count"] == 2
    assert version.version == "1.1.0"


def test_statistics_without_versions_report_no_current(session_factory):
    async def scenario():
        async with session_factory() as session:
            return await version_service.get_statistics(session, "missing")

    stats = asyncio.run(scenario())

    assert stats.total_versions == 0
    assert stats.current_version is None
    assert stats.total_executions == 0
    assert stats.total_rollbacks == 0
    assert stats.latest_change is None


def test_statistics_count_executions_and_rollbacks(session_factory):
    async def scenario():
        async with session_factory() as session:
            await version_service.create_version(
                session, "stats", _snapshot("SELECT 1;"), AUTHOR, ChangeType.CREATE, bump=VersionBump.MINOR
            )
            await version_service.create_version(
                session, "stats", _snapshot("SELECT 2;"), AUTHOR, ChangeType.UPDATE
            )
            recorded = await version_service.record_execution(session, "stats")
            await version_service.record_execution(session, "stats")
            await version_service.rollback(session, "stats", "1.1.0", AUTHOR, reason="bad join")
        async with session_factory() as session:
            stats = await version_service.get_statistics(session, "stats")
            latest = await version_service.get_version(session, "stats", "1.1.2")
        return recorded, stats, latest

    recorded, stats, latest = asyncio.run(scenario())

    assert recorded is True
    assert stats.total_versions == 3
    assert stats.current_version == "1.1.2"
    assert stats.total_executions == 2
    assert stats.total_rollbacks == 1
    assert stats.latest_change is not None
    assert latest.change_description == "bad join"


def test_record_execution_without_current_version(session_factory):
    async def scenario():
        async with session_factory() as session:
            return await version_service.record_execution(session, "nothing")

    assert asyncio.run(scenario()) is False


def test_missing_versions_raise_not_found(session_factory):
    async def scenario():
        async with session_factory() as session:
            await version_service.create_version(
                session, "known", _snapshot("SELECT 1;"), AUTHOR, ChangeType.CREATE, bump=VersionBump.MINOR
            )
            with pytest.raises(NotFoundError):
                await version_service.rollback(session, "known", "9.9.9", AUTHOR)
            with pytest.raises(NotFoundError):
                await version_service.compare(session, "known", "1.1.0", "1.2.0")
            return await version_service.get_version(session, "known", "9.9.9")

    assert asyncio.run(scenario()) is None


def test_rollback_without_script_record_still_versions(session_factory):
    async def scenario():
        async with session_factory() as session:
            await version_service.create_version(
                session, "orphan", _snapshot("SELECT 1;"), AUTHOR, ChangeType.CREATE, bump=VersionBump.MINOR
            )
            result = await version_service.rollback(session, "orphan", "1.1.0", AUTHOR)
        async with session_factory() as session:
            scripts = (await session.exec(select(SqlScript))).all()
        return result, scripts

    result, scripts = asyncio.run(scenario())

    assert result.version.version == "1.1.1"
    assert scripts == []


def test_compare_reports_line_set_difference(session_factory):
    async def scenario():
        async with session_factory() as session:
            await version_service.create_version(
                session, "diffed", _snapshot("SELECT 1;\nSELECT 2;"), AUTHOR, ChangeType.CREATE, bump=VersionBump.MINOR
            )
            await version_service.create_version(
                session, "diffed", _snapshot("SELECT 2;\nSELECT 3;", name="Daily orders v2"), AUTHOR, ChangeType.UPDATE
            )
            return await version_service.compare(session, "diffed", "1.1.0", "1.1.1")

    diff = asyncio.run(scenario())

    assert diff.sql_diff.deletions == ["SELECT 1;"]
    assert diff.sql_diff.additions == ["SELECT 3;"]
    assert diff.sql_diff.modifications == []
    assert diff.changed_fields == ["name", "sql_content"]


def test_failed_rollback_commit_leaves_no_version_and_no_count(session_factory, monkeypatch: pytest.MonkeyPatch):
    async def setup():
        async with session_factory() as session:
            await script_service.create_script(
                session,
                "atomic",
                {"name": "Daily orders", "sql_content": "SELECT 0;"},
            )
            await version_service.create_version(
                session, "atomic", _snapshot("SELECT 1;"), AUTHOR, ChangeType.CREATE, bump=VersionBump.MINOR
            )
            await version_service.create_version(
                session, "atomic", _snapshot("SELECT 2;"), AUTHOR, ChangeType.UPDATE, bump=VersionBump.PATCH
            )

    asyncio.run(setup())

    original_commit = AsyncSession.commit
    calls = {"count": 0}

    async def _commit_fails_once(self):
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("connection dropped")
        return await original_commit(self)

    monkeypatch.setattr(AsyncSession, "commit", _commit_fails_once)

    async def scenario():
        async with session_factory() as session:
            with pytest.raises(RuntimeError):
                await version_service.rollback(session, "atomic", "1.1.0", AUTHOR)
        async with session_factory() as session:
            failed = (
                await version_service.get_version(session, "atomic", "1.1.0"),
                await version_service.list_versions(session, "atomic"),
                await script_service.get_script(session, "atomic"),
            )
        async with session_factory() as session:
            await version_service.rollback(session, "atomic", "1.1.0", AUTHOR)
        async with session_factory() as session:
            retried = await version_service.get_version(session, "atomic", "1.1.0")
        return failed, retried

    (target, versions, script), retried = asyncio.run(scenario())

    assert target.rollback_count == 0
    assert [row.version for row in versions] == ["1.1.1", "1.1.0"]
    assert script.sql_content == "SELECT 0;"
    assert script.current_version == "1.1.1"
    assert retried.rollback_count == 1
