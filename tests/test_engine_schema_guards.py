from sqlalchemy import create_engine, inspect, text

from scriptvault.db.engine import _ensure_script_columns, _ensure_version_columns


def test_ensure_script_columns_adds_missing_columns():
    engine = create_engine("sqlite:///:memory:")

    with engine.begin() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE sqlscript (
                    id INTEGER PRIMARY KEY,
                    script_id VARCHAR NOT NULL,
                    name VARCHAR NOT NULL,
                    sql_content VARCHAR NOT NULL
                )
                """
            )
        )

        # Must be safe to run repeatedly during startup.
        first = _ensure_script_columns(conn)
        second = _ensure_script_columns(conn)

        columns = {col["name"] for col in inspect(conn).get_columns("sqlscript")}

    assert "current_version_id" in columns
    assert "current_version" in columns
    assert "approval_status" in columns
    assert "approval_request_id" in columns
    assert "is_scheduled" in columns
    assert "cron_schedule" in columns
    assert len(first) == 6
    assert second == []


def test_ensure_version_columns_adds_missing_columns():
    engine = create_engine("sqlite:///:memory:")

    with engine.begin() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE scriptversion (
                    id INTEGER PRIMARY KEY,
                    version_id VARCHAR NOT NULL,
                    script_id VARCHAR NOT NULL,
                    version VARCHAR NOT NULL
                )
                """
            )
        )

        _ensure_version_columns(conn)
        _ensure_version_columns(conn)

        columns = {col["name"] for col in inspect(conn).get_columns("scriptversion")}

    assert "execution_count" in columns
    assert "last_executed_at" in columns
    assert "rollback_count" in columns
    assert "approval_status" in columns
    assert "approval_request_id" in columns


def test_ensure_columns_skips_missing_tables():
    engine = create_engine("sqlite:///:memory:")

    with engine.begin() as conn:
        assert _ensure_script_columns(conn) == []
        assert _ensure_version_columns(conn) == []
