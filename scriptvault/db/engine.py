import logging
import time
from uuid import uuid4

from sqlalchemy import inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel.ext.asyncio.session import AsyncSession

from scriptvault.core.config import settings

logger = logging.getLogger(__name__)


def _is_postgres_url(database_url: str) -> bool:
    return database_url.startswith("postgresql") or database_url.startswith("postgres")


db_url = settings.DATABASE_URL
db_url_obj = make_url(db_url)
connect_args: dict = {}
engine_kwargs: dict = {
    "echo": False,
    "future": True,
}

if _is_postgres_url(db_url):
    # Prevent prepared statement collisions with asyncpg + PgBouncer transaction mode.
    connect_args["statement_cache_size"] = 0
    connect_args["prepared_statement_cache_size"] = 0
    connect_args["prepared_statement_name_func"] = lambda: f"__asyncpg_{uuid4()}__"

    # PgBouncer transaction pooling (6543) does not tolerate connection reuse.
    if db_url_obj.port == 6543:
        engine_kwargs["poolclass"] = NullPool

    if settings.ENVIRONMENT == "production":
        connect_args.setdefault("ssl", "require")

engine = create_async_engine(
    db_url,
    connect_args=connect_args,
    **engine_kwargs,
)

async_session_factory = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncSession:
    start_time = time.time()
    async with async_session_factory() as session:
        yield session

    duration = time.time() - start_time
    if duration > 0.2:
        logger.warning("Slow DB Session: %.4fs", duration)


async def init_db():
    from sqlmodel import SQLModel
    from scriptvault import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
        await conn.run_sync(_ensure_script_columns)
        await conn.run_sync(_ensure_version_columns)


async def check_db_connection():
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


def _add_missing_columns(sync_conn, table_name: str, additions: dict[str, str]) -> list[str]:
    inspector = inspect(sync_conn)
    if table_name not in inspector.get_table_names():
        return []

    existing = {col["name"] for col in inspector.get_columns(table_name)}
    added = []
    for column_name, column_type in additions.items():
        if column_name in existing:
            continue
        sync_conn.execute(text(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_type}"))
        added.append(column_name)
    if added:
        logger.info("Added columns to %s: %s", table_name, ", ".join(added))
    return added


def _ensure_script_columns(sync_conn):
    # Script records created before versioning lack the current-version pointer.
    return _add_missing_columns(
        sync_conn,
        "sqlscript",
        {
            "approval_status": "VARCHAR",
            "approval_request_id": "VARCHAR",
            "current_version_id": "VARCHAR",
            "current_version": "VARCHAR",
            "is_scheduled": "BOOLEAN DEFAULT FALSE",
            "cron_schedule": "VARCHAR DEFAULT ''",
        },
    )


def _ensure_version_columns(sync_conn):
    return _add_missing_columns(
        sync_conn,
        "scriptversion",
        {
            "execution_count": "INTEGER DEFAULT 0",
            "last_executed_at": "TIMESTAMP",
            "rollback_count": "INTEGER DEFAULT 0",
            "approval_status": "VARCHAR",
            "approval_request_id": "VARCHAR",
        },
    )
