import asyncio
import os
from types import SimpleNamespace

os.environ["CACHE_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("APPROVAL_WEBHOOK_URL", None)

import pytest
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from scriptvault import models  # noqa: F401
from scriptvault.core.rbac import Actor, set_user_role
from scriptvault.models.user_role import Role


ADMIN = Actor(id="u_admin", email="admin@example.com", role=Role.ADMIN)
MANAGER = Actor(id="u_manager", email="manager@example.com", role=Role.MANAGER)
DEVELOPER = Actor(id="u_dev", email="dev@example.com", role=Role.DEVELOPER)
OTHER_DEVELOPER = Actor(id="u_dev2", email="dev2@example.com", role=Role.DEVELOPER)
VIEWER = Actor(id="u_viewer", email="viewer@example.com", role=Role.VIEWER)


@pytest.fixture
def session_factory(tmp_path):
    db_path = tmp_path / "scriptvault.db"

    sync_engine = create_engine(f"sqlite:///{db_path}")
    SQLModel.metadata.create_all(sync_engine)
    sync_engine.dispose()

    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory
    asyncio.run(engine.dispose())


@pytest.fixture
def actors(session_factory):
    async def _seed():
        async with session_factory() as session:
            for actor in (ADMIN, MANAGER, DEVELOPER, OTHER_DEVELOPER, VIEWER):
                await set_user_role(session, actor.id, actor.email, actor.role, assigned_by="test")

    asyncio.run(_seed())
    return SimpleNamespace(
        admin=ADMIN,
        manager=MANAGER,
        developer=DEVELOPER,
        other_developer=OTHER_DEVELOPER,
        viewer=VIEWER,
    )
