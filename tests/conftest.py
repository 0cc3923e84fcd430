from __future__ import annotations

import os
from pathlib import Path
from typing import AsyncIterator

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./data/test-roomkey.db")
os.environ["LOG_FILE"] = ""
os.environ["APP_KEY"] = "test-app-key-0123456789-abcdefghijklmnop"
os.environ["APP_ENV"] = "test"

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from roomkey.models import Base, Room
from roomkey.services import rooms as room_service


@pytest.fixture
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'roomkey.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
async def session(sessionmaker: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with sessionmaker() as db_session:
        yield db_session


@pytest.fixture
async def room(session: AsyncSession) -> Room:
    return await room_service.create_room(session, room_number="7")
