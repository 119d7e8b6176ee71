from collections.abc import AsyncIterator

import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from diskwatch.app.storage import SnapshotRepository


@pytest_asyncio.fixture
async def store(tmp_path) -> AsyncIterator[SnapshotRepository]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'snapshots.db'}", future=True)
    repository = SnapshotRepository(engine, timeout_seconds=5)
    await repository.initialize()
    try:
        yield repository
    finally:
        await repository.close()
