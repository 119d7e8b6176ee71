from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Iterable, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from diskwatch.app.db import build_session_factory
from diskwatch.app.models import Base, VolumeSnapshot
from diskwatch.app.schemas import Snapshot, VolumeReading, ensure_utc


logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreUnavailable(RuntimeError):
    """Raised when the snapshot database cannot be reached in time."""


def _to_snapshot(row: VolumeSnapshot) -> Snapshot:
    return Snapshot.model_validate(row)


class SnapshotRepository:
    """Append-only time-series of volume snapshots backed by SQLAlchemy.

    Writes (``append`` and ``prune``) are serialized through a single lock;
    reads open their own sessions and never wait on it. Every database call is
    bounded by ``timeout_seconds`` and surfaces failures as ``StoreUnavailable``.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._engine = engine
        self._session_factory = session_factory or build_session_factory(engine)
        self._timeout = max(0.1, float(timeout_seconds))
        self._write_lock = asyncio.Lock()
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    async def initialize(self) -> None:
        async def _create() -> None:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        await self._run("initialize", _create())
        self._ready = True
        logger.info("Snapshot store ready")

    async def close(self) -> None:
        self._ready = False
        await self._engine.dispose()

    async def append(self, readings: Iterable[VolumeReading], at: datetime) -> int:
        self._require_ready("append")
        timestamp = ensure_utc(at)
        rows = [
            VolumeSnapshot(
                timestamp=timestamp,
                volume_name=reading.name,
                mount_point=reading.mount_point,
                total_bytes=reading.total_bytes,
                free_bytes=reading.free_bytes,
            )
            for reading in readings
        ]
        if not rows:
            return 0

        async def _insert() -> None:
            async with self._session_factory() as session:
                session.add_all(rows)
                await session.commit()

        async with self._write_lock:
            await self._run("append", _insert())
        logger.debug("Saved %d snapshots", len(rows))
        return len(rows)

    async def query(self, mount_point: str, since: datetime) -> list[Snapshot]:
        self._require_ready("query")
        cutoff = ensure_utc(since)

        async def _select() -> list[Snapshot]:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(VolumeSnapshot)
                    .where(
                        VolumeSnapshot.mount_point == mount_point,
                        VolumeSnapshot.timestamp >= cutoff,
                    )
                    .order_by(VolumeSnapshot.timestamp.asc(), VolumeSnapshot.id.asc())
                )
                return [_to_snapshot(row) for row in result.scalars()]

        return await self._run("query", _select())

    async def latest(self, mount_point: str) -> Snapshot | None:
        self._require_ready("latest")

        async def _select() -> Snapshot | None:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(VolumeSnapshot)
                    .where(VolumeSnapshot.mount_point == mount_point)
                    .order_by(VolumeSnapshot.timestamp.desc(), VolumeSnapshot.id.desc())
                    .limit(1)
                )
                row = result.scalars().first()
                return _to_snapshot(row) if row is not None else None

        return await self._run("latest", _select())

    async def mount_points(self) -> list[str]:
        self._require_ready("mount_points")

        async def _select() -> list[str]:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(VolumeSnapshot.mount_point).distinct().order_by(VolumeSnapshot.mount_point)
                )
                return list(result.scalars())

        return await self._run("mount_points", _select())

    async def prune(self, older_than: datetime) -> int:
        self._require_ready("prune")
        cutoff = ensure_utc(older_than)

        async def _delete() -> int:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(VolumeSnapshot).where(VolumeSnapshot.timestamp < cutoff)
                )
                await session.commit()
                return result.rowcount or 0

        async with self._write_lock:
            removed = await self._run("prune", _delete())
        if removed:
            logger.info("Cleaned up %d old snapshots", removed)
        return removed

    def _require_ready(self, operation: str) -> None:
        if not self._ready:
            raise StoreUnavailable(f"Snapshot store not initialized ({operation})")

    async def _run(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable(f"{operation} timed out after {self._timeout:.1f}s") from exc
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"{operation} failed: {exc}") from exc
