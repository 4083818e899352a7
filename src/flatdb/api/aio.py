"""AsyncDatabase — anyio wrapper running Database operations in worker threads."""

from __future__ import annotations

import functools
import logging
from pathlib import Path
from typing import Any, Callable, Mapping, TypeVar

import anyio
import anyio.to_thread

from flatdb.api.database import Database
from flatdb.config import DEFAULT_LOCK_TIMEOUT, DEFAULT_STALE_AFTER
from flatdb.core.codec import Codec
from flatdb.core.errors import BatchFailure, FlatDBError
from flatdb.core.types import KeyPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AsyncDatabase:
    """Async facade over Database for use inside anyio/asyncio applications.

    File I/O and lock waits happen in worker threads so the event loop is
    never blocked. ``put_many`` writes its shards concurrently; writers to
    different shards do not contend.
    """

    def __init__(self, db: Database, *, max_concurrency: int = 8) -> None:
        self._db = db
        self._limiter = anyio.CapacityLimiter(max_concurrency)

    @classmethod
    async def open(
        cls,
        root: str | Path,
        *,
        shard_width: int | None = None,
        codec: str | Codec | None = None,
        key_length: int | None = None,
        key_policy: KeyPolicy | str | None = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        stale_after: float = DEFAULT_STALE_AFTER,
        max_concurrency: int = 8,
    ) -> AsyncDatabase:
        db = await anyio.to_thread.run_sync(
            functools.partial(
                Database.open,
                root,
                shard_width=shard_width,
                codec=codec,
                key_length=key_length,
                key_policy=key_policy,
                lock_timeout=lock_timeout,
                stale_after=stale_after,
            )
        )
        return cls(db, max_concurrency=max_concurrency)

    @property
    def sync(self) -> Database:
        """The wrapped synchronous Database."""
        return self._db

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        return await anyio.to_thread.run_sync(fn, *args, limiter=self._limiter)

    async def put(self, key: str | None, value: Any) -> str:
        return await self._run(self._db.put, key, value)

    async def get(self, key: str) -> Any:
        return await self._run(self._db.get, key)

    async def find(self, key: str, default: Any = None) -> Any:
        return await self._run(self._db.find, key, default)

    async def delete(self, key: str) -> bool:
        return await self._run(self._db.delete, key)

    async def keys(self, prefix: str | None = None) -> list[str]:
        """Collect the keys under prefix (a snapshot per shard)."""
        listing = self._db.list(prefix)
        return await self._run(lambda: list(listing))

    async def items(self, prefix: str | None = None) -> dict[str, Any]:
        listing = self._db.items(prefix)
        return await self._run(lambda: dict(listing))

    async def put_many(self, items: Mapping[str, Any], replace: bool = True) -> int:
        """Write many records, each shard in its own task.

        Raises BatchFailure after all shards were attempted if any failed.
        """
        groups = self._db.group(items)
        written = 0
        succeeded = 0
        errors: list[Exception] = []

        async def write_shard(shard_id: str, records: dict[str, Any]) -> None:
            nonlocal written, succeeded
            try:
                count = await self._run(self._db.put_shard, shard_id, records, replace)
                written += count
                succeeded += 1
            except FlatDBError as exc:
                errors.append(exc)

        async with anyio.create_task_group() as tg:
            for shard_id, records in groups.items():
                tg.start_soon(write_shard, shard_id, records)

        logger.debug("async put_many shards=%d written=%d failed=%d", len(groups), written, len(errors))
        if errors:
            raise BatchFailure("put many records", succeeded, errors)
        return written
