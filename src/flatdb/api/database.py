"""Database — primary user-facing class composing the flatdb core components."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping

from flatdb.config import DEFAULT_LOCK_TIMEOUT, DEFAULT_STALE_AFTER, DatabaseConfig, metadata_bytes, resolve_config
from flatdb.core.codec import Codec, available_codecs, get_codec, register_codec
from flatdb.core.errors import BatchFailure, FlatDBError, InvalidKeyFormat, NotFound
from flatdb.core.keys import KeyAssigner
from flatdb.core.lock import LockManager
from flatdb.core.shard import ShardIndex
from flatdb.core.store import ShardStore, atomic_write
from flatdb.core.types import KeyPolicy, ShardId

logger = logging.getLogger(__name__)

_MISSING = object()


class KeyListing:
    """Restartable, lazy iterable over keys in ascending order.

    Every iteration rescans the directory. No lock is held, so each shard is
    read as a point-in-time snapshot; the listing as a whole is not atomic.
    """

    def __init__(self, db: Database, prefix: str) -> None:
        self._db = db
        self._prefix = prefix

    @property
    def prefix(self) -> str:
        return self._prefix

    def __iter__(self) -> Iterator[str]:
        for key, _ in self._db._scan(self._prefix):
            yield key


class ItemListing(KeyListing):
    """Like KeyListing, yielding ``(key, value)`` pairs."""

    def __iter__(self) -> Iterator[tuple[str, Any]]:
        yield from self._db._scan(self._prefix)


class Database:
    """Directory-backed record store.

    Records live in shard files chosen by key prefix. Writes lock one shard,
    load it, mutate it in memory and save it atomically; reads never lock.

    Usage:
        db = Database.open("data/records")
        key = db.put(None, {"name": "a"})
        db.get(key)
    """

    def __init__(self, config: DatabaseConfig, codec: Codec | None = None) -> None:
        self._config = config
        self._codec = codec or get_codec(config.codec)
        self._keys = KeyAssigner(self._codec, config.key_length, config.key_policy)
        self._index = ShardIndex(config.shard_width)
        self._store = ShardStore(config.root, self._codec, config.shard_width, self._is_valid_key)
        self._locks = LockManager(config.root, config.lock_timeout, config.stale_after)

    @classmethod
    def open(
        cls,
        root: str | Path,
        *,
        shard_width: int | None = None,
        codec: str | Codec | None = None,
        key_length: int | None = None,
        key_policy: KeyPolicy | str | None = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        stale_after: float = DEFAULT_STALE_AFTER,
    ) -> Database:
        """Open the database at root, creating it if needed.

        Unspecified layout settings come from the persisted metadata, or the
        defaults for a new database. Explicit settings that disagree with the
        metadata raise ConfigMismatch.
        """
        codec_obj = get_codec(codec) if codec is not None else None
        if codec_obj is not None and codec_obj.name not in available_codecs():
            # The metadata records the codec by name; later opens resolve it through the registry.
            register_codec(codec_obj)
        config, existed = resolve_config(
            root,
            shard_width=shard_width,
            codec=codec_obj.name if codec_obj is not None else None,
            key_length=key_length,
            key_policy=key_policy,
            lock_timeout=lock_timeout,
            stale_after=stale_after,
        )
        db = cls(config, codec_obj)
        config.root.mkdir(parents=True, exist_ok=True)
        if not existed:
            atomic_write(config.metadata_path, metadata_bytes(config))
            logger.info(
                "created database %s (shard_width=%d codec=%s key_policy=%s)",
                config.root, config.shard_width, config.codec, config.key_policy.value,
            )
        return db

    @property
    def config(self) -> DatabaseConfig:
        return self._config

    @property
    def root(self) -> Path:
        return self._config.root

    @property
    def codec(self) -> Codec:
        return self._codec

    @property
    def keys(self) -> KeyAssigner:
        return self._keys

    @property
    def index(self) -> ShardIndex:
        return self._index

    @property
    def store(self) -> ShardStore:
        return self._store

    @property
    def locks(self) -> LockManager:
        return self._locks

    def put(self, key: str | None, value: Any) -> str:
        """Insert or replace a record and return its key.

        With ``key=None`` the key is derived from the content. Under the
        content key policy a different value under an existing key raises
        KeyConflict; under the explicit policy it replaces the record.
        """
        key = self._keys.resolve(key, value)
        shard_id = self._index.shard_id(key)

        def insert(records: dict[str, Any]) -> bool:
            existing = records.get(key, _MISSING)
            if existing is not _MISSING and not self._keys.admits(key, existing, value):
                return False
            records[key] = value
            return True

        changed = self._update(shard_id, insert)
        logger.debug("put %s shard=%s changed=%s", key, shard_id, changed)
        return key

    def get(self, key: str) -> Any:
        """Return the record for key, or raise NotFound."""
        value = self.find(key, _MISSING)
        if value is _MISSING:
            raise NotFound(key)
        return value

    def find(self, key: str, default: Any = None) -> Any:
        """Return the record for key, or default if there is none."""
        self._keys.validate(key)
        records = self._store.load(self._index.shard_id(key))
        return records.get(key, default)

    def __contains__(self, key: object) -> bool:
        try:
            return self.find(key, _MISSING) is not _MISSING
        except InvalidKeyFormat:
            return False

    def delete(self, key: str) -> bool:
        """Remove a record. Returns False if there was nothing to remove."""
        self._keys.validate(key)
        shard_id = self._index.shard_id(key)

        def remove(records: dict[str, Any]) -> bool:
            return records.pop(key, _MISSING) is not _MISSING

        removed = self._update(shard_id, remove)
        logger.debug("delete %s shard=%s removed=%s", key, shard_id, removed)
        return removed

    def list(self, prefix: str | None = None) -> KeyListing:
        """Lazy listing of keys, optionally restricted to a key prefix."""
        return KeyListing(self, self._keys.validate_prefix(prefix or ""))

    def items(self, prefix: str | None = None) -> ItemListing:
        """Lazy listing of ``(key, value)`` pairs, optionally restricted to a key prefix."""
        return ItemListing(self, self._keys.validate_prefix(prefix or ""))

    def __iter__(self) -> Iterator[str]:
        return iter(self.list())

    def __len__(self) -> int:
        return sum(len(self._store.load(shard_id)) for shard_id in self._store.shard_ids())

    def put_many(self, items: Mapping[str, Any], replace: bool = True) -> int:
        """Write many records, one lock and one save per shard.

        With ``replace=False`` keys that already exist are left alone.
        Returns the number of records written. Every shard is attempted; if
        any fail, BatchFailure is raised after the others have been committed.
        """
        groups = self.group(items)
        written = 0
        succeeded = 0
        errors: list[Exception] = []
        for shard_id, records in groups.items():
            try:
                written += self.put_shard(shard_id, records, replace)
                succeeded += 1
            except FlatDBError as exc:
                errors.append(exc)
        logger.debug("put_many items=%d shards=%d written=%d failed=%d", len(items), len(groups), written, len(errors))
        if errors:
            raise BatchFailure("put many records", succeeded, errors)
        return written

    def group(self, items: Mapping[str, Any]) -> dict[ShardId, dict[str, Any]]:
        """Validate keys and group items by shard id."""
        for key in items:
            self._keys.validate(key)
        return self._index.group(items)

    def put_shard(self, shard_id: ShardId, records: Mapping[str, Any], replace: bool = True) -> int:
        """Merge records that all belong to shard_id into it; returns how many were written."""
        count = 0

        def merge(existing: dict[str, Any]) -> bool:
            nonlocal count
            for key, value in records.items():
                current = existing.get(key, _MISSING)
                if current is not _MISSING:
                    if not replace or not self._keys.admits(key, current, value):
                        continue
                existing[key] = value
                count += 1
            return count > 0

        self._update(shard_id, merge)
        return count

    def _update(self, shard_id: ShardId, mutate: Callable[[dict[str, Any]], bool]) -> bool:
        # Lock, load, mutate, save; the guard releases on every exit path.
        with self._locks.acquire(shard_id):
            records = self._store.load(shard_id)
            changed = mutate(records)
            if changed:
                self._store.save(shard_id, records)
        return changed

    def _scan(self, prefix: str) -> Iterator[tuple[str, Any]]:
        for shard_id in self._index.shards_for_prefix(prefix, self._store.shard_ids()):
            records = self._store.load(shard_id)
            for key in sorted(records):
                if key.startswith(prefix):
                    yield key, records[key]

    def _is_valid_key(self, key: str) -> bool:
        try:
            self._keys.validate(key)
        except InvalidKeyFormat:
            return False
        return True

    def __repr__(self) -> str:
        return (
            f"Database(root={str(self.root)!r}, shard_width={self._index.width}, "
            f"codec={self._codec.name!r}, key_policy={self._keys.policy.value!r})"
        )
