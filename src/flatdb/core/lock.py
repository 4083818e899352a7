"""LockManager — cooperative per-shard lock files with stale-lock takeover.

A lock is the file ``<root>/<shard_id>.lock``, created with O_CREAT | O_EXCL
so that at most one writer can create it. The file holds a JSON object with
the holder token, pid, host and acquisition time so any process can judge
whether the holder has been gone for longer than ``stale_after``.

The lock is advisory: it only excludes processes that follow this protocol.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
from pathlib import Path
from types import TracebackType

from flatdb._util.ids import generate_token
from flatdb.core.errors import IOFailure, LockTimeout
from flatdb.core.types import LockInfo, ShardId

logger = logging.getLogger(__name__)

LOCK_EXTENSION = "lock"
INITIAL_BACKOFF = 0.05
MAX_BACKOFF = 0.5
BACKOFF_FACTOR = 1.5


class LockGuard:
    """A held shard lock. Releases on context exit, whatever the exit path."""

    def __init__(self, manager: LockManager, shard_id: ShardId, token: str) -> None:
        self._manager = manager
        self._shard_id = shard_id
        self._token = token
        self._released = False

    @property
    def shard_id(self) -> ShardId:
        return self._shard_id

    @property
    def token(self) -> str:
        return self._token

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._manager.release(self._shard_id, self._token)

    def __enter__(self) -> LockGuard:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class LockManager:
    """Serializes writers per shard through lock files in the database root."""

    def __init__(self, root: str | Path, timeout: float = 2.0, stale_after: float = 30.0) -> None:
        self._root = Path(root)
        self._timeout = timeout
        self._stale_after = stale_after
        self._host = socket.gethostname()

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def stale_after(self) -> float:
        return self._stale_after

    def path_for(self, shard_id: ShardId) -> Path:
        return self._root / f"{shard_id}.{LOCK_EXTENSION}"

    def acquire(
        self,
        shard_id: ShardId,
        timeout: float | None = None,
        stale_after: float | None = None,
    ) -> LockGuard:
        """Block until the shard lock is held, or raise LockTimeout.

        A lock older than ``stale_after`` seconds is presumed abandoned and
        taken over.
        """
        timeout = self._timeout if timeout is None else timeout
        stale_after = self._stale_after if stale_after is None else stale_after
        path = self.path_for(shard_id)
        token = generate_token()
        deadline = time.monotonic() + timeout
        delay = INITIAL_BACKOFF
        attempts = 0

        while True:
            attempts += 1
            if self._try_create(path, token):
                logger.debug("acquired lock %s token=%s attempts=%d", path, token, attempts)
                return LockGuard(self, shard_id, token)

            holder = self._read(path)
            if holder is None:
                # Released between our create attempt and the read.
                continue
            if holder.age(time.time()) > stale_after:
                self._take_over(path, holder)
                continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LockTimeout(shard_id, path, timeout)
            logger.debug("lock %s busy (token=%s), waiting %.3fs", path, holder.token, min(delay, remaining))
            time.sleep(min(delay, remaining))
            delay = min(delay * BACKOFF_FACTOR, MAX_BACKOFF)

    def release(self, shard_id: ShardId, token: str) -> bool:
        """Remove the shard lock if ``token`` still holds it.

        Returns True if a lock was removed. Releasing an absent lock is a
        no-op; a lock now held by another token is left in place.
        """
        path = self.path_for(shard_id)
        holder = self._read(path)
        if holder is None:
            logger.debug("lock %s already released", path)
            return False
        if holder.token != token:
            logger.warning(
                "not releasing lock %s: held by token=%s, not %s (taken over as stale?)",
                path, holder.token, token,
            )
            return False

        tombstone = self._tombstone(path, "release")
        try:
            os.rename(path, tombstone)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise IOFailure("release lock", path, str(exc)) from exc
        moved = self._read(tombstone)
        if moved is not None and moved.token != token:
            # Replaced between the check and the rename; put it back.
            self._restore(tombstone, path)
            return False
        self._unlink(tombstone)
        logger.debug("released lock %s token=%s", path, token)
        return True

    def holder(self, shard_id: ShardId) -> LockInfo | None:
        """Return the current lock holder, or None if the shard is free."""
        return self._read(self.path_for(shard_id))

    def _try_create(self, path: Path, token: str) -> bool:
        info = LockInfo(token=token, acquired_at=time.time(), pid=os.getpid(), host=self._host)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except OSError as exc:
            raise IOFailure("create lock", path, str(exc)) from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(json.dumps(info.to_dict(), sort_keys=True))
                f.flush()
                os.fsync(f.fileno())
        except OSError as exc:
            self._unlink(path)
            raise IOFailure("write lock", path, str(exc)) from exc
        return True

    def _read(self, path: Path) -> LockInfo | None:
        try:
            mtime = path.stat().st_mtime
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise IOFailure("read lock", path, str(exc)) from exc
        try:
            raw = json.loads(text)
            return LockInfo(
                token=str(raw["token"]),
                acquired_at=float(raw["acquired_at"]),
                pid=raw.get("pid"),
                host=raw.get("host"),
            )
        except (ValueError, KeyError, TypeError):
            # Holder has not finished writing the file yet, or it is garbage:
            # age it by modification time.
            return LockInfo(token="", acquired_at=mtime)

    def _take_over(self, path: Path, stale: LockInfo) -> None:
        tombstone = self._tombstone(path, "stale")
        try:
            os.rename(path, tombstone)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise IOFailure("take over stale lock", path, str(exc)) from exc

        moved = self._read(tombstone)
        if moved is not None and moved != stale:
            # Another writer took over first and created a fresh lock.
            self._restore(tombstone, path)
            return
        self._unlink(tombstone)
        logger.warning(
            "took over stale lock %s (token=%s pid=%s host=%s age=%.1fs)",
            path, stale.token, stale.pid, stale.host, stale.age(time.time()),
        )

    def _restore(self, tombstone: Path, path: Path) -> None:
        try:
            # link() fails if path exists, so a newer lock is never clobbered.
            os.link(tombstone, path)
        except FileExistsError:
            logger.warning("lock %s was re-acquired while restoring %s", path, tombstone)
        except OSError as exc:
            self._unlink(tombstone)
            raise IOFailure("restore lock", path, str(exc)) from exc
        self._unlink(tombstone)

    @staticmethod
    def _tombstone(path: Path, reason: str) -> Path:
        return path.with_name(f"{path.name}.{generate_token()}.{reason}")

    @staticmethod
    def _unlink(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise IOFailure("remove", path, str(exc)) from exc
