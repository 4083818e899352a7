"""Exception hierarchy for flatdb.

Every public operation either returns a value or raises one of these.
Underlying causes are chained with ``raise ... from exc``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class FlatDBError(Exception):
    """Base class for all flatdb errors."""


class InvalidKeyFormat(FlatDBError, ValueError):
    """A key or key prefix is not lowercase hex of the expected length."""

    def __init__(self, key: Any, reason: str) -> None:
        super().__init__(f"invalid key {key!r}: {reason}")
        self.key = key
        self.reason = reason


class KeyConflict(FlatDBError):
    """A content-addressed key already maps to different content."""

    def __init__(self, key: str) -> None:
        super().__init__(f"key {key} already holds different content")
        self.key = key


class NotFound(FlatDBError, KeyError):
    """No record exists for the key."""

    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"record not found: {self.key}"


class CodecError(FlatDBError, ValueError):
    """A value could not be encoded, or bytes could not be decoded."""


class ShardCorrupt(FlatDBError):
    """An existing shard file does not decode to a valid shard mapping."""

    def __init__(self, shard_id: str, path: Path, reason: str) -> None:
        super().__init__(f"shard {shard_id} at {path} is corrupt: {reason}")
        self.shard_id = shard_id
        self.path = path
        self.reason = reason


class LockTimeout(FlatDBError, TimeoutError):
    """A shard lock could not be acquired before the timeout elapsed."""

    def __init__(self, shard_id: str, path: Path, timeout: float) -> None:
        super().__init__(f"timed out after {timeout:.2f}s acquiring lock {path}")
        self.shard_id = shard_id
        self.path = path
        self.timeout = timeout


class IOFailure(FlatDBError):
    """Reading, writing or renaming a file failed."""

    def __init__(self, action: str, path: Path, reason: str = "") -> None:
        message = f"failed to {action} {path}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.action = action
        self.path = path


class ConfigMismatch(FlatDBError, ValueError):
    """Settings passed at open time disagree with the persisted metadata."""


class BatchFailure(FlatDBError):
    """Some shards of a batch write failed; the others were committed."""

    def __init__(self, action: str, succeeded: int, errors: list[Exception]) -> None:
        lines = [f"{action}: {succeeded} succeeded and {len(errors)} failed"]
        lines.extend(f"  {err}" for err in errors)
        super().__init__("\n".join(lines))
        self.action = action
        self.succeeded = succeeded
        self.errors = errors

    @property
    def failed(self) -> int:
        return len(self.errors)
