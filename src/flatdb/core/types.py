"""Type definitions for the flatdb core module."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


Key = str
ShardId = str
Shard = dict[str, Any]


class KeyPolicy(Enum):
    """How ``put`` treats a key that already holds a record."""

    # Keys identify content; a different value under an existing key is a conflict.
    CONTENT = "content"
    # The caller owns keys; writing an existing key replaces its value.
    EXPLICIT = "explicit"


@dataclass(frozen=True)
class LockInfo:
    """Contents of a shard lock file."""

    token: str
    acquired_at: float
    pid: int | None = None
    host: str | None = None

    def age(self, now: float) -> float:
        return now - self.acquired_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "pid": self.pid,
            "host": self.host,
            "acquired_at": self.acquired_at,
        }
