"""ShardIndex — maps keys to the shard file that holds them."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from flatdb.core.types import ShardId


class ShardIndex:
    """Pure key -> shard id mapping: the first ``width`` characters of the key.

    Hash-derived keys spread evenly across shards. Caller-supplied keys may
    cluster into few shards; that is accepted.
    """

    def __init__(self, width: int) -> None:
        if width < 1:
            raise ValueError(f"shard width must be positive, got {width}")
        self._width = width

    @property
    def width(self) -> int:
        return self._width

    def shard_id(self, key: str) -> ShardId:
        return key[: self._width]

    def group(self, items: Mapping[str, Any]) -> dict[ShardId, dict[str, Any]]:
        """Split items by shard id, each group ordered by key."""
        groups: dict[ShardId, dict[str, Any]] = {}
        for key in sorted(items):
            groups.setdefault(self.shard_id(key), {})[key] = items[key]
        return groups

    def shards_for_prefix(self, prefix: str, available: Iterable[ShardId]) -> list[ShardId]:
        """Return the shard ids among ``available`` that can hold keys starting with prefix."""
        if len(prefix) >= self._width:
            wanted = self.shard_id(prefix)
            return [shard for shard in available if shard == wanted]
        return [shard for shard in available if shard.startswith(prefix)]
