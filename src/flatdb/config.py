"""DatabaseConfig: settings fixed when a database directory is created.

The settings are persisted next to the shards so that every process opening
the directory agrees on how keys map to files:

    <root>/
        flatdb.json       # format version, shard width, codec, key length, key policy
        <shard>.json      # one shard file per shard id (extension from the codec)
        <shard>.lock      # present only while a write to that shard is in flight

Shard width and codec cannot change once data exists.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from flatdb.core.errors import ConfigMismatch, IOFailure
from flatdb.core.types import KeyPolicy

METADATA_FILENAME = "flatdb.json"
FORMAT_VERSION = 1

DEFAULT_SHARD_WIDTH = 2
DEFAULT_CODEC = "json"
DEFAULT_KEY_LENGTH = 40
DEFAULT_LOCK_TIMEOUT = 2.0
DEFAULT_STALE_AFTER = 30.0

# Settings that define the on-disk layout; lock timings are per-process.
_PERSISTED = ("shard_width", "codec", "key_length", "key_policy")


@dataclass
class DatabaseConfig:
    root: Path
    shard_width: int = DEFAULT_SHARD_WIDTH
    codec: str = DEFAULT_CODEC
    key_length: int = DEFAULT_KEY_LENGTH
    key_policy: KeyPolicy = KeyPolicy.CONTENT
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    stale_after: float = DEFAULT_STALE_AFTER

    def __post_init__(self) -> None:
        self.root = Path(self.root)
        self.key_policy = KeyPolicy(self.key_policy)
        if self.key_length < 1:
            raise ValueError(f"key_length must be positive, got {self.key_length}")
        if not 1 <= self.shard_width <= self.key_length:
            raise ValueError(
                f"shard_width must be between 1 and key_length ({self.key_length}), got {self.shard_width}"
            )
        if self.lock_timeout < 0:
            raise ValueError("lock_timeout must not be negative")
        if self.stale_after <= 0:
            raise ValueError("stale_after must be positive")

    @property
    def metadata_path(self) -> Path:
        return self.root / METADATA_FILENAME

    def to_metadata(self) -> dict[str, Any]:
        return {
            "format": FORMAT_VERSION,
            "shard_width": self.shard_width,
            "codec": self.codec,
            "key_length": self.key_length,
            "key_policy": self.key_policy.value,
        }

    @classmethod
    def from_metadata(cls, root: Path, raw: dict[str, Any], **runtime: Any) -> DatabaseConfig:
        version = raw.get("format")
        if version != FORMAT_VERSION:
            raise ConfigMismatch(f"unsupported metadata format {version!r} in {root / METADATA_FILENAME}")
        try:
            return cls(
                root=root,
                shard_width=int(raw["shard_width"]),
                codec=str(raw["codec"]),
                key_length=int(raw["key_length"]),
                key_policy=KeyPolicy(raw["key_policy"]),
                **runtime,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigMismatch(f"invalid metadata in {root / METADATA_FILENAME}: {exc}") from exc


def read_metadata(root: Path) -> dict[str, Any] | None:
    """Return the persisted metadata for root, or None if the database is new."""
    path = Path(root) / METADATA_FILENAME
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise IOFailure("read metadata", path, str(exc)) from exc
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigMismatch(f"malformed metadata file {path}") from exc
    if not isinstance(raw, dict):
        raise ConfigMismatch(f"metadata file {path} must hold a JSON object")
    return raw


def resolve_config(
    root: str | Path,
    *,
    shard_width: int | None = None,
    codec: str | None = None,
    key_length: int | None = None,
    key_policy: KeyPolicy | str | None = None,
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    stale_after: float = DEFAULT_STALE_AFTER,
) -> tuple[DatabaseConfig, bool]:
    """Combine explicit settings with any persisted metadata.

    Returns the config and whether metadata already existed. Explicit settings
    that disagree with persisted ones raise ConfigMismatch.
    """
    root_path = Path(root)
    requested: dict[str, Any] = {
        "shard_width": shard_width,
        "codec": codec,
        "key_length": key_length,
        "key_policy": KeyPolicy(key_policy) if key_policy is not None else None,
    }
    runtime = {"lock_timeout": lock_timeout, "stale_after": stale_after}

    raw = read_metadata(root_path)
    if raw is None:
        explicit = {k: v for k, v in requested.items() if v is not None}
        return DatabaseConfig(root=root_path, **explicit, **runtime), False

    config = DatabaseConfig.from_metadata(root_path, raw, **runtime)
    for name in _PERSISTED:
        wanted = requested[name]
        if wanted is not None and wanted != getattr(config, name):
            raise ConfigMismatch(
                f"{name}={wanted!r} does not match persisted {getattr(config, name)!r} in {config.metadata_path}"
            )
    return config, True


def metadata_bytes(config: DatabaseConfig) -> bytes:
    return (json.dumps(config.to_metadata(), indent=2, sort_keys=True) + "\n").encode("utf-8")
