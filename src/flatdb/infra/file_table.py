"""FileTable — stores whole files by hex key in per-shard directories."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping

from flatdb.core.errors import BatchFailure, FlatDBError, InvalidKeyFormat, IOFailure
from flatdb.core.keys import is_hex
from flatdb.core.shard import ShardIndex
from flatdb.core.store import atomic_write

logger = logging.getLogger(__name__)


class FileTable:
    """Maps keys to files on disk, one directory per shard:

        <root>/<shard_id>/<key>.<extension>

    Files are copied in atomically, so a reader sees either the previous file
    or the complete new one. Each key has its own file, so no lock is taken.
    """

    def __init__(self, root: str | Path, extension: str, *, key_length: int = 40, shard_width: int = 2) -> None:
        if not extension or "/" in extension or extension.startswith("."):
            raise ValueError(f"invalid extension {extension!r}")
        if not 1 <= shard_width <= key_length:
            raise ValueError(f"shard_width must be between 1 and {key_length}, got {shard_width}")
        self._root = Path(root)
        self._extension = extension
        self._key_length = key_length
        self._index = ShardIndex(shard_width)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, key: str) -> Path:
        return self._root / self._index.shard_id(key) / f"{key}.{self._extension}"

    def get(self, key: str) -> Path | None:
        """Return the stored file for key, or None if there is none."""
        path = self.path_for(self._validate(key))
        return path if path.is_file() else None

    def get_all(self) -> dict[str, Path]:
        """Return every stored file by key, sorted by key.

        Files and directories that do not follow the table layout are skipped.
        """
        paths: dict[str, Path] = {}
        if not self._root.is_dir():
            return paths
        try:
            shard_dirs = sorted(self._root.iterdir())
        except OSError as exc:
            raise IOFailure("list directory", self._root, str(exc)) from exc
        for shard_dir in shard_dirs:
            if not shard_dir.is_dir():
                logger.debug("skipping non-shard entry %s", shard_dir)
                continue
            for path in sorted(shard_dir.glob(f"*.{self._extension}")):
                key = path.stem
                if not path.is_file() or not self._is_key(key) or not key.startswith(shard_dir.name):
                    logger.debug("skipping non-table file %s", path)
                    continue
                paths[key] = path
        return paths

    def set(self, key: str, source: str | Path) -> Path:
        """Copy source into the table under key, replacing any previous file."""
        target = self.path_for(self._validate(key))
        source = Path(source)
        try:
            data = source.read_bytes()
        except OSError as exc:
            raise IOFailure("read source file", source, str(exc)) from exc
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IOFailure("create directory", target.parent, str(exc)) from exc
        atomic_write(target, data)
        logger.debug("stored %s from %s", key, source)
        return target

    def set_many(self, items: Mapping[str, str | Path]) -> int:
        """Copy many files in. Every item is attempted; failures raise BatchFailure."""
        count = 0
        errors: list[Exception] = []
        for key, source in items.items():
            try:
                self.set(key, source)
                count += 1
            except FlatDBError as exc:
                errors.append(exc)
        if errors:
            raise BatchFailure("set many files", count, errors)
        return count

    def _is_key(self, key: str) -> bool:
        return len(key) == self._key_length and is_hex(key)

    def _validate(self, key: str) -> str:
        if not isinstance(key, str) or not self._is_key(key):
            raise InvalidKeyFormat(key, f"expected {self._key_length} lowercase hexadecimal characters")
        return key
