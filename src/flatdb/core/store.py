"""ShardStore — whole-shard load and atomic save on top of a Codec."""

from __future__ import annotations

import logging
import os
import stat
import tempfile
from pathlib import Path
from typing import Any, Callable, Mapping

from flatdb.core.codec import Codec
from flatdb.core.errors import CodecError, IOFailure, ShardCorrupt
from flatdb.core.keys import is_hex
from flatdb.core.types import Shard, ShardId

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"


def _read_umask() -> int:
    # os.umask can only be read by setting it; done once, at import.
    mask = os.umask(0)
    os.umask(mask)
    return mask


DEFAULT_FILE_MODE = 0o666 & ~_read_umask()


def _target_mode(path: Path) -> int:
    """Mode for a replacement file: the current file's mode, or the umask default."""
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        return DEFAULT_FILE_MODE


def _fsync_directory(directory: Path) -> None:
    # Persists the rename itself; directories cannot be opened on Windows.
    if os.name != "posix":
        return
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write(path: Path, data: bytes) -> None:
    """Replace ``path`` with ``data`` so readers see either the old or new file.

    Writes a temporary file in the same directory, fsyncs it and renames it
    over the target. On any failure the temporary file is removed, the target
    is left untouched and IOFailure is raised.
    """
    path = Path(path)
    try:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=TEMP_SUFFIX)
    except OSError as exc:
        raise IOFailure("create temporary file for", path, str(exc)) from exc
    tmp_path = Path(tmp_name)
    try:
        # mkstemp creates the file 0600; give it the mode a plain open() would.
        os.chmod(tmp_path, _target_mode(path))
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as exc:
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError:
            logger.warning("could not remove temporary file %s", tmp_path)
        raise IOFailure("write", path, str(exc)) from exc
    try:
        _fsync_directory(path.parent)
    except OSError as exc:
        # The rename already happened; only its durability is in doubt.
        logger.warning("could not fsync directory of %s: %s", path, exc)


class ShardStore:
    """Reads and writes shard files under one root directory.

    Each shard is stored as ``<root>/<shard_id>.<codec extension>`` holding
    the codec encoding of a ``{key: value}`` mapping sorted by key. A shard
    with no records has no file.
    """

    def __init__(
        self,
        root: str | Path,
        codec: Codec,
        shard_width: int,
        key_validator: Callable[[str], bool] | None = None,
    ) -> None:
        self._root = Path(root)
        self._codec = codec
        self._shard_width = shard_width
        self._key_validator = key_validator

    @property
    def root(self) -> Path:
        return self._root

    @property
    def codec(self) -> Codec:
        return self._codec

    def path_for(self, shard_id: ShardId) -> Path:
        return self._root / f"{shard_id}.{self._codec.extension}"

    def exists(self, shard_id: ShardId) -> bool:
        return self.path_for(shard_id).is_file()

    def load(self, shard_id: ShardId) -> Shard:
        """Return the shard's records, or an empty mapping if it has no file.

        A file that exists but does not decode raises ShardCorrupt; it is never
        treated as empty.
        """
        path = self.path_for(shard_id)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            logger.debug("shard %s has no file", shard_id)
            return {}
        except OSError as exc:
            raise IOFailure("read shard", path, str(exc)) from exc

        logger.debug("read shard %s (%d bytes)", shard_id, len(data))
        try:
            decoded = self._codec.decode(data)
        except CodecError as exc:
            raise ShardCorrupt(shard_id, path, str(exc)) from exc
        if not isinstance(decoded, dict):
            raise ShardCorrupt(shard_id, path, f"expected a mapping, got {type(decoded).__name__}")
        for key in decoded:
            if not self._owns(shard_id, key):
                raise ShardCorrupt(shard_id, path, f"key {key!r} does not belong to this shard")
        return decoded

    def save(self, shard_id: ShardId, records: Mapping[str, Any]) -> None:
        """Atomically replace the shard's contents with ``records``.

        Encoding happens before any file is touched, so a CodecError leaves
        the shard as it was.
        """
        path = self.path_for(shard_id)
        if not records:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise IOFailure("remove empty shard", path, str(exc)) from exc
            logger.debug("removed empty shard %s", shard_id)
            return

        data = self._codec.encode({key: records[key] for key in sorted(records)})
        self._root.mkdir(parents=True, exist_ok=True)
        atomic_write(path, data)
        logger.debug("wrote shard %s (%d records, %d bytes)", shard_id, len(records), len(data))

    def shard_ids(self) -> list[ShardId]:
        """Sorted ids of the shards present on disk.

        Lock files, temporary files and files whose name is not a shard id are
        skipped.
        """
        suffix = f".{self._codec.extension}"
        try:
            entries = list(os.scandir(self._root))
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise IOFailure("list directory", self._root, str(exc)) from exc
        shard_ids = []
        for entry in entries:
            if not entry.name.endswith(suffix) or not entry.is_file():
                continue
            stem = entry.name[: -len(suffix)]
            if len(stem) == self._shard_width and is_hex(stem):
                shard_ids.append(stem)
            else:
                logger.debug("skipping non-shard file %s", entry.path)
        return sorted(shard_ids)

    def _owns(self, shard_id: ShardId, key: Any) -> bool:
        if not isinstance(key, str) or not key.startswith(shard_id):
            return False
        if self._key_validator is not None:
            return self._key_validator(key)
        return True
