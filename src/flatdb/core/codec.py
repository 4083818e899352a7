"""Codec ABC + JsonCodec + MsgpackCodec, and the registry used at open time."""

from __future__ import annotations

import abc
import json
from typing import Any

import msgpack

from flatdb.core.errors import CodecError


def _check_map_keys(value: Any, allowed: tuple[type, ...], codec_name: str) -> None:
    """Raise CodecError for mapping keys the codec would not read back unchanged."""
    pending = [value]
    while pending:
        item = pending.pop()
        if isinstance(item, dict):
            for key, child in item.items():
                if not isinstance(key, allowed):
                    raise CodecError(
                        f"{codec_name} map keys must be {', '.join(t.__name__ for t in allowed)}, "
                        f"got {type(key).__name__} key {key!r}"
                    )
                pending.append(child)
        elif isinstance(item, (list, tuple)):
            pending.extend(item)


class Codec(abc.ABC):
    """Stateless encode/decode capability for shard contents.

    ``decode(encode(value)) == value`` must hold for every value of the
    codec's payload type.
    """

    name: str = ""
    extension: str = ""

    @abc.abstractmethod
    def encode(self, value: Any) -> bytes: ...

    @abc.abstractmethod
    def decode(self, data: bytes) -> Any: ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class JsonCodec(Codec):
    """Human-readable codec: indented JSON with sorted keys.

    Sorted keys and one value per line keep version-control diffs small.
    Payload type: dicts with str keys, lists, str, int, float, bool and None.
    """

    name = "json"
    extension = "json"

    def encode(self, value: Any) -> bytes:
        # json.dumps would silently turn int, float, bool and None keys into strings.
        _check_map_keys(value, (str,), "JSON")
        try:
            text = json.dumps(value, indent=2, sort_keys=True, ensure_ascii=False, allow_nan=False)
        except (TypeError, ValueError) as exc:
            raise CodecError(f"value is not JSON serializable: {exc}") from exc
        return (text + "\n").encode("utf-8")

    def decode(self, data: bytes) -> Any:
        try:
            return json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CodecError(f"invalid JSON document: {exc}") from exc


class MsgpackCodec(Codec):
    """Compact binary codec. Adds bytes to the JSON payload type.

    Map keys may be str, bytes, int, float, bool or None; they read back
    unchanged. Container keys (tuples) are rejected since they would decode
    as unhashable lists.
    """

    name = "msgpack"
    extension = "msgpack"

    def encode(self, value: Any) -> bytes:
        _check_map_keys(value, _MSGPACK_KEY_TYPES, "msgpack")
        try:
            return msgpack.packb(value, use_bin_type=True)
        except (TypeError, ValueError, OverflowError) as exc:
            raise CodecError(f"value is not msgpack serializable: {exc}") from exc

    def decode(self, data: bytes) -> Any:
        try:
            return msgpack.unpackb(data, raw=False, strict_map_key=False)
        except Exception as exc:
            raise CodecError(f"invalid msgpack document: {exc}") from exc


_MSGPACK_KEY_TYPES: tuple[type, ...] = (str, bytes, int, float, bool, type(None))


_REGISTRY: dict[str, Codec] = {}


def register_codec(codec: Codec) -> None:
    """Make a codec selectable by name when opening a database."""
    if not codec.name or not codec.extension:
        raise ValueError(f"{codec!r} must define name and extension")
    if codec.extension == "lock":
        raise ValueError("extension 'lock' is reserved for lock files")
    _REGISTRY[codec.name] = codec


def get_codec(codec: str | Codec) -> Codec:
    if isinstance(codec, Codec):
        return codec
    try:
        return _REGISTRY[codec]
    except KeyError:
        raise ValueError(
            f"unknown codec {codec!r}; available: {', '.join(available_codecs())}"
        ) from None


def available_codecs() -> list[str]:
    return sorted(_REGISTRY)


register_codec(JsonCodec())
register_codec(MsgpackCodec())
