"""KeyAssigner — derives content keys and validates caller-supplied keys."""

from __future__ import annotations

import hashlib
from typing import Any

from flatdb.core.codec import Codec
from flatdb.core.errors import InvalidKeyFormat, KeyConflict
from flatdb.core.types import KeyPolicy

HEX_ALPHABET = frozenset("0123456789abcdef")

# hashlib algorithms by hex digest length, used to derive content keys.
_ALGORITHMS = {
    32: "md5",
    40: "sha1",
    56: "sha224",
    64: "sha256",
    96: "sha384",
    128: "sha512",
}


def is_hex(text: str) -> bool:
    return all(c in HEX_ALPHABET for c in text)


def same_content(a: Any, b: Any) -> bool:
    """Equality that also requires matching types, so True, 1 and 1.0 differ.

    Mapping order is ignored.
    """
    if type(a) is not type(b):
        return False
    if isinstance(a, dict):
        if {(type(k), k) for k in a} != {(type(k), k) for k in b}:
            return False
        return all(same_content(a[k], b[k]) for k in a)
    if isinstance(a, list):
        return len(a) == len(b) and all(same_content(x, y) for x, y in zip(a, b))
    return a == b


class KeyAssigner:
    """Resolves the key a record is stored under.

    Content keys are the hex digest of the codec encoding of the value, so
    inserting identical content twice yields the same key. Caller-supplied
    keys are only checked for format.
    """

    def __init__(self, codec: Codec, key_length: int = 40, policy: KeyPolicy = KeyPolicy.CONTENT) -> None:
        self._codec = codec
        self._key_length = key_length
        self._policy = policy
        self._algorithm = _ALGORITHMS.get(key_length)

    @property
    def key_length(self) -> int:
        return self._key_length

    @property
    def policy(self) -> KeyPolicy:
        return self._policy

    def derive(self, value: Any) -> str:
        """Hash the encoded value into a key."""
        if self._algorithm is None:
            raise InvalidKeyFormat(
                None,
                f"content keys need a key length of {', '.join(map(str, sorted(_ALGORITHMS)))}; "
                f"this database uses {self._key_length}",
            )
        digest = hashlib.new(self._algorithm, self._codec.encode(value))
        return digest.hexdigest()

    def validate(self, key: Any) -> str:
        if not isinstance(key, str):
            raise InvalidKeyFormat(key, f"expected str, got {type(key).__name__}")
        if len(key) != self._key_length:
            raise InvalidKeyFormat(key, f"expected {self._key_length} characters, got {len(key)}")
        if not is_hex(key):
            raise InvalidKeyFormat(key, "expected lowercase hexadecimal characters")
        return key

    def validate_prefix(self, prefix: Any) -> str:
        if not isinstance(prefix, str):
            raise InvalidKeyFormat(prefix, f"expected str prefix, got {type(prefix).__name__}")
        if len(prefix) > self._key_length:
            raise InvalidKeyFormat(prefix, f"prefix longer than key length {self._key_length}")
        if not is_hex(prefix):
            raise InvalidKeyFormat(prefix, "expected lowercase hexadecimal characters")
        return prefix

    def resolve(self, key: str | None, value: Any) -> str:
        if key is None:
            return self.derive(value)
        return self.validate(key)

    def normalize(self, value: Any) -> Any:
        """Return value as it reads back from disk (tuples become lists, etc.)."""
        return self._codec.decode(self._codec.encode(value))

    def admits(self, key: str, existing: Any, value: Any) -> bool:
        """Decide whether ``value`` may be written over ``existing`` under ``key``.

        Returns False when the write is redundant (same content already stored).
        Raises KeyConflict when the content policy forbids the overwrite.
        """
        if same_content(existing, self.normalize(value)):
            return False
        if self._policy is KeyPolicy.CONTENT:
            raise KeyConflict(key)
        return True
