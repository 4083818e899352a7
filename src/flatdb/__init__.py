"""flatdb — directory-backed record store with sharded, diffable files."""

from flatdb._version import __version__
from flatdb.api.aio import AsyncDatabase
from flatdb.api.database import Database, ItemListing, KeyListing
from flatdb.config import DatabaseConfig
from flatdb.core.codec import Codec, JsonCodec, MsgpackCodec, available_codecs, get_codec, register_codec
from flatdb.core.errors import (
    BatchFailure,
    CodecError,
    ConfigMismatch,
    FlatDBError,
    InvalidKeyFormat,
    IOFailure,
    KeyConflict,
    LockTimeout,
    NotFound,
    ShardCorrupt,
)
from flatdb.core.types import KeyPolicy
from flatdb.infra.file_table import FileTable

__all__ = [
    "__version__",
    "AsyncDatabase",
    "BatchFailure",
    "Codec",
    "CodecError",
    "ConfigMismatch",
    "Database",
    "DatabaseConfig",
    "FileTable",
    "FlatDBError",
    "IOFailure",
    "InvalidKeyFormat",
    "ItemListing",
    "JsonCodec",
    "KeyConflict",
    "KeyListing",
    "KeyPolicy",
    "LockTimeout",
    "MsgpackCodec",
    "NotFound",
    "ShardCorrupt",
    "available_codecs",
    "get_codec",
    "register_codec",
]
