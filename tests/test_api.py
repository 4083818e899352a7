"""Tests for API module: Database, AsyncDatabase, configuration."""

import hashlib
import json
import os
import stat
import tempfile
import threading
import time
from pathlib import Path

import anyio
import pytest

from flatdb import AsyncDatabase, Database, KeyPolicy
from flatdb.config import DatabaseConfig, METADATA_FILENAME
from flatdb.core.codec import JsonCodec
from flatdb.core.errors import (
    BatchFailure,
    CodecError,
    ConfigMismatch,
    InvalidKeyFormat,
    IOFailure,
    KeyConflict,
    LockTimeout,
    NotFound,
    ShardCorrupt,
)


def make_key(prefix: str, fill: str = "0") -> str:
    return prefix + fill * (40 - len(prefix))


@pytest.fixture
def root():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "db"


@pytest.fixture
def db(root):
    return Database.open(root)


@pytest.fixture
def explicit_db(root):
    return Database.open(root, key_policy=KeyPolicy.EXPLICIT)


class TestDatabaseBasics:
    def test_put_get_delete_cycle(self, db):
        value = {"name": "a"}
        key = db.put(None, value)
        assert key == hashlib.sha1(JsonCodec().encode(value)).hexdigest()
        assert db.get(key) == {"name": "a"}

        assert db.delete(key) is True
        with pytest.raises(NotFound):
            db.get(key)

    def test_not_found_is_a_key_error(self, db):
        with pytest.raises(KeyError):
            db.get(make_key("ab"))

    def test_find_and_contains(self, db):
        key = db.put(None, "v")
        assert db.find(key) == "v"
        assert db.find(make_key("ff"), "dflt") == "dflt"
        assert key in db
        assert make_key("ff") not in db
        assert "not-a-key" not in db

    def test_delete_missing_is_noop(self, db):
        assert db.delete(make_key("ab")) is False
        key = db.put(None, 1)
        assert db.delete(key) is True
        assert db.delete(key) is False

    def test_put_same_content_gives_same_key(self, db):
        assert db.put(None, {"x": [1, 2]}) == db.put(None, {"x": [1, 2]})
        assert len(db) == 1

    def test_shard_file_layout(self, db):
        key = db.put(make_key("ab1"), {"n": 1})
        path = db.root / "ab.json"
        assert path.exists()
        assert json.loads(path.read_text()) == {key: {"n": 1}}
        assert not (db.root / "ab.lock").exists()

    def test_emptied_shard_file_is_removed(self, db):
        key = db.put(make_key("ab1"), 1)
        db.delete(key)
        assert not (db.root / "ab.json").exists()

    def test_invalid_keys(self, db):
        for bad in ["ABC", make_key("AB"), make_key("a")[:-1], 7]:
            with pytest.raises(InvalidKeyFormat):
                db.put(bad, 1)
            with pytest.raises(InvalidKeyFormat):
                db.get(bad)
            with pytest.raises(InvalidKeyFormat):
                db.delete(bad)


class TestKeyPolicies:
    def test_content_policy_rejects_different_value(self, db):
        key = make_key("12")
        db.put(key, {"v": 1})
        with pytest.raises(KeyConflict):
            db.put(key, {"v": 2})
        assert db.get(key) == {"v": 1}

    def test_content_policy_allows_same_value(self, db):
        key = make_key("12")
        db.put(key, {"v": 1})
        assert db.put(key, {"v": 1}) == key

    def test_explicit_policy_replaces(self, explicit_db):
        key = make_key("12")
        explicit_db.put(key, {"v": 1})
        assert explicit_db.put(key, {"v": 2}) == key
        assert explicit_db.get(key) == {"v": 2}
        assert len(explicit_db) == 1

    def test_explicit_policy_replaces_equal_values_of_other_types(self, explicit_db):
        key = make_key("12")
        explicit_db.put(key, True)
        explicit_db.put(key, 1)
        assert type(explicit_db.get(key)) is int
        explicit_db.put(key, 1.0)
        assert type(explicit_db.get(key)) is float
        assert explicit_db.put_many({key: {"flag": False}}) == 1
        assert explicit_db.put_many({key: {"flag": 0}}) == 1
        assert explicit_db.get(key) == {"flag": 0}
        assert type(explicit_db.get(key)["flag"]) is int

    def test_content_policy_rejects_equal_value_of_other_type(self, db):
        key = make_key("12")
        db.put(key, True)
        with pytest.raises(KeyConflict):
            db.put(key, 1)
        assert db.get(key) is True


class TestListing:
    def test_list_returns_each_key_once(self, root):
        db = Database.open(root, shard_width=1)
        keys = {db.put(None, {"i": i}) for i in range(200)}
        listed = list(db.list())
        assert len(listed) == len(keys)
        assert set(listed) == keys
        assert listed == sorted(keys)
        assert len(db.store.shard_ids()) > 1

    def test_list_prefix(self, db):
        for prefix in ["ab1", "ab2", "ac1", "b01"]:
            db.put(make_key(prefix), prefix)
        assert list(db.list("ab")) == [make_key("ab1"), make_key("ab2")]
        assert list(db.list("a")) == [make_key("ab1"), make_key("ab2"), make_key("ac1")]
        assert list(db.list("ab2")) == [make_key("ab2")]
        assert list(db.list("c")) == []

    def test_list_rejects_bad_prefix(self, db):
        with pytest.raises(InvalidKeyFormat):
            db.list("XY")

    def test_list_is_lazy_and_restartable(self, db):
        listing = db.list()
        assert list(listing) == []
        key = db.put(None, "later")
        assert list(listing) == [key]
        assert list(listing) == [key]

    def test_items(self, db):
        a = db.put(make_key("a1"), "A")
        b = db.put(make_key("b1"), "B")
        assert dict(db.items()) == {a: "A", b: "B"}
        assert list(db.items("b")) == [(b, "B")]
        assert list(db) == [a, b]

    def test_listing_skips_foreign_files(self, db):
        key = db.put(None, 1)
        (db.root / "README.txt").write_text("hello")
        (db.root / "notes.json").write_text("[]")
        assert list(db.list()) == [key]


class TestPutMany:
    def test_put_many_groups_by_shard(self, explicit_db):
        items = {make_key(p): p for p in ["a1", "a2", "b1", "c1"]}
        assert explicit_db.put_many(items) == 4
        assert dict(explicit_db.items()) == items
        assert explicit_db.store.shard_ids() == ["a1", "a2", "b1", "c1"]

    def test_put_many_without_replace_keeps_existing(self, explicit_db):
        key = make_key("a1")
        explicit_db.put(key, "original")
        written = explicit_db.put_many({key: "modified", make_key("a2"): "new"}, replace=False)
        assert written == 1
        assert explicit_db.get(key) == "original"
        assert explicit_db.get(make_key("a2")) == "new"

    def test_put_many_with_replace(self, explicit_db):
        key = make_key("a1")
        explicit_db.put(key, "original")
        assert explicit_db.put_many({key: "modified"}) == 1
        assert explicit_db.get(key) == "modified"

    def test_put_many_reports_partial_failure(self, explicit_db):
        (explicit_db.root / "bb.json").write_text("{broken")
        good, bad = make_key("aa"), make_key("bb")
        with pytest.raises(BatchFailure) as excinfo:
            explicit_db.put_many({good: 1, bad: 2})
        assert excinfo.value.succeeded == 1
        assert excinfo.value.failed == 1
        assert isinstance(excinfo.value.errors[0], ShardCorrupt)
        assert explicit_db.get(good) == 1
        assert not (explicit_db.root / "bb.lock").exists()

    def test_put_many_validates_keys_first(self, explicit_db):
        with pytest.raises(InvalidKeyFormat):
            explicit_db.put_many({make_key("aa"): 1, "nope": 2})
        assert list(explicit_db.list()) == []


class TestFailureHandling:
    def test_corrupt_shard_is_fatal(self, db):
        (db.root / "ab.json").write_text("{broken")
        with pytest.raises(ShardCorrupt):
            db.get(make_key("ab"))
        with pytest.raises(ShardCorrupt):
            db.put(make_key("ab"), 1)
        with pytest.raises(ShardCorrupt):
            list(db.list())
        assert (db.root / "ab.json").read_text() == "{broken"
        assert not (db.root / "ab.lock").exists()

    def test_codec_error_releases_lock(self, db):
        with pytest.raises(CodecError):
            db.put(make_key("ab"), {"s": {1, 2}})
        assert not (db.root / "ab.lock").exists()
        assert not (db.root / "ab.json").exists()

    def test_save_failure_releases_lock_and_keeps_shard(self, db, monkeypatch):
        key = db.put(make_key("ab1"), "old")
        before = (db.root / "ab.json").read_bytes()

        def fail_save(shard_id, records):
            raise IOFailure("write", db.store.path_for(shard_id), "simulated")

        monkeypatch.setattr(db.store, "save", fail_save)
        with pytest.raises(IOFailure):
            db.put(make_key("ab2"), "new")
        with pytest.raises(IOFailure):
            db.delete(key)
        assert not (db.root / "ab.lock").exists()
        assert (db.root / "ab.json").read_bytes() == before

    def test_put_times_out_on_held_lock(self, root):
        db = Database.open(root, lock_timeout=0.1)
        key = make_key("ab")
        with db.locks.acquire("ab"):
            with pytest.raises(LockTimeout):
                db.put(key, 1)
            with pytest.raises(LockTimeout):
                db.delete(key)
            # Readers do not wait for writers.
            assert db.find(key) is None

    def test_put_reclaims_abandoned_lock(self, root):
        db = Database.open(root, lock_timeout=0.1, stale_after=5)
        (db.root / "ab.lock").write_text(json.dumps({"token": "dead", "acquired_at": time.time() - 60}))
        key = db.put(make_key("ab"), 1)
        assert db.get(key) == 1
        assert not (db.root / "ab.lock").exists()

    def test_concurrent_writers_to_one_shard(self, root):
        db = Database.open(root, key_policy="explicit", lock_timeout=10)
        errors = []

        def writer(worker: int) -> None:
            try:
                for i in range(10):
                    db.put(make_key(f"aa{worker}{i}"), {"worker": worker, "i": i})
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=writer, args=(w,)) for w in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(db) == 40
        assert db.store.shard_ids() == ["aa"]


class TestConfiguration:
    def test_open_writes_metadata(self, root):
        db = Database.open(root, shard_width=3, codec="msgpack")
        meta = json.loads((db.root / METADATA_FILENAME).read_text())
        assert meta == {
            "format": 1,
            "shard_width": 3,
            "codec": "msgpack",
            "key_length": 40,
            "key_policy": "content",
        }

    def test_reopen_finds_existing_records(self, root):
        db = Database.open(root, shard_width=3)
        key = db.put(None, {"name": "a"})

        reopened = Database.open(root)
        assert reopened.index.width == 3
        assert reopened.get(key) == {"name": "a"}

    def test_reopen_with_conflicting_settings(self, root):
        Database.open(root, shard_width=3)
        with pytest.raises(ConfigMismatch):
            Database.open(root, shard_width=2)
        with pytest.raises(ConfigMismatch):
            Database.open(root, codec="msgpack")
        Database.open(root, shard_width=3, codec="json")

    def test_malformed_metadata(self, root):
        root.mkdir()
        (root / METADATA_FILENAME).write_text("{nope")
        with pytest.raises(ConfigMismatch):
            Database.open(root)
        (root / METADATA_FILENAME).write_text(json.dumps({"format": 99}))
        with pytest.raises(ConfigMismatch):
            Database.open(root)

    def test_config_validation(self, root):
        with pytest.raises(ValueError):
            DatabaseConfig(root=root, shard_width=0)
        with pytest.raises(ValueError):
            DatabaseConfig(root=root, shard_width=41)
        with pytest.raises(ValueError):
            DatabaseConfig(root=root, stale_after=0)

    def test_unknown_codec(self, root):
        with pytest.raises(ValueError):
            Database.open(root, codec="xml")

    def test_msgpack_database(self, root):
        db = Database.open(root, codec="msgpack")
        key = db.put(None, {"blob": b"\x00\xff"})
        assert db.get(key) == {"blob": b"\x00\xff"}
        assert (db.root / f"{db.index.shard_id(key)}.msgpack").exists()
        assert not list(db.root.glob("*.json.tmp"))

    def test_msgpack_records_with_non_string_map_keys(self, root):
        db = Database.open(root, codec="msgpack", key_policy=KeyPolicy.EXPLICIT)
        db.put(make_key("ab1"), {"ok": 1})
        db.put(make_key("ab2"), {1: "int key", 2.5: {None: b"x"}})
        assert db.get(make_key("ab1")) == {"ok": 1}
        assert db.get(make_key("ab2")) == {1: "int key", 2.5: {None: b"x"}}
        assert Database.open(root).get(make_key("ab2"))[1] == "int key"

    def test_json_database_rejects_non_string_map_keys(self, explicit_db):
        with pytest.raises(CodecError):
            explicit_db.put(make_key("ab1"), {1: "int key"})
        assert not (explicit_db.root / "ab.json").exists()

    def test_custom_codec_instance_survives_reopen(self, root):
        class CompactJsonCodec(JsonCodec):
            name = "compact-json"
            extension = "cjson"

            def encode(self, value):
                return json.dumps(value, separators=(",", ":"), sort_keys=True).encode("utf-8")

        db = Database.open(root, codec=CompactJsonCodec())
        key = db.put(None, {"a": [1, 2]})
        assert (db.root / f"{db.index.shard_id(key)}.cjson").read_bytes() == b'{"' + key.encode() + b'":{"a":[1,2]}}'

        reopened = Database.open(root)
        assert reopened.codec.name == "compact-json"
        assert reopened.get(key) == {"a": [1, 2]}

    @pytest.mark.skipif(os.name != "posix", reason="POSIX file modes")
    def test_files_are_not_private_to_owner(self, root):
        umask = os.umask(0)
        os.umask(umask)
        db = Database.open(root)
        key = db.put(None, "shared")
        for path in [db.config.metadata_path, db.store.path_for(db.index.shard_id(key))]:
            assert stat.S_IMODE(path.stat().st_mode) == 0o666 & ~umask

    def test_open_does_not_leave_temp_files(self, root):
        db = Database.open(root)
        db.put(None, 1)
        assert not [p for p in os.listdir(db.root) if p.endswith(".tmp")]


class TestAsyncDatabase:
    @pytest.mark.anyio
    async def test_put_get_delete(self, root):
        adb = await AsyncDatabase.open(root)
        key = await adb.put(None, {"name": "a"})
        assert await adb.get(key) == {"name": "a"}
        assert await adb.keys() == [key]
        assert await adb.delete(key) is True
        with pytest.raises(NotFound):
            await adb.get(key)
        assert await adb.find(key, "gone") == "gone"

    @pytest.mark.anyio
    async def test_put_many_across_shards(self, root):
        adb = await AsyncDatabase.open(root, key_policy=KeyPolicy.EXPLICIT, shard_width=1)
        items = {make_key(f"{c}{i}"): i for c in "0123456789abcdef" for i in range(3)}
        assert await adb.put_many(items) == len(items)
        assert await adb.items() == items
        assert await adb.keys("a") == sorted(k for k in items if k.startswith("a"))
        assert len(adb.sync.store.shard_ids()) == 16

    @pytest.mark.anyio
    async def test_put_many_partial_failure(self, root):
        adb = await AsyncDatabase.open(root, key_policy=KeyPolicy.EXPLICIT)
        (adb.sync.root / "bb.json").write_text("{broken")
        with pytest.raises(BatchFailure) as excinfo:
            await adb.put_many({make_key("aa"): 1, make_key("bb"): 2, make_key("cc"): 3})
        assert excinfo.value.succeeded == 2
        assert excinfo.value.failed == 1
        assert await adb.get(make_key("aa")) == 1
        assert await adb.get(make_key("cc")) == 3
        assert (adb.sync.root / "bb.json").read_text() == "{broken"

    @pytest.mark.anyio
    async def test_concurrent_puts(self, root):
        adb = await AsyncDatabase.open(root, lock_timeout=10)
        keys = []

        async def put(i: int) -> None:
            keys.append(await adb.put(None, {"i": i}))

        async with anyio.create_task_group() as tg:
            for i in range(20):
                tg.start_soon(put, i)

        assert sorted(keys) == await adb.keys()
