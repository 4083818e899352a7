"""Basic store example: content-keyed records in a sharded directory.

Demonstrates put/get/list/delete, batch writes and the on-disk layout.
"""

import tempfile
from pathlib import Path

from flatdb import Database, KeyPolicy, NotFound


def main():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir) / "records"

        # Content-keyed: identical values share a key
        db = Database.open(root, shard_width=1)
        key = db.put(None, {"name": "a"})
        print(f"[put] {key} -> {db.get(key)}")
        assert db.put(None, {"name": "a"}) == key

        for i in range(10):
            db.put(None, {"name": f"item-{i}"})
        print(f"\n[list] {len(db)} records in {len(db.store.shard_ids())} shards")
        for k in db.list(key[0]):
            print(f"  {k}")

        db.delete(key)
        try:
            db.get(key)
        except NotFound:
            print(f"\n[delete] {key} is gone")

        print("\n--- Files on disk ---")
        for path in sorted(root.iterdir()):
            print(f"  {path.name}")

        # Caller-owned keys that replace on write
        users = Database.open(Path(tmpdir) / "users", key_policy=KeyPolicy.EXPLICIT)
        alice = "a11ce" + "0" * 35
        users.put_many({alice: {"role": "admin"}, "b0b" + "0" * 37: {"role": "viewer"}})
        users.put(alice, {"role": "owner"})
        print(f"\n[users] {dict(users.items())}")


if __name__ == "__main__":
    main()
