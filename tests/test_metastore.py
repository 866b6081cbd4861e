import json
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

from fileserver.errors import CollectionCorruptError, LockTimeoutError, StorageIOError
from fileserver.metastore import MetadataStore, find_index


class MetadataStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self.tmp.name)
        self.store = MetadataStore(self.data_dir, lock_timeout=2.0)

    def tearDown(self):
        self.tmp.cleanup()

    def test_missing_collection_is_empty(self):
        self.assertEqual(self.store.get("files"), [])

    def test_replace_and_get_preserve_order(self):
        records = [{"id": "b"}, {"id": "a"}]
        self.store.replace("files", records)
        self.assertEqual(self.store.get("files"), records)
        on_disk = json.loads((self.data_dir / "files.json").read_text(encoding="utf-8"))
        self.assertEqual(on_disk, records)

    def test_transaction_writes_back_on_success(self):
        with self.store.transaction("shares") as records:
            records.append({"id": "s1"})
        self.assertEqual(self.store.get("shares"), [{"id": "s1"}])

    def test_transaction_discards_changes_when_block_raises(self):
        self.store.replace("files", [{"id": "keep"}])
        with self.assertRaises(RuntimeError):
            with self.store.transaction("files") as records:
                records.append({"id": "lost"})
                raise RuntimeError("abort")
        self.assertEqual(self.store.get("files"), [{"id": "keep"}])

    def test_malformed_json_is_fatal_and_left_untouched(self):
        path = self.data_dir / "files.json"
        path.write_text("{not json", encoding="utf-8")
        with self.assertLogs("fileserver.metastore", level="ERROR"):
            with self.assertRaises(CollectionCorruptError):
                self.store.get("files")
        with self.assertRaises(CollectionCorruptError):
            with self.store.transaction("files") as records:
                records.append({"id": "x"})
        self.assertEqual(path.read_text(encoding="utf-8"), "{not json")

    def test_non_array_and_non_object_entries_are_corrupt(self):
        (self.data_dir / "users.json").write_text('{"id": 1}', encoding="utf-8")
        with self.assertRaises(CollectionCorruptError):
            self.store.get("users")
        (self.data_dir / "users.json").write_text("[1, 2]", encoding="utf-8")
        with self.assertRaises(CollectionCorruptError) as ctx:
            self.store.get("users")
        self.assertEqual(ctx.exception.collection, "users")

    def test_rejects_invalid_collection_names(self):
        with self.assertRaises(ValueError):
            self.store.get("../users")

    def test_nested_lock_on_same_collection_raises(self):
        with self.store.transaction("files"):
            with self.assertRaises(RuntimeError):
                with self.store.transaction("files"):
                    pass

    def test_different_collections_do_not_block_each_other(self):
        with self.store.transaction("files") as files:
            with self.store.transaction("shares") as shares:
                shares.append({"id": "s"})
            files.append({"id": "f"})
        self.assertEqual(self.store.get("files"), [{"id": "f"}])
        self.assertEqual(self.store.get("shares"), [{"id": "s"}])

    def test_lock_timeout_is_bounded(self):
        holding = threading.Event()
        release = threading.Event()

        def hold():
            with self.store.transaction("files"):
                holding.set()
                release.wait(5)

        worker = threading.Thread(target=hold)
        worker.start()
        try:
            self.assertTrue(holding.wait(5))
            impatient = MetadataStore(self.data_dir, lock_timeout=0.05)
            with self.assertRaises(LockTimeoutError) as ctx:
                with impatient.transaction("files"):
                    pass
            self.assertTrue(ctx.exception.retryable)
        finally:
            release.set()
            worker.join()

    def test_concurrent_writers_lose_no_updates(self):
        def append_many(prefix):
            for index in range(10):
                with self.store.transaction("files") as records:
                    records.append({"id": f"{prefix}-{index}"})

        workers = [threading.Thread(target=append_many, args=(n,)) for n in range(6)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        ids = {entry["id"] for entry in self.store.get("files")}
        self.assertEqual(len(ids), 60)

    def test_failed_write_leaves_previous_version_and_no_temp_file(self):
        self.store.replace("files", [{"id": "old"}])
        with mock.patch("fileserver.metastore.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(StorageIOError):
                self.store.replace("files", [{"id": "new"}])
        self.assertEqual(self.store.get("files"), [{"id": "old"}])
        self.assertFalse((self.data_dir / "files.tmp").exists())

    def test_stats_counts_records(self):
        self.store.replace("files", [{"id": "a"}, {"id": "b"}])
        stats = self.store.stats()
        self.assertEqual(stats["files"]["records"], 2)
        self.assertGreater(stats["files"]["size"], 0)

    def test_find_index(self):
        records = [{"id": "a"}, {"id": "b"}]
        self.assertEqual(find_index(records, "id", "b"), 1)
        self.assertIsNone(find_index(records, "id", "z"))


if __name__ == "__main__":
    unittest.main()
