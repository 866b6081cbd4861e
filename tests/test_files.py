import hashlib
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fileserver import maintenance
from fileserver.access import Actor
from fileserver.config import Settings
from fileserver.errors import (
    InvalidExtensionError,
    NameConflictError,
    PermissionDeniedError,
    RecordNotFoundError,
    StorageIOError,
)
from fileserver.service import FileServer


class FileCatalogTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.server = FileServer(Settings.for_root(Path(self.tmp.name), secret_key="test"))
        self.user = self.server.create_user("alice", quota_bytes=0)
        self.other = self.server.create_user("bob", quota_bytes=0)
        self.admin = self.server.create_user("root", admin=True, quota_bytes=0)
        self.actor = Actor.from_user(self.user)
        self.files = self.server.files
        self.record = self.server.uploads.upload(self.user, b"data", "a.txt", "private", "docs")

    def tearDown(self):
        self.tmp.cleanup()

    def test_lookups(self):
        self.assertEqual(self.files.get(self.record.id), self.record)
        self.assertEqual(
            self.files.find_by_path(self.user.id, "private", "docs/a.txt"), self.record
        )
        self.assertIsNone(self.files.find_by_path(self.user.id, "public", "docs/a.txt"))
        self.assertEqual(self.files.list_for_owner(self.user.id), [self.record])
        self.assertEqual(self.files.list_for_owner(self.other.id), [])
        with self.assertRaises(RecordNotFoundError):
            self.files.get("missing")

    def test_rename_moves_bytes_and_updates_record(self):
        old_path = self.files.disk_path(self.record)
        renamed = self.files.rename(self.actor, self.record.id, "b.md")
        self.assertEqual(renamed.logical_path, "docs/b.md")
        self.assertEqual(renamed.stored_filename, "b.md")
        self.assertFalse(old_path.exists())
        self.assertEqual(self.files.disk_path(renamed).read_bytes(), b"data")

    def test_rename_conflict_is_rejected(self):
        self.server.uploads.upload(self.user, b"other", "b.txt", "private", "docs")
        with self.assertRaises(NameConflictError):
            self.files.rename(self.actor, self.record.id, "b.txt")
        self.assertTrue(self.files.disk_path(self.record).is_file())

    def test_rename_keeps_extension_policy(self):
        with self.assertRaises(InvalidExtensionError):
            self.files.rename(self.actor, self.record.id, "a.sh")

    def test_rename_by_stranger_is_denied(self):
        with self.assertRaises(PermissionDeniedError):
            self.files.rename(Actor.from_user(self.other), self.record.id, "b.txt")

    def test_move_to_public_class_changes_visibility(self):
        moved = self.files.move(self.actor, self.record.id, logical_dir="", directory_class="public")
        self.assertEqual(moved.directory_class, "public")
        self.assertEqual(moved.logical_path, "a.txt")
        self.assertEqual(moved.visibility, "public")
        self.assertEqual(self.files.disk_path(moved).read_bytes(), b"data")
        self.assertFalse(self.files.disk_path(self.record).exists())

    def test_move_into_reserved_prefix_requires_admin(self):
        with self.assertRaises(PermissionDeniedError):
            self.files.move(self.actor, self.record.id, logical_dir="_system")
        moved = self.files.move(Actor.from_user(self.admin), self.record.id, logical_dir="_system")
        self.assertEqual(moved.logical_path, "_system/a.txt")
        with self.assertRaises(PermissionDeniedError):
            self.files.delete(self.actor, moved.id)

    def test_update_metadata(self):
        updated = self.files.update_metadata(
            self.actor, self.record.id, visibility="public", importance=3
        )
        self.assertEqual(updated.visibility, "public")
        self.assertEqual(updated.importance, 3)

    def test_open_for_download_counts_and_checks_access(self):
        with self.assertRaises(PermissionDeniedError):
            self.files.open_for_download(None, self.record.id)
        record, path = self.files.open_for_download(self.actor, self.record.id)
        self.assertEqual(record.download_count, 1)
        self.assertEqual(path.read_bytes(), b"data")

    def test_delete_removes_bytes_record_and_shares(self):
        share = self.server.shares.create_share(self.actor, self.record.id)
        path = self.files.disk_path(self.record)
        self.files.delete(self.actor, self.record.id)
        self.assertFalse(path.exists())
        self.assertIsNone(self.files.find(self.record.id))
        with self.assertRaises(RecordNotFoundError):
            self.server.shares.get_share(share.id)

    def test_pre_delete_hook_can_abort(self):
        seen = []

        def backup(record, path):
            seen.append((record.id, path.read_bytes()))
            raise StorageIOError("backup failed")

        self.files.add_pre_delete_hook(backup)
        with self.assertRaises(StorageIOError):
            self.files.delete(self.actor, self.record.id)
        self.assertEqual(seen, [(self.record.id, b"data")])
        self.assertIsNotNone(self.files.find(self.record.id))

    def test_failed_commit_keeps_bytes_and_record(self):
        path = self.files.disk_path(self.record)
        with mock.patch.object(
            self.server.store, "_write", side_effect=StorageIOError("disk full")
        ):
            with self.assertRaises(StorageIOError):
                self.files.delete(self.actor, self.record.id)
        self.assertTrue(path.is_file())
        self.assertIsNotNone(self.files.find(self.record.id))

    def test_unlink_failure_after_commit_is_logged_and_reported(self):
        path = self.files.disk_path(self.record)
        with mock.patch("pathlib.Path.unlink", side_effect=PermissionError("read-only")):
            with self.assertLogs("fileserver.files", "ERROR") as logs:
                self.files.delete(self.actor, self.record.id)
        self.assertIn("delete_unlink_failed", logs.output[0])
        self.assertIsNone(self.files.find(self.record.id))
        self.assertTrue(path.is_file())
        self.assertEqual(
            maintenance.find_orphaned_files(self.server.store, self.server.settings), [path]
        )


class FileSearchTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.server = FileServer(Settings.for_root(Path(self.tmp.name), secret_key="test"))
        self.user = self.server.create_user("alice", quota_bytes=0)
        self.other = self.server.create_user("bob", quota_bytes=0)
        self.actor = Actor.from_user(self.user)
        self.files = self.server.files
        upload = self.server.uploads.upload
        self.report = upload(self.user, b"r", "Quarterly-Report.pdf", "private", "reports")
        self.notes = upload(self.user, b"n", "notes.txt", "private")
        self.photo = upload(self.user, b"p", "holiday.png", "public")
        self.hidden = upload(self.other, b"h", "report-draft.pdf", "private")
        self.shared = upload(self.other, b"s", "report-final.pdf", "public")

    def tearDown(self):
        self.tmp.cleanup()

    def _ids(self, records):
        return sorted(record.id for record in records)

    def test_query_matches_path_case_insensitively_and_respects_access(self):
        found = self.files.search(self.actor, "REPORT")
        self.assertEqual(self._ids(found), sorted([self.report.id, self.shared.id]))

    def test_filters_combine(self):
        self.assertEqual(
            self._ids(self.files.search(self.actor, extension="pdf", owner_id=self.user.id)),
            [self.report.id],
        )
        self.assertEqual(
            self._ids(self.files.search(self.actor, mime_type="image/")), [self.photo.id]
        )
        self.assertEqual(
            self._ids(self.files.search(self.actor, mime_type="text/plain")), [self.notes.id]
        )
        self.assertEqual(
            self._ids(self.files.search(self.actor, visibility="public")),
            sorted([self.photo.id, self.shared.id]),
        )
        self.assertEqual(
            self._ids(self.files.search(self.actor, directory_class="private")),
            sorted([self.report.id, self.notes.id]),
        )

    def test_anonymous_search_sees_public_files_only(self):
        self.assertEqual(
            self._ids(self.files.search(None)), sorted([self.photo.id, self.shared.id])
        )

    def test_verify_checksum(self):
        result = self.files.verify_checksum(self.actor, self.notes.id)
        self.assertTrue(result["intact"])
        self.assertEqual(result["checksum"], hashlib.sha256(b"n").hexdigest())

        self.files.disk_path(self.notes).write_bytes(b"tampered")
        with self.assertLogs("fileserver.files", "WARNING"):
            result = self.files.verify_checksum(self.actor, self.notes.id)
        self.assertFalse(result["intact"])
        with self.assertRaises(PermissionDeniedError):
            self.files.verify_checksum(Actor.from_user(self.other), self.notes.id)


if __name__ == "__main__":
    unittest.main()
