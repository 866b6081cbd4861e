import hashlib
import io
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

from fileserver.access import Actor
from fileserver.config import BYTES_PER_MB, Settings
from fileserver.errors import (
    InvalidExtensionError,
    PathTraversalError,
    PermissionDeniedError,
    QuotaExceededError,
    SizeExceededError,
    StorageIOError,
    ValidationError,
)
from fileserver.service import FileServer


class UploadPipelineTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.settings = Settings.for_root(
            Path(self.tmp.name), secret_key="test", max_upload_bytes=BYTES_PER_MB
        )
        self.server = FileServer(self.settings)
        self.user = self.server.create_user("alice", quota_bytes=4 * BYTES_PER_MB)
        self.admin = self.server.create_user("root", admin=True, quota_bytes=0)
        self.pipeline = self.server.uploads

    def tearDown(self):
        self.tmp.cleanup()

    def _files_on_disk(self):
        return sorted(
            path.relative_to(self.settings.storage_root).as_posix()
            for path in self.settings.storage_root.rglob("*")
            if path.is_file()
        )

    def test_upload_registers_record_and_writes_bytes(self):
        record = self.pipeline.upload(self.user, b"hello", "Notes.TXT", "private", "docs")
        self.assertEqual(record.owner_id, self.user.id)
        self.assertEqual(record.logical_path, "docs/Notes.txt")
        self.assertEqual(record.stored_filename, "Notes.txt")
        self.assertEqual(record.size_bytes, 5)
        self.assertEqual(record.visibility, "private")
        self.assertEqual(record.mime_type, "text/plain")
        self.assertEqual(record.original_name, "Notes.TXT")

        path = self.server.files.disk_path(record)
        self.assertEqual(path.read_bytes(), b"hello")
        self.assertEqual(self.server.store.get("files"), [record.to_dict()])

    def test_public_class_defaults_to_public_visibility(self):
        record = self.pipeline.upload(self.user, b"x", "a.txt", "public")
        self.assertEqual(record.visibility, "public")

    def test_collisions_get_numbered_names(self):
        first = self.pipeline.upload(self.user, b"1", "report.pdf", "private")
        second = self.pipeline.upload(self.user, b"2", "report.pdf", "private")
        third = self.pipeline.upload(self.user, b"3", "report.pdf", "private")
        self.assertEqual(
            [first.stored_filename, second.stored_filename, third.stored_filename],
            ["report.pdf", "report_1.pdf", "report_2.pdf"],
        )
        self.assertEqual(self.server.files.disk_path(first).read_bytes(), b"1")

    def test_names_stay_unique_across_logical_directories(self):
        first = self.pipeline.upload(self.user, b"1", "report.pdf", "private", "2024")
        second = self.pipeline.upload(self.user, b"2", "report.pdf", "private", "2025")
        other_class = self.pipeline.upload(self.user, b"3", "report.pdf", "public", "2025")
        self.assertEqual(first.logical_path, "2024/report.pdf")
        self.assertEqual(second.logical_path, "2025/report_1.pdf")
        self.assertEqual(other_class.stored_filename, "report.pdf")
        self.assertEqual(
            self.server.files.disk_path(second),
            self.settings.class_root("private").resolve() / self.user.id / "2025" / "report_1.pdf",
        )

    def test_existing_file_on_disk_is_never_overwritten(self):
        target = self.settings.class_root("private") / self.user.id / "report.pdf"
        target.parent.mkdir(parents=True)
        target.write_bytes(b"untracked")
        record = self.pipeline.upload(self.user, b"new", "report.pdf", "private")
        self.assertEqual(record.stored_filename, "report_1.pdf")
        self.assertEqual(target.read_bytes(), b"untracked")

    def test_unknown_extension_is_rejected(self):
        with self.assertRaises(InvalidExtensionError) as ctx:
            self.pipeline.upload(self.user, b"x", "data.xyz", "private")
        self.assertEqual(ctx.exception.extension, "xyz")
        self.assertEqual(self._files_on_disk(), [])

    def test_denied_extension_rejected_without_quarantine_by_default(self):
        with self.assertRaises(InvalidExtensionError) as ctx:
            self.pipeline.upload(self.user, b"MZ", "tool.EXE", "private")
        self.assertFalse(ctx.exception.quarantined)
        self.assertEqual(self._files_on_disk(), [])

    def test_denied_extension_quarantined_when_configured(self):
        settings = self.settings.with_overrides(
            quarantine_policy="quarantine",
            allowed_extensions=self.settings.allowed_extensions | {"js"},
        )
        server = FileServer(settings)
        with self.assertRaises(InvalidExtensionError) as ctx:
            server.uploads.upload(self.user, b"alert(1)", "evil.js", "public")
        self.assertTrue(ctx.exception.quarantined)
        quarantined = Path(ctx.exception.quarantine_path)
        self.assertEqual(quarantined.parent, settings.quarantine_dir)
        self.assertEqual(quarantined.read_bytes(), b"alert(1)")
        self.assertEqual(server.store.get("files"), [])

    def test_size_checked_before_quota(self):
        small_quota = self.server.users.set_quota(self.user.id, 10)
        with self.assertRaises(SizeExceededError) as ctx:
            self.pipeline.upload(small_quota, b"x" * (BYTES_PER_MB + 1), "big.txt", "private")
        self.assertEqual(ctx.exception.limit, BYTES_PER_MB)
        self.assertEqual(self._files_on_disk(), [])

    def test_stream_larger_than_limit_leaves_nothing_behind(self):
        stream = io.BytesIO(b"x" * (BYTES_PER_MB + 10))
        with self.assertRaises(SizeExceededError):
            self.pipeline.upload(self.user, stream, "big.txt", "private")
        self.assertEqual(self._files_on_disk(), [])
        self.assertEqual(self.server.store.get("files"), [])

    def test_stream_upload(self):
        record = self.pipeline.upload(self.user, io.BytesIO(b"streamed"), "s.txt", "temp")
        self.assertEqual(record.size_bytes, 8)
        self.assertEqual(record.directory_class, "temp")

    def test_checksum_is_recorded_for_bytes_and_streams(self):
        from_bytes = self.pipeline.upload(self.user, b"streamed", "b.txt", "private")
        from_stream = self.pipeline.upload(
            self.user, io.BytesIO(b"streamed"), "s.txt", "private"
        )
        expected = hashlib.sha256(b"streamed").hexdigest()
        self.assertEqual(from_bytes.checksum, expected)
        self.assertEqual(from_stream.checksum, expected)

    def test_quota_rejects_and_leaves_no_trace(self):
        limited = self.server.users.set_quota(self.user.id, 10)
        self.pipeline.upload(limited, b"x" * 6, "a.txt", "private")
        with self.assertRaises(QuotaExceededError) as ctx:
            self.pipeline.upload(limited, b"x" * 5, "b.txt", "private")
        self.assertEqual(ctx.exception.current_usage, 6)
        self.assertEqual(ctx.exception.quota_limit, 10)
        self.assertEqual(ctx.exception.incoming, 5)
        self.assertEqual(len(self.server.store.get("files")), 1)

    def test_upload_filling_quota_exactly_is_allowed(self):
        limited = self.server.users.set_quota(self.user.id, 10)
        self.pipeline.upload(limited, b"x" * 10, "a.txt", "private")

    def test_traversal_in_directory_is_rejected(self):
        with self.assertRaises(PathTraversalError):
            self.pipeline.upload(self.user, b"x", "a.txt", "private", "../../etc")
        with self.assertRaises(PathTraversalError):
            self.pipeline.upload(self.user, b"x", "a.txt", "private", "/etc")
        self.assertEqual(self._files_on_disk(), [])

    def test_unknown_directory_class(self):
        with self.assertRaises(ValidationError):
            self.pipeline.upload(self.user, b"x", "a.txt", "shared")

    def test_reserved_prefix_is_admin_only(self):
        with self.assertRaises(PermissionDeniedError):
            self.pipeline.upload(self.user, b"x", "a.txt", "private", "_system/backups")
        record = self.pipeline.upload(
            self.user, b"x", "a.txt", "private", "_system/backups", actor=Actor.from_user(self.admin)
        )
        self.assertEqual(record.owner_id, self.user.id)
        self.assertEqual(record.logical_path, "_system/backups/a.txt")

    def test_suspended_user_cannot_upload(self):
        suspended = self.server.users.suspend(self.user.id)
        with self.assertRaises(PermissionDeniedError):
            self.pipeline.upload(suspended, b"x", "a.txt", "private")

    def test_name_claimed_on_disk_retries_then_gives_up(self):
        with mock.patch("fileserver.uploads.os.link", side_effect=FileExistsError("taken")) as link:
            with self.assertRaises(StorageIOError):
                self.pipeline.upload(self.user, b"x", "a.txt", "private")
        self.assertEqual(link.call_count, self.settings.upload_name_attempts)
        self.assertEqual(self.server.store.get("files"), [])
        self.assertEqual(self._files_on_disk(), [])

    def test_failed_commit_removes_published_file(self):
        with mock.patch.object(
            self.server.store, "_write", side_effect=StorageIOError("disk full")
        ):
            with self.assertRaises(StorageIOError):
                self.pipeline.upload(self.user, b"x", "a.txt", "private")
        self.assertEqual(self._files_on_disk(), [])

    def test_concurrent_same_name_uploads_get_distinct_names(self):
        records = []
        errors = []
        lock = threading.Lock()

        def upload(index):
            try:
                record = self.pipeline.upload(self.user, str(index).encode(), "same.txt", "private")
            except Exception as error:  # pragma: no cover - surfaced by assertion
                with lock:
                    errors.append(error)
                return
            with lock:
                records.append(record)

        workers = [threading.Thread(target=upload, args=(n,)) for n in range(6)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        self.assertEqual(errors, [])
        names = {record.stored_filename for record in records}
        self.assertEqual(
            names, {"same.txt"} | {f"same_{n}.txt" for n in range(1, 6)}
        )
        for record in records:
            self.assertTrue(self.server.files.disk_path(record).is_file())

    def test_concurrent_uploads_respect_quota(self):
        limited = self.server.users.set_quota(self.user.id, 30)
        outcomes = []
        lock = threading.Lock()

        def upload(index):
            try:
                self.pipeline.upload(limited, b"x" * 10, f"f{index}.txt", "private")
                result = "ok"
            except QuotaExceededError:
                result = "quota"
            with lock:
                outcomes.append(result)

        workers = [threading.Thread(target=upload, args=(n,)) for n in range(6)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        self.assertEqual(outcomes.count("ok"), 3)
        self.assertEqual(self.server.quota.used_bytes(self.user.id), 30)


if __name__ == "__main__":
    unittest.main()
