import tempfile
import unittest
from pathlib import Path

from fileserver.config import Settings
from fileserver.errors import QuotaExceededError
from fileserver.service import FileServer


class QuotaAccountantTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.server = FileServer(Settings.for_root(Path(self.tmp.name), secret_key="test"))
        self.user = self.server.create_user("alice", quota_bytes=100)
        self.other = self.server.create_user("bob", quota_bytes=100)
        self.quota = self.server.quota

    def tearDown(self):
        self.tmp.cleanup()

    def test_usage_sums_only_the_users_files(self):
        self.server.uploads.upload(self.user, b"x" * 30, "a.txt", "private")
        self.server.uploads.upload(self.user, b"x" * 20, "b.txt", "public")
        self.server.uploads.upload(self.other, b"x" * 50, "c.txt", "private")
        report = self.quota.usage(self.user.id)
        self.assertEqual(report.used_bytes, 50)
        self.assertEqual(report.file_count, 2)
        self.assertEqual(report.missing_ids, [])

    def test_missing_files_are_excluded_and_flagged(self):
        kept = self.server.uploads.upload(self.user, b"x" * 30, "a.txt", "private")
        lost = self.server.uploads.upload(self.user, b"x" * 40, "b.txt", "private")
        self.server.files.disk_path(lost).unlink()

        with self.assertLogs("fileserver.quota", level="WARNING"):
            report = self.quota.usage(self.user.id)
        self.assertEqual(report.used_bytes, 30)
        self.assertEqual(report.missing_ids, [lost.id])
        self.assertNotEqual(kept.id, lost.id)

    def test_check_allows_exact_fill_and_rejects_overflow(self):
        self.server.uploads.upload(self.user, b"x" * 60, "a.txt", "private")
        self.assertEqual(self.quota.check(self.user, 40), 60)
        with self.assertRaises(QuotaExceededError) as ctx:
            self.quota.check(self.user, 41)
        self.assertEqual(
            (ctx.exception.current_usage, ctx.exception.quota_limit, ctx.exception.incoming),
            (60, 100, 41),
        )

    def test_zero_quota_is_unlimited(self):
        unlimited = self.server.users.set_quota(self.user.id, 0)
        self.assertEqual(self.quota.check(unlimited, 10 ** 12), 0)


if __name__ == "__main__":
    unittest.main()
