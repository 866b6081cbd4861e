from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple, Optional

from .errors import PathTraversalError, QuotaExceededError
from .logs import get_logger
from .metastore import MetadataStore
from .models import FILES, FileRecord, UserAccount
from .paths import record_path

logger = get_logger("quota")


class UsageReport(NamedTuple):
    user_id: str
    used_bytes: int
    file_count: int
    missing_ids: List[str]


class QuotaAccountant:
    """Per-user storage accounting derived from the ``files`` collection."""

    def __init__(self, store: MetadataStore, storage_root: Path) -> None:
        self.store = store
        self.storage_root = Path(storage_root)

    def usage(self, user_id: str, records: Optional[Iterable[Dict]] = None) -> UsageReport:
        """Sum the sizes of *user_id*'s files that are present on disk.

        Records whose file is missing are left out of the total and reported
        in ``missing_ids`` so a cleanup job can reconcile them. Pass
        *records* when the caller already holds the collection.
        """

        if records is None:
            records = self.store.get(FILES)

        used = 0
        count = 0
        missing: List[str] = []
        for entry in records:
            if entry.get("owner_id") != user_id:
                continue
            record = FileRecord.from_dict(entry)
            if not self._present(record):
                missing.append(record.id)
                continue
            used += int(record.size_bytes)
            count += 1

        if missing:
            logger.warning(
                "quota_records_missing user_id=%s count=%d file_ids=%s",
                user_id,
                len(missing),
                ",".join(missing),
            )
        return UsageReport(user_id, used, count, missing)

    def used_bytes(self, user_id: str) -> int:
        return self.usage(user_id).used_bytes

    def check(
        self,
        user: UserAccount,
        incoming: int,
        records: Optional[Iterable[Dict]] = None,
    ) -> int:
        """Raise :class:`QuotaExceededError` if *incoming* bytes do not fit.

        An upload that exactly fills the quota is allowed. A quota of zero
        or less means unlimited. Returns the current usage.
        """

        current = self.usage(user.id, records).used_bytes
        if user.quota_bytes > 0 and current + incoming > user.quota_bytes:
            logger.warning(
                "upload_quota_exceeded user_id=%s usage=%d incoming=%d limit=%d",
                user.id,
                current,
                incoming,
                user.quota_bytes,
            )
            raise QuotaExceededError(current, user.quota_bytes, incoming)
        return current

    def _present(self, record: FileRecord) -> bool:
        try:
            path = record_path(
                self.storage_root,
                record.directory_class,
                record.owner_id,
                record.logical_path,
            )
        except PathTraversalError:
            logger.error(
                "quota_record_unsafe_path file_id=%s logical_path=%s",
                record.id,
                record.logical_path,
            )
            return False
        return path.is_file()
