"""Upload pipeline: validate, stage, register, publish.

Bytes are staged in a hidden ``.part`` file next to their destination
without holding any lock. Only the short step that picks a free name,
re-checks the quota, links the staged bytes into place and records the
metadata runs under the ``files`` collection lock.
"""

import hashlib
import mimetypes
import os
import time
import uuid
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional, Tuple, Union

from .access import AccessResolver, Actor
from .config import DIRECTORY_CLASSES, Settings
from .errors import (
    InvalidExtensionError,
    PermissionDeniedError,
    SizeExceededError,
    StorageIOError,
    ValidationError,
)
from .logs import get_logger, sanitize_log_value
from .metastore import MetadataStore
from .models import FILES, FileRecord, UserAccount, default_visibility
from .paths import (
    join_logical,
    normalize_logical_dir,
    numbered_name,
    record_path,
    resolve,
    safe_filename,
    split_extension,
)
from .quota import QuotaAccountant

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
TEMP_SUFFIX = ".part"
MAX_NAME_COUNTER = 10_000

UploadData = Union[bytes, bytearray, memoryview, BinaryIO]

logger = get_logger("uploads")


class _NameClaimed(Exception):
    """The chosen destination appeared on disk before it could be linked."""


def _is_buffer(data) -> bool:
    return isinstance(data, (bytes, bytearray, memoryview))


def guess_mime_type(filename: str) -> str:
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE_BYTES), b""):
            digest.update(chunk)
    return digest.hexdigest()


def taken_names(records: List[Dict], owner_id: str, directory_class: str) -> set:
    """Stored file names already used inside one owner's class root."""

    return {
        entry.get("stored_filename")
        for entry in records
        if entry.get("owner_id") == owner_id
        and entry.get("directory_class") == directory_class
    }


def first_free_name(filename: str, taken: set, directory: Path) -> str:
    """Return *filename* or the first free ``name_<n>.ext`` variant."""

    for counter in range(MAX_NAME_COUNTER):
        candidate = numbered_name(filename, counter)
        if candidate in taken:
            continue
        target = directory / candidate
        if target.exists() or target.is_symlink():
            continue
        return candidate
    raise StorageIOError(f"No free name for {filename!r} after {MAX_NAME_COUNTER} attempts")


class UploadPipeline:
    def __init__(
        self,
        settings: Settings,
        store: MetadataStore,
        quota: QuotaAccountant,
        access: AccessResolver,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.store = store
        self.quota = quota
        self.access = access
        self.clock = clock

    def upload(
        self,
        user: UserAccount,
        data: UploadData,
        declared_name: str,
        directory_class: str,
        logical_dir: Optional[str] = "",
        *,
        content_length: Optional[int] = None,
        actor: Optional[Actor] = None,
    ) -> FileRecord:
        """Store *data* for *user* and return the registered record.

        *actor* is the account performing the upload when it differs from
        the owner (an administrator acting on a user's behalf); quota is
        always charged to *user*.

        Raises InvalidExtensionError, SizeExceededError, QuotaExceededError,
        PathTraversalError or StorageIOError; on any failure no bytes are
        left behind and no metadata is written.
        """

        if directory_class not in DIRECTORY_CLASSES:
            raise ValidationError(f"Unknown directory class {directory_class!r}")
        owner = Actor.from_user(user)
        actor = actor or owner
        if not owner.is_active or not actor.is_active:
            raise PermissionDeniedError(f"User {user.id} is suspended")

        logical_dir = normalize_logical_dir(logical_dir)
        if not self.access.can_upload_to(actor, logical_dir):
            raise PermissionDeniedError(
                f"Directory {logical_dir!r} is reserved for administrators"
            )

        size = len(data) if _is_buffer(data) else content_length
        extension = split_extension(declared_name)
        self._screen_extension(extension, data, declared_name, size)

        if size is not None:
            self._check_size(size)
            self.quota.check(user, size)

        filename = safe_filename(declared_name)
        destination = resolve(
            self.settings.class_root(directory_class),
            f"{user.id}/{join_logical(logical_dir, filename)}",
        )
        target_dir = destination.parent
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise StorageIOError(f"Could not create directory {target_dir}: {error}") from error

        temp_path = target_dir / f".{uuid.uuid4().hex}{TEMP_SUFFIX}"
        try:
            written, checksum = self._write_temp(data, temp_path)
            if size is None:
                self.quota.check(user, written)
            record = self._register(
                user,
                temp_path,
                target_dir,
                filename,
                logical_dir,
                directory_class,
                written,
                declared_name,
                checksum,
            )
        finally:
            self._discard(temp_path)

        logger.info(
            "upload_registered file_id=%s owner_id=%s class=%s logical_path=%s size=%d",
            record.id,
            record.owner_id,
            record.directory_class,
            sanitize_log_value(record.logical_path),
            record.size_bytes,
        )
        return record

    def _screen_extension(
        self,
        extension: str,
        data: UploadData,
        declared_name: str,
        size: Optional[int],
    ) -> None:
        if extension and extension in self.settings.quarantine_extensions:
            if self.settings.quarantine_policy == "quarantine":
                quarantine_path = self._quarantine(data, declared_name, size)
                raise InvalidExtensionError(
                    extension,
                    quarantined=quarantine_path is not None,
                    quarantine_path=str(quarantine_path) if quarantine_path else None,
                )
            logger.warning(
                "upload_blocked_extension filename=%s extension=%s",
                sanitize_log_value(declared_name),
                extension,
            )
            raise InvalidExtensionError(extension)

        if not extension or extension not in self.settings.allowed_extensions:
            logger.warning(
                "upload_unsupported_extension filename=%s extension=%s",
                sanitize_log_value(declared_name),
                extension,
            )
            raise InvalidExtensionError(extension)

    def _check_size(self, size: int) -> None:
        if size > self.settings.max_upload_bytes:
            logger.warning(
                "upload_too_large size=%d limit=%d", size, self.settings.max_upload_bytes
            )
            raise SizeExceededError(size, self.settings.max_upload_bytes)

    def _quarantine(
        self, data: UploadData, declared_name: str, size: Optional[int]
    ) -> Optional[Path]:
        if size is not None and size > self.settings.max_upload_bytes:
            logger.warning(
                "quarantine_skipped_too_large filename=%s size=%d",
                sanitize_log_value(declared_name),
                size,
            )
            return None

        quarantine_dir = self.settings.quarantine_dir
        stamp = time.strftime("%Y-%m-%d_%H-%M-%S", time.gmtime(self.clock()))
        name = f"{stamp}_{uuid.uuid4().hex[:8]}_{safe_filename(declared_name)}"
        try:
            quarantine_dir.mkdir(parents=True, exist_ok=True)
            target = resolve(quarantine_dir, name)
        except OSError as error:
            raise StorageIOError(f"Could not prepare quarantine: {error}") from error

        temp_path = quarantine_dir / f".{uuid.uuid4().hex}{TEMP_SUFFIX}"
        try:
            self._write_temp(data, temp_path)
            os.replace(temp_path, target)
        except SizeExceededError:
            logger.warning(
                "quarantine_skipped_too_large filename=%s", sanitize_log_value(declared_name)
            )
            return None
        except OSError as error:
            raise StorageIOError(f"Could not quarantine upload: {error}") from error
        finally:
            self._discard(temp_path)

        logger.warning(
            "file_quarantined filename=%s path=%s",
            sanitize_log_value(declared_name),
            target,
        )
        return target

    def _write_temp(self, data: UploadData, temp_path: Path) -> Tuple[int, str]:
        """Stage *data* at *temp_path*; returns the byte count and sha256."""

        limit = self.settings.max_upload_bytes
        digest = hashlib.sha256()
        written = 0
        try:
            with temp_path.open("xb") as handle:
                if _is_buffer(data):
                    digest.update(data)
                    handle.write(data)
                    written = len(data)
                else:
                    while True:
                        chunk = data.read(CHUNK_SIZE_BYTES)
                        if not chunk:
                            break
                        written += len(chunk)
                        if written > limit:
                            raise SizeExceededError(written, limit)
                        digest.update(chunk)
                        handle.write(chunk)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as error:
            raise StorageIOError(f"Could not stage upload: {error}") from error
        return written, digest.hexdigest()

    def _register(
        self,
        user: UserAccount,
        temp_path: Path,
        target_dir: Path,
        filename: str,
        logical_dir: str,
        directory_class: str,
        size: int,
        declared_name: str,
        checksum: str,
    ) -> FileRecord:
        attempts = max(1, self.settings.upload_name_attempts)
        for attempt in range(attempts):
            linked: Optional[Path] = None
            try:
                with self.store.transaction(FILES) as records:
                    self.quota.check(user, size, records)
                    stored_name = first_free_name(
                        filename,
                        taken_names(records, user.id, directory_class),
                        target_dir,
                    )
                    now = self.clock()
                    record = FileRecord(
                        id=uuid.uuid4().hex,
                        owner_id=user.id,
                        logical_path=join_logical(logical_dir, stored_name),
                        stored_filename=stored_name,
                        size_bytes=size,
                        mime_type=guess_mime_type(stored_name),
                        visibility=default_visibility(directory_class),
                        created_at=now,
                        updated_at=now,
                        directory_class=directory_class,
                        original_name=os.path.basename(declared_name.replace("\\", "/")),
                        checksum=checksum,
                    )
                    final_path = record_path(
                        self.settings.storage_root,
                        directory_class,
                        user.id,
                        record.logical_path,
                    )
                    records.append(record.to_dict())
                    try:
                        # link() never replaces an existing entry.
                        os.link(temp_path, final_path)
                    except FileExistsError as error:
                        raise _NameClaimed(stored_name) from error
                    except OSError as error:
                        raise StorageIOError(
                            f"Could not publish upload to {final_path}: {error}"
                        ) from error
                    linked = final_path
            except _NameClaimed as claimed:
                logger.info(
                    "upload_name_claimed attempt=%d name=%s",
                    attempt + 1,
                    sanitize_log_value(str(claimed)),
                )
                continue
            except BaseException:
                if linked is not None:
                    self._discard(linked)
                raise
            return record

        logger.error(
            "upload_name_attempts_exhausted owner_id=%s filename=%s attempts=%d",
            user.id,
            sanitize_log_value(filename),
            attempts,
        )
        raise StorageIOError(
            f"Could not claim a unique name for {filename!r} after {attempts} attempts"
        )

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as error:
            logger.warning("upload_cleanup_failed path=%s error=%s", path, error)
