import os
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .access import AccessResolver, Actor
from .config import DIRECTORY_CLASSES, Settings
from .errors import (
    InvalidExtensionError,
    NameConflictError,
    PermissionDeniedError,
    RecordNotFoundError,
    StorageIOError,
    ValidationError,
)
from .logs import get_logger, sanitize_log_value
from .metastore import MetadataStore, find_index
from .models import FILES, SHARES, VISIBILITIES, FileRecord, default_visibility
from .paths import (
    join_logical,
    normalize_logical_dir,
    record_path,
    safe_filename,
    split_extension,
)
from .uploads import file_sha256, guess_mime_type, taken_names

PreDeleteHook = Callable[[FileRecord, Path], None]

logger = get_logger("files")


class FileCatalog:
    """Lookups and lifecycle operations on registered files."""

    def __init__(
        self,
        settings: Settings,
        store: MetadataStore,
        access: AccessResolver,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.store = store
        self.access = access
        self.clock = clock
        self._pre_delete_hooks: List[PreDeleteHook] = []

    def add_pre_delete_hook(self, hook: PreDeleteHook) -> None:
        """Run *hook(record, path)* before a file is deleted.

        A hook that raises aborts the delete and the error propagates.
        """

        self._pre_delete_hooks.append(hook)

    # -- lookups --------------------------------------------------------

    def find(self, file_id: str) -> Optional[FileRecord]:
        for entry in self.store.get(FILES):
            if entry.get("id") == file_id:
                return FileRecord.from_dict(entry)
        return None

    def get(self, file_id: str) -> FileRecord:
        record = self.find(file_id)
        if record is None:
            raise RecordNotFoundError(f"File {file_id} not found")
        return record

    def find_by_path(
        self, owner_id: str, directory_class: str, logical_path: str
    ) -> Optional[FileRecord]:
        wanted = (logical_path or "").strip("/")
        for entry in self.store.get(FILES):
            if (
                entry.get("owner_id") == owner_id
                and entry.get("directory_class") == directory_class
                and entry.get("logical_path") == wanted
            ):
                return FileRecord.from_dict(entry)
        return None

    def list_for_owner(
        self, owner_id: str, directory_class: Optional[str] = None
    ) -> List[FileRecord]:
        return [
            FileRecord.from_dict(entry)
            for entry in self.store.get(FILES)
            if entry.get("owner_id") == owner_id
            and (directory_class is None or entry.get("directory_class") == directory_class)
        ]

    def list_all(self) -> List[FileRecord]:
        return [FileRecord.from_dict(entry) for entry in self.store.get(FILES)]

    def search(
        self,
        actor: Optional[Actor],
        query: str = "",
        *,
        owner_id: Optional[str] = None,
        extension: Optional[str] = None,
        mime_type: Optional[str] = None,
        visibility: Optional[str] = None,
        directory_class: Optional[str] = None,
    ) -> List[FileRecord]:
        """Return readable files matching every given criterion.

        *query* is matched case-insensitively against the logical path and
        the original upload name. A *mime_type* ending in ``/`` matches the
        whole family (``image/``). Results are ordered newest first.
        """

        needle = (query or "").strip().lower()
        wanted_extension = (extension or "").lower().lstrip(".")
        matches = []
        for record in self.list_all():
            if owner_id and record.owner_id != owner_id:
                continue
            if directory_class and record.directory_class != directory_class:
                continue
            if visibility and record.visibility != visibility:
                continue
            if wanted_extension and split_extension(record.stored_filename) != wanted_extension:
                continue
            if mime_type and not (
                record.mime_type.startswith(mime_type)
                if mime_type.endswith("/")
                else record.mime_type == mime_type
            ):
                continue
            if needle and not (
                needle in record.logical_path.lower() or needle in record.original_name.lower()
            ):
                continue
            if self.access.can_read(actor, record):
                matches.append(record)

        matches.sort(key=lambda record: record.created_at, reverse=True)
        logger.info(
            "file_search query=%s results=%d", sanitize_log_value(needle), len(matches)
        )
        return matches

    def verify_checksum(self, actor: Optional[Actor], file_id: str) -> Dict[str, object]:
        """Hash the stored bytes and compare them with the recorded sha256."""

        record = self.get(file_id)
        self.access.require_read(actor, record)
        path = self.disk_path(record)
        try:
            actual = file_sha256(path)
        except FileNotFoundError as error:
            raise RecordNotFoundError(f"File {file_id} is missing on disk") from error
        except OSError as error:
            raise StorageIOError(f"Could not read {path}: {error}") from error
        intact = bool(record.checksum) and actual == record.checksum
        if not intact:
            logger.warning(
                "checksum_mismatch file_id=%s expected=%s actual=%s",
                record.id,
                record.checksum or "-",
                actual,
            )
        return {"id": record.id, "checksum": record.checksum, "actual": actual, "intact": intact}

    def disk_path(self, record: FileRecord) -> Path:
        return record_path(
            self.settings.storage_root,
            record.directory_class,
            record.owner_id,
            record.logical_path,
        )

    # -- downloads ------------------------------------------------------

    def open_for_download(self, actor: Optional[Actor], file_id: str):
        """Check read access and count the download; returns ``(record, path)``."""

        record = self.get(file_id)
        self.access.require_read(actor, record)
        path = self.disk_path(record)
        if not path.is_file():
            logger.error("download_missing_on_disk file_id=%s path=%s", record.id, path)
            raise RecordNotFoundError(f"File {file_id} is missing on disk")
        return self.record_download(file_id), path

    def record_download(self, file_id: str) -> FileRecord:
        with self.store.transaction(FILES) as records:
            index = self._index(records, file_id)
            records[index]["download_count"] = int(records[index].get("download_count", 0)) + 1
            record = FileRecord.from_dict(records[index])
        logger.info(
            "file_downloaded file_id=%s download_count=%d", record.id, record.download_count
        )
        return record

    # -- mutations ------------------------------------------------------

    def rename(self, actor: Optional[Actor], file_id: str, new_name: str) -> FileRecord:
        filename = safe_filename(new_name)
        extension = split_extension(filename)
        if (
            extension in self.settings.quarantine_extensions
            or extension not in self.settings.allowed_extensions
        ):
            raise InvalidExtensionError(extension)

        def change(record: FileRecord) -> Dict:
            return {
                "logical_path": join_logical(record.logical_dir, filename),
                "stored_filename": filename,
                "mime_type": guess_mime_type(filename),
            }

        record = self._relocate(actor, file_id, change)
        logger.info(
            "file_renamed file_id=%s name=%s", record.id, sanitize_log_value(filename)
        )
        return record

    def move(
        self,
        actor: Optional[Actor],
        file_id: str,
        logical_dir: Optional[str] = None,
        directory_class: Optional[str] = None,
    ) -> FileRecord:
        """Move a file to another directory and/or directory class.

        The stored name is kept; a taken name raises NameConflictError
        instead of being renumbered. Changing class resets visibility to the
        new class's default.
        """

        if directory_class is not None and directory_class not in DIRECTORY_CLASSES:
            raise ValidationError(f"Unknown directory class {directory_class!r}")
        target_dir = None if logical_dir is None else normalize_logical_dir(logical_dir)
        if target_dir is not None and not self.access.can_upload_to(actor, target_dir):
            raise PermissionDeniedError(
                f"Directory {target_dir!r} is reserved for administrators"
            )

        def change(record: FileRecord) -> Dict:
            new_dir = record.logical_dir if target_dir is None else target_dir
            new_class = directory_class or record.directory_class
            changes = {
                "logical_path": join_logical(new_dir, record.stored_filename),
                "directory_class": new_class,
            }
            if new_class != record.directory_class:
                changes["visibility"] = default_visibility(new_class)
            return changes

        record = self._relocate(actor, file_id, change)
        logger.info(
            "file_moved file_id=%s class=%s logical_path=%s",
            record.id,
            record.directory_class,
            sanitize_log_value(record.logical_path),
        )
        return record

    def update_metadata(
        self,
        actor: Optional[Actor],
        file_id: str,
        *,
        visibility: Optional[str] = None,
        importance: Optional[int] = None,
    ) -> FileRecord:
        changes: Dict = {}
        if visibility is not None:
            if visibility not in VISIBILITIES:
                raise ValidationError(f"Unknown visibility {visibility!r}")
            changes["visibility"] = visibility
        if importance is not None:
            try:
                changes["importance"] = int(importance)
            except (TypeError, ValueError) as error:
                raise ValidationError("Importance must be an integer") from error
        if not changes:
            return self.get(file_id)

        with self.store.transaction(FILES) as records:
            index = self._index(records, file_id)
            self.access.require_write(actor, FileRecord.from_dict(records[index]))
            changes["updated_at"] = self.clock()
            records[index].update(changes)
            record = FileRecord.from_dict(records[index])

        logger.info(
            "file_metadata_updated file_id=%s fields=%s",
            record.id,
            ",".join(sorted(key for key in changes if key != "updated_at")),
        )
        return record

    def delete(self, actor: Optional[Actor], file_id: str) -> FileRecord:
        """Remove the bytes, the record and every share of the file."""

        record = self.get(file_id)
        self.access.require_delete(actor, record)
        path = self.disk_path(record)
        for hook in self._pre_delete_hooks:
            hook(record, path)

        with self.store.transaction(FILES) as records:
            del records[self._index(records, file_id)]

        # The record is committed before the bytes go; a leftover file is
        # reported by maintenance.
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning("delete_missing_on_disk file_id=%s path=%s", file_id, path)
        except OSError as error:
            logger.error("delete_unlink_failed file_id=%s path=%s error=%s", file_id, path, error)

        with self.store.transaction(SHARES) as shares:
            remaining = [entry for entry in shares if entry.get("file_id") != file_id]
            removed = len(shares) - len(remaining)
            shares[:] = remaining

        logger.info(
            "file_deleted file_id=%s owner_id=%s shares_removed=%d",
            file_id,
            record.owner_id,
            removed,
        )
        return record

    # -- internals ------------------------------------------------------

    @staticmethod
    def _index(records: List[Dict], file_id: str) -> int:
        index = find_index(records, "id", file_id)
        if index is None:
            raise RecordNotFoundError(f"File {file_id} not found")
        return index

    def _relocate(
        self,
        actor: Optional[Actor],
        file_id: str,
        change: Callable[[FileRecord], Dict],
    ) -> FileRecord:
        """Apply a path-changing update: link to the new name, commit, unlink the old."""

        linked: Optional[Path] = None
        try:
            with self.store.transaction(FILES) as records:
                index = self._index(records, file_id)
                current = FileRecord.from_dict(records[index])
                self.access.require_write(actor, current)

                changes = change(current)
                updated = FileRecord.from_dict({**current.to_dict(), **changes})
                if (
                    updated.logical_path == current.logical_path
                    and updated.directory_class == current.directory_class
                ):
                    return current
                if not actor_is_admin(actor) and self.access.is_reserved(updated.logical_path):
                    raise PermissionDeniedError(
                        f"Path {updated.logical_path!r} is reserved for administrators"
                    )

                others = [entry for entry in records if entry.get("id") != file_id]
                if updated.stored_filename in taken_names(
                    others, updated.owner_id, updated.directory_class
                ):
                    raise NameConflictError(
                        f"{updated.stored_filename!r} already exists for this owner"
                    )

                source = self.disk_path(current)
                target = self.disk_path(updated)
                try:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    os.link(source, target)
                except FileExistsError as error:
                    raise NameConflictError(f"{updated.logical_path!r} already exists") from error
                except FileNotFoundError as error:
                    raise RecordNotFoundError(f"File {file_id} is missing on disk") from error
                except OSError as error:
                    raise StorageIOError(f"Could not relocate {source}: {error}") from error
                linked = target

                changes["updated_at"] = self.clock()
                records[index].update(changes)
                result = FileRecord.from_dict(records[index])
        except BaseException:
            if linked is not None:
                linked.unlink(missing_ok=True)
            raise

        try:
            source.unlink()
        except OSError as error:
            logger.warning("relocate_cleanup_failed path=%s error=%s", source, error)
        return result


def actor_is_admin(actor: Optional[Actor]) -> bool:
    return actor is not None and actor.is_admin
