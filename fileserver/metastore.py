"""Flat JSON record store with whole-collection locking.

Each collection is one JSON array on disk (``<data_dir>/<name>.json``).
Callers load the whole collection, mutate it and save it back; every save is
a write to a temporary file followed by an atomic rename, performed while an
exclusive ``flock`` on ``<name>.lock`` is held. This keeps collections small
(thousands of records, not millions) and trades row-level concurrency for a
storage format that needs no database engine.
"""

import fcntl
import json
import os
import re
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .errors import CollectionCorruptError, LockTimeoutError, StorageIOError
from .logs import get_logger

DEFAULT_POLL_INTERVAL = 0.01
_COLLECTION_NAME = re.compile(r"^[a-z_]+$")

logger = get_logger("metastore")


class MetadataStore:
    def __init__(
        self,
        data_dir: Path,
        *,
        lock_timeout: float = 10.0,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.lock_timeout = float(lock_timeout)
        self.poll_interval = poll_interval
        self._held = threading.local()
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, collection: str) -> Path:
        if not _COLLECTION_NAME.match(collection or ""):
            raise ValueError(f"Invalid collection name {collection!r}")
        return self.data_dir / f"{collection}.json"

    def get(self, collection: str) -> List[Dict]:
        """Return the records of *collection* in their stored order.

        Reads need no lock: collections are only ever replaced by rename, so
        a reader sees either the previous or the next complete version.
        """

        return self._load(collection)

    def replace(self, collection: str, records: List[Dict]) -> None:
        with self._locked(collection):
            self._write(collection, records)

    @contextmanager
    def transaction(self, collection: str) -> Iterator[List[Dict]]:
        """Hold the collection lock across a read-modify-write.

        The yielded list is written back when the block exits cleanly;
        nothing is persisted when it raises.
        """

        with self._locked(collection):
            records = self._load(collection)
            yield records
            self._write(collection, records)

    def stats(self) -> Dict[str, Dict[str, object]]:
        """Summarize record counts and file sizes per collection."""

        summary: Dict[str, Dict[str, object]] = {}
        for path in sorted(self.data_dir.glob("*.json")):
            collection = path.stem
            if not _COLLECTION_NAME.match(collection) or collection == "config":
                continue
            entry: Dict[str, object] = {}
            try:
                stat = path.stat()
                entry["size"] = stat.st_size
                entry["last_modified"] = stat.st_mtime
                entry["records"] = len(self._load(collection))
            except CollectionCorruptError as error:
                entry["error"] = error.detail
            except StorageIOError as error:
                entry["error"] = str(error)
            except OSError as error:
                entry["error"] = str(error)
            summary[collection] = entry
        return summary

    @contextmanager
    def _locked(self, collection: str) -> Iterator[None]:
        held = self._held_collections()
        if collection in held:
            raise RuntimeError(
                f"Collection {collection!r} is already locked by this thread"
            )

        lock_path = self.path_for(collection).with_suffix(".lock")
        try:
            fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as error:
            raise StorageIOError(f"Could not open lock file {lock_path}: {error}") from error

        started = time.monotonic()
        deadline = started + self.lock_timeout
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        logger.warning(
                            "lock_timeout collection=%s timeout=%.2f",
                            collection,
                            self.lock_timeout,
                        )
                        raise LockTimeoutError(collection, self.lock_timeout)
                    time.sleep(self.poll_interval)
        except BaseException:
            os.close(fd)
            raise

        waited = time.monotonic() - started
        if waited > 1.0:
            logger.info("lock_contended collection=%s waited=%.2f", collection, waited)

        held.add(collection)
        try:
            yield
        finally:
            held.discard(collection)
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    def _held_collections(self) -> set:
        held = getattr(self._held, "collections", None)
        if held is None:
            held = set()
            self._held.collections = held
        return held

    def _load(self, collection: str) -> List[Dict]:
        path = self.path_for(collection)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except UnicodeDecodeError as error:
            raise self._corrupt(collection, f"not valid UTF-8: {error}") from error
        except OSError as error:
            raise StorageIOError(f"Could not read collection {collection!r}: {error}") from error

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as error:
            raise self._corrupt(collection, f"invalid JSON: {error}") from error

        if not isinstance(data, list):
            raise self._corrupt(collection, f"expected an array, found {type(data).__name__}")
        for index, entry in enumerate(data):
            if not isinstance(entry, dict):
                raise self._corrupt(collection, f"entry {index} is not an object")
        return data

    def _corrupt(self, collection: str, detail: str) -> CollectionCorruptError:
        logger.error("collection_corrupt collection=%s detail=%s", collection, detail)
        return CollectionCorruptError(collection, detail)

    def _write(self, collection: str, records: List[Dict]) -> None:
        path = self.path_for(collection)
        temp_path = path.with_suffix(".tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                json.dump(records, handle, indent=2, ensure_ascii=False)
                handle.flush()
                os.fsync(handle.fileno())
            # Atomic rename on POSIX systems (overwrites destination)
            os.replace(temp_path, path)
            self._fsync_directory()
        except OSError as error:
            self._discard_temp(temp_path)
            raise StorageIOError(f"Could not write collection {collection!r}: {error}") from error
        except Exception:
            self._discard_temp(temp_path)
            raise
        logger.debug("collection_saved collection=%s records=%d", collection, len(records))

    def _fsync_directory(self) -> None:
        dir_fd = os.open(self.data_dir, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    @staticmethod
    def _discard_temp(temp_path: Path) -> None:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError:
            logger.warning("temp_cleanup_failed path=%s", temp_path)


def find_index(records: List[Dict], key: str, value) -> Optional[int]:
    """Return the index of the first record whose *key* equals *value*."""

    for index, record in enumerate(records):
        if record.get(key) == value:
            return index
    return None
