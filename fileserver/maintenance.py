"""Disk hygiene.

Nothing here is needed for correctness: interrupted uploads already remove
their staging files and missing-on-disk records are excluded from quota.
These jobs only reclaim space and surface inconsistencies.
"""

import atexit
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .config import DIRECTORY_CLASSES
from .logs import get_logger
from .metastore import MetadataStore
from .models import FILES
from .paths import record_path
from .quota import QuotaAccountant
from .uploads import TEMP_SUFFIX

STALE_TEMP_SECONDS = 3600
MAINTENANCE_JOB_ID = "fileserver_maintenance"

logger = get_logger("maintenance")


def _remove_stale(candidates: Iterable[Path], cutoff: float) -> int:
    removed = 0
    for temp_file in candidates:
        try:
            if not temp_file.is_file() or temp_file.stat().st_mtime >= cutoff:
                continue
            temp_file.unlink()
            removed += 1
            logger.info("temp_file_removed path=%s", temp_file)
        except OSError as error:
            logger.warning("temp_cleanup_failed path=%s error=%s", temp_file, error)
    return removed


def cleanup_temp_files(
    storage_root: Path,
    data_dir: Path,
    *,
    now: Optional[float] = None,
    max_age: float = STALE_TEMP_SECONDS,
) -> int:
    """Remove staging and collection temp files older than *max_age* seconds."""

    cutoff = (time.time() if now is None else now) - max_age
    removed = _remove_stale(Path(storage_root).rglob(f"*{TEMP_SUFFIX}"), cutoff)
    removed += _remove_stale(Path(storage_root).glob("*.tmp"), cutoff)
    removed += _remove_stale(Path(data_dir).glob("*.tmp"), cutoff)
    if removed:
        logger.info("temp_cleanup_completed removed=%d", removed)
    return removed


def prune_rate_windows(backend, max_window: float, *, now: Optional[float] = None) -> int:
    """Drop rate-limit events older than the widest window from *backend*."""

    dropped = backend.prune(max_window, now)
    if dropped:
        logger.info("rate_windows_pruned dropped=%d", dropped)
    return dropped


def find_missing_records(store: MetadataStore, storage_root: Path) -> Dict[str, List[str]]:
    """Map owner id to the ids of records whose bytes are gone.

    The records are reported, never deleted.
    """

    accountant = QuotaAccountant(store, storage_root)
    records = store.get(FILES)
    owners = sorted({entry.get("owner_id") for entry in records if entry.get("owner_id")})
    flagged: Dict[str, List[str]] = {}
    for owner_id in owners:
        report = accountant.usage(owner_id, records)
        if report.missing_ids:
            flagged[owner_id] = report.missing_ids
    return flagged


def find_orphaned_files(store: MetadataStore, settings) -> List[Path]:
    """Files under the class roots that no record points at.

    Left behind when a delete committed but its unlink failed. Reported only.
    """

    known = {
        record_path(
            settings.storage_root,
            entry.get("directory_class", "private"),
            entry.get("owner_id", ""),
            entry.get("logical_path", ""),
        )
        for entry in store.get(FILES)
    }
    orphans = []
    for directory_class in DIRECTORY_CLASSES:
        class_root = settings.class_root(directory_class)
        if not class_root.is_dir():
            continue
        for candidate in class_root.rglob("*"):
            if candidate.name.startswith(".") or not candidate.is_file():
                continue
            if candidate.resolve() not in known:
                orphans.append(candidate)
    for orphan in orphans:
        logger.warning("orphaned_file path=%s", orphan)
    return sorted(orphans)


def run_maintenance(server) -> Dict[str, object]:
    settings = server.settings
    summary: Dict[str, object] = {
        "temp_files_removed": cleanup_temp_files(settings.storage_root, settings.data_dir),
        "missing_records": find_missing_records(server.store, settings.storage_root),
        "orphaned_files": [
            str(path) for path in find_orphaned_files(server.store, settings)
        ],
    }
    widest = max(window for _, window in settings.rate_limits.values())
    summary["rate_windows_pruned"] = prune_rate_windows(server.rate_limiter.backend, widest)
    logger.info(
        "maintenance_completed temp_files_removed=%d flagged_owners=%d",
        summary["temp_files_removed"],
        len(summary["missing_records"]),
    )
    return summary


def start_scheduler(server) -> Optional[BackgroundScheduler]:
    """Schedule :func:`run_maintenance` when a cleanup interval is configured."""

    interval = server.settings.cleanup_interval_minutes
    if interval <= 0:
        return None

    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=run_maintenance,
        args=[server],
        trigger="interval",
        minutes=max(1, interval),
        id=MAINTENANCE_JOB_ID,
        name="Clean up temporary files",
        replace_existing=True,
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))
    logger.info("maintenance_scheduled interval_minutes=%d", interval)
    return scheduler
