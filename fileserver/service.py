"""Upward interface: one object wiring every storage component together.

Callers identify themselves by user id; the facade turns ids into explicit
actors and hands them to the components, so no component reads ambient
request state.
"""

import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, NamedTuple, Optional, Tuple

from .access import AccessResolver, Actor
from .config import Settings
from .errors import FileServerError, PermissionDeniedError, RecordNotFoundError, ValidationError
from .files import FileCatalog
from .logs import get_logger
from .metastore import MetadataStore
from .models import FileRecord, ShareToken, UserAccount
from .quota import QuotaAccountant, UsageReport
from .ratelimit import MemoryWindowBackend, RateDecision, RateLimiter, StoreWindowBackend
from .shares import ShareManager
from .uploads import UploadData, UploadPipeline
from .users import UserDirectory

logger = get_logger("service")

DISK_CRITICAL_GB = 1
DISK_WARNING_GB = 5


@dataclass
class UploadRequest:
    owner_id: str
    directory_class: str
    filename: str
    data: UploadData
    logical_dir: str = ""
    requester_id: Optional[str] = None
    content_length: Optional[int] = None


@dataclass
class DownloadRequest:
    """Either ``file_id`` or the ``(owner_id, directory_class, logical_path)``
    triple identifies the file; a ``share_token`` takes precedence over both."""

    requester_id: Optional[str] = None
    file_id: Optional[str] = None
    owner_id: Optional[str] = None
    directory_class: Optional[str] = None
    logical_path: Optional[str] = None
    share_token: Optional[str] = None
    share_password: Optional[str] = None


@dataclass
class ShareCreateRequest:
    owner_id: str
    file_id: str
    password: Optional[str] = None
    expires_at: Optional[float] = None
    download_limit: Optional[int] = None


class Download(NamedTuple):
    record: FileRecord
    path: Path


class FileServer:
    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
        rate_backend=None,
    ) -> None:
        settings.ensure_directories()
        self.settings = settings
        self.store = MetadataStore(settings.data_dir, lock_timeout=settings.lock_timeout_seconds)
        self.access = AccessResolver(settings.reserved_prefixes)
        self.users = UserDirectory(
            self.store, default_quota_bytes=settings.default_quota_bytes, clock=clock
        )
        self.quota = QuotaAccountant(self.store, settings.storage_root)
        self.uploads = UploadPipeline(settings, self.store, self.quota, self.access, clock=clock)
        self.files = FileCatalog(settings, self.store, self.access, clock=clock)
        self.shares = ShareManager(settings, self.store, self.access, self.files, clock=clock)

        if rate_backend is None:
            if settings.rate_limit_backend == "store":
                rate_backend = StoreWindowBackend(self.store)
            else:
                rate_backend = MemoryWindowBackend()
        self.rate_limiter = RateLimiter(rate_backend)

    # -- identity -------------------------------------------------------

    def actor_for(self, user_id: Optional[str]) -> Optional[Actor]:
        """Return the actor for *user_id*, or ``None`` for anonymous callers."""

        if not user_id:
            return None
        user = self.users.find(user_id)
        if user is None:
            raise PermissionDeniedError("Unknown account")
        return Actor.from_user(user)

    def create_user(
        self, username: str, *, admin: bool = False, quota_bytes: Optional[int] = None
    ) -> UserAccount:
        return self.users.create_user(
            username, role="admin" if admin else "user", quota_bytes=quota_bytes
        )

    # -- operations -----------------------------------------------------

    def upload(self, request: UploadRequest) -> FileRecord:
        owner = self.users.get(request.owner_id)
        actor = None
        if request.requester_id and request.requester_id != request.owner_id:
            actor = self.actor_for(request.requester_id)
            if not actor.is_admin:
                raise PermissionDeniedError("Only administrators may upload for another user")
        return self.uploads.upload(
            owner,
            request.data,
            request.filename,
            request.directory_class,
            request.logical_dir,
            content_length=request.content_length,
            actor=actor,
        )

    def download(self, request: DownloadRequest) -> Download:
        if request.share_token:
            granted = self.shares.access_share(request.share_token, request.share_password)
            return Download(granted.record, granted.path)

        actor = self.actor_for(request.requester_id)
        file_id = request.file_id
        if file_id is None:
            if not (request.owner_id and request.directory_class and request.logical_path):
                raise ValidationError("A file id or owner, class and path are required")
            record = self.files.find_by_path(
                request.owner_id, request.directory_class, request.logical_path
            )
            if record is None:
                raise RecordNotFoundError("File not found")
            file_id = record.id
        record, path = self.files.open_for_download(actor, file_id)
        return Download(record, path)

    def create_share(self, request: ShareCreateRequest) -> ShareToken:
        return self.shares.create_share(
            self.actor_for(request.owner_id),
            request.file_id,
            password=request.password,
            expires_at=request.expires_at,
            download_limit=request.download_limit,
        )

    def usage(self, user_id: str) -> Tuple[UserAccount, UsageReport]:
        user = self.users.get(user_id)
        return user, self.quota.usage(user.id)

    def check_rate(self, subject: str, action: str) -> RateDecision:
        max_requests, window_seconds = self.settings.rate_limit(action)
        return self.rate_limiter.allow(subject, action, max_requests, window_seconds)

    # -- health ---------------------------------------------------------

    def health(self) -> Tuple[bool, Dict[str, Any]]:
        checks: Dict[str, Any] = {}
        healthy = True

        try:
            checks["collections"] = self.store.stats()
            checks["metadata"] = "ok"
        except FileServerError as error:
            checks["metadata"] = f"error: {str(error)[:100]}"
            healthy = False

        try:
            usage = shutil.disk_usage(self.settings.storage_root)
            disk_free_gb = usage.free / (1024 ** 3)
            checks["disk_space_gb"] = round(disk_free_gb, 2)
            if disk_free_gb < DISK_CRITICAL_GB:
                checks["disk_space_status"] = "critical"
                healthy = False
            elif disk_free_gb < DISK_WARNING_GB:
                checks["disk_space_status"] = "warning"
            else:
                checks["disk_space_status"] = "ok"
        except OSError as error:
            checks["disk_space_gb"] = 0
            checks["disk_space_status"] = f"error: {str(error)[:100]}"
            healthy = False

        try:
            check_file = self.settings.storage_root / f".health_check_{uuid.uuid4().hex}.tmp"
            check_file.write_text("health_check", encoding="utf-8")
            check_file.unlink(missing_ok=True)
            checks["storage_writable"] = "ok"
        except OSError as error:
            checks["storage_writable"] = f"error: {str(error)[:100]}"
            healthy = False

        if not healthy:
            logger.warning("health_check_failed checks=%s", checks)
        return healthy, checks
