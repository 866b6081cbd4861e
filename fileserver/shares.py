"""Token-based sharing with expiry, password and download limits.

Expiry and limits are evaluated lazily when a token is presented; nothing
sweeps expired shares in the background.
"""

import secrets
import time
import uuid
from pathlib import Path
from typing import Callable, Dict, List, NamedTuple, Optional

from werkzeug.security import check_password_hash, generate_password_hash

from .access import AccessResolver, Actor
from .config import Settings
from .errors import (
    PathTraversalError,
    PermissionDeniedError,
    RecordNotFoundError,
    ShareExpiredError,
    ShareInactiveError,
    ShareLimitReachedError,
    ShareNotFoundError,
    ShareWrongPasswordError,
    StorageIOError,
    ValidationError,
)
from .files import FileCatalog
from .logs import get_logger
from .metastore import MetadataStore, find_index
from .models import SHARES, STATUS_ACTIVE, STATUS_INACTIVE, FileRecord, ShareToken

TOKEN_ATTEMPTS = 5

logger = get_logger("shares")

_UNSET = object()


class ShareAccess(NamedTuple):
    share: ShareToken
    record: FileRecord
    path: Path


def _token_hint(token: str) -> str:
    return (token or "")[:8]


def _validate_limit(download_limit) -> Optional[int]:
    if download_limit is None:
        return None
    if isinstance(download_limit, bool):
        raise ValidationError("Download limit must be a positive integer")
    try:
        limit = int(download_limit)
    except (TypeError, ValueError) as error:
        raise ValidationError("Download limit must be a positive integer") from error
    if limit < 1 or limit != download_limit:
        raise ValidationError("Download limit must be a positive integer")
    return limit


class ShareManager:
    def __init__(
        self,
        settings: Settings,
        store: MetadataStore,
        access: AccessResolver,
        files: FileCatalog,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.store = store
        self.access = access
        self.files = files
        self.clock = clock

    def create_share(
        self,
        actor: Optional[Actor],
        file_id: str,
        *,
        password: Optional[str] = None,
        expires_at: Optional[float] = None,
        download_limit: Optional[int] = None,
    ) -> ShareToken:
        record = self.files.get(file_id)
        if not self.access.can_share(actor, record):
            raise PermissionDeniedError(f"Sharing file {file_id} is not permitted")

        now = self.clock()
        expires_at = self._validate_expiry(expires_at, now)
        download_limit = _validate_limit(download_limit)
        password_hash = generate_password_hash(password) if password else None

        with self.store.transaction(SHARES) as records:
            existing = {entry.get("token") for entry in records}
            token = None
            for _ in range(TOKEN_ATTEMPTS):
                candidate = secrets.token_hex(self.settings.share_token_bytes)
                if candidate not in existing:
                    token = candidate
                    break
            if token is None:
                raise StorageIOError("Could not generate a unique share token")

            share = ShareToken(
                id=uuid.uuid4().hex,
                file_id=file_id,
                token=token,
                created_by=actor.user_id,
                created_at=now,
                updated_at=now,
                password_hash=password_hash,
                expires_at=expires_at,
                download_limit=download_limit,
            )
            records.append(share.to_dict())

        logger.info(
            "share_created share_id=%s file_id=%s created_by=%s password=%s "
            "expires_at=%s download_limit=%s",
            share.id,
            file_id,
            actor.user_id,
            share.has_password,
            expires_at,
            download_limit,
        )
        return share

    def access_share(self, token: str, password: Optional[str] = None) -> ShareAccess:
        """Validate *token* and count one download.

        Checks run in a fixed order (existence, status, expiry, limit,
        password) and the first failure is raised. A share whose file has
        since vanished is then reported as not found. On success the counter
        is incremented before the caller starts streaming.
        """

        with self.store.transaction(SHARES) as records:
            index = find_index(records, "token", token) if token else None
            if index is None:
                self._deny("not_found", token)
                raise ShareNotFoundError("Share not found")
            share = ShareToken.from_dict(records[index])

            if share.status != STATUS_ACTIVE:
                self._deny("inactive", token)
                raise ShareInactiveError("Share is no longer active")

            now = self.clock()
            if share.expires_at is not None and now > share.expires_at:
                self._deny("expired", token)
                raise ShareExpiredError("Share has expired")

            if share.download_limit is not None and share.download_count >= share.download_limit:
                self._deny("limit_reached", token)
                raise ShareLimitReachedError("Share download limit reached")

            if share.has_password and not (
                password and check_password_hash(share.password_hash, password)
            ):
                self._deny("wrong_password", token)
                raise ShareWrongPasswordError("Share password is incorrect")

            record = self.files.find(share.file_id)
            path = self._present_path(record)
            if record is None or path is None:
                self._deny("file_missing", token)
                raise ShareNotFoundError("Share not found")

            records[index]["download_count"] = share.download_count + 1
            records[index]["last_accessed_at"] = now
            share = ShareToken.from_dict(records[index])

        logger.info(
            "share_accessed share_id=%s file_id=%s download_count=%d",
            share.id,
            share.file_id,
            share.download_count,
        )
        return ShareAccess(share, record, path)

    def get_share(self, share_id: str) -> ShareToken:
        for entry in self.store.get(SHARES):
            if entry.get("id") == share_id:
                return ShareToken.from_dict(entry)
        raise RecordNotFoundError(f"Share {share_id} not found")

    def list_shares(
        self, actor: Optional[Actor], file_id: Optional[str] = None
    ) -> List[ShareToken]:
        """Admins see every share; users see the shares they may manage."""

        if actor is None or not actor.is_active:
            raise PermissionDeniedError("Listing shares requires an active account")
        shares = [
            ShareToken.from_dict(entry)
            for entry in self.store.get(SHARES)
            if file_id is None or entry.get("file_id") == file_id
        ]
        if actor.is_admin:
            return shares
        return [
            share
            for share in shares
            if self.access.can_manage_share(actor, share, self.files.find(share.file_id))
        ]

    def deactivate(self, actor: Optional[Actor], share_id: str) -> ShareToken:
        return self._mutate(actor, share_id, "share_deactivated", status=STATUS_INACTIVE)

    def reactivate(self, actor: Optional[Actor], share_id: str) -> ShareToken:
        return self._mutate(actor, share_id, "share_reactivated", status=STATUS_ACTIVE)

    def reset_count(self, actor: Optional[Actor], share_id: str) -> ShareToken:
        return self._mutate(actor, share_id, "share_count_reset", download_count=0)

    def update_share(
        self,
        actor: Optional[Actor],
        share_id: str,
        *,
        password=_UNSET,
        expires_at=_UNSET,
        download_limit=_UNSET,
    ) -> ShareToken:
        """Change share settings. Passing ``None`` clears a setting."""

        changes: Dict = {}
        if password is not _UNSET:
            changes["password_hash"] = generate_password_hash(password) if password else None
        if expires_at is not _UNSET:
            changes["expires_at"] = self._validate_expiry(expires_at, self.clock())
        if download_limit is not _UNSET:
            changes["download_limit"] = _validate_limit(download_limit)
        if not changes:
            return self.get_share(share_id)
        return self._mutate(actor, share_id, "share_updated", **changes)

    def delete_share(self, actor: Optional[Actor], share_id: str) -> ShareToken:
        self._require_manage(actor, self.get_share(share_id))
        with self.store.transaction(SHARES) as records:
            index = find_index(records, "id", share_id)
            if index is None:
                raise RecordNotFoundError(f"Share {share_id} not found")
            share = ShareToken.from_dict(records.pop(index))
        logger.info("share_deleted share_id=%s file_id=%s", share.id, share.file_id)
        return share

    def _validate_expiry(self, expires_at, now: float) -> Optional[float]:
        if expires_at is None:
            return None
        try:
            value = float(expires_at)
        except (TypeError, ValueError) as error:
            raise ValidationError("Expiry must be a timestamp") from error
        if value <= now:
            raise ValidationError("Expiry must be in the future")
        max_expiry = self.settings.share_max_expiry_seconds
        if max_expiry > 0 and value > now + max_expiry:
            raise ValidationError(f"Expiry cannot be more than {max_expiry} seconds ahead")
        return value

    def _present_path(self, record: Optional[FileRecord]) -> Optional[Path]:
        if record is None:
            return None
        try:
            path = self.files.disk_path(record)
        except PathTraversalError:
            return None
        return path if path.is_file() else None

    def _require_manage(self, actor: Optional[Actor], share: ShareToken) -> None:
        record = self.files.find(share.file_id)
        if not self.access.can_manage_share(actor, share, record):
            raise PermissionDeniedError(f"Managing share {share.id} is not permitted")

    def _mutate(self, actor: Optional[Actor], share_id: str, event: str, **changes) -> ShareToken:
        self._require_manage(actor, self.get_share(share_id))
        with self.store.transaction(SHARES) as records:
            index = find_index(records, "id", share_id)
            if index is None:
                raise RecordNotFoundError(f"Share {share_id} not found")
            changes["updated_at"] = self.clock()
            records[index].update(changes)
            share = ShareToken.from_dict(records[index])
        logger.info(
            "%s share_id=%s fields=%s",
            event,
            share_id,
            ",".join(sorted(key for key in changes if key != "updated_at")),
        )
        return share

    @staticmethod
    def _deny(reason: str, token: str) -> None:
        logger.warning("share_access_denied reason=%s token=%s...", reason, _token_hint(token))
