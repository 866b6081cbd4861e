"""Permission decisions.

Every function here is a pure decision over the acting user and a record:
nothing is looked up from shared state and nothing touches the disk, so the
checks can run before any I/O. Callers pass the actor explicitly; ``None``
means an anonymous request.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from .errors import PermissionDeniedError
from .models import (
    ROLE_ADMIN,
    ROLE_USER,
    STATUS_ACTIVE,
    VISIBILITY_PUBLIC,
    FileRecord,
    ShareToken,
    UserAccount,
)


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str = ROLE_USER
    status: str = STATUS_ACTIVE

    @classmethod
    def from_user(cls, user: UserAccount) -> "Actor":
        return cls(user_id=user.id, role=user.role, status=user.status)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN and self.status == STATUS_ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE


def _active(actor: Optional[Actor]) -> Optional[Actor]:
    # Suspended accounts act with anonymous rights.
    if actor is None or not actor.is_active:
        return None
    return actor


class AccessResolver:
    def __init__(self, reserved_prefixes: Iterable[str] = ("_system",)) -> None:
        self.reserved_prefixes: Tuple[str, ...] = tuple(
            prefix.strip("/") for prefix in reserved_prefixes if prefix.strip("/")
        )

    def is_reserved(self, logical_path: str) -> bool:
        """True when *logical_path* sits under a reserved administrative prefix."""

        path = (logical_path or "").strip("/")
        return any(
            path == prefix or path.startswith(prefix + "/")
            for prefix in self.reserved_prefixes
        )

    def can_read(self, actor: Optional[Actor], record: FileRecord) -> bool:
        if record.visibility == VISIBILITY_PUBLIC:
            return True
        actor = _active(actor)
        if actor is None:
            return False
        return actor.is_admin or actor.user_id == record.owner_id

    def can_write(self, actor: Optional[Actor], record: FileRecord) -> bool:
        actor = _active(actor)
        if actor is None:
            return False
        if actor.is_admin:
            return True
        if self.is_reserved(record.logical_path):
            return False
        return actor.user_id == record.owner_id

    def can_delete(self, actor: Optional[Actor], record: FileRecord) -> bool:
        return self.can_write(actor, record)

    def can_share(self, actor: Optional[Actor], record: FileRecord) -> bool:
        return self.can_write(actor, record)

    def can_manage_share(
        self,
        actor: Optional[Actor],
        share: ShareToken,
        record: Optional[FileRecord],
    ) -> bool:
        actor = _active(actor)
        if actor is None:
            return False
        if actor.is_admin:
            return True
        if record is not None:
            return self.can_write(actor, record)
        return actor.user_id == share.created_by

    def can_upload_to(self, actor: Optional[Actor], logical_dir: str) -> bool:
        actor = _active(actor)
        if actor is None:
            return False
        return actor.is_admin or not self.is_reserved(logical_dir)

    def require_read(self, actor: Optional[Actor], record: FileRecord) -> None:
        if not self.can_read(actor, record):
            raise PermissionDeniedError(f"Read access to file {record.id} denied")

    def require_write(self, actor: Optional[Actor], record: FileRecord) -> None:
        if not self.can_write(actor, record):
            raise PermissionDeniedError(f"Write access to file {record.id} denied")

    def require_delete(self, actor: Optional[Actor], record: FileRecord) -> None:
        if not self.can_delete(actor, record):
            raise PermissionDeniedError(f"Delete access to file {record.id} denied")
