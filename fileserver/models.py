"""Persisted record types.

Records travel through the metadata store as plain dictionaries; these
dataclasses are the typed view used by the rest of the package.
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLES = (ROLE_USER, ROLE_ADMIN)

STATUS_ACTIVE = "active"
STATUS_SUSPENDED = "suspended"
STATUS_INACTIVE = "inactive"

VISIBILITY_PUBLIC = "public"
VISIBILITY_PRIVATE = "private"
VISIBILITIES = (VISIBILITY_PUBLIC, VISIBILITY_PRIVATE)

USERS = "users"
FILES = "files"
SHARES = "shares"
RATE_WINDOWS = "rate_windows"


def default_visibility(directory_class: str) -> str:
    return VISIBILITY_PUBLIC if directory_class == "public" else VISIBILITY_PRIVATE


class _Record:
    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UserAccount(_Record):
    id: str
    username: str
    role: str = ROLE_USER
    quota_bytes: int = 0
    status: str = STATUS_ACTIVE
    created_at: float = 0.0

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE


@dataclass
class FileRecord(_Record):
    id: str
    owner_id: str
    logical_path: str
    stored_filename: str
    size_bytes: int
    mime_type: str
    visibility: str
    created_at: float
    updated_at: float
    directory_class: str = "private"
    original_name: str = ""
    download_count: int = 0
    importance: int = 0
    checksum: str = ""

    @property
    def logical_dir(self) -> str:
        directory, _, _ = self.logical_path.rpartition("/")
        return directory


@dataclass
class ShareToken(_Record):
    id: str
    file_id: str
    token: str
    created_by: str
    created_at: float
    updated_at: float
    password_hash: Optional[str] = None
    expires_at: Optional[float] = None
    download_limit: Optional[int] = None
    download_count: int = 0
    status: str = STATUS_ACTIVE
    last_accessed_at: Optional[float] = None

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def public_dict(self) -> Dict[str, Any]:
        """Serializable view without the password hash."""

        payload = self.to_dict()
        payload.pop("password_hash", None)
        payload["has_password"] = self.has_password
        return payload


@dataclass
class RateWindow(_Record):
    key: str
    events: List[float] = field(default_factory=list)
