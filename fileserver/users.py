import re
import time
import uuid
from typing import Callable, List, Optional

from .errors import RecordNotFoundError, ValidationError
from .logs import get_logger, sanitize_log_value
from .metastore import MetadataStore, find_index
from .models import (
    ROLE_USER,
    ROLES,
    STATUS_ACTIVE,
    STATUS_SUSPENDED,
    USERS,
    UserAccount,
)

USERNAME_PATTERN = re.compile(r"[A-Za-z0-9_.-]{3,64}")

logger = get_logger("users")


class UserDirectory:
    """User accounts persisted in the ``users`` collection."""

    def __init__(
        self,
        store: MetadataStore,
        *,
        default_quota_bytes: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.default_quota_bytes = int(default_quota_bytes)
        self.clock = clock

    def create_user(
        self,
        username: str,
        *,
        role: str = ROLE_USER,
        quota_bytes: Optional[int] = None,
    ) -> UserAccount:
        username = (username or "").strip()
        if not USERNAME_PATTERN.fullmatch(username):
            raise ValidationError(
                "Username must be 3-64 characters of letters, digits, '.', '_' or '-'"
            )
        if role not in ROLES:
            raise ValidationError(f"Unknown role {role!r}")
        quota = self.default_quota_bytes if quota_bytes is None else int(quota_bytes)
        if quota < 0:
            raise ValidationError("Quota cannot be negative")

        user = UserAccount(
            id=uuid.uuid4().hex,
            username=username,
            role=role,
            quota_bytes=quota,
            status=STATUS_ACTIVE,
            created_at=self.clock(),
        )
        with self.store.transaction(USERS) as records:
            lowered = username.lower()
            if any(str(entry.get("username", "")).lower() == lowered for entry in records):
                raise ValidationError(f"Username {username!r} is already taken")
            records.append(user.to_dict())

        logger.info(
            "user_created user_id=%s username=%s role=%s quota_bytes=%d",
            user.id,
            sanitize_log_value(username),
            role,
            quota,
        )
        return user

    def find(self, user_id: str) -> Optional[UserAccount]:
        for entry in self.store.get(USERS):
            if entry.get("id") == user_id:
                return UserAccount.from_dict(entry)
        return None

    def get(self, user_id: str) -> UserAccount:
        user = self.find(user_id)
        if user is None:
            raise RecordNotFoundError(f"User {user_id} not found")
        return user

    def get_by_username(self, username: str) -> Optional[UserAccount]:
        lowered = (username or "").lower()
        for entry in self.store.get(USERS):
            if str(entry.get("username", "")).lower() == lowered:
                return UserAccount.from_dict(entry)
        return None

    def list_users(self) -> List[UserAccount]:
        return [UserAccount.from_dict(entry) for entry in self.store.get(USERS)]

    def set_quota(self, user_id: str, quota_bytes: int) -> UserAccount:
        if int(quota_bytes) < 0:
            raise ValidationError("Quota cannot be negative")
        return self._update(user_id, quota_bytes=int(quota_bytes))

    def set_role(self, user_id: str, role: str) -> UserAccount:
        if role not in ROLES:
            raise ValidationError(f"Unknown role {role!r}")
        return self._update(user_id, role=role)

    def suspend(self, user_id: str) -> UserAccount:
        return self._update(user_id, status=STATUS_SUSPENDED)

    def activate(self, user_id: str) -> UserAccount:
        return self._update(user_id, status=STATUS_ACTIVE)

    def _update(self, user_id: str, **changes) -> UserAccount:
        with self.store.transaction(USERS) as records:
            index = find_index(records, "id", user_id)
            if index is None:
                raise RecordNotFoundError(f"User {user_id} not found")
            records[index].update(changes)
            user = UserAccount.from_dict(records[index])
        logger.info(
            "user_updated user_id=%s fields=%s",
            user_id,
            ",".join(sorted(changes)),
        )
        return user
