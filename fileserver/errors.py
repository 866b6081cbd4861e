"""Exception taxonomy shared by every storage component."""

from typing import Optional


class FileServerError(Exception):
    """Base class for all errors raised by the storage core."""

    code = "error"
    retryable = False


class ValidationError(FileServerError, ValueError):
    """Raised when caller supplied values are malformed."""

    code = "invalid_request"


class PathTraversalError(FileServerError):
    """Raised when a caller supplied path would escape its storage root."""

    code = "path_traversal"

    def __init__(self, path: str, reason: str = "path escapes storage root") -> None:
        super().__init__(f"Rejected path {path!r}: {reason}")
        self.path = path
        self.reason = reason


class InvalidExtensionError(FileServerError):
    """Raised when an upload's extension is not permitted."""

    code = "invalid_extension"

    def __init__(
        self,
        extension: str,
        *,
        quarantined: bool = False,
        quarantine_path: Optional[str] = None,
    ) -> None:
        label = f".{extension}" if extension else "(none)"
        super().__init__(f"File extension {label} is not allowed")
        self.extension = extension
        self.quarantined = quarantined
        self.quarantine_path = quarantine_path


class SizeExceededError(FileServerError):
    """Raised when an upload is larger than the configured maximum."""

    code = "size_exceeded"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"File size {size} exceeds maximum allowed size {limit}")
        self.size = size
        self.limit = limit


class QuotaExceededError(FileServerError):
    """Raised when an upload would exceed the owner's storage quota."""

    code = "quota_exceeded"

    def __init__(self, current_usage: int, quota_limit: int, incoming: int) -> None:
        super().__init__("Storage quota exceeded")
        self.current_usage = current_usage
        self.quota_limit = quota_limit
        self.incoming = incoming


class StorageIOError(FileServerError):
    """Wrapped filesystem failure. Callers may retry."""

    code = "io_error"
    retryable = True


class LockTimeoutError(StorageIOError):
    """Raised when a collection lock could not be acquired in time."""

    code = "lock_timeout"

    def __init__(self, collection: str, timeout: float) -> None:
        super().__init__(
            f"Timed out after {timeout:.2f}s waiting for lock on collection {collection!r}"
        )
        self.collection = collection
        self.timeout = timeout


class CollectionCorruptError(FileServerError):
    """Raised when a persisted collection cannot be parsed.

    This is fatal for the collection: it is never treated as empty.
    """

    code = "collection_corrupt"

    def __init__(self, collection: str, detail: str) -> None:
        super().__init__(f"Collection {collection!r} is malformed: {detail}")
        self.collection = collection
        self.detail = detail


class PermissionDeniedError(FileServerError):
    code = "permission_denied"


class RecordNotFoundError(FileServerError):
    code = "not_found"


class NameConflictError(FileServerError):
    """Raised when a rename or move target is already taken."""

    code = "name_conflict"


class ShareAccessError(FileServerError):
    """Base class for share access denials."""

    code = "share_denied"


class ShareNotFoundError(ShareAccessError):
    code = "share_not_found"


class ShareInactiveError(ShareAccessError):
    code = "share_inactive"


class ShareExpiredError(ShareAccessError):
    code = "share_expired"


class ShareLimitReachedError(ShareAccessError):
    code = "share_limit_reached"


class ShareWrongPasswordError(ShareAccessError):
    code = "share_wrong_password"
