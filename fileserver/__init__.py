"""Self-hosted multi-user file storage with sharing."""

from .config import Settings, load_settings
from .service import (
    Download,
    DownloadRequest,
    FileServer,
    ShareCreateRequest,
    UploadRequest,
)

__all__ = [
    "Download",
    "DownloadRequest",
    "FileServer",
    "Settings",
    "ShareCreateRequest",
    "UploadRequest",
    "load_settings",
]
