import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from flask import g, has_request_context

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_NAMED_ESCAPES = {"\n": "\\n", "\r": "\\r"}


def get_logger(component: str) -> logging.Logger:
    return logging.getLogger(f"fileserver.{component}")


def _escape_control(match: "re.Match") -> str:
    char = match.group()
    return _NAMED_ESCAPES.get(char) or f"\\x{ord(char):02x}"


def sanitize_log_value(value: Any) -> Any:
    """Escape control characters in user supplied strings before logging."""

    if not isinstance(value, str):
        return value
    return _CONTROL_CHAR_PATTERN.sub(_escape_control, value)


def resolve_level(level_name: str) -> int:
    return getattr(logging, (level_name or "INFO").upper(), logging.INFO)


def configure_logging(logs_dir: Path, level_name: str = "INFO") -> Path:
    """Configure the root logger and attach a rotating application log.

    Calling this repeatedly with the same directory only refreshes the level
    and formatter of the existing handler.
    """

    numeric_level = resolve_level(level_name)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)

    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter(LOG_FORMAT)
    logging.getLogger("fileserver").setLevel(numeric_level)

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


class RequestAwareLogger(logging.LoggerAdapter):
    """Prefixes ``request_id=`` while a Flask request is being served."""

    def __init__(self, logger: logging.Logger) -> None:
        super().__init__(logger, {})

    def process(self, msg, kwargs):
        request_id = getattr(g, "request_id", None) if has_request_context() else None
        if request_id:
            msg = f"request_id={request_id} {msg}"
        return msg, kwargs
