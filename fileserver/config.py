import json
import logging
import math
import os
import secrets
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

BYTES_PER_MB = 1024 * 1024
DEFAULT_MAX_UPLOAD_SIZE_MB = 50
DEFAULT_QUOTA_MB = 1024
DEFAULT_LOCK_TIMEOUT_SECONDS = 10.0
DEFAULT_SHARE_MAX_EXPIRY_SECONDS = 30 * 24 * 3600

DIRECTORY_CLASSES = ("public", "private", "temp")
QUARANTINE_POLICIES = ("reject", "quarantine")
RATE_LIMIT_BACKENDS = ("memory", "store")

DEFAULT_ALLOWED_EXTENSIONS = frozenset(
    {
        # Documents
        "txt", "rtf", "pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx",
        "odt", "ods", "odp", "csv", "md",
        # Images
        "jpg", "jpeg", "png", "gif", "bmp", "svg", "webp", "ico",
        # Archives
        "zip", "rar", "7z", "tar", "gz", "bz2",
        # Audio
        "mp3", "wav", "ogg", "flac", "m4a",
        # Video
        "mp4", "avi", "mkv", "mov", "wmv", "flv", "webm",
        # Data
        "json", "xml",
    }
)

DEFAULT_QUARANTINE_EXTENSIONS = frozenset(
    {
        "exe", "bat", "cmd", "com", "scr", "pif", "vbs", "js", "jar",
        "msi", "deb", "rpm", "dmg", "app", "sh", "ps1", "php", "py",
    }
)

DEFAULT_RESERVED_PREFIXES = ("_system",)

# action -> (config key, window seconds)
RATE_LIMIT_KEYS: Dict[str, Tuple[str, int]] = {
    "upload": ("upload_rate_limit_per_hour", 3600),
    "share_create": ("share_create_rate_limit_per_hour", 3600),
    "share_access": ("share_access_rate_limit_per_minute", 60),
    "mutation": ("mutation_rate_limit_per_minute", 60),
}

DEFAULT_CONFIG = {
    "max_upload_size_mb": float(DEFAULT_MAX_UPLOAD_SIZE_MB),
    "default_quota_mb": float(DEFAULT_QUOTA_MB),
    "lock_timeout_seconds": DEFAULT_LOCK_TIMEOUT_SECONDS,
    "upload_name_attempts": 5.0,
    "share_token_bytes": 16.0,
    "share_max_expiry_seconds": float(DEFAULT_SHARE_MAX_EXPIRY_SECONDS),
    "cleanup_interval_minutes": 0.0,
    "upload_rate_limit_per_hour": 100.0,
    "share_create_rate_limit_per_hour": 30.0,
    "share_access_rate_limit_per_minute": 60.0,
    "mutation_rate_limit_per_minute": 120.0,
    "quarantine_policy": "reject",
    "rate_limit_backend": "memory",
    "share_collapse_errors": True,
    "allowed_extensions": sorted(DEFAULT_ALLOWED_EXTENSIONS),
    "quarantine_extensions": sorted(DEFAULT_QUARANTINE_EXTENSIONS),
    "reserved_prefixes": list(DEFAULT_RESERVED_PREFIXES),
}

CONFIG_NUMERIC_KEYS = {
    "max_upload_size_mb",
    "default_quota_mb",
    "lock_timeout_seconds",
    "upload_name_attempts",
    "share_token_bytes",
    "share_max_expiry_seconds",
    "cleanup_interval_minutes",
    "upload_rate_limit_per_hour",
    "share_create_rate_limit_per_hour",
    "share_access_rate_limit_per_minute",
    "mutation_rate_limit_per_minute",
}

CONFIG_CHOICE_KEYS = {
    "quarantine_policy": QUARANTINE_POLICIES,
    "rate_limit_backend": RATE_LIMIT_BACKENDS,
}

CONFIG_BOOLEAN_KEYS = {"share_collapse_errors"}

CONFIG_LIST_KEYS = {"allowed_extensions", "quarantine_extensions", "reserved_prefixes"}

logger = logging.getLogger("fileserver.config")


def _safe_int_env(env: Mapping[str, str], key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(env.get(key, str(default))))
    except (TypeError, ValueError):
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, env.get(key), default
        )
        return default


def _coerce_numeric(value, default):
    """Coerce a value to float, rejecting NaN and infinity."""
    try:
        coerced = float(value)
        if math.isnan(coerced) or math.isinf(coerced):
            return float(default)
    except (TypeError, ValueError):
        return float(default)
    return float(coerced)


def _coerce_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _split_list(raw_value: str) -> list:
    return [entry.strip() for entry in raw_value.split(",") if entry.strip()]


def _clean_extensions(values) -> list:
    return sorted({str(entry).strip().lower().lstrip(".") for entry in values if str(entry).strip()})


def _clean_prefixes(values) -> list:
    cleaned = []
    for entry in values:
        prefix = str(entry).strip().replace("\\", "/").strip("/")
        if prefix and prefix not in cleaned:
            cleaned.append(prefix)
    return cleaned


def normalize_config(raw_config) -> dict:
    if not isinstance(raw_config, dict):
        raw_config = {}

    config = DEFAULT_CONFIG.copy()
    for key in CONFIG_NUMERIC_KEYS:
        if key in raw_config:
            config[key] = _coerce_numeric(raw_config.get(key), config[key])

    if config["max_upload_size_mb"] <= 0:
        config["max_upload_size_mb"] = float(DEFAULT_MAX_UPLOAD_SIZE_MB)
    if config["default_quota_mb"] < 0:
        config["default_quota_mb"] = 0.0
    if config["lock_timeout_seconds"] <= 0:
        config["lock_timeout_seconds"] = DEFAULT_LOCK_TIMEOUT_SECONDS
    config["upload_name_attempts"] = float(max(1, int(config["upload_name_attempts"])))
    # Tokens shorter than 8 random bytes are guessable.
    config["share_token_bytes"] = float(min(max(8, int(config["share_token_bytes"])), 64))
    if config["share_max_expiry_seconds"] < 0:
        config["share_max_expiry_seconds"] = 0.0
    if config["cleanup_interval_minutes"] < 0:
        config["cleanup_interval_minutes"] = 0.0
    for key, _window in RATE_LIMIT_KEYS.values():
        if config[key] < 1:
            config[key] = DEFAULT_CONFIG[key]

    for key, choices in CONFIG_CHOICE_KEYS.items():
        value = raw_config.get(key)
        if isinstance(value, str) and value.strip().lower() in choices:
            config[key] = value.strip().lower()

    for key in CONFIG_BOOLEAN_KEYS:
        if key in raw_config:
            config[key] = _coerce_bool(raw_config.get(key))

    for key in CONFIG_LIST_KEYS:
        value = raw_config.get(key)
        if isinstance(value, str):
            value = _split_list(value)
        if not isinstance(value, list):
            continue
        if key == "reserved_prefixes":
            config[key] = _clean_prefixes(value)
        else:
            config[key] = _clean_extensions(value)

    return config


def load_config(config_path: Path) -> dict:
    """Load and normalize ``config.json``; a missing file yields the defaults."""

    if not config_path.exists():
        return normalize_config({})
    with config_path.open("r", encoding="utf-8") as config_file:
        try:
            raw = json.load(config_file)
        except json.JSONDecodeError:
            logger.warning("config_invalid_json path=%s using defaults", config_path)
            raw = {}
    return normalize_config(raw)


def save_config(config_path: Path, config: dict) -> dict:
    normalized = normalize_config(config)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    # Write to temporary file first for atomic update
    temp_path = config_path.with_suffix(".tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as config_file:
            json.dump(normalized, config_file, indent=2)
            config_file.flush()
            os.fsync(config_file.fileno())
        temp_path.replace(config_path)
    except Exception:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass
        raise
    return normalized


def load_secret_key(data_dir: Path, env: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if env is None else env
    env_secret = env.get("SECRET_KEY")
    if env_secret:
        return env_secret

    secret_path = data_dir / ".secret_key"
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
        try:
            # Exclusive creation with restrictive permissions set atomically.
            fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            existing = secret_path.read_text(encoding="utf-8").strip()
            if existing:
                return existing
            logger.warning("Secret key file exists but is empty, regenerating")
            fd = os.open(secret_path, os.O_WRONLY | os.O_TRUNC, 0o600)
        generated = secrets.token_hex(32)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(generated)
            handle.flush()
            os.fsync(handle.fileno())
        logger.warning("Generated new secret key - stored in %s", secret_path)
        return generated
    except OSError as error:
        logger.critical(
            "SECURITY WARNING: Using in-memory secret key. Tokens will not survive restarts. "
            "Set SECRET_KEY environment variable for production use. Error: %s",
            error,
        )
        return secrets.token_hex(32)


@dataclass(frozen=True)
class Settings:
    storage_root: Path
    data_dir: Path
    logs_dir: Path
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_SIZE_MB * BYTES_PER_MB
    default_quota_bytes: int = DEFAULT_QUOTA_MB * BYTES_PER_MB
    allowed_extensions: frozenset = DEFAULT_ALLOWED_EXTENSIONS
    quarantine_extensions: frozenset = DEFAULT_QUARANTINE_EXTENSIONS
    quarantine_policy: str = "reject"
    reserved_prefixes: Tuple[str, ...] = DEFAULT_RESERVED_PREFIXES
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    upload_name_attempts: int = 5
    share_token_bytes: int = 16
    share_max_expiry_seconds: int = DEFAULT_SHARE_MAX_EXPIRY_SECONDS
    share_collapse_errors: bool = True
    rate_limits: Dict[str, Tuple[int, int]] = field(
        default_factory=lambda: {
            action: (int(DEFAULT_CONFIG[key]), window)
            for action, (key, window) in RATE_LIMIT_KEYS.items()
        }
    )
    rate_limit_backend: str = "memory"
    cleanup_interval_minutes: int = 0
    log_level: str = "INFO"
    secret_key: Optional[str] = None

    @classmethod
    def for_root(cls, root: Path, **overrides) -> "Settings":
        """Lay out storage, data and logs directories beneath a single root."""

        root = Path(root).expanduser().resolve()
        return cls(
            storage_root=root / "storage",
            data_dir=root / "data",
            logs_dir=root / "logs",
            **overrides,
        )

    @property
    def quarantine_dir(self) -> Path:
        return self.storage_root / "quarantine"

    def class_root(self, directory_class: str) -> Path:
        return self.storage_root / directory_class

    def rate_limit(self, action: str) -> Tuple[int, int]:
        return self.rate_limits.get(action, self.rate_limits["mutation"])

    def with_overrides(self, **overrides) -> "Settings":
        return replace(self, **overrides)

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        for directory_class in DIRECTORY_CLASSES:
            self.class_root(directory_class).mkdir(parents=True, exist_ok=True)
        self.quarantine_dir.mkdir(parents=True, exist_ok=True)


def _resolve_env_path(env: Mapping[str, str], env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = env.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from the environment and ``<data_dir>/config.json``.

    Environment variables seed the values; keys present in the JSON file win.
    """

    env = os.environ if env is None else env
    base_root = _resolve_env_path(env, "FILESERVER_ROOT", Path.cwd() / "fileserver-data")
    storage_root = _resolve_env_path(env, "FILESERVER_STORAGE_ROOT", base_root / "storage")
    data_dir = _resolve_env_path(env, "FILESERVER_DATA_DIR", base_root / "data")
    logs_dir = _resolve_env_path(env, "FILESERVER_LOGS_DIR", base_root / "logs")

    seeded = {
        "max_upload_size_mb": _safe_int_env(env, "FILESERVER_MAX_UPLOAD_MB", DEFAULT_MAX_UPLOAD_SIZE_MB),
        "default_quota_mb": _safe_int_env(env, "FILESERVER_DEFAULT_QUOTA_MB", DEFAULT_QUOTA_MB, min_value=0),
        "lock_timeout_seconds": _safe_int_env(
            env, "FILESERVER_LOCK_TIMEOUT_SECONDS", int(DEFAULT_LOCK_TIMEOUT_SECONDS)
        ),
        "cleanup_interval_minutes": _safe_int_env(
            env, "FILESERVER_CLEANUP_INTERVAL_MINUTES", 0, min_value=0
        ),
    }
    for env_key, config_key in (
        ("FILESERVER_ALLOWED_EXTENSIONS", "allowed_extensions"),
        ("FILESERVER_QUARANTINE_EXTENSIONS", "quarantine_extensions"),
        ("FILESERVER_RESERVED_PREFIXES", "reserved_prefixes"),
        ("FILESERVER_QUARANTINE_POLICY", "quarantine_policy"),
        ("FILESERVER_RATE_LIMIT_BACKEND", "rate_limit_backend"),
        ("FILESERVER_SHARE_COLLAPSE_ERRORS", "share_collapse_errors"),
    ):
        if env.get(env_key):
            seeded[config_key] = env[env_key]

    config_path = data_dir / "config.json"
    file_config = {}
    if config_path.exists():
        with config_path.open("r", encoding="utf-8") as config_file:
            try:
                file_config = json.load(config_file)
            except json.JSONDecodeError:
                logger.warning("config_invalid_json path=%s ignoring file", config_path)
    if not isinstance(file_config, dict):
        file_config = {}
    config = normalize_config({**seeded, **file_config})

    return Settings(
        storage_root=storage_root,
        data_dir=data_dir,
        logs_dir=logs_dir,
        max_upload_bytes=int(config["max_upload_size_mb"] * BYTES_PER_MB),
        default_quota_bytes=int(config["default_quota_mb"] * BYTES_PER_MB),
        allowed_extensions=frozenset(config["allowed_extensions"]),
        quarantine_extensions=frozenset(config["quarantine_extensions"]),
        quarantine_policy=config["quarantine_policy"],
        reserved_prefixes=tuple(config["reserved_prefixes"]),
        lock_timeout_seconds=float(config["lock_timeout_seconds"]),
        upload_name_attempts=int(config["upload_name_attempts"]),
        share_token_bytes=int(config["share_token_bytes"]),
        share_max_expiry_seconds=int(config["share_max_expiry_seconds"]),
        share_collapse_errors=bool(config["share_collapse_errors"]),
        rate_limits={
            action: (int(config[key]), window)
            for action, (key, window) in RATE_LIMIT_KEYS.items()
        },
        rate_limit_backend=config["rate_limit_backend"],
        cleanup_interval_minutes=int(config["cleanup_interval_minutes"]),
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
        secret_key=env.get("SECRET_KEY") or None,
    )
