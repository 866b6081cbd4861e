"""Path safety helpers.

Every component that touches the disk builds its paths through
:func:`resolve`, which canonicalizes first and checks ancestry second so that
symlinks and dot segments cannot smuggle a path out of its root.
"""

import os
import re
from pathlib import Path, PurePosixPath
from typing import Tuple, Union

from werkzeug.utils import secure_filename

from .errors import PathTraversalError, ValidationError

PathLike = Union[str, os.PathLike]

_DRIVE_PATTERN = re.compile(r"^[A-Za-z]:")
_SEGMENT_PATTERN = re.compile(r"[\w\- .]{1,255}")


def _split_parts(user_path: str) -> Tuple[str, ...]:
    if "\x00" in user_path:
        raise PathTraversalError(user_path, "embedded null byte")

    normalized = user_path.replace("\\", "/")
    if normalized.startswith("/") or _DRIVE_PATTERN.match(normalized):
        raise PathTraversalError(user_path, "absolute path override")

    parts = PurePosixPath(normalized).parts
    if ".." in parts:
        raise PathTraversalError(user_path, "parent directory segment")
    return tuple(part for part in parts if part not in ("", "."))


def resolve(root: PathLike, user_path: PathLike) -> Path:
    """Resolve *user_path* beneath *root* or raise :class:`PathTraversalError`.

    The result is canonical (symlinks and dot segments resolved) and has the
    canonical *root* as a strict ancestor. Nothing is created on disk.
    """

    raw = os.fspath(user_path)
    parts = _split_parts(raw)
    if not parts:
        raise PathTraversalError(raw, "path resolves to the storage root itself")

    canonical_root = Path(root).resolve()
    candidate = canonical_root.joinpath(*parts).resolve()
    if canonical_root not in candidate.parents:
        raise PathTraversalError(raw)
    return candidate


def is_within(root: PathLike, path: PathLike) -> bool:
    canonical_root = Path(root).resolve()
    candidate = Path(path).resolve()
    return candidate == canonical_root or canonical_root in candidate.parents


def normalize_logical_dir(value) -> str:
    """Return a clean relative POSIX directory, ``""`` meaning the class root."""

    if value is None:
        return ""
    raw = str(value)
    segments = []
    for part in _split_parts(raw):
        segment = part.strip()
        if not _SEGMENT_PATTERN.fullmatch(segment) or segment.startswith("."):
            raise ValidationError(f"Invalid directory segment {part!r}")
        segments.append(segment)
    return "/".join(segments)


def join_logical(logical_dir: str, filename: str) -> str:
    return f"{logical_dir}/{filename}" if logical_dir else filename


def split_extension(name: str) -> str:
    """Return the lower-cased extension of *name* without the dot."""

    base = os.path.basename((name or "").replace("\\", "/"))
    return PurePosixPath(base).suffix.lower().lstrip(".")


def safe_filename(name: str, fallback_stem: str = "file") -> str:
    """Sanitize a caller supplied file name, keeping its extension."""

    base_name = (name or "").strip().replace("\\", "/")
    base_name = os.path.basename(base_name)
    sanitized = secure_filename(base_name)
    extension = split_extension(base_name)

    stem = sanitized
    if extension and sanitized.lower().endswith(f".{extension}"):
        stem = sanitized[: -(len(extension) + 1)]
    stem = stem.strip("._") or fallback_stem

    # Keep the extension in the canonical lower-case form.
    return f"{stem}.{extension}" if extension else stem


def numbered_name(filename: str, counter: int) -> str:
    """Return ``name_<counter>.ext`` for *filename*."""

    if counter <= 0:
        return filename
    path = PurePosixPath(filename)
    return f"{path.stem}_{counter}{path.suffix}"


def record_path(storage_root: PathLike, directory_class: str, owner_id: str, logical_path: str) -> Path:
    """Disk location of a stored file: ``<root>/<class>/<owner>/<logical_path>``."""

    return resolve(Path(storage_root) / directory_class, f"{owner_id}/{logical_path}")
