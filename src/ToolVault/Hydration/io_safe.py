# === NAVMAP v1 ===
# {
#   "module": "ToolVault.Hydration.io_safe",
#   "purpose": "Path confinement and filename safety helpers for tool hydration",
#   "sections": [
#     {"id": "sanitize-filename", "name": "sanitize_filename", "anchor": "function-sanitize-filename", "kind": "function"},
#     {"id": "resolvedpath", "name": "ResolvedPath", "anchor": "class-resolvedpath", "kind": "class"},
#     {"id": "resolve-under-root", "name": "resolve_under_root", "anchor": "function-resolve-under-root", "kind": "function"},
#     {"id": "archive-suffix", "name": "archive_suffix", "anchor": "function-archive-suffix", "kind": "function"},
#     {"id": "staging-path", "name": "staging_path", "anchor": "function-staging-path", "kind": "function"},
#     {"id": "validate-member-path", "name": "validate_member_path", "anchor": "function-validate-member-path", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Filesystem safety utilities for tool hydration.

Manifests name archives by paths relative to a trusted mirror root.  A
compromised or malicious manifest can embed ``../`` payloads in those paths,
so every relative path is canonicalised and confined to the root before any
file is opened.
"""

from __future__ import annotations

import hashlib
import logging
import ntpath
import os
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional, Union

from .errors import ExtractionError
from .policy.errors import ErrorCode, FilesystemPolicyException, raise_policy_error

__all__ = [
    "ResolvedPath",
    "sanitize_filename",
    "resolve_under_root",
    "archive_suffix",
    "staging_path",
    "validate_member_path",
]

PathLike = Union[str, "os.PathLike[str]"]

_ARCHIVE_SUFFIXES = (
    ".tar.gz",
    ".tar.xz",
    ".tar.bz2",
    ".tgz",
    ".txz",
    ".tbz2",
    ".tar",
    ".zip",
)


def sanitize_filename(filename: str) -> str:
    """Return a filesystem-safe filename derived from ``filename``."""

    original = filename
    safe = filename.replace(os.sep, "_").replace("/", "_").replace("\\", "_")
    safe = re.sub(r"[^A-Za-z0-9._-]", "_", safe)
    safe = safe.strip("._") or "tool"
    if len(safe) > 255:
        safe = safe[:255]
    if safe != original:
        logging.getLogger("ToolVault.Hydration").debug(
            "sanitized unsafe filename",
            extra={"stage": "sanitize", "extra_fields": {"original": original, "sanitized": safe}},
        )
    return safe


@dataclass(frozen=True)
class ResolvedPath:
    """Result of :func:`resolve_under_root`."""

    success: bool
    full_path: Optional[str] = None
    error: str = ""
    error_code: Optional[ErrorCode] = None


_URL_SCHEME = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")


def _is_absolute_input(relative: str) -> bool:
    if relative.startswith(("/", "\\")) or _URL_SCHEME.match(relative):
        return True
    drive, _ = ntpath.splitdrive(relative)
    return bool(drive) or os.path.isabs(relative)


def _canonical_under_root(root: str, relative: str) -> str:
    """Return the canonical joined path, raising when it leaves ``root``."""

    if not root:
        raise_policy_error(
            ErrorCode.E_ROOT_EMPTY, "root_empty", {}, FilesystemPolicyException
        )
    if not relative:
        raise_policy_error(
            ErrorCode.E_PATH_EMPTY, "relative_empty", {}, FilesystemPolicyException
        )

    normalized = relative.replace("\\", "/")
    if _is_absolute_input(relative) or _is_absolute_input(normalized):
        raise_policy_error(
            ErrorCode.E_ABSOLUTE,
            "relative_is_absolute",
            {"relative": relative},
            FilesystemPolicyException,
        )

    canonical_root = os.path.normpath(os.path.abspath(root))
    joined = os.path.normpath(os.path.join(canonical_root, *normalized.split("/")))

    folded_root = os.path.normcase(canonical_root).casefold()
    folded_joined = os.path.normcase(joined).casefold()
    prefix = folded_root if folded_root.endswith(os.sep) else folded_root + os.sep
    if folded_joined != folded_root and not folded_joined.startswith(prefix):
        raise_policy_error(
            ErrorCode.E_TRAVERSAL,
            "escapes_root",
            {"relative": relative},
            FilesystemPolicyException,
        )
    return joined


def resolve_under_root(root: Optional[PathLike], relative: Optional[PathLike]) -> ResolvedPath:
    """Join ``relative`` onto ``root`` and confine the result to ``root``.

    Separators are normalised, ``.``/``..`` segments are collapsed, and the
    canonical result is compared to the canonical root case-insensitively.
    Anything that is not the root itself or nested under it is rejected.

    Args:
        root: Trusted base directory.
        relative: Path taken from an untrusted manifest.

    Returns:
        ResolvedPath with ``success`` and ``full_path``, or an ``error`` of
        ``root_empty``, ``relative_empty``, ``relative_is_absolute`` or
        ``escapes_root``.

    Examples:
        >>> resolve_under_root("/mirror", "tools/a.zip").full_path
        '/mirror/tools/a.zip'
        >>> resolve_under_root("/mirror", "../../etc/passwd").error
        'escapes_root'
    """
    root_text = os.fspath(root) if root is not None else ""
    relative_text = os.fspath(relative) if relative is not None else ""
    try:
        full_path = _canonical_under_root(root_text.strip(), relative_text.strip())
    except FilesystemPolicyException as exc:
        return ResolvedPath(success=False, error=exc.message, error_code=exc.error_code)
    return ResolvedPath(success=True, full_path=full_path)


def archive_suffix(name: str) -> str:
    """Return the archive suffix of ``name`` (``.tar.gz``, ``.zip``...) or its last suffix."""

    lower_name = name.lower()
    for suffix in _ARCHIVE_SUFFIXES:
        if lower_name.endswith(suffix):
            return suffix
    return Path(name).suffix.lower()


def staging_path(staging_dir: Path, tool_id: str, version: str, source_name: str = "") -> Path:
    """Return the deterministic staging file for ``tool_id``/``version``.

    The archive suffix of ``source_name`` is preserved so extractors can
    dispatch on it.  Sanitising is lossy, so the stem carries a digest of the
    exact pair to keep distinct pairs on distinct files.
    """

    digest = hashlib.sha256(f"{tool_id}\0{version}".encode("utf-8")).hexdigest()[:12]
    stem = f"{sanitize_filename(tool_id)}-{sanitize_filename(version)}-{digest}"
    return staging_dir / f"{stem}{archive_suffix(source_name)}"


def validate_member_path(member_name: str) -> Path:
    """Validate archive member paths to prevent traversal attacks."""

    normalized = member_name.replace("\\", "/")
    relative = PurePosixPath(normalized)
    if relative.is_absolute() or ntpath.splitdrive(member_name)[0]:
        raise ExtractionError(f"Unsafe absolute path detected in archive: {member_name}")
    parts = [part for part in relative.parts if part not in {"", "."}]
    if not parts:
        raise ExtractionError(f"Empty path detected in archive: {member_name}")
    if any(part == ".." for part in parts):
        raise ExtractionError(f"Unsafe path detected in archive: {member_name}")
    return Path(*parts)
