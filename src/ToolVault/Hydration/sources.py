"""Classify manifest and archive locations and read local or remote sources.

A location is one of:

- ``remote``: an ``http://`` or ``https://`` URL (or any other URL scheme,
  which the retrieval client then rejects as unsupported)
- ``local``: a ``file://`` URL or an absolute filesystem path, read directly
- ``relative``: anything else, resolved against the trusted mirror root

Only manifest sources and ``archive_url`` values are classified.  Archive
paths and stack paths are always relative to the mirror root.
"""

from __future__ import annotations

import logging
import ntpath
import os
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union
from urllib.parse import unquote, urlsplit
from urllib.request import url2pathname

from .network.client import RetrievalClient

logger = logging.getLogger("ToolVault.Hydration.sources")

__all__ = [
    "SourceKind",
    "SourceText",
    "CopyResult",
    "classify",
    "local_path_from",
    "read_source_text",
    "copy_file",
]


class SourceKind(str, Enum):
    REMOTE = "remote"
    LOCAL = "local"
    RELATIVE = "relative"


@dataclass(frozen=True)
class SourceText:
    """Text read from a manifest source, plus the directory of a local source."""

    success: bool
    text: str = ""
    error: str = ""
    base_dir: Optional[Path] = None


@dataclass(frozen=True)
class CopyResult:
    success: bool
    bytes_copied: int = 0
    error: str = ""


def _scheme(location: str) -> str:
    if "://" not in location:
        return ""
    return location.split("://", 1)[0].lower()


def classify(location: str) -> SourceKind:
    """Return how ``location`` should be staged."""

    location = location.strip()
    scheme = _scheme(location)
    if scheme == "file":
        return SourceKind.LOCAL
    if scheme:
        return SourceKind.REMOTE
    if os.path.isabs(location) or ntpath.isabs(location):
        return SourceKind.LOCAL
    return SourceKind.RELATIVE


def local_path_from(location: str) -> Path:
    """Return the filesystem path named by a ``file://`` URL or a bare path."""

    location = location.strip()
    if _scheme(location) != "file":
        return Path(location).expanduser()
    parts = urlsplit(location)
    path = url2pathname(unquote(parts.path))
    if parts.netloc and parts.netloc.lower() != "localhost":
        # file://server/share/x names a UNC path
        path = f"//{parts.netloc}{path}"
    return Path(path)


def read_source_text(
    source: Union[str, Path], client: RetrievalClient, *, reason: str = "manifest_fetch"
) -> SourceText:
    """Read a manifest from an HTTP(S) endpoint, a ``file://`` URL, or a path."""

    location = os.fspath(source).strip()
    if not location:
        return SourceText(False, error="manifest source is empty")

    if classify(location) is SourceKind.REMOTE:
        result = client.get(location, reason=reason)
        if not result.success:
            return SourceText(False, error=f"{result.error_code.value}: {result.error}")
        try:
            return SourceText(True, text=result.body.decode("utf-8"))
        except UnicodeDecodeError as exc:
            return SourceText(False, error=f"manifest is not valid UTF-8: {exc}")

    path = local_path_from(location).resolve()
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return SourceText(False, error=f"manifest not found: {path}")
    except (OSError, UnicodeDecodeError) as exc:
        return SourceText(False, error=f"unable to read manifest {path}: {exc}")
    return SourceText(True, text=text, base_dir=path.parent)


def copy_file(source: Path, dest: Path) -> CopyResult:
    """Copy ``source`` to ``dest`` byte for byte via ``<dest>.part``."""

    part = dest.with_name(dest.name + ".part")
    try:
        if not source.is_file():
            return CopyResult(False, error=f"archive not found: {source}")
        dest.parent.mkdir(parents=True, exist_ok=True)
        with source.open("rb") as reader, part.open("wb") as writer:
            shutil.copyfileobj(reader, writer, length=1 << 20)
        os.replace(part, dest)
    except OSError as exc:
        part.unlink(missing_ok=True)
        return CopyResult(False, error=f"copy from {source} failed: {exc}")
    size = dest.stat().st_size
    logger.debug(
        "copied local archive",
        extra={"stage": "stage", "extra_fields": {"source": str(source), "dest": str(dest), "bytes": size}},
    )
    return CopyResult(True, bytes_copied=size)
