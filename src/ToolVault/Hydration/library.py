# === NAVMAP v1 ===
# {
#   "module": "ToolVault.Hydration.library",
#   "purpose": "Extractor/Library collaborator protocols and filesystem reference implementations",
#   "sections": [
#     {"id": "extractresult", "name": "ExtractResult", "anchor": "class-extractresult", "kind": "class"},
#     {"id": "extractor", "name": "Extractor", "anchor": "class-extractor", "kind": "class"},
#     {"id": "library", "name": "Library", "anchor": "class-library", "kind": "class"},
#     {"id": "locallibrary", "name": "LocalLibrary", "anchor": "class-locallibrary", "kind": "class"},
#     {"id": "extract-zip-safe", "name": "extract_zip_safe", "anchor": "function-extract-zip-safe", "kind": "function"},
#     {"id": "extract-tar-safe", "name": "extract_tar_safe", "anchor": "function-extract-tar-safe", "kind": "function"},
#     {"id": "archiveextractor", "name": "ArchiveExtractor", "anchor": "class-archiveextractor", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Collaborators the orchestrator installs through.

The hydrator only depends on the :class:`Extractor` and :class:`Library`
protocols.  :class:`LocalLibrary` and :class:`ArchiveExtractor` are the
filesystem implementations used by the CLI: tools live under
``<root>/<tool_id>/<version>/`` and archives are unpacked with traversal,
link and compression-bomb checks before being moved into place.
"""

from __future__ import annotations

import logging
import shutil
import stat
import tarfile
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Tuple, Union

from .errors import ExtractionError
from .io_safe import sanitize_filename, validate_member_path

logger = logging.getLogger("ToolVault.Hydration.library")

_MAX_COMPRESSION_RATIO = 100.0
_TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.xz", ".txz", ".tar.bz2", ".tbz2")


@dataclass(frozen=True)
class ExtractResult:
    """Outcome of :meth:`Extractor.extract_to_library`."""

    success: bool
    error_message: str = ""


class Extractor(Protocol):
    def extract_to_library(
        self, archive_path: Path, tool_id: str, version: str
    ) -> ExtractResult: ...


class Library(Protocol):
    def tool_exists(self, tool_id: str, version: str) -> bool: ...

    def get_available_tools(self) -> List[str]: ...

    def get_available_versions(self, tool_id: str) -> List[str]: ...


def _safe_identifiers(tool_id: str, version: str) -> Tuple[str, str]:
    return sanitize_filename(tool_id), sanitize_filename(version)


class LocalLibrary:
    """Library that keeps installed tools on the local filesystem."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root: Path = Path(root)

    def version_path(self, tool_id: str, version: str) -> Path:
        """Return the directory holding ``tool_id``/``version``."""
        safe_id, safe_version = _safe_identifiers(tool_id, version)
        return self.root / safe_id / safe_version

    def tool_exists(self, tool_id: str, version: str) -> bool:
        path = self.version_path(tool_id, version)
        return path.is_dir() and any(path.iterdir())

    def get_available_tools(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(
            entry.name
            for entry in self.root.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )

    def get_available_versions(self, tool_id: str) -> List[str]:
        safe_id, _ = _safe_identifiers(tool_id, "unused")
        base = self.root / safe_id
        if not base.exists():
            return []
        return sorted(
            entry.name
            for entry in base.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )


# --- safe extraction ---------------------------------------------------------------


def _check_compression_ratio(
    *, total_uncompressed: int, compressed_size: int, archive: Path, archive_type: str
) -> None:
    """Ensure compressed archives do not expand beyond the permitted ratio."""

    if compressed_size <= 0:
        return
    ratio = total_uncompressed / float(compressed_size)
    if ratio > _MAX_COMPRESSION_RATIO:
        logger.error(
            "archive compression ratio too high",
            extra={
                "stage": "extract",
                "extra_fields": {
                    "archive": str(archive),
                    "ratio": round(ratio, 2),
                    "limit": _MAX_COMPRESSION_RATIO,
                },
            },
        )
        raise ExtractionError(
            f"{archive_type} archive {archive} expands to {total_uncompressed} bytes, "
            f"exceeding {_MAX_COMPRESSION_RATIO}:1 compression ratio"
        )


def extract_zip_safe(zip_path: Path, destination: Path) -> List[Path]:
    """Extract a ZIP archive while preventing traversal and compression bombs."""

    destination.mkdir(parents=True, exist_ok=True)
    extracted: List[Path] = []
    try:
        with zipfile.ZipFile(zip_path) as archive:
            members = archive.infolist()
            safe_members: List[Tuple[zipfile.ZipInfo, Path]] = []
            total_uncompressed = 0
            for member in members:
                member_path = validate_member_path(member.filename)
                mode = (member.external_attr >> 16) & 0xFFFF
                if stat.S_IFMT(mode) == stat.S_IFLNK:
                    raise ExtractionError(f"Unsafe link detected in archive: {member.filename}")
                if not member.is_dir():
                    total_uncompressed += int(member.file_size)
                safe_members.append((member, member_path))
            _check_compression_ratio(
                total_uncompressed=total_uncompressed,
                compressed_size=zip_path.stat().st_size,
                archive=zip_path,
                archive_type="ZIP",
            )
            for member, member_path in safe_members:
                target_path = destination / member_path
                if member.is_dir():
                    target_path.mkdir(parents=True, exist_ok=True)
                    continue
                target_path.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(member, "r") as source, target_path.open("wb") as target:
                    shutil.copyfileobj(source, target)
                extracted.append(target_path)
    except zipfile.BadZipFile as exc:
        raise ExtractionError(f"Failed to read zip archive {zip_path}: {exc}") from exc
    return extracted


def extract_tar_safe(tar_path: Path, destination: Path) -> List[Path]:
    """Safely extract tar archives (tar, tar.gz, tar.xz, tar.bz2)."""

    destination.mkdir(parents=True, exist_ok=True)
    extracted: List[Path] = []
    try:
        with tarfile.open(tar_path, mode="r:*") as archive:
            safe_members: List[Tuple[tarfile.TarInfo, Path]] = []
            total_uncompressed = 0
            for member in archive.getmembers():
                member_path = validate_member_path(member.name)
                if member.isdir():
                    safe_members.append((member, member_path))
                    continue
                if member.islnk() or member.issym():
                    raise ExtractionError(f"Unsafe link detected in archive: {member.name}")
                if not member.isfile():
                    raise ExtractionError(f"Unsupported tar member type encountered: {member.name}")
                total_uncompressed += int(member.size)
                safe_members.append((member, member_path))
            _check_compression_ratio(
                total_uncompressed=total_uncompressed,
                compressed_size=tar_path.stat().st_size,
                archive=tar_path,
                archive_type="TAR",
            )
            for member, member_path in safe_members:
                target_path = destination / member_path
                if member.isdir():
                    target_path.mkdir(parents=True, exist_ok=True)
                    continue
                target_path.parent.mkdir(parents=True, exist_ok=True)
                extracted_file = archive.extractfile(member)
                if extracted_file is None:
                    raise ExtractionError(f"Failed to extract member: {member.name}")
                with extracted_file as source, target_path.open("wb") as target:
                    shutil.copyfileobj(source, target)
                extracted.append(target_path)
    except tarfile.TarError as exc:
        raise ExtractionError(f"Failed to extract tar archive {tar_path}: {exc}") from exc
    return extracted


def extract_archive_safe(archive_path: Path, destination: Path) -> List[Path]:
    """Extract archives by dispatching on the file name."""

    lower_name = archive_path.name.lower()
    if lower_name.endswith(".zip"):
        return extract_zip_safe(archive_path, destination)
    if lower_name.endswith(_TAR_SUFFIXES):
        return extract_tar_safe(archive_path, destination)
    raise ExtractionError(f"Unsupported archive format: {archive_path.name}")


class ArchiveExtractor:
    """Extractor that unpacks zip/tar archives into a :class:`LocalLibrary`.

    Members are unpacked into a hidden scratch directory beside the target and
    renamed into ``<root>/<tool_id>/<version>`` only once extraction succeeds,
    so a failed extraction never leaves a half-installed tool behind.
    """

    def __init__(self, library: LocalLibrary) -> None:
        self.library = library

    def extract_to_library(self, archive_path: Path, tool_id: str, version: str) -> ExtractResult:
        archive_path = Path(archive_path)
        if not archive_path.is_file():
            return ExtractResult(False, f"archive not found: {archive_path}")

        target = self.library.version_path(tool_id, version)
        scratch: Optional[Path] = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            scratch = Path(tempfile.mkdtemp(prefix=f".{target.name}-", dir=target.parent))
            files = extract_archive_safe(archive_path, scratch)
            if not files:
                return ExtractResult(False, f"archive contains no files: {archive_path.name}")
            if target.exists():
                shutil.rmtree(target)
            scratch.rename(target)
            scratch = None
        except ExtractionError as exc:
            logger.warning(
                "extraction rejected",
                extra={"stage": "extract", "tool_id": tool_id, "extra_fields": {"error": str(exc)}},
            )
            return ExtractResult(False, str(exc))
        except OSError as exc:
            return ExtractResult(False, f"extraction failed: {exc}")
        finally:
            if scratch is not None:
                shutil.rmtree(scratch, ignore_errors=True)

        logger.info(
            "extracted archive",
            extra={
                "stage": "extract",
                "tool_id": tool_id,
                "extra_fields": {"archive": str(archive_path), "files": len(files), "target": str(target)},
            },
        )
        return ExtractResult(True)


__all__ = [
    "ExtractResult",
    "Extractor",
    "Library",
    "LocalLibrary",
    "ArchiveExtractor",
    "extract_archive_safe",
    "extract_zip_safe",
    "extract_tar_safe",
]
