# === NAVMAP v1 ===
# {
#   "module": "ToolVault.Hydration.manifest",
#   "purpose": "Repository and stack manifest schema: validation, parsing, lookup, canonical form",
#   "sections": [
#     {"id": "kinds", "name": "ManifestKind", "anchor": "KND", "kind": "api"},
#     {"id": "models", "name": "ToolEntry & Manifest", "anchor": "MDL", "kind": "api"},
#     {"id": "validation", "name": "validate", "anchor": "VAL", "kind": "api"},
#     {"id": "parsing", "name": "parse / from_dict", "anchor": "PRS", "kind": "api"},
#     {"id": "lookup", "name": "lookup", "anchor": "LKP", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Manifest model shared by repository and stack descriptors.

A *repository* manifest lists tools fetchable from a mirror (``archive_path``
relative to the mirror root, or ``archive_url``); a *stack* manifest lists a
frozen local toolset (``path``).  Both share one schema and one validator,
parameterised by :class:`ManifestKind`.

Validation never raises.  It returns a list of error codes, tagged with the
entry index where one applies (``tool_sha256_invalid:2``) so a UI can point at
the failing entry.  A manifest whose error list is non-empty is still built
with every field that could be read, for diagnostics, but must not be trusted.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .checksums import normalize_sha256

__all__ = [
    "SUPPORTED_SCHEMA_VERSION",
    "ManifestKind",
    "ToolEntry",
    "Manifest",
    "validate",
    "from_dict",
    "parse",
    "lookup",
]

SUPPORTED_SCHEMA_VERSION = 1

MANIFEST_PARSE_ERROR = "manifest_parse_error"
MANIFEST_NOT_OBJECT = "manifest_not_object"


class ManifestKind(str, Enum):
    """Flavor of manifest, which decides the required location field."""

    REPOSITORY = "repository"
    STACK = "stack"

    @property
    def location_fields(self) -> Tuple[str, ...]:
        if self is ManifestKind.STACK:
            return ("path",)
        return ("archive_path", "archive_url")


@dataclass(frozen=True)
class ToolEntry:
    """One tool in a manifest, identified by ``(id, version)``."""

    id: str
    version: str
    path: Optional[str] = None
    archive_path: Optional[str] = None
    archive_url: Optional[str] = None
    sha256: Optional[str] = None
    size: Optional[int] = None

    @property
    def location(self) -> Optional[str]:
        """Return the location to stage from; ``archive_url`` wins over ``archive_path``."""
        return self.archive_url or self.archive_path or self.path

    @property
    def key(self) -> Tuple[str, str]:
        return (self.id, self.version)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.id, "version": self.version}
        for name in ("path", "archive_path", "archive_url", "sha256", "size"):
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        return payload


@dataclass(frozen=True)
class Manifest:
    """Validated (or best-effort) manifest contents."""

    schema_version: Optional[int]
    name: str
    tools: Tuple[ToolEntry, ...] = ()
    kind: ManifestKind = ManifestKind.REPOSITORY
    errors: Tuple[str, ...] = field(default=(), compare=False)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def lookup(self, tool_id: str, version: str) -> Optional[ToolEntry]:
        return lookup(self.tools, tool_id, version)

    def to_dict(self) -> Dict[str, Any]:
        """Return the canonical object form accepted by :func:`from_dict`."""
        return {
            "schema_version": self.schema_version,
            "name": self.name,
            "tools": [entry.to_dict() for entry in self.tools],
        }


# ============================================================================
# Validation (VAL)
# ============================================================================


def _whole_number(value: Any) -> Optional[int]:
    """Return ``value`` as ``int`` when it is an integral number, else ``None``."""

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _check_schema_version(raw: Mapping[str, Any], errors: List[str]) -> None:
    if "schema_version" not in raw or raw["schema_version"] is None:
        errors.append("schema_version_missing")
        return
    version = _whole_number(raw["schema_version"])
    if version is None:
        errors.append("schema_version_not_int")
    elif version != SUPPORTED_SCHEMA_VERSION:
        errors.append("schema_version_unsupported")


def _check_name(raw: Mapping[str, Any], errors: List[str]) -> None:
    if "name" not in raw or raw["name"] is None:
        errors.append("name_missing")
    elif not isinstance(raw["name"], str):
        errors.append("name_not_string")
    elif not raw["name"].strip():
        errors.append("name_empty")


def _check_string_field(
    entry: Mapping[str, Any],
    name: str,
    index: int,
    errors: List[str],
    *,
    required: bool = True,
) -> None:
    if name not in entry or entry[name] is None:
        if required:
            errors.append(f"tool_{name}_missing:{index}")
        return
    value = entry[name]
    if not isinstance(value, str):
        errors.append(f"tool_{name}_not_string:{index}")
    elif not value.strip():
        errors.append(f"tool_{name}_empty:{index}")


def _check_entry(entry: Mapping[str, Any], index: int, kind: ManifestKind, errors: List[str]) -> None:
    _check_string_field(entry, "id", index, errors)
    _check_string_field(entry, "version", index, errors)

    if kind is ManifestKind.STACK:
        _check_string_field(entry, "path", index, errors)
    else:
        present = [name for name in kind.location_fields if entry.get(name) is not None]
        if not present:
            errors.append(f"tool_archive_missing:{index}")
        for name in present:
            _check_string_field(entry, name, index, errors)

    if entry.get("sha256") is not None:
        digest = entry["sha256"]
        if not isinstance(digest, str):
            errors.append(f"tool_sha256_not_string:{index}")
        elif normalize_sha256(digest) != digest:
            errors.append(f"tool_sha256_invalid:{index}")

    if entry.get("size") is not None:
        size = _whole_number(entry["size"])
        if size is None:
            errors.append(f"tool_size_not_int:{index}")
        elif size <= 0:
            errors.append(f"tool_size_not_positive:{index}")


def validate(raw: Any, kind: ManifestKind = ManifestKind.REPOSITORY) -> List[str]:
    """Return every schema violation in ``raw`` as a list of error codes.

    Checks are independent and all violations are collected; only a missing
    or non-array ``tools`` field skips the per-entry checks.
    """
    if not isinstance(raw, Mapping):
        return [MANIFEST_NOT_OBJECT]

    errors: List[str] = []
    _check_schema_version(raw, errors)
    _check_name(raw, errors)

    tools = raw.get("tools")
    if tools is None:
        errors.append("tools_missing")
        return errors
    if not isinstance(tools, list):
        errors.append("tools_not_array")
        return errors
    if not tools:
        errors.append("tools_empty")
        return errors

    for index, entry in enumerate(tools):
        if not isinstance(entry, Mapping):
            errors.append(f"tool_not_object:{index}")
            continue
        _check_entry(entry, index, kind, errors)
    return errors


# ============================================================================
# Parsing (PRS)
# ============================================================================


def _text_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _entry_from_mapping(entry: Mapping[str, Any]) -> ToolEntry:
    return ToolEntry(
        id=_text_or_none(entry.get("id")) or "",
        version=_text_or_none(entry.get("version")) or "",
        path=_text_or_none(entry.get("path")),
        archive_path=_text_or_none(entry.get("archive_path")),
        archive_url=_text_or_none(entry.get("archive_url")),
        sha256=_text_or_none(entry.get("sha256")),
        size=_whole_number(entry.get("size")),
    )


def from_dict(raw: Any, kind: ManifestKind = ManifestKind.REPOSITORY) -> Tuple[Manifest, List[str]]:
    """Build a :class:`Manifest` from a decoded object, returning it with its errors."""

    errors = validate(raw, kind)
    if not isinstance(raw, Mapping):
        return Manifest(schema_version=None, name="", kind=kind, errors=tuple(errors)), errors

    tools_raw = raw.get("tools")
    entries: List[ToolEntry] = []
    if isinstance(tools_raw, list):
        entries = [_entry_from_mapping(item) for item in tools_raw if isinstance(item, Mapping)]
    name = raw.get("name")
    manifest = Manifest(
        schema_version=_whole_number(raw.get("schema_version")),
        name=name.strip() if isinstance(name, str) else "",
        tools=tuple(entries),
        kind=kind,
        errors=tuple(errors),
    )
    return manifest, errors


def parse(text: str, kind: ManifestKind = ManifestKind.REPOSITORY) -> Tuple[Manifest, List[str]]:
    """Decode JSON ``text`` and build a :class:`Manifest` with its errors.

    Malformed JSON yields ``manifest_parse_error``; a non-object root yields
    ``manifest_not_object``.  Both are distinct from schema codes.
    """
    try:
        raw = json.loads(text)
    except (json.JSONDecodeError, TypeError, ValueError):
        errors = [MANIFEST_PARSE_ERROR]
        return Manifest(schema_version=None, name="", kind=kind, errors=tuple(errors)), errors
    return from_dict(raw, kind)


# ============================================================================
# Lookup (LKP)
# ============================================================================


def lookup(entries: Sequence[ToolEntry], tool_id: str, version: str) -> Optional[ToolEntry]:
    """Return the first entry matching ``(tool_id, version)``, or ``None``."""

    for entry in entries:
        if entry.id == tool_id and entry.version == version:
            return entry
    return None
