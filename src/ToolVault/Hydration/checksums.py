"""Streaming SHA-256 computation and verification for staged archives.

Tool archives routinely run to several gigabytes, so digests are computed by
feeding fixed-size chunks into a running hash rather than reading whole files.
Failures are returned as result values: a missing or unreadable file and a
digest engine that cannot be initialised are reported with distinct codes.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

__all__ = [
    "HASH_CHUNK_SIZE",
    "DIGEST_INIT_FAILED",
    "READ_FAILED",
    "SHA256_MISMATCH",
    "INVALID_EXPECTED",
    "DigestResult",
    "VerificationResult",
    "normalize_sha256",
    "sha256_of",
    "verify_sha256",
]

HASH_CHUNK_SIZE = 1 << 20

DIGEST_INIT_FAILED = "digest_init_failed"
READ_FAILED = "read_failed"
SHA256_MISMATCH = "sha256_mismatch"
INVALID_EXPECTED = "invalid_expected_digest"

_SHA256_PATTERN = re.compile(r"[0-9a-f]{64}")

logger = logging.getLogger("ToolVault.Hydration")


@dataclass(frozen=True)
class DigestResult:
    """Outcome of :func:`sha256_of`."""

    success: bool
    digest_hex: str = ""
    error_code: str = ""
    error: str = ""


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of :func:`verify_sha256`."""

    success: bool
    expected: str = ""
    actual: str = ""
    error_code: str = ""
    error: str = ""


def normalize_sha256(value: object) -> Optional[str]:
    """Return ``value`` as a lowercase 64-hex digest, or ``None`` if malformed."""

    if not isinstance(value, str):
        return None
    candidate = value.strip().lower()
    if not _SHA256_PATTERN.fullmatch(candidate):
        return None
    return candidate


def sha256_of(path: Union[str, Path], *, chunk_size: int = HASH_CHUNK_SIZE) -> DigestResult:
    """Compute the SHA-256 digest of ``path`` without loading it into memory."""

    try:
        hasher = hashlib.new("sha256")
    except ValueError as exc:
        return DigestResult(success=False, error_code=DIGEST_INIT_FAILED, error=str(exc))

    file_path = Path(path)
    try:
        with file_path.open("rb") as stream:
            for chunk in iter(lambda: stream.read(chunk_size), b""):
                hasher.update(chunk)
    except OSError as exc:
        return DigestResult(
            success=False,
            error_code=READ_FAILED,
            error=f"unable to read {file_path}: {exc.strerror or exc}",
        )
    return DigestResult(success=True, digest_hex=hasher.hexdigest())


def verify_sha256(path: Union[str, Path], expected: str) -> VerificationResult:
    """Compare the digest of ``path`` against ``expected``."""

    normalized = normalize_sha256(expected)
    if normalized is None:
        return VerificationResult(
            success=False,
            expected=str(expected),
            error_code=INVALID_EXPECTED,
            error="expected digest is not 64 hex characters",
        )
    digest = sha256_of(path)
    if not digest.success:
        return VerificationResult(
            success=False,
            expected=normalized,
            error_code=digest.error_code,
            error=digest.error,
        )
    if digest.digest_hex != normalized:
        logger.warning(
            "sha256 mismatch",
            extra={
                "stage": "verify",
                "extra_fields": {"expected": normalized, "actual": digest.digest_hex},
            },
        )
        return VerificationResult(
            success=False,
            expected=normalized,
            actual=digest.digest_hex,
            error_code=SHA256_MISMATCH,
            error=f"sha256 mismatch: expected {normalized}, got {digest.digest_hex}",
        )
    return VerificationResult(success=True, expected=normalized, actual=digest.digest_hex)
