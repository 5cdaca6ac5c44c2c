"""Policy error codes and helpers for centralized error handling.

One error catalog shared by the offline gate and the path resolver. Gates
report rejections through these codes so that callers, logs, and metrics all
speak the same vocabulary.
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger("ToolVault.Hydration.policy")

# ============================================================================
# Error Codes (Canonical Catalog)
# ============================================================================


class ErrorCode(str, Enum):
    """Canonical error codes for policy rejections."""

    # Offline switches
    E_OFFLINE = "E_OFFLINE"  # Soft offline mode enabled
    E_FORCE_OFFLINE = "E_FORCE_OFFLINE"  # Hard offline mode enabled

    # Allowlist
    E_HOST_DENY = "E_HOST_DENY"  # Host not allowlisted
    E_PORT_DENY = "E_PORT_DENY"  # Port not allowlisted

    # Filesystem & path errors
    E_ROOT_EMPTY = "E_ROOT_EMPTY"  # Trusted root not provided
    E_PATH_EMPTY = "E_PATH_EMPTY"  # Relative path not provided
    E_ABSOLUTE = "E_ABSOLUTE"  # Relative path is absolute
    E_TRAVERSAL = "E_TRAVERSAL"  # Path escapes trusted root


# ============================================================================
# Policy Exceptions
# ============================================================================


class PolicyException(Exception):
    """Base exception for policy rejections."""

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        """Initialize policy exception.

        Args:
            error_code: Canonical error code
            message: Human-readable message
            details: Additional context (non-secret)
        """
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(f"{error_code.value}: {message}")


class FilesystemPolicyException(PolicyException):
    """Filesystem or path policy rejection."""


# ============================================================================
# Error Emission Helpers
# ============================================================================


def raise_policy_error(
    error_code: ErrorCode,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    exception_class: type = PolicyException,
) -> None:
    """Log and raise a policy error.

    Args:
        error_code: Canonical error code
        message: Human-readable message
        details: Additional context (scrubbed of secrets before logging)
        exception_class: Exception type to raise

    Raises:
        The specified exception class with error code and details
    """
    safe_details = _scrub_details(details or {})
    logger.info(
        "policy rejection",
        extra={"stage": "policy", "error_code": error_code.value, "extra_fields": safe_details},
    )
    raise exception_class(error_code, message, safe_details)


def _scrub_details(details: Dict[str, Any]) -> Dict[str, Any]:
    """Remove sensitive information from detail dict.

    Filters out:
    - Keys containing 'password', 'token', 'secret', 'auth'
    - Full paths (replaced with basenames)
    """
    scrubbed = {}
    for key, value in details.items():
        key_lower = key.lower()

        if any(sensitive in key_lower for sensitive in ("password", "token", "secret", "auth")):
            continue

        if key_lower in ("path", "full_path", "relative") and isinstance(value, str):
            scrubbed[key] = value.replace("\\", "/").split("/")[-1] or "[path]"
            continue

        scrubbed[key] = value

    return scrubbed


__all__ = [
    "ErrorCode",
    "PolicyException",
    "FilesystemPolicyException",
    "raise_policy_error",
]
