"""Exception hierarchy shared across manifest loading, retrieval, and hydration.

Expected failures inside the hydration pipeline (schema problems, blocked
network calls, transport faults, digest mismatches, local I/O) travel as result
values carrying a ``success`` flag and a reason string.  The exceptions below
are reserved for the boundaries where raising is the right contract:
configuration loading, call-sequence violations, and the internals of
transports and extractors whose errors are translated into results by their
callers.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "HydrationError",
    "ConfigError",
    "HydrationInProgressError",
    "TransportError",
    "ExtractionError",
]


class HydrationError(RuntimeError):
    """Base exception for tool hydration failures."""


class ConfigError(HydrationError):
    """Raised when configuration files or environment overrides are invalid."""


class HydrationInProgressError(HydrationError):
    """Raised when a second hydration run is started on a busy orchestrator."""


class TransportError(HydrationError):
    """Raised by transports when a socket, TLS, or framing operation fails."""

    def __init__(self, message: str, *, phase: Optional[str] = None) -> None:
        super().__init__(message)
        self.phase = phase


class ExtractionError(HydrationError):
    """Raised by archive extractors when an archive cannot be installed safely."""
