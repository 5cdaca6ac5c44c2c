# === NAVMAP v1 ===
# {
#   "module": "ToolVault.Hydration.network.redirect",
#   "purpose": "Redirect exceptions, Location resolution and audit-trail formatting.",
#   "sections": [
#     {"id": "redirecterror", "name": "RedirectError", "anchor": "class-redirecterror", "kind": "class"},
#     {"id": "maxredirectsexceeded", "name": "MaxRedirectsExceeded", "anchor": "class-maxredirectsexceeded", "kind": "class"},
#     {"id": "invalidredirecttarget", "name": "InvalidRedirectTarget", "anchor": "class-invalidredirecttarget", "kind": "class"},
#     {"id": "missinglocationheader", "name": "MissingLocationHeader", "anchor": "class-missinglocationheader", "kind": "class"},
#     {"id": "is-redirect", "name": "is_redirect", "anchor": "function-is-redirect", "kind": "function"},
#     {"id": "resolve-location", "name": "resolve_location", "anchor": "function-resolve-location", "kind": "function"},
#     {"id": "format-audit-trail", "name": "format_audit_trail", "anchor": "function-format-audit-trail", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Redirect handling helpers for the retrieval client.

Redirects are followed in an explicit, bounded loop owned by
:class:`~ToolVault.Hydration.network.client.RetrievalClient`.  Every hop is
re-checked by the offline gate and recorded in an audit trail of
``(url, status)`` pairs.  The exceptions below are raised inside that loop and
translated into ``FetchResult`` error codes before they reach callers.
"""

import logging
from typing import List, Sequence, Tuple

import httpx

logger = logging.getLogger(__name__)


# ============================================================================
# Exceptions
# ============================================================================


class RedirectError(Exception):
    """Base exception for redirect handling errors."""

    def __init__(self, message: str, audit_trail: Sequence[Tuple[str, int]] = ()):
        super().__init__(message)
        self.audit_trail = list(audit_trail)


class MaxRedirectsExceeded(RedirectError):
    """Redirect chain exceeds maximum allowed hops."""

    def __init__(self, max_hops: int, audit_trail: Sequence[Tuple[str, int]]):
        self.max_hops = max_hops
        super().__init__(
            f"redirect chain exceeded {max_hops} hops: {format_audit_trail(audit_trail)}",
            audit_trail,
        )


class InvalidRedirectTarget(RedirectError):
    """Location header could not be resolved into a URL."""

    def __init__(self, source_url: str, location: str, reason: str, audit_trail=()):
        self.source_url = source_url
        self.location = location
        self.reason = reason
        super().__init__(
            f"invalid redirect from {source_url} to {location!r}: {reason}", audit_trail
        )


class MissingLocationHeader(RedirectError):
    """Redirect response missing Location header."""

    def __init__(self, url: str, status: int, audit_trail=()):
        self.url = url
        self.status = status
        super().__init__(
            f"redirect response from {url} (status {status}) missing Location header",
            audit_trail,
        )


# ============================================================================
# Helpers
# ============================================================================


def is_redirect(status: int) -> bool:
    """Any 3xx status is treated as a redirect."""
    return 300 <= status <= 399


def resolve_location(current_url: str, location: str) -> str:
    """Resolve ``location`` against ``current_url`` per RFC 7231.

    Raises:
        InvalidRedirectTarget: If the combination cannot be parsed.
    """
    try:
        return str(httpx.URL(current_url).join(location.strip()))
    except (httpx.InvalidURL, ValueError, TypeError) as exc:
        raise InvalidRedirectTarget(current_url, location, str(exc)) from exc


def format_audit_trail(audit_trail: Sequence[Tuple[str, int]]) -> str:
    """Format audit trail for logging/display.

    Returns:
        Formatted string like "http://a (301) -> http://b (200)"
    """
    parts: List[str] = [f"{url} ({status})" for url, status in audit_trail]
    return " -> ".join(parts)


__all__ = [
    "RedirectError",
    "MaxRedirectsExceeded",
    "InvalidRedirectTarget",
    "MissingLocationHeader",
    "is_redirect",
    "resolve_location",
    "format_audit_trail",
]
