# === NAVMAP v1 ===
# {
#   "module": "ToolVault.Hydration.cancellation",
#   "purpose": "Cooperative cancellation tokens for per-tool hydration work",
#   "sections": [
#     {"id": "token", "name": "CancellationToken", "anchor": "TOK", "kind": "api"},
#     {"id": "group", "name": "CancellationTokenGroup", "anchor": "GRP", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Cooperative cancellation primitives for hydration runs.

Cancelling a tool never interrupts a socket operation already in flight.  The
orchestrator checks the tool's :class:`CancellationToken` at every stage
boundary and the progress relay checks it before each event, so a cancelled
tool goes quiet at once and is reported failed at the next boundary.
:class:`CancellationTokenGroup` keys tokens by ``(tool_id, version)`` so a
single tool or the whole batch can be cancelled.
"""

from __future__ import annotations

import threading
from typing import Dict, Hashable, List


class CancellationToken:
    """Thread-safe cancellation token for cooperative task cancellation.

    Examples:
        >>> token = CancellationToken()
        >>> token.is_cancelled()
        False
        >>> token.cancel()
        >>> token.is_cancelled()
        True
    """

    def __init__(self) -> None:
        self._is_cancelled = threading.Event()

    def cancel(self) -> None:
        """Signal that cancellation has been requested."""
        self._is_cancelled.set()

    def is_cancelled(self) -> bool:
        return self._is_cancelled.is_set()


class CancellationTokenGroup:
    """Tokens keyed by work item that can be cancelled singly or together."""

    def __init__(self) -> None:
        self._tokens: Dict[Hashable, CancellationToken] = {}
        self._lock = threading.Lock()
        self._cancelled = False

    def create_token(self, key: Hashable) -> CancellationToken:
        """Return the token for ``key``, creating it if needed.

        Tokens created after :meth:`cancel_all` start out cancelled.
        """
        with self._lock:
            token = self._tokens.get(key)
            if token is None:
                token = CancellationToken()
                self._tokens[key] = token
            if self._cancelled:
                token.cancel()
            return token

    def cancel(self, key: Hashable) -> bool:
        """Cancel the token for ``key``; returns ``False`` when no such token exists."""
        with self._lock:
            token = self._tokens.get(key)
        if token is None:
            return False
        token.cancel()
        return True

    def cancel_all(self) -> None:
        """Cancel all tokens in this group."""
        with self._lock:
            self._cancelled = True
            tokens: List[CancellationToken] = list(self._tokens.values())
        for token in tokens:
            token.cancel()


__all__ = ["CancellationToken", "CancellationTokenGroup"]
