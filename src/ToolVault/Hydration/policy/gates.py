"""Offline policy gate: the single choke point for outbound network access.

Every component that is about to open a socket asks the gate first.  The gate
is the only code that interprets :class:`~ToolVault.Hydration.settings.OfflinePolicy`,
so the guarantee that nothing leaves the machine while offline lives in one
place:

- ``force_offline`` (hard switch) blocks everything
- ``offline_mode`` (soft switch, the UI "panic button") blocks everything
- a non-empty host or port allowlist must contain the target

A refusal is an ordinary result, never an exception; callers fold the
``error_message`` into their own failure reason.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

import httpx
from prometheus_client import Counter

from ..settings import OfflinePolicy
from .errors import ErrorCode

logger = logging.getLogger("ToolVault.Hydration.policy")

# ============================================================================
# Prometheus Metrics Registration
# ============================================================================

_gate_decisions = Counter(
    "toolvault_gate_decisions_total",
    "Offline gate decisions by outcome and error code",
    ["outcome", "code"],
)


# ============================================================================
# Result Type
# ============================================================================


@dataclass(frozen=True)
class GateDecision:
    """Outcome of :meth:`OfflineGate.guard_network_call`."""

    allowed: bool
    error_message: str = ""
    error_code: Optional[ErrorCode] = None
    elapsed_ms: float = 0.0


# ============================================================================
# Gate
# ============================================================================


class OfflineGate:
    """Decide whether an outbound network attempt is permitted.

    The policy is injected at construction and replaced atomically through the
    narrow setters below; readers always see one consistent frozen snapshot.

    Example:
        >>> gate = OfflineGate(OfflinePolicy(offline_mode=True))
        >>> gate.guard_network_call("manifest_fetch").allowed
        False
    """

    def __init__(self, policy: Optional[OfflinePolicy] = None) -> None:
        self._policy = policy or OfflinePolicy()
        self._lock = threading.Lock()

    @property
    def policy(self) -> OfflinePolicy:
        return self._policy

    def set_policy(self, policy: OfflinePolicy) -> None:
        """Replace the active policy."""
        with self._lock:
            self._policy = policy
        logger.info(
            "offline policy updated",
            extra={
                "stage": "policy",
                "extra_fields": {
                    "offline_mode": policy.offline_mode,
                    "force_offline": policy.force_offline,
                    "allowed_hosts": sorted(policy.allowed_hosts),
                    "allowed_ports": sorted(policy.allowed_ports),
                },
            },
        )

    def set_offline_mode(self, enabled: bool) -> None:
        """Toggle the soft offline switch."""
        with self._lock:
            self._policy = self._policy.model_copy(update={"offline_mode": bool(enabled)})
        logger.info("offline mode %s", "enabled" if enabled else "disabled", extra={"stage": "policy"})

    def set_force_offline(self, enabled: bool) -> None:
        """Toggle the hard offline switch."""
        with self._lock:
            self._policy = self._policy.model_copy(update={"force_offline": bool(enabled)})
        logger.info("force offline %s", "enabled" if enabled else "disabled", extra={"stage": "policy"})

    def guard_network_call(
        self,
        reason: str,
        *,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ) -> GateDecision:
        """Return whether a network call labelled ``reason`` may proceed.

        Args:
            reason: Diagnostic label; never affects the decision.
            host: Target host, checked against the host allowlist when given.
            port: Target port, checked against the port allowlist when given.

        Returns:
            GateDecision with ``allowed`` and, when refused, a human-readable
            ``error_message`` and canonical ``error_code``.
        """
        start_ms = time.perf_counter() * 1000
        policy = self._policy

        code: Optional[ErrorCode] = None
        message = ""
        if policy.force_offline:
            code = ErrorCode.E_FORCE_OFFLINE
            message = "network access disabled: force_offline is set"
        elif policy.offline_mode:
            code = ErrorCode.E_OFFLINE
            message = "network access disabled: offline mode is enabled"
        elif host is not None and policy.allowed_hosts and host.lower() not in policy.allowed_hosts:
            code = ErrorCode.E_HOST_DENY
            message = f"host not in allowlist: {host}"
        elif port is not None and policy.allowed_ports and port not in policy.allowed_ports:
            code = ErrorCode.E_PORT_DENY
            message = f"port not in allowlist: {port}"

        elapsed_ms = time.perf_counter() * 1000 - start_ms
        allowed = code is None
        _gate_decisions.labels(
            outcome="allow" if allowed else "deny",
            code=code.value if code else "",
        ).inc()
        logger.log(
            logging.DEBUG if allowed else logging.INFO,
            "network call %s",
            "allowed" if allowed else "blocked",
            extra={
                "stage": "policy",
                "extra_fields": {
                    "reason": reason,
                    "host": host,
                    "port": port,
                    "error_code": code.value if code else None,
                },
            },
        )
        return GateDecision(
            allowed=allowed,
            error_message=message,
            error_code=code,
            elapsed_ms=elapsed_ms,
        )

    def guard_url(self, reason: str, url: str) -> GateDecision:
        """Convenience wrapper that extracts host and port from ``url``."""
        try:
            parsed = httpx.URL(url)
        except httpx.InvalidURL:
            return GateDecision(
                allowed=False,
                error_message=f"unable to determine target host: {url}",
                error_code=ErrorCode.E_HOST_DENY,
            )
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        return self.guard_network_call(reason, host=parsed.host or None, port=port)


__all__ = ["GateDecision", "OfflineGate"]
