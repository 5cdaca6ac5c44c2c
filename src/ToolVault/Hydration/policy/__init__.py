"""Policy subsystem: the offline gate and the shared rejection catalog.

Modules:
- errors: Error catalog and exceptions (canonical ErrorCode enum)
- gates: OfflineGate, the single choke point for outbound network calls
"""

from ToolVault.Hydration.policy.errors import (
    ErrorCode,
    FilesystemPolicyException,
    PolicyException,
)
from ToolVault.Hydration.policy.gates import GateDecision, OfflineGate

__all__ = [
    "ErrorCode",
    "PolicyException",
    "FilesystemPolicyException",
    "GateDecision",
    "OfflineGate",
]
