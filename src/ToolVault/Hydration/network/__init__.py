"""Network subsystem: pollable transport, redirect helpers, and the retrieval client.

Modules:
- transport: Transport protocol and the socket + h11 implementation
- redirect: Redirect exceptions, Location resolution and audit trails
- client: RetrievalClient with gate-checked GET and streaming download
"""

from ToolVault.Hydration.network.client import (
    DownloadResult,
    FetchErrorCode,
    FetchResult,
    ProgressCallback,
    RetrievalClient,
    TransportFactory,
)
from ToolVault.Hydration.network.redirect import format_audit_trail
from ToolVault.Hydration.network.transport import SocketTransport, Transport, TransportStatus

__all__ = [
    "DownloadResult",
    "FetchErrorCode",
    "FetchResult",
    "ProgressCallback",
    "RetrievalClient",
    "TransportFactory",
    "SocketTransport",
    "Transport",
    "TransportStatus",
    "format_audit_trail",
]
