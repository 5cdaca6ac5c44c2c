# === NAVMAP v1 ===
# {
#   "module": "ToolVault.Hydration.network.transport",
#   "purpose": "Pollable HTTP/1.1 transport primitive used by the retrieval client.",
#   "sections": [
#     {"id": "transportstatus", "name": "TransportStatus", "anchor": "class-transportstatus", "kind": "class"},
#     {"id": "transport", "name": "Transport", "anchor": "class-transport", "kind": "class"},
#     {"id": "create-ssl-context", "name": "create_ssl_context", "anchor": "function-create-ssl-context", "kind": "function"},
#     {"id": "sockettransport", "name": "SocketTransport", "anchor": "class-sockettransport", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Pollable HTTP/1.1 transport primitive.

The retrieval client drives a transport through an explicit sequence:

1. ``connect(host, port, use_tls=...)`` then ``poll()`` until ``CONNECTED``
2. ``request(method, target, headers)`` then ``poll()`` until ``BODY``
3. ``response_status()`` / ``response_headers()``
4. ``read_chunk()`` until it returns ``b""``
5. ``close()``

Each ``poll()`` performs at most one bounded step, so the caller owns the
overall deadline and can observe every phase.  :class:`SocketTransport` is the
production implementation: a plain ``socket`` (wrapped with TLS via
``ssl`` and the ``certifi`` CA bundle for ``https``) with ``h11`` handling
HTTP/1.1 framing.  One connection carries one request.
"""

import logging
import socket
import ssl
from enum import Enum
from typing import List, Optional, Protocol, Sequence, Tuple

import certifi
import h11

from ..errors import TransportError

logger = logging.getLogger(__name__)


class TransportStatus(str, Enum):
    """Lifecycle states reported by :meth:`Transport.poll`."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    REQUESTING = "requesting"
    BODY = "body"
    CONNECTION_ERROR = "connection_error"
    TLS_ERROR = "tls_error"


class Transport(Protocol):
    """Connect/poll/request/poll/read-chunks primitive."""

    def connect(self, host: str, port: int, *, use_tls: bool) -> None:
        """Begin connecting; raises :class:`TransportError` if the attempt cannot start."""

    def poll(self) -> TransportStatus:
        """Advance the connection by one bounded step and return the status."""

    def request(self, method: str, target: str, headers: Sequence[Tuple[str, str]]) -> None:
        """Send a request on a connected transport."""

    def response_status(self) -> int:
        """Return the status code of the received response."""

    def response_headers(self) -> List[str]:
        """Return raw ``Name: value`` header lines of the received response."""

    def read_chunk(self) -> bytes:
        """Return the next body chunk, or ``b""`` once the body is complete."""

    def close(self) -> None:
        """Release the connection. Safe to call repeatedly."""


def create_ssl_context(verify: bool = True) -> ssl.SSLContext:
    """Create an SSL context backed by the certifi CA bundle."""
    if not verify:
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        logger.warning("TLS verification DISABLED (development only!)")
        return ctx

    ctx = ssl.create_default_context(cafile=certifi.where())
    ctx.check_hostname = True
    ctx.verify_mode = ssl.CERT_REQUIRED
    return ctx


class SocketTransport:
    """Blocking-socket transport whose ``poll`` steps are bounded by short timeouts.

    Args:
        timeout_sec: Timeout for establishing the connection and for each body read.
        poll_slice_sec: Upper bound for a single ``poll`` while awaiting the response head.
        read_size: Maximum bytes requested from the socket per receive.
        verify_tls: Verify server certificates for ``https``.
    """

    def __init__(
        self,
        *,
        timeout_sec: float = 30.0,
        poll_slice_sec: float = 0.1,
        read_size: int = 64 * 1024,
        verify_tls: bool = True,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self._timeout = timeout_sec
        self._poll_slice = poll_slice_sec
        self._read_size = read_size
        self._verify_tls = verify_tls
        self._ssl_context = ssl_context
        self._status = TransportStatus.DISCONNECTED
        self._sock: Optional[socket.socket] = None
        self._conn: Optional[h11.Connection] = None
        self._target: Optional[Tuple[str, int, bool]] = None
        self._response: Optional[h11.Response] = None
        self.last_error: Optional[str] = None

    # --- lifecycle -----------------------------------------------------------------

    def connect(self, host: str, port: int, *, use_tls: bool) -> None:
        if not host:
            raise TransportError("host must not be empty", phase="connect")
        if not 0 < port < 65536:
            raise TransportError(f"port out of range: {port}", phase="connect")
        self.close()
        self._target = (host, port, use_tls)
        self._conn = h11.Connection(our_role=h11.CLIENT)
        self._response = None
        self.last_error = None
        self._status = TransportStatus.CONNECTING

    def poll(self) -> TransportStatus:
        if self._status is TransportStatus.CONNECTING:
            self._open_socket()
        elif self._status is TransportStatus.REQUESTING:
            self._receive_head()
        return self._status

    def request(self, method: str, target: str, headers: Sequence[Tuple[str, str]]) -> None:
        if self._status is not TransportStatus.CONNECTED or self._sock is None or self._conn is None:
            raise TransportError(f"cannot send request while {self._status.value}", phase="request")
        try:
            data = self._conn.send(h11.Request(method=method, target=target, headers=list(headers)))
            data += self._conn.send(h11.EndOfMessage())
            self._sock.sendall(data)
        except (h11.LocalProtocolError, OSError) as exc:
            self._fail(TransportStatus.CONNECTION_ERROR, f"request failed: {exc}")
            raise TransportError(str(exc), phase="request") from exc
        self._status = TransportStatus.REQUESTING

    def response_status(self) -> int:
        if self._response is None:
            raise TransportError("no response received", phase="response")
        return self._response.status_code

    def response_headers(self) -> List[str]:
        if self._response is None:
            raise TransportError("no response received", phase="response")
        return [
            f"{name.decode('latin-1')}: {value.decode('latin-1')}"
            for name, value in self._response.headers
        ]

    def read_chunk(self) -> bytes:
        if self._status is not TransportStatus.BODY:
            return b""
        while True:
            event = self._next_event()
            if event is h11.NEED_DATA:
                try:
                    data = self._sock.recv(self._read_size)  # type: ignore[union-attr]
                except socket.timeout as exc:
                    self._fail(TransportStatus.CONNECTION_ERROR, "body read timed out")
                    raise TransportError("body read timed out", phase="read") from exc
                except OSError as exc:
                    self._fail(TransportStatus.CONNECTION_ERROR, f"body read failed: {exc}")
                    raise TransportError(str(exc), phase="read") from exc
                self._conn.receive_data(data)  # type: ignore[union-attr]
                continue
            if event is None:
                raise TransportError(self.last_error or "protocol error", phase="read")
            if isinstance(event, h11.Data):
                if event.data:
                    return bytes(event.data)
                continue
            if isinstance(event, h11.EndOfMessage):
                self.close()
                return b""
            if isinstance(event, h11.ConnectionClosed):
                self._fail(TransportStatus.CONNECTION_ERROR, "connection closed mid-body")
                raise TransportError("connection closed mid-body", phase="read")

    def close(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError:
                logger.debug("error closing socket", exc_info=True)
            self._sock = None
        if self._status not in (TransportStatus.CONNECTION_ERROR, TransportStatus.TLS_ERROR):
            self._status = TransportStatus.DISCONNECTED

    # --- internals -----------------------------------------------------------------

    def _fail(self, status: TransportStatus, message: str) -> None:
        self.last_error = message
        self.close()
        self._status = status
        logger.debug("transport failure", extra={"stage": "transport", "extra_fields": {"error": message}})

    def _open_socket(self) -> None:
        if self._target is None:
            raise TransportError("poll before connect", phase="connect")
        host, port, use_tls = self._target
        try:
            sock = socket.create_connection((host, port), timeout=self._timeout)
        except OSError as exc:
            self._fail(TransportStatus.CONNECTION_ERROR, f"connect to {host}:{port} failed: {exc}")
            return
        if use_tls:
            context = self._ssl_context or create_ssl_context(self._verify_tls)
            try:
                sock = context.wrap_socket(sock, server_hostname=host)
            except (ssl.SSLError, ssl.CertificateError, OSError) as exc:
                sock.close()
                self._fail(TransportStatus.TLS_ERROR, f"TLS handshake with {host} failed: {exc}")
                return
        sock.settimeout(self._poll_slice)
        self._sock = sock
        self._status = TransportStatus.CONNECTED

    def _receive_head(self) -> None:
        while True:
            event = self._next_event()
            if event is None:
                return
            if event is h11.NEED_DATA:
                try:
                    data = self._sock.recv(self._read_size)  # type: ignore[union-attr]
                except socket.timeout:
                    return
                except OSError as exc:
                    self._fail(TransportStatus.CONNECTION_ERROR, f"receive failed: {exc}")
                    return
                self._conn.receive_data(data)  # type: ignore[union-attr]
                continue
            if isinstance(event, h11.InformationalResponse):
                continue
            if isinstance(event, h11.Response):
                self._response = event
                self._sock.settimeout(self._timeout)  # type: ignore[union-attr]
                self._status = TransportStatus.BODY
                return
            if isinstance(event, h11.ConnectionClosed):
                self._fail(TransportStatus.CONNECTION_ERROR, "connection closed before response")
                return

    def _next_event(self):
        """Return the next h11 event, or ``None`` after recording a protocol failure."""
        try:
            return self._conn.next_event()  # type: ignore[union-attr]
        except h11.RemoteProtocolError as exc:
            self._fail(TransportStatus.CONNECTION_ERROR, f"protocol error: {exc}")
            return None


__all__ = ["TransportStatus", "Transport", "SocketTransport", "create_ssl_context"]
