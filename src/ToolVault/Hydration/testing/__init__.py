# === NAVMAP v1 ===
# {
#   "module": "ToolVault.Hydration.testing",
#   "purpose": "Test doubles: scripted transport network, loopback mirror server, recording collaborators",
#   "sections": [
#     {"id": "scriptedresponse", "name": "ScriptedResponse", "anchor": "class-scriptedresponse", "kind": "class"},
#     {"id": "fakenetwork", "name": "FakeNetwork", "anchor": "class-fakenetwork", "kind": "class"},
#     {"id": "faketransport", "name": "FakeTransport", "anchor": "class-faketransport", "kind": "class"},
#     {"id": "responsespec", "name": "ResponseSpec", "anchor": "class-responsespec", "kind": "class"},
#     {"id": "mirrorserver", "name": "MirrorServer", "anchor": "class-mirrorserver", "kind": "class"},
#     {"id": "memorylibrary", "name": "MemoryLibrary", "anchor": "class-memorylibrary", "kind": "class"},
#     {"id": "recordingextractor", "name": "RecordingExtractor", "anchor": "class-recordingextractor", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Testing helpers for the hydration pipeline.

:class:`FakeNetwork` is a transport factory serving scripted responses keyed by
URL and counting every connect and request, so tests can assert that no
transport was touched.  :class:`MirrorServer` is a loopback HTTP server for
exercising the real :class:`~ToolVault.Hydration.network.transport.SocketTransport`.
"""

from __future__ import annotations

import contextlib
import http.server
import socket
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

import httpx

from ..errors import TransportError
from ..library import ExtractResult
from ..network.transport import TransportStatus

__all__ = [
    "ScriptedResponse",
    "FakeNetwork",
    "FakeTransport",
    "ResponseSpec",
    "RequestRecord",
    "MirrorServer",
    "MemoryLibrary",
    "RecordingExtractor",
]


# --- scripted transport --------------------------------------------------------------


@dataclass
class ScriptedResponse:
    """Response served by :class:`FakeTransport` for one URL.

    ``fail_after`` raises a read error once that many body bytes were served.
    """

    status: int = 200
    headers: Sequence[str] = ()
    body: bytes = b""
    chunk_size: int = 4
    fail_after: Optional[int] = None


def _route_key(url: str) -> Tuple[str, int, str]:
    parsed = httpx.URL(url)
    port = parsed.port or (443 if parsed.scheme == "https" else 80)
    return (parsed.host, port, parsed.raw_path.decode("ascii") or "/")


class FakeNetwork:
    """Transport factory backed by scripted responses.

    Hosts listed in ``unreachable`` fail to connect; hosts in ``hanging`` never
    finish connecting.  Unknown URLs answer 404.
    """

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, int, str], ScriptedResponse] = {}
        self.unreachable: Set[str] = set()
        self.hanging: Set[str] = set()
        self.transports_created = 0
        self.connect_calls = 0
        self.request_calls = 0
        self.requests: List[Tuple[str, int, str, List[Tuple[str, str]]]] = []

    @property
    def call_count(self) -> int:
        return self.transports_created + self.connect_calls + self.request_calls

    def add(self, url: str, response: ScriptedResponse) -> None:
        self.routes[_route_key(url)] = response

    def add_redirect(self, url: str, location: str, status: int = 302) -> None:
        self.add(url, ScriptedResponse(status=status, headers=[f"Location: {location}"]))

    def __call__(self) -> "FakeTransport":
        self.transports_created += 1
        return FakeTransport(self)


class FakeTransport:
    """In-memory :class:`~ToolVault.Hydration.network.transport.Transport`."""

    def __init__(self, network: FakeNetwork) -> None:
        self._network = network
        self._status = TransportStatus.DISCONNECTED
        self._host = ""
        self._port = 0
        self._response: Optional[ScriptedResponse] = None
        self._offset = 0
        self.closed = False

    def connect(self, host: str, port: int, *, use_tls: bool) -> None:
        self._network.connect_calls += 1
        self._host, self._port = host, port
        self._status = TransportStatus.CONNECTING

    def poll(self) -> TransportStatus:
        if self._status is TransportStatus.CONNECTING:
            if self._host in self._network.hanging:
                return self._status
            if self._host in self._network.unreachable:
                self._status = TransportStatus.CONNECTION_ERROR
            else:
                self._status = TransportStatus.CONNECTED
        elif self._status is TransportStatus.REQUESTING:
            self._status = TransportStatus.BODY
        return self._status

    def request(self, method: str, target: str, headers: Sequence[Tuple[str, str]]) -> None:
        if self._status is not TransportStatus.CONNECTED:
            raise TransportError("not connected", phase="request")
        self._network.request_calls += 1
        self._network.requests.append((self._host, self._port, target, list(headers)))
        self._response = self._network.routes.get(
            (self._host, self._port, target), ScriptedResponse(status=404, body=b"not found")
        )
        self._offset = 0
        self._status = TransportStatus.REQUESTING

    def response_status(self) -> int:
        if self._response is None:
            raise TransportError("no response received", phase="response")
        return self._response.status

    def response_headers(self) -> List[str]:
        if self._response is None:
            raise TransportError("no response received", phase="response")
        return list(self._response.headers)

    def read_chunk(self) -> bytes:
        response = self._response
        if response is None or self._status is not TransportStatus.BODY:
            return b""
        if response.fail_after is not None and self._offset >= response.fail_after:
            raise TransportError("connection reset", phase="read")
        chunk = response.body[self._offset : self._offset + response.chunk_size]
        self._offset += len(chunk)
        if not chunk:
            self._status = TransportStatus.DISCONNECTED
        return chunk

    def close(self) -> None:
        self.closed = True
        self._status = TransportStatus.DISCONNECTED


# --- loopback server -----------------------------------------------------------------


@dataclass
class ResponseSpec:
    """HTTP response definition served by the loopback mirror server."""

    status: int = 200
    body: Union[bytes, str] = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    send_length: bool = True

    def serialise_body(self) -> bytes:
        if isinstance(self.body, bytes):
            return self.body
        return self.body.encode("utf-8")


@dataclass
class RequestRecord:
    method: str
    path: str
    headers: Mapping[str, str]


class _ThreadedHTTPServer(http.server.ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, server_address, RequestHandlerClass, *, mirror) -> None:
        super().__init__(server_address, RequestHandlerClass)
        self.mirror = mirror


class _RequestHandler(http.server.BaseHTTPRequestHandler):
    server_version = "ToolVaultTestMirror/1.0"

    def log_message(self, format, *args):  # noqa: D401  (silence default logging)
        return

    def do_GET(self):  # noqa: D401
        mirror: MirrorServer = self.server.mirror  # type: ignore[attr-defined]
        path = self.path.split("?", 1)[0]
        mirror.requests.append(
            RequestRecord(self.command, path, {key: value for key, value in self.headers.items()})
        )
        response = mirror.responses.get(path)
        if response is None:
            self.send_error(404, "No response registered for path")
            return
        body = response.serialise_body()
        self.send_response(response.status)
        for key, value in response.headers.items():
            self.send_header(key, value)
        if response.send_length:
            self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)
        self.close_connection = True


def _find_free_port(host: str = "127.0.0.1") -> Tuple[str, int]:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind((host, 0))
    addr, port = sock.getsockname()
    sock.close()
    return addr, port


class MirrorServer(contextlib.AbstractContextManager):
    """Loopback HTTP/1.1 server serving registered paths."""

    def __init__(self) -> None:
        self.responses: Dict[str, ResponseSpec] = {}
        self.requests: List[RequestRecord] = []
        self.host = ""
        self.port = 0
        self._server: Optional[_ThreadedHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "MirrorServer":
        self.host, self.port = _find_free_port()
        self._server = _ThreadedHTTPServer((self.host, self.port), _RequestHandler, mirror=self)
        self._thread = threading.Thread(target=self._server.serve_forever, name="ToolVaultTestMirror")
        self._thread.daemon = True
        self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def url(self, path: str) -> str:
        return f"http://{self.host}:{self.port}/{path.lstrip('/')}"

    def serve(self, path: str, response: ResponseSpec) -> None:
        self.responses["/" + path.lstrip("/")] = response


# --- collaborators -------------------------------------------------------------------


class MemoryLibrary:
    """Library whose contents are a set of ``(tool_id, version)`` pairs."""

    def __init__(self, installed: Sequence[Tuple[str, str]] = ()) -> None:
        self.installed: Set[Tuple[str, str]] = set(installed)
        self.exists_calls: List[Tuple[str, str]] = []

    def tool_exists(self, tool_id: str, version: str) -> bool:
        self.exists_calls.append((tool_id, version))
        return (tool_id, version) in self.installed

    def get_available_tools(self) -> List[str]:
        return sorted({tool_id for tool_id, _ in self.installed})

    def get_available_versions(self, tool_id: str) -> List[str]:
        return sorted(version for item, version in self.installed if item == tool_id)


class RecordingExtractor:
    """Extractor that records calls and installs into a :class:`MemoryLibrary`.

    ``install=False`` reports success without installing, to exercise the
    post-extraction library check.
    """

    def __init__(
        self,
        library: MemoryLibrary,
        *,
        fail_with: Optional[str] = None,
        install: bool = True,
    ) -> None:
        self.library = library
        self.fail_with = fail_with
        self.install = install
        self.calls: List[Tuple[Path, str, str]] = []
        self.payloads: List[bytes] = []

    def extract_to_library(self, archive_path: Path, tool_id: str, version: str) -> ExtractResult:
        self.calls.append((Path(archive_path), tool_id, version))
        self.payloads.append(Path(archive_path).read_bytes())
        if self.fail_with is not None:
            return ExtractResult(False, self.fail_with)
        if self.install:
            self.library.installed.add((tool_id, version))
        return ExtractResult(True)
