# === NAVMAP v1 ===
# {
#   "module": "ToolVault.Hydration.network.client",
#   "purpose": "Gate-checked HTTP GET and streaming download with bounded redirect following.",
#   "sections": [
#     {"id": "fetcherrorcode", "name": "FetchErrorCode", "anchor": "class-fetcherrorcode", "kind": "class"},
#     {"id": "fetchresult", "name": "FetchResult", "anchor": "class-fetchresult", "kind": "class"},
#     {"id": "downloadresult", "name": "DownloadResult", "anchor": "class-downloadresult", "kind": "class"},
#     {"id": "parse-header-lines", "name": "parse_header_lines", "anchor": "function-parse-header-lines", "kind": "function"},
#     {"id": "content-length", "name": "content_length", "anchor": "function-content-length", "kind": "function"},
#     {"id": "default-transport-factory", "name": "default_transport_factory", "anchor": "function-default-transport-factory", "kind": "function"},
#     {"id": "retrievalclient", "name": "RetrievalClient", "anchor": "class-retrievalclient", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Minimal HTTP retrieval client for manifests and tool archives.

Key design:
- **Gate first**: the offline gate is consulted before every connection,
  including each redirect hop; a refusal becomes ``network_blocked``.
- **Bounded phases**: one configurable timeout covers every poll phase
  (connect and awaiting the response head) of both ``get`` and ``download_to``.
- **Explicit redirects**: any 3xx is followed through ``Location`` in a loop
  bounded by ``HttpSettings.max_redirects``; the hop audit trail is returned.
- **Streaming**: downloads are written chunk by chunk to ``<dest>.part`` and
  renamed into place only once the body is complete.
- **Results, not exceptions**: every failure is reported through a
  :class:`FetchErrorCode` on the returned result.

Example:
    >>> client = RetrievalClient(OfflineGate())
    >>> result = client.get("https://mirror.example.org/manifest.json", reason="manifest_fetch")
    >>> result.success, result.status
    (True, 200)
"""

import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Tuple, Union

import httpx
from prometheus_client import Counter

from ..errors import TransportError
from ..policy.gates import OfflineGate
from ..settings import HttpSettings
from .redirect import (
    InvalidRedirectTarget,
    MaxRedirectsExceeded,
    MissingLocationHeader,
    RedirectError,
    format_audit_trail,
    is_redirect,
    resolve_location,
)
from .transport import SocketTransport, Transport, TransportStatus

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
TransportFactory = Callable[[], Transport]

_fetches = Counter(
    "toolvault_fetches_total",
    "Retrieval client requests by operation and outcome",
    ["operation", "outcome"],
)


class FetchErrorCode(str, Enum):
    """Failure categories reported by :class:`RetrievalClient`."""

    INVALID_URL = "invalid_url"
    UNSUPPORTED_SCHEME = "unsupported_scheme"
    NETWORK_BLOCKED = "network_blocked"
    CONNECT_FAILED = "connect_failed"
    NOT_CONNECTED = "not_connected"
    REQUEST_FAILED = "request_failed"
    REDIRECT_MISSING_LOCATION = "redirect_missing_location"
    REDIRECT_LIMIT_EXCEEDED = "redirect_limit_exceeded"
    HTTP_STATUS = "http_status"
    READ_FAILED = "read_failed"
    WRITE_FAILED = "write_failed"


@dataclass
class FetchResult:
    """Outcome of :meth:`RetrievalClient.get`."""

    success: bool
    status: int = 0
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    body: bytes = b""
    error_code: Optional[FetchErrorCode] = None
    error: str = ""
    final_url: str = ""
    redirects: List[Tuple[str, int]] = field(default_factory=list)


@dataclass
class DownloadResult:
    """Outcome of :meth:`RetrievalClient.download_to`."""

    success: bool
    status: int = 0
    path: Optional[Path] = None
    bytes_written: int = 0
    total_bytes: Optional[int] = None
    error_code: Optional[FetchErrorCode] = None
    error: str = ""
    final_url: str = ""
    redirects: List[Tuple[str, int]] = field(default_factory=list)


class _FetchFailure(Exception):
    """Internal signal carrying a failure code up to the public entry points."""

    def __init__(
        self,
        code: FetchErrorCode,
        message: str,
        *,
        status: int = 0,
        redirects: Optional[List[Tuple[str, int]]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.redirects = list(redirects or [])


@dataclass(frozen=True)
class _Target:
    host: str
    port: int
    use_tls: bool
    request_target: str
    host_header: str


@dataclass
class _Exchange:
    transport: Transport
    status: int
    headers: httpx.Headers
    final_url: str
    redirects: List[Tuple[str, int]]


def parse_header_lines(lines: Iterable[str]) -> httpx.Headers:
    """Build a case-insensitive header mapping from raw ``Name: value`` lines.

    Each line is split on its first colon; lines without one are ignored.
    """
    pairs: List[Tuple[str, str]] = []
    for line in lines:
        name, sep, value = line.partition(":")
        name = name.strip()
        if not sep or not name:
            continue
        pairs.append((name, value.strip()))
    return httpx.Headers(pairs)


def content_length(headers: httpx.Headers) -> Optional[int]:
    """Return the declared body length, or ``None`` when absent or unparseable."""
    raw = headers.get("content-length")
    if raw is None:
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    return value if value >= 0 else None


def default_transport_factory(settings: HttpSettings) -> TransportFactory:
    """Return a factory producing :class:`SocketTransport` instances for ``settings``."""

    def factory() -> Transport:
        return SocketTransport(
            timeout_sec=settings.timeout_sec,
            read_size=settings.chunk_size,
            verify_tls=settings.verify_tls,
        )

    return factory


class RetrievalClient:
    """Gate-checked HTTP client over a pollable :class:`Transport`.

    Args:
        gate: Offline gate consulted before every connection.
        settings: Timeout, redirect limit, chunk size and user agent.
        transport_factory: Zero-argument callable creating one transport per
            connection. Defaults to :class:`SocketTransport`.
    """

    def __init__(
        self,
        gate: OfflineGate,
        settings: Optional[HttpSettings] = None,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        self._gate = gate
        self._settings = settings or HttpSettings()
        self._transport_factory = transport_factory or default_transport_factory(self._settings)

    @property
    def settings(self) -> HttpSettings:
        return self._settings

    # --- public API ----------------------------------------------------------------

    def get(self, url: str, *, reason: str = "fetch") -> FetchResult:
        """Fetch ``url`` into memory, following redirects."""
        try:
            exchange = self._open(url, reason)
        except _FetchFailure as failure:
            _fetches.labels(operation="get", outcome=failure.code.value).inc()
            return FetchResult(
                success=False,
                status=failure.status,
                error_code=failure.code,
                error=failure.message,
                final_url=url,
                redirects=failure.redirects,
            )

        transport = exchange.transport
        try:
            if not 200 <= exchange.status <= 299:
                failure = self._status_failure(exchange)
                _fetches.labels(operation="get", outcome=failure.code.value).inc()
                return FetchResult(
                    success=False,
                    status=exchange.status,
                    headers=exchange.headers,
                    error_code=failure.code,
                    error=failure.message,
                    final_url=exchange.final_url,
                    redirects=exchange.redirects,
                )
            body = bytearray()
            try:
                for chunk in self._iter_body(transport):
                    body.extend(chunk)
            except _FetchFailure as failure:
                _fetches.labels(operation="get", outcome=failure.code.value).inc()
                return FetchResult(
                    success=False,
                    status=exchange.status,
                    headers=exchange.headers,
                    error_code=failure.code,
                    error=failure.message,
                    final_url=exchange.final_url,
                    redirects=exchange.redirects,
                )
        finally:
            transport.close()

        _fetches.labels(operation="get", outcome="success").inc()
        logger.debug(
            "fetch complete",
            extra={
                "stage": "fetch",
                "extra_fields": {"url": exchange.final_url, "bytes": len(body), "reason": reason},
            },
        )
        return FetchResult(
            success=True,
            status=exchange.status,
            headers=exchange.headers,
            body=bytes(body),
            final_url=exchange.final_url,
            redirects=exchange.redirects,
        )

    def download_to(
        self,
        url: str,
        dest_path: Union[str, Path],
        progress_callback: Optional[ProgressCallback] = None,
        *,
        reason: str = "archive_download",
    ) -> DownloadResult:
        """Stream ``url`` into ``dest_path``, reporting ``(downloaded, total)`` progress.

        When ``Content-Length`` is absent or unparseable the reported total
        equals the bytes downloaded so far.  The body is written to
        ``<dest_path>.part`` and renamed on success; the partial file is
        removed on any failure.
        """
        dest = Path(dest_path)
        part = dest.with_name(dest.name + ".part")

        try:
            exchange = self._open(url, reason)
        except _FetchFailure as failure:
            return self._download_failure(failure, url=url)

        transport = exchange.transport
        total = content_length(exchange.headers)
        downloaded = 0
        try:
            if not 200 <= exchange.status <= 299:
                return self._download_failure(self._status_failure(exchange), exchange=exchange)
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                handle = part.open("wb")
            except OSError as exc:
                return self._download_failure(
                    _FetchFailure(FetchErrorCode.WRITE_FAILED, f"cannot open {part}: {exc}"),
                    exchange=exchange,
                )
            try:
                with handle:
                    for chunk in self._iter_body(transport):
                        try:
                            handle.write(chunk)
                        except OSError as exc:
                            raise _FetchFailure(
                                FetchErrorCode.WRITE_FAILED, f"write to {part} failed: {exc}"
                            ) from exc
                        downloaded += len(chunk)
                        if progress_callback is not None:
                            progress_callback(downloaded, total if total is not None else downloaded)
                try:
                    os.replace(part, dest)
                except OSError as exc:
                    raise _FetchFailure(
                        FetchErrorCode.WRITE_FAILED, f"cannot move {part} to {dest}: {exc}"
                    ) from exc
            except _FetchFailure as failure:
                part.unlink(missing_ok=True)
                return self._download_failure(failure, exchange=exchange, downloaded=downloaded)
            except OSError as exc:
                part.unlink(missing_ok=True)
                return self._download_failure(
                    _FetchFailure(FetchErrorCode.WRITE_FAILED, f"write to {part} failed: {exc}"),
                    exchange=exchange,
                    downloaded=downloaded,
                )
        finally:
            transport.close()

        _fetches.labels(operation="download", outcome="success").inc()
        logger.info(
            "download complete",
            extra={
                "stage": "download",
                "extra_fields": {
                    "url": exchange.final_url,
                    "path": str(dest),
                    "bytes": downloaded,
                    "redirects": len(exchange.redirects) - 1,
                },
            },
        )
        return DownloadResult(
            success=True,
            status=exchange.status,
            path=dest,
            bytes_written=downloaded,
            total_bytes=total,
            final_url=exchange.final_url,
            redirects=exchange.redirects,
        )

    # --- internals -----------------------------------------------------------------

    def _download_failure(
        self,
        failure: _FetchFailure,
        *,
        url: str = "",
        exchange: Optional[_Exchange] = None,
        downloaded: int = 0,
    ) -> DownloadResult:
        _fetches.labels(operation="download", outcome=failure.code.value).inc()
        logger.warning(
            "download failed",
            extra={
                "stage": "download",
                "extra_fields": {"url": exchange.final_url if exchange else url, "error": failure.message},
            },
        )
        return DownloadResult(
            success=False,
            status=exchange.status if exchange else failure.status,
            bytes_written=downloaded,
            error_code=failure.code,
            error=failure.message,
            final_url=exchange.final_url if exchange else url,
            redirects=exchange.redirects if exchange else failure.redirects,
        )

    @staticmethod
    def _status_failure(exchange: _Exchange) -> _FetchFailure:
        return _FetchFailure(
            FetchErrorCode.HTTP_STATUS,
            f"HTTP status {exchange.status} from {exchange.final_url}",
            status=exchange.status,
            redirects=exchange.redirects,
        )

    def _open(self, url: str, reason: str) -> _Exchange:
        """Connect and follow redirects until a non-3xx response head arrives."""
        audit_trail: List[Tuple[str, int]] = []
        current = url
        hops = 0
        try:
            while True:
                target = self._parse_target(current)
                transport = self._exchange_once(target, current, reason)
                try:
                    status = transport.response_status()
                    headers = parse_header_lines(transport.response_headers())
                except TransportError as exc:
                    transport.close()
                    raise _FetchFailure(FetchErrorCode.REQUEST_FAILED, str(exc)) from exc
                audit_trail.append((current, status))

                if not is_redirect(status):
                    return _Exchange(transport, status, headers, current, audit_trail)

                transport.close()
                location = headers.get("location")
                if not location:
                    raise MissingLocationHeader(current, status, audit_trail)
                if hops >= self._settings.max_redirects:
                    raise MaxRedirectsExceeded(self._settings.max_redirects, audit_trail)
                next_url = resolve_location(current, location)
                hops += 1
                logger.debug(
                    "following redirect",
                    extra={
                        "stage": "fetch",
                        "extra_fields": {"from": current, "to": next_url, "status": status, "hop": hops},
                    },
                )
                current = next_url
        except MissingLocationHeader as exc:
            raise _FetchFailure(
                FetchErrorCode.REDIRECT_MISSING_LOCATION, str(exc), status=exc.status, redirects=audit_trail
            ) from exc
        except MaxRedirectsExceeded as exc:
            logger.warning(
                "redirect limit exceeded",
                extra={"stage": "fetch", "extra_fields": {"trail": format_audit_trail(audit_trail)}},
            )
            raise _FetchFailure(
                FetchErrorCode.REDIRECT_LIMIT_EXCEEDED, str(exc), redirects=audit_trail
            ) from exc
        except InvalidRedirectTarget as exc:
            raise _FetchFailure(FetchErrorCode.INVALID_URL, str(exc), redirects=audit_trail) from exc
        except RedirectError as exc:
            raise _FetchFailure(FetchErrorCode.REQUEST_FAILED, str(exc), redirects=audit_trail) from exc
        except _FetchFailure as failure:
            if not failure.redirects:
                failure.redirects = list(audit_trail)
            raise

    @staticmethod
    def _parse_target(url: str) -> _Target:
        try:
            parsed = httpx.URL(url)
        except (httpx.InvalidURL, TypeError) as exc:
            raise _FetchFailure(FetchErrorCode.INVALID_URL, f"invalid URL {url!r}: {exc}") from exc

        scheme = parsed.scheme.lower()
        if not scheme:
            raise _FetchFailure(FetchErrorCode.INVALID_URL, f"URL has no scheme: {url!r}")
        if scheme not in ("http", "https"):
            raise _FetchFailure(FetchErrorCode.UNSUPPORTED_SCHEME, f"unsupported scheme {scheme!r} in {url}")
        if not parsed.host:
            raise _FetchFailure(FetchErrorCode.INVALID_URL, f"URL has no host: {url!r}")

        use_tls = scheme == "https"
        port = parsed.port or (443 if use_tls else 80)
        host = parsed.host
        bracketed = f"[{host}]" if ":" in host else host
        host_header = bracketed if parsed.port is None else f"{bracketed}:{port}"
        request_target = parsed.raw_path.decode("ascii") or "/"
        return _Target(host, port, use_tls, request_target, host_header)

    def _exchange_once(self, target: _Target, url: str, reason: str) -> Transport:
        """Run one gated connect/request cycle and return a transport in ``BODY`` state."""
        decision = self._gate.guard_network_call(reason, host=target.host, port=target.port)
        if not decision.allowed:
            raise _FetchFailure(FetchErrorCode.NETWORK_BLOCKED, decision.error_message)

        transport = self._transport_factory()
        try:
            try:
                transport.connect(target.host, target.port, use_tls=target.use_tls)
            except TransportError as exc:
                raise _FetchFailure(FetchErrorCode.CONNECT_FAILED, f"connect to {url} failed: {exc}") from exc

            status = self._poll_while(transport, TransportStatus.CONNECTING)
            if status is not TransportStatus.CONNECTED:
                raise _FetchFailure(
                    FetchErrorCode.NOT_CONNECTED,
                    f"connection to {target.host}:{target.port} not established ({status.value})",
                )

            headers = [
                ("Host", target.host_header),
                ("User-Agent", self._settings.user_agent),
                ("Accept", "*/*"),
                ("Accept-Encoding", "identity"),
                ("Connection", "close"),
            ]
            try:
                transport.request("GET", target.request_target, headers)
            except TransportError as exc:
                raise _FetchFailure(FetchErrorCode.REQUEST_FAILED, f"request to {url} failed: {exc}") from exc

            status = self._poll_while(transport, TransportStatus.REQUESTING)
            if status is not TransportStatus.BODY:
                raise _FetchFailure(
                    FetchErrorCode.REQUEST_FAILED,
                    f"no response from {url} ({status.value})",
                )
        except BaseException:
            transport.close()
            raise
        return transport

    def _poll_while(self, transport: Transport, pending: TransportStatus) -> TransportStatus:
        """Poll until the status leaves ``pending`` or the phase deadline passes."""
        deadline = time.monotonic() + self._settings.timeout_sec
        status = transport.poll()
        while status is pending:
            if time.monotonic() >= deadline:
                logger.warning(
                    "transport phase timed out",
                    extra={
                        "stage": "fetch",
                        "extra_fields": {"phase": pending.value, "timeout_sec": self._settings.timeout_sec},
                    },
                )
                break
            if self._settings.poll_interval_sec:
                time.sleep(self._settings.poll_interval_sec)
            status = transport.poll()
        return status

    @staticmethod
    def _iter_body(transport: Transport) -> Iterator[bytes]:
        while True:
            try:
                chunk = transport.read_chunk()
            except TransportError as exc:
                raise _FetchFailure(FetchErrorCode.READ_FAILED, f"body read failed: {exc}") from exc
            if not chunk:
                return
            yield chunk


__all__ = [
    "FetchErrorCode",
    "FetchResult",
    "DownloadResult",
    "ProgressCallback",
    "TransportFactory",
    "RetrievalClient",
    "parse_header_lines",
    "content_length",
    "default_transport_factory",
]
