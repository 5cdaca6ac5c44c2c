# === NAVMAP v1 ===
# {
#   "module": "ToolVault.Hydration.hydrator",
#   "purpose": "Drive requested (tool, version) pairs to Installed or Failed and aggregate the batch",
#   "sections": [
#     {"id": "requests", "name": "ToolRequest", "anchor": "REQ", "kind": "api"},
#     {"id": "outcomes", "name": "ToolState / ToolOutcome / HydrationReport", "anchor": "OUT", "kind": "api"},
#     {"id": "manifest-load", "name": "ManifestLoad", "anchor": "MLD", "kind": "api"},
#     {"id": "hydrator", "name": "Hydrator", "anchor": "HYD", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Hydration orchestrator.

A run is gated twice at the batch boundary, first by the offline gate and then
by manifest availability and validity.  If either gate fails every requested
tool is reported failed and no per-tool work starts.  Otherwise each tool walks
the state machine below, sequentially and in request order::

    REQUESTED -> (already installed) -> INSTALLED
    REQUESTED -> LOOKUP -> STAGE -> VERIFY -> EXTRACT -> CONFIRM -> INSTALLED

Any stage may end in FAILED(reason).  An exception raised by the library or the
extractor becomes a failure of the stage that called it.

Hash and size checks always finish before extraction, and extraction always
finishes before the library is re-queried.  A per-tool failure never stops the
batch.  The staged archive is removed once the tool reaches a terminal state.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar, Union

from prometheus_client import Counter

from .cancellation import CancellationToken, CancellationTokenGroup
from .checksums import verify_sha256
from .errors import HydrationInProgressError
from .events import EventDispatcher, HydrationEvent, HydrationEventType
from .io_safe import resolve_under_root, staging_path
from .library import ArchiveExtractor, Extractor, Library, LocalLibrary
from .manifest import Manifest, ManifestKind, ToolEntry, parse
from .network.client import RetrievalClient, TransportFactory
from .policy.gates import OfflineGate
from .settings import HydrationSettings, ToolVaultConfig
from .sources import SourceKind, classify, copy_file, local_path_from, read_source_text

logger = logging.getLogger("ToolVault.Hydration")

_tool_outcomes = Counter(
    "toolvault_tool_outcomes_total",
    "Per-tool hydration outcomes",
    ["outcome"],
)

CANCELLED = "cancelled"

_T = TypeVar("_T")


# ============================================================================
# Requests (REQ)
# ============================================================================


@dataclass(frozen=True)
class ToolRequest:
    tool_id: str
    version: str

    @property
    def key(self) -> Tuple[str, str]:
        return (self.tool_id, self.version)

    @classmethod
    def parse(cls, text: str) -> "ToolRequest":
        """Parse ``"id@version"``; raises ``ValueError`` when either half is empty."""
        tool_id, sep, version = text.strip().rpartition("@")
        if not sep or not tool_id.strip() or not version.strip():
            raise ValueError(f"expected TOOL@VERSION, got {text!r}")
        return cls(tool_id.strip(), version.strip())

    def __str__(self) -> str:
        return f"{self.tool_id}@{self.version}"


RequestLike = Union[ToolRequest, Tuple[str, str], Mapping[str, str], str]


def _coerce_request(item: RequestLike) -> ToolRequest:
    if isinstance(item, ToolRequest):
        return item
    if isinstance(item, str):
        return ToolRequest.parse(item)
    if isinstance(item, Mapping):
        return ToolRequest(str(item["id"]), str(item["version"]))
    tool_id, version = item
    return ToolRequest(str(tool_id), str(version))


# ============================================================================
# Outcomes (OUT)
# ============================================================================


class ToolState(str, Enum):
    REQUESTED = "requested"
    LOOKUP = "lookup"
    STAGE = "stage"
    VERIFY = "verify"
    EXTRACT = "extract"
    CONFIRM = "confirm"
    INSTALLED = "installed"
    FAILED = "failed"


@dataclass(frozen=True)
class ToolOutcome:
    """Terminal result for one requested tool.

    ``failed_at`` names the stage that failed; ``skipped`` marks a tool that
    was already installed and was not staged.
    """

    tool_id: str
    version: str
    state: ToolState
    reason: str = ""
    failed_at: Optional[ToolState] = None
    skipped: bool = False

    @property
    def success(self) -> bool:
        return self.state is ToolState.INSTALLED


@dataclass
class HydrationReport:
    success: bool
    installed_count: int
    failed_count: int
    failed_tools: List[Tuple[str, str]] = field(default_factory=list)
    outcomes: List[ToolOutcome] = field(default_factory=list)

    @classmethod
    def from_outcomes(cls, outcomes: Sequence[ToolOutcome]) -> "HydrationReport":
        failed = [(item.tool_id, item.version) for item in outcomes if not item.success]
        return cls(
            success=not failed,
            installed_count=len(outcomes) - len(failed),
            failed_count=len(failed),
            failed_tools=failed,
            outcomes=list(outcomes),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["failed_tools"] = [f"{tool_id}@{version}" for tool_id, version in self.failed_tools]
        payload["outcomes"] = [
            {
                "tool_id": item.tool_id,
                "version": item.version,
                "success": item.success,
                "state": item.state.value,
                "failed_at": item.failed_at.value if item.failed_at else None,
                "skipped": item.skipped,
                "reason": item.reason,
            }
            for item in self.outcomes
        ]
        return payload


# ============================================================================
# Manifest loading (MLD)
# ============================================================================


@dataclass(frozen=True)
class ManifestLoad:
    """Result of :meth:`Hydrator.load_manifest`."""

    success: bool
    manifest: Optional[Manifest] = None
    errors: Tuple[str, ...] = ()
    error: str = ""
    base_dir: Optional[Path] = None


@dataclass(frozen=True)
class _Staged:
    success: bool
    path: Optional[Path] = None
    error: str = ""


class _StageFailure(Exception):
    def __init__(self, state: ToolState, reason: str) -> None:
        super().__init__(reason)
        self.state = state
        self.reason = reason


# ============================================================================
# Orchestrator (HYD)
# ============================================================================


class Hydrator:
    """Install requested tools from a manifest into a library.

    Args:
        gate: Offline gate for the batch check and every network call.
        library: Queried before staging and after extraction.
        extractor: Installs a verified staged archive.
        settings: Manifest source, mirror root and staging directory.
        client: Retrieval client for remote manifests and archives.
        dispatcher: Event dispatcher; a new one bound to the constructing
            thread is created when omitted.
        manifest_kind: Repository (default) or stack manifests.
    """

    def __init__(
        self,
        gate: OfflineGate,
        library: Library,
        extractor: Extractor,
        *,
        settings: Optional[HydrationSettings] = None,
        client: Optional[RetrievalClient] = None,
        dispatcher: Optional[EventDispatcher] = None,
        manifest_kind: ManifestKind = ManifestKind.REPOSITORY,
    ) -> None:
        self._gate = gate
        self._library = library
        self._extractor = extractor
        self._settings = settings or HydrationSettings()
        self._client = client or RetrievalClient(gate)
        self.dispatcher = dispatcher or EventDispatcher()
        self._manifest_kind = manifest_kind
        self._run_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._tokens = CancellationTokenGroup()

    @classmethod
    def from_config(
        cls,
        config: ToolVaultConfig,
        *,
        library: Optional[Library] = None,
        extractor: Optional[Extractor] = None,
        transport_factory: Optional[TransportFactory] = None,
        dispatcher: Optional[EventDispatcher] = None,
        manifest_kind: ManifestKind = ManifestKind.REPOSITORY,
    ) -> "Hydrator":
        """Wire a hydrator from configuration, defaulting to the filesystem library."""
        gate = OfflineGate(config.policy)
        local_library = LocalLibrary(config.hydration.library_dir)
        return cls(
            gate,
            library or local_library,
            extractor or ArchiveExtractor(local_library),
            settings=config.hydration,
            client=RetrievalClient(gate, config.http, transport_factory),
            dispatcher=dispatcher,
            manifest_kind=manifest_kind,
        )

    @property
    def gate(self) -> OfflineGate:
        return self._gate

    @property
    def settings(self) -> HydrationSettings:
        return self._settings

    # --- public API ----------------------------------------------------------------

    def is_running(self) -> bool:
        return self._run_lock.locked()

    def hydrate(self, requested: Iterable[RequestLike]) -> HydrationReport:
        """Run one hydration batch on the calling thread.

        Raises:
            HydrationInProgressError: If a run is already active on this instance.
        """
        requests = [_coerce_request(item) for item in requested]
        if not self._run_lock.acquire(blocking=False):
            raise HydrationInProgressError("a hydration run is already in progress")
        try:
            return self._run(requests)
        finally:
            self._run_lock.release()

    def start_background(self, requested: Iterable[RequestLike]) -> Optional["Future[HydrationReport]"]:
        """Run the batch on the single background worker.

        Returns ``None`` without starting anything when a run is already
        active.  Events from the worker are queued on :attr:`dispatcher` and
        delivered when the primary thread calls ``dispatcher.drain()``.
        """
        requests = [_coerce_request(item) for item in requested]
        if not self._run_lock.acquire(blocking=False):
            logger.info("hydration already running; background start ignored", extra={"stage": "batch"})
            return None
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="toolvault-hydrate")
        try:
            return self._executor.submit(self._run_and_release, requests)
        except RuntimeError:
            self._run_lock.release()
            raise

    def cancel(self, tool_id: str, version: str) -> bool:
        """Stop reporting ``tool_id``/``version``; it fails with ``cancelled`` at its next stage."""
        cancelled = self._tokens.cancel((tool_id, version))
        if cancelled:
            logger.info("tool cancelled", extra={"stage": "cancel", "tool_id": tool_id})
        return cancelled

    def cancel_all(self) -> None:
        self._tokens.cancel_all()
        logger.info("hydration cancelled", extra={"stage": "cancel"})

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def load_manifest(self, source: Optional[str] = None) -> ManifestLoad:
        """Read and validate the manifest from ``source`` or the configured source."""
        location = source or self._settings.manifest_source
        if not location:
            return ManifestLoad(False, error="manifest source not configured")

        text = read_source_text(location, self._client)
        if not text.success:
            logger.warning(
                "manifest unavailable",
                extra={"stage": "manifest", "extra_fields": {"source": location, "error": text.error}},
            )
            return ManifestLoad(False, error=text.error)

        manifest, errors = parse(text.text, self._manifest_kind)
        if errors:
            logger.warning(
                "manifest rejected",
                extra={"stage": "manifest", "extra_fields": {"source": location, "errors": errors}},
            )
            return ManifestLoad(
                False,
                manifest=manifest,
                errors=tuple(errors),
                error=f"manifest invalid: {', '.join(errors)}",
                base_dir=text.base_dir,
            )
        return ManifestLoad(True, manifest=manifest, base_dir=text.base_dir)

    # --- batch ---------------------------------------------------------------------

    def _run_and_release(self, requests: List[ToolRequest]) -> HydrationReport:
        try:
            return self._run(requests)
        finally:
            self._run_lock.release()

    def _run(self, requests: List[ToolRequest]) -> HydrationReport:
        self._tokens = CancellationTokenGroup()
        tokens = {request.key: self._tokens.create_token(request.key) for request in requests}
        logger.info(
            "hydration started",
            extra={"stage": "batch", "extra_fields": {"requested": [str(item) for item in requests]}},
        )

        decision = self._gate.guard_network_call("hydrate")
        if not decision.allowed:
            outcomes = self._fail_all(requests, f"network_blocked: {decision.error_message}")
        else:
            load = self.load_manifest()
            if not load.success or load.manifest is None:
                outcomes = self._fail_all(requests, f"manifest_unavailable: {load.error}")
            else:
                mirror_root = self._settings.mirror_root or load.base_dir
                outcomes = [
                    self._hydrate_one(request, load.manifest, mirror_root, tokens[request.key])
                    for request in requests
                ]

        report = HydrationReport.from_outcomes(outcomes)
        logger.info(
            "hydration finished",
            extra={
                "stage": "batch",
                "extra_fields": {
                    "success": report.success,
                    "installed": report.installed_count,
                    "failed": report.failed_count,
                },
            },
        )
        self.dispatcher.emit(HydrationEvent(HydrationEventType.BATCH_COMPLETED, success=report.success, report=report))
        return report

    def _fail_all(self, requests: Sequence[ToolRequest], reason: str) -> List[ToolOutcome]:
        logger.warning("hydration batch rejected", extra={"stage": "batch", "extra_fields": {"reason": reason}})
        outcomes = []
        for request in requests:
            outcome = ToolOutcome(
                request.tool_id,
                request.version,
                ToolState.FAILED,
                reason=reason,
                failed_at=ToolState.REQUESTED,
            )
            self._complete(outcome)
            outcomes.append(outcome)
        return outcomes

    def _complete(self, outcome: ToolOutcome) -> None:
        if outcome.skipped:
            _tool_outcomes.labels(outcome="skipped").inc()
        else:
            _tool_outcomes.labels(outcome="installed" if outcome.success else "failed").inc()
        logger.log(
            logging.INFO if outcome.success else logging.WARNING,
            "tool %s",
            "installed" if outcome.success else "failed",
            extra={
                "stage": "tool",
                "tool_id": outcome.tool_id,
                "extra_fields": {"version": outcome.version, "reason": outcome.reason},
            },
        )
        self.dispatcher.emit(
            HydrationEvent(
                HydrationEventType.TOOL_COMPLETED,
                tool_id=outcome.tool_id,
                version=outcome.version,
                success=outcome.success,
                reason=outcome.reason,
            )
        )

    # --- per tool ------------------------------------------------------------------

    def _hydrate_one(
        self,
        request: ToolRequest,
        manifest: Manifest,
        mirror_root: Optional[Path],
        token: CancellationToken,
    ) -> ToolOutcome:
        self.dispatcher.emit(
            HydrationEvent(HydrationEventType.TOOL_STARTED, tool_id=request.tool_id, version=request.version)
        )
        try:
            outcome = self._process(request, manifest, mirror_root, token)
        except _StageFailure as failure:
            outcome = ToolOutcome(
                request.tool_id,
                request.version,
                ToolState.FAILED,
                reason=failure.reason,
                failed_at=failure.state,
            )
        self._complete(outcome)
        return outcome

    @staticmethod
    def _call(state: ToolState, label: str, func: Callable[..., _T], *args: Any) -> _T:
        """Invoke a library or extractor method, turning any exception into a stage failure."""
        try:
            return func(*args)
        except Exception as exc:
            logger.exception(
                "%s raised during %s",
                getattr(func, "__qualname__", func),
                state.value,
                extra={"stage": state.value},
            )
            raise _StageFailure(state, f"{label}: {exc}") from exc

    @staticmethod
    def _checkpoint(token: CancellationToken, state: ToolState) -> None:
        if token.is_cancelled():
            raise _StageFailure(state, CANCELLED)

    def _process(
        self,
        request: ToolRequest,
        manifest: Manifest,
        mirror_root: Optional[Path],
        token: CancellationToken,
    ) -> ToolOutcome:
        self._checkpoint(token, ToolState.REQUESTED)
        installed = self._call(
            ToolState.REQUESTED, "library_failed", self._library.tool_exists, request.tool_id, request.version
        )
        if installed:
            return ToolOutcome(
                request.tool_id,
                request.version,
                ToolState.INSTALLED,
                reason="already_installed",
                skipped=True,
            )

        entry = manifest.lookup(request.tool_id, request.version)
        if entry is None:
            raise _StageFailure(ToolState.LOOKUP, f"not_in_manifest: {request}")

        self._checkpoint(token, ToolState.STAGE)
        staged = self._stage(request, entry, mirror_root, token)
        if not staged.success or staged.path is None:
            raise _StageFailure(ToolState.STAGE, staged.error)

        try:
            self._checkpoint(token, ToolState.VERIFY)
            self._verify(entry, staged.path)

            self._checkpoint(token, ToolState.EXTRACT)
            result = self._call(
                ToolState.EXTRACT,
                "extract_failed",
                self._extractor.extract_to_library,
                staged.path,
                request.tool_id,
                request.version,
            )
            if not result.success:
                raise _StageFailure(ToolState.EXTRACT, f"extract_failed: {result.error_message}")
        finally:
            self._discard(staged.path)

        confirmed = self._call(
            ToolState.CONFIRM, "library_failed", self._library.tool_exists, request.tool_id, request.version
        )
        if not confirmed:
            raise _StageFailure(ToolState.CONFIRM, "not_in_library_after_extract")
        return ToolOutcome(request.tool_id, request.version, ToolState.INSTALLED)

    def _verify(self, entry: ToolEntry, path: Path) -> None:
        if entry.size is not None:
            try:
                actual = path.stat().st_size
            except OSError as exc:
                raise _StageFailure(ToolState.VERIFY, f"read_failed: {exc}") from exc
            if actual != entry.size:
                raise _StageFailure(
                    ToolState.VERIFY, f"size_mismatch: expected {entry.size} bytes, got {actual}"
                )
        if entry.sha256:
            verification = verify_sha256(path, entry.sha256)
            if not verification.success:
                raise _StageFailure(ToolState.VERIFY, f"{verification.error_code}: {verification.error}")

    def _stage(
        self,
        request: ToolRequest,
        entry: ToolEntry,
        mirror_root: Optional[Path],
        token: CancellationToken,
    ) -> _Staged:
        # only archive_url may name a remote or local source; archive_path and
        # stack path are always confined to the mirror root
        if entry.archive_url:
            location = entry.archive_url.strip()
            kind = classify(location)
        else:
            location = (entry.archive_path or entry.path or "").strip()
            kind = SourceKind.RELATIVE
        dest = staging_path(self._settings.staging_dir, request.tool_id, request.version, location)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.unlink(missing_ok=True)
        except OSError as exc:
            return _Staged(False, error=f"staging_failed: {exc}")

        def relay(downloaded: int, total: int) -> None:
            if not token.is_cancelled():
                self.dispatcher.emit(
                    HydrationEvent(
                        HydrationEventType.TOOL_PROGRESS,
                        tool_id=request.tool_id,
                        version=request.version,
                        downloaded=downloaded,
                        total=total,
                    )
                )

        if kind is SourceKind.REMOTE:
            download = self._client.download_to(location, dest, relay, reason="archive_download")
            if not download.success:
                code = download.error_code.value if download.error_code else "download_failed"
                return _Staged(False, error=f"{code}: {download.error}")
            return _Staged(True, path=dest)

        if kind is SourceKind.LOCAL:
            source = local_path_from(location)
        else:
            if mirror_root is None:
                return _Staged(False, error="mirror_root_unset: relative archive path needs a mirror root")
            resolved = resolve_under_root(mirror_root, location)
            if not resolved.success or resolved.full_path is None:
                return _Staged(False, error=f"path_rejected: {resolved.error}")
            source = Path(resolved.full_path)

        copied = copy_file(source, dest)
        if not copied.success:
            return _Staged(False, error=f"copy_failed: {copied.error}")
        relay(copied.bytes_copied, copied.bytes_copied)
        return _Staged(True, path=dest)

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            logger.warning("unable to remove staged archive", extra={"stage": "cleanup", "extra_fields": {"path": str(path)}})


__all__ = [
    "ToolRequest",
    "ToolState",
    "ToolOutcome",
    "HydrationReport",
    "ManifestLoad",
    "Hydrator",
    "CANCELLED",
]
