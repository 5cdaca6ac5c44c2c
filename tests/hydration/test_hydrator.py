"""Hydration orchestrator: batch gating, per-tool state machine and events."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest
from hydration_helpers import build_zip, sha256_hex, write_manifest

from ToolVault.Hydration.errors import HydrationInProgressError
from ToolVault.Hydration.events import HydrationEventType
from ToolVault.Hydration.hydrator import CANCELLED, HydrationReport, ToolOutcome, ToolRequest, ToolState
from ToolVault.Hydration.library import ArchiveExtractor, LocalLibrary
from ToolVault.Hydration.manifest import ManifestKind
from ToolVault.Hydration.policy.gates import OfflineGate
from ToolVault.Hydration.settings import OfflinePolicy
from ToolVault.Hydration.testing import MemoryLibrary, RecordingExtractor, ScriptedResponse

PAYLOAD = b"godot-4.3-archive-bytes"


def _archive(mirror: Path, name: str = "godot-4.3.zip", payload: bytes = PAYLOAD) -> Path:
    path = mirror / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)
    return path


def _record(hydrator):
    events = []
    hydrator.dispatcher.subscribe(events.append)
    return events


class TestRequests:
    def test_parse(self):
        assert ToolRequest.parse(" godot@4.3 ") == ToolRequest("godot", "4.3")
        assert str(ToolRequest("godot", "4.3")) == "godot@4.3"

    @pytest.mark.parametrize("text", ["godot", "@4.3", "godot@", ""])
    def test_parse_rejects(self, text):
        with pytest.raises(ValueError):
            ToolRequest.parse(text)

    def test_report_serialisation(self):
        report = HydrationReport.from_outcomes(
            [
                ToolOutcome("a", "1", ToolState.INSTALLED),
                ToolOutcome("b", "2", ToolState.FAILED, reason="not_in_manifest: b@2", failed_at=ToolState.LOOKUP),
            ]
        )
        payload = report.to_dict()
        assert payload["success"] is False
        assert payload["installed_count"] == 1
        assert payload["failed_tools"] == ["b@2"]
        assert payload["outcomes"][1]["failed_at"] == "lookup"


class TestLocalArchives:
    def test_file_url_with_matching_digest(self, tmp_path, mirror, make_hydrator, extractor, library):
        archive = _archive(mirror)
        manifest = write_manifest(
            tmp_path / "manifest.json",
            [{"id": "godot", "version": "4.3", "archive_url": archive.as_uri(), "sha256": sha256_hex(PAYLOAD)}],
        )
        report = make_hydrator(str(manifest)).hydrate([("godot", "4.3")])
        assert report.success
        assert (report.installed_count, report.failed_count) == (1, 0)
        assert extractor.payloads == [PAYLOAD]
        assert ("godot", "4.3") in library.installed
        assert list((tmp_path / "staging").iterdir()) == []

    def test_digest_mismatch_never_extracts(self, tmp_path, mirror, make_hydrator, extractor):
        archive = _archive(mirror)
        manifest = write_manifest(
            tmp_path / "manifest.json",
            [{"id": "godot", "version": "4.3", "archive_url": archive.as_uri(), "sha256": sha256_hex(b"other")}],
        )
        report = make_hydrator(str(manifest)).hydrate(["godot@4.3"])
        assert not report.success
        assert report.failed_tools == [("godot", "4.3")]
        outcome = report.outcomes[0]
        assert outcome.failed_at is ToolState.VERIFY
        assert outcome.reason.startswith("sha256_mismatch")
        assert extractor.calls == []
        assert list((tmp_path / "staging").iterdir()) == []

    def test_size_checked_before_digest(self, tmp_path, mirror, make_hydrator, extractor):
        archive = _archive(mirror)
        manifest = write_manifest(
            tmp_path / "manifest.json",
            [
                {
                    "id": "godot",
                    "version": "4.3",
                    "archive_url": str(archive),
                    "size": len(PAYLOAD) + 1,
                    "sha256": sha256_hex(b"other"),
                }
            ],
        )
        outcome = make_hydrator(str(manifest)).hydrate(["godot@4.3"]).outcomes[0]
        assert outcome.reason == f"size_mismatch: expected {len(PAYLOAD) + 1} bytes, got {len(PAYLOAD)}"
        assert extractor.calls == []

    def test_missing_local_archive(self, tmp_path, make_hydrator):
        manifest = write_manifest(
            tmp_path / "manifest.json",
            [{"id": "godot", "version": "4.3", "archive_url": str(tmp_path / "absent.zip")}],
        )
        outcome = make_hydrator(str(manifest)).hydrate(["godot@4.3"]).outcomes[0]
        assert outcome.failed_at is ToolState.STAGE
        assert outcome.reason.startswith("copy_failed:")


class TestRelativeArchives:
    def test_manifest_directory_is_default_mirror_root(self, mirror, make_hydrator, extractor):
        _archive(mirror / "godot", "4.3.zip")
        manifest = write_manifest(
            mirror / "manifest.json", [{"id": "godot", "version": "4.3", "archive_path": "godot/4.3.zip"}]
        )
        report = make_hydrator(str(manifest)).hydrate(["godot@4.3"])
        assert report.success, report.outcomes[0].reason
        staged = extractor.calls[0][0]
        assert staged.name.startswith("godot-4.3-")
        assert staged.suffix == ".zip"
        assert extractor.payloads == [PAYLOAD]

    def test_configured_mirror_root_wins(self, tmp_path, mirror, make_hydrator):
        _archive(mirror, "tool.zip")
        manifest = write_manifest(
            tmp_path / "elsewhere" / "manifest.json", [{"id": "t", "version": "1", "archive_path": "tool.zip"}]
        )
        assert make_hydrator(str(manifest), mirror_root=mirror).hydrate(["t@1"]).success

    def test_traversal_rejected(self, tmp_path, mirror, make_hydrator, extractor):
        (tmp_path / "secret.zip").write_bytes(b"secret")
        manifest = write_manifest(
            mirror / "manifest.json", [{"id": "t", "version": "1", "archive_path": "../secret.zip"}]
        )
        outcome = make_hydrator(str(manifest)).hydrate(["t@1"]).outcomes[0]
        assert outcome.reason == "path_rejected: escapes_root"
        assert extractor.calls == []

    @pytest.mark.parametrize(
        ("kind", "field"), [(ManifestKind.REPOSITORY, "archive_path"), (ManifestKind.STACK, "path")]
    )
    @pytest.mark.parametrize("as_uri", [False, True])
    def test_location_outside_mirror_rejected(self, tmp_path, mirror, make_hydrator, extractor, kind, field, as_uri):
        outside = _archive(tmp_path / "outside", "secret.zip")
        location = outside.as_uri() if as_uri else str(outside)
        manifest = write_manifest(mirror / "manifest.json", [{"id": "t", "version": "1", field: location}])
        outcome = make_hydrator(str(manifest), manifest_kind=kind).hydrate(["t@1"]).outcomes[0]
        assert outcome.failed_at is ToolState.STAGE
        assert outcome.reason == "path_rejected: relative_is_absolute"
        assert extractor.calls == []

    def test_remote_manifest_needs_mirror_root(self, network, make_hydrator):
        network.add(
            "http://mirror.test/manifest.json",
            ScriptedResponse(
                body=b'{"schema_version": 1, "name": "m", "tools": [{"id": "t", "version": "1", "archive_path": "t.zip"}]}'
            ),
        )
        outcome = make_hydrator("http://mirror.test/manifest.json").hydrate(["t@1"]).outcomes[0]
        assert outcome.reason.startswith("mirror_root_unset:")


class TestRemoteArchives:
    def test_progress_events_relayed(self, tmp_path, network, make_hydrator):
        body = b"0123456789ab"
        network.add("http://mirror.test/godot.zip", ScriptedResponse(body=body, headers=["Content-Length: 12"]))
        manifest = write_manifest(
            tmp_path / "manifest.json",
            [{"id": "godot", "version": "4.3", "archive_url": "http://mirror.test/godot.zip", "sha256": sha256_hex(body)}],
        )
        hydrator = make_hydrator(str(manifest))
        events = _record(hydrator)
        assert hydrator.hydrate(["godot@4.3"]).success
        progress = [(e.downloaded, e.total) for e in events if e.type is HydrationEventType.TOOL_PROGRESS]
        assert progress == [(4, 12), (8, 12), (12, 12)]
        assert [e.type for e in events][0] is HydrationEventType.TOOL_STARTED
        assert events[-1].type is HydrationEventType.BATCH_COMPLETED

    def test_download_failure_reason(self, tmp_path, network, make_hydrator):
        manifest = write_manifest(
            tmp_path / "manifest.json",
            [{"id": "godot", "version": "4.3", "archive_url": "http://mirror.test/missing.zip"}],
        )
        outcome = make_hydrator(str(manifest)).hydrate(["godot@4.3"]).outcomes[0]
        assert outcome.failed_at is ToolState.STAGE
        assert outcome.reason.startswith("http_status:")


class TestBatchGates:
    def test_offline_gate_fails_everything_without_network(self, tmp_path, network, make_hydrator, library):
        manifest = write_manifest(tmp_path / "manifest.json", [{"id": "a", "version": "1", "archive_path": "a.zip"}])
        hydrator = make_hydrator(str(manifest), gate=OfflineGate(OfflinePolicy(offline_mode=True)))
        events = _record(hydrator)
        report = hydrator.hydrate(["a@1", "b@2"])
        assert report.failed_count == 2
        assert all(item.reason.startswith("network_blocked:") for item in report.outcomes)
        assert network.call_count == 0
        assert library.exists_calls == []
        assert HydrationEventType.TOOL_STARTED not in [e.type for e in events]

    def test_invalid_manifest_fails_everything(self, tmp_path, make_hydrator, extractor):
        manifest = write_manifest(
            tmp_path / "manifest.json", [{"id": "a", "version": "1", "archive_path": "a.zip"}], schema_version=2
        )
        report = make_hydrator(str(manifest)).hydrate(["a@1"])
        assert report.outcomes[0].reason.startswith("manifest_unavailable: manifest invalid")
        assert "schema_version_unsupported" in report.outcomes[0].reason
        assert extractor.calls == []

    def test_unreadable_manifest(self, tmp_path, make_hydrator):
        report = make_hydrator(str(tmp_path / "nope.json")).hydrate(["a@1"])
        assert report.outcomes[0].reason.startswith("manifest_unavailable: manifest not found")

    def test_unconfigured_source(self, make_hydrator):
        report = make_hydrator(None).hydrate(["a@1"])
        assert report.outcomes[0].reason == "manifest_unavailable: manifest source not configured"


class _RaisingExtractor(RecordingExtractor):
    def extract_to_library(self, archive_path, tool_id, version):
        if tool_id == "bad":
            raise OSError("disk full")
        return super().extract_to_library(archive_path, tool_id, version)


class _RaisingLibrary(MemoryLibrary):
    def tool_exists(self, tool_id, version):
        if tool_id == "locked":
            raise PermissionError("library locked")
        return super().tool_exists(tool_id, version)


class TestPerTool:
    def test_already_installed_is_skipped(self, tmp_path, mirror, make_hydrator, library, extractor):
        library.installed.add(("godot", "4.3"))
        manifest = write_manifest(mirror / "manifest.json", [{"id": "godot", "version": "4.3", "archive_path": "x.zip"}])
        report = make_hydrator(str(manifest)).hydrate(["godot@4.3"])
        assert report.success
        assert report.outcomes[0].skipped
        assert extractor.calls == []
        assert not (tmp_path / "staging").exists()

    def test_failure_does_not_abort_batch(self, mirror, make_hydrator):
        _archive(mirror, "b.zip")
        manifest = write_manifest(
            mirror / "manifest.json",
            [{"id": "a", "version": "1", "archive_path": "a.zip"}, {"id": "b", "version": "2", "archive_path": "b.zip"}],
        )
        report = make_hydrator(str(manifest)).hydrate(["missing@0", "a@1", "b@2"])
        assert [(o.tool_id, o.success) for o in report.outcomes] == [("missing", False), ("a", False), ("b", True)]
        assert report.outcomes[0].reason == "not_in_manifest: missing@0"
        assert report.failed_tools == [("missing", "0"), ("a", "1")]

    def test_extractor_failure(self, mirror, make_hydrator, library):
        _archive(mirror, "a.zip")
        manifest = write_manifest(mirror / "manifest.json", [{"id": "a", "version": "1", "archive_path": "a.zip"}])
        extractor = RecordingExtractor(library, fail_with="corrupt archive")
        outcome = make_hydrator(str(manifest), extractor=extractor).hydrate(["a@1"]).outcomes[0]
        assert outcome.reason == "extract_failed: corrupt archive"

    def test_raising_extractor_does_not_abort_batch(self, tmp_path, mirror, make_hydrator, library):
        _archive(mirror, "bad.zip")
        _archive(mirror, "good.zip")
        manifest = write_manifest(
            mirror / "manifest.json",
            [
                {"id": "bad", "version": "1", "archive_path": "bad.zip"},
                {"id": "good", "version": "1", "archive_path": "good.zip"},
            ],
        )
        hydrator = make_hydrator(str(manifest), extractor=_RaisingExtractor(library))
        events = _record(hydrator)
        report = hydrator.hydrate(["bad@1", "good@1"])
        bad, good = report.outcomes
        assert bad.failed_at is ToolState.EXTRACT
        assert bad.reason == "extract_failed: disk full"
        assert good.success
        assert report.failed_tools == [("bad", "1")]
        assert events[-1].type is HydrationEventType.BATCH_COMPLETED
        assert list((tmp_path / "staging").iterdir()) == []

    def test_raising_library_fails_only_that_tool(self, mirror, make_hydrator):
        _archive(mirror, "good.zip")
        manifest = write_manifest(
            mirror / "manifest.json", [{"id": "good", "version": "1", "archive_path": "good.zip"}]
        )
        library = _RaisingLibrary()
        hydrator = make_hydrator(str(manifest), library=library, extractor=RecordingExtractor(library))
        report = hydrator.hydrate(["locked@1", "good@1"])
        locked, good = report.outcomes
        assert locked.failed_at is ToolState.REQUESTED
        assert locked.reason == "library_failed: library locked"
        assert good.success

    def test_library_reconfirmed_after_extract(self, mirror, make_hydrator, library):
        _archive(mirror, "a.zip")
        manifest = write_manifest(mirror / "manifest.json", [{"id": "a", "version": "1", "archive_path": "a.zip"}])
        extractor = RecordingExtractor(library, install=False)
        outcome = make_hydrator(str(manifest), extractor=extractor).hydrate(["a@1"]).outcomes[0]
        assert outcome.failed_at is ToolState.CONFIRM
        assert outcome.reason == "not_in_library_after_extract"
        assert library.exists_calls == [("a", "1"), ("a", "1")]

    def test_stack_manifest_uses_path(self, mirror, make_hydrator):
        _archive(mirror, "stack-tool.zip")
        manifest = write_manifest(mirror / "stack.json", [{"id": "s", "version": "1", "path": "stack-tool.zip"}])
        hydrator = make_hydrator(str(manifest), manifest_kind=ManifestKind.STACK)
        assert hydrator.hydrate(["s@1"]).success


class TestCancellation:
    def test_cancel_on_start(self, mirror, make_hydrator):
        _archive(mirror, "a.zip")
        _archive(mirror, "b.zip")
        manifest = write_manifest(
            mirror / "manifest.json",
            [{"id": "a", "version": "1", "archive_path": "a.zip"}, {"id": "b", "version": "1", "archive_path": "b.zip"}],
        )
        hydrator = make_hydrator(str(manifest))

        def on_event(event):
            if event.type is HydrationEventType.TOOL_STARTED and event.tool_id == "a":
                assert hydrator.cancel("a", "1")

        hydrator.dispatcher.subscribe(on_event)
        report = hydrator.hydrate(["a@1", "b@1"])
        assert report.outcomes[0].reason == CANCELLED
        assert report.outcomes[1].success

    def test_progress_suppressed_after_cancel(self, tmp_path, network, make_hydrator, extractor):
        network.add("http://mirror.test/a.zip", ScriptedResponse(body=b"0123456789ab"))
        manifest = write_manifest(
            tmp_path / "manifest.json", [{"id": "a", "version": "1", "archive_url": "http://mirror.test/a.zip"}]
        )
        hydrator = make_hydrator(str(manifest))
        progress = []

        def on_event(event):
            if event.type is HydrationEventType.TOOL_PROGRESS:
                progress.append(event.downloaded)
                hydrator.cancel("a", "1")

        hydrator.dispatcher.subscribe(on_event)
        outcome = hydrator.hydrate(["a@1"]).outcomes[0]
        assert progress == [4]
        assert outcome.reason == CANCELLED
        assert outcome.failed_at is ToolState.VERIFY
        assert extractor.calls == []

    def test_cancel_unknown_tool(self, make_hydrator):
        assert not make_hydrator(None).cancel("nobody", "0")


class _BlockingExtractor(RecordingExtractor):
    def __init__(self, library: MemoryLibrary) -> None:
        super().__init__(library)
        self.entered = threading.Event()
        self.release = threading.Event()

    def extract_to_library(self, archive_path, tool_id, version):
        self.entered.set()
        self.release.wait(timeout=10)
        return super().extract_to_library(archive_path, tool_id, version)


class TestBackground:
    def test_single_run_and_queued_events(self, mirror, make_hydrator, library):
        _archive(mirror, "a.zip")
        manifest = write_manifest(mirror / "manifest.json", [{"id": "a", "version": "1", "archive_path": "a.zip"}])
        extractor = _BlockingExtractor(library)
        hydrator = make_hydrator(str(manifest), extractor=extractor)
        events = _record(hydrator)
        try:
            future = hydrator.start_background(["a@1"])
            assert future is not None
            assert extractor.entered.wait(timeout=10)
            assert hydrator.is_running()
            assert hydrator.start_background(["a@1"]) is None
            with pytest.raises(HydrationInProgressError):
                hydrator.hydrate(["a@1"])
            extractor.release.set()
            report = future.result(timeout=10)
        finally:
            extractor.release.set()
            hydrator.shutdown()

        assert report.success
        assert not hydrator.is_running()
        assert events == []
        delivered = hydrator.dispatcher.drain()
        assert delivered == len(events)
        assert [e.type for e in events][-1] is HydrationEventType.BATCH_COMPLETED


class TestEndToEnd:
    def test_real_zip_into_local_library(self, tmp_path, mirror, make_hydrator):
        archive = build_zip(mirror / "godot.zip", {"bin/godot": b"#!/bin/sh\n", "README": b"hello"})
        manifest = write_manifest(
            mirror / "manifest.json",
            [
                {
                    "id": "godot",
                    "version": "4.3",
                    "archive_path": "godot.zip",
                    "sha256": sha256_hex(archive.read_bytes()),
                    "size": archive.stat().st_size,
                }
            ],
        )
        library = LocalLibrary(tmp_path / "library")
        hydrator = make_hydrator(str(manifest), library=library, extractor=ArchiveExtractor(library))
        report = hydrator.hydrate(["godot@4.3"])
        assert report.success, report.outcomes
        assert (library.version_path("godot", "4.3") / "bin" / "godot").read_bytes() == b"#!/bin/sh\n"
        assert library.get_available_versions("godot") == ["4.3"]

        again = hydrator.hydrate(["godot@4.3"])
        assert again.outcomes[0].skipped
