"""Shared fixtures for the hydration test suite."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from ToolVault.Hydration.hydrator import Hydrator
from ToolVault.Hydration.network.client import RetrievalClient
from ToolVault.Hydration.policy.gates import OfflineGate
from ToolVault.Hydration.settings import HttpSettings, HydrationSettings
from ToolVault.Hydration.testing import FakeNetwork, MemoryLibrary, RecordingExtractor


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def http_settings() -> HttpSettings:
    return HttpSettings(timeout_sec=0.2, poll_interval_sec=0.0)


@pytest.fixture
def gate() -> OfflineGate:
    return OfflineGate()


@pytest.fixture
def client(gate: OfflineGate, http_settings: HttpSettings, network: FakeNetwork) -> RetrievalClient:
    return RetrievalClient(gate, http_settings, network)


@pytest.fixture
def mirror(tmp_path: Path) -> Path:
    root = tmp_path / "mirror"
    root.mkdir()
    return root


@pytest.fixture
def library() -> MemoryLibrary:
    return MemoryLibrary()


@pytest.fixture
def extractor(library: MemoryLibrary) -> RecordingExtractor:
    return RecordingExtractor(library)


@pytest.fixture
def make_hydrator(
    tmp_path: Path,
    gate: OfflineGate,
    client: RetrievalClient,
    library: MemoryLibrary,
    extractor: RecordingExtractor,
) -> Callable[..., Hydrator]:
    """Return a factory building hydrators over the shared fakes."""

    def factory(manifest_source: Optional[str] = None, **overrides: Any) -> Hydrator:
        settings = HydrationSettings(
            manifest_source=manifest_source,
            staging_dir=tmp_path / "staging",
            library_dir=tmp_path / "library",
            mirror_root=overrides.pop("mirror_root", None),
        )
        return Hydrator(
            overrides.pop("gate", gate),
            overrides.pop("library", library),
            overrides.pop("extractor", extractor),
            settings=settings,
            client=overrides.pop("client", client),
            **overrides,
        )

    return factory


@pytest.fixture
def isolated_logger():
    """Restore the package logger after a test installs handlers on it."""
    logger = logging.getLogger("ToolVault.Hydration")
    handlers = list(logger.handlers)
    level, propagate = logger.level, logger.propagate
    yield logger
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Drop ``TOOLVAULT_*`` variables inherited from the developer shell."""
    for name in list(os.environ):
        if name.upper().startswith("TOOLVAULT_"):
            monkeypatch.delenv(name, raising=False)
