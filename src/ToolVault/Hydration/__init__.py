"""Public API for the ToolVault offline-first tool hydration pipeline.

Fetch a manifest, verify staged archives, and install requested tools into a
local library without making any network call the offline policy forbids.
"""

from .errors import (
    ConfigError,
    ExtractionError,
    HydrationError,
    HydrationInProgressError,
    TransportError,
)
from .events import EventDispatcher, HydrationEvent, HydrationEventType
from .hydrator import HydrationReport, Hydrator, ToolOutcome, ToolRequest, ToolState
from .library import ArchiveExtractor, ExtractResult, LocalLibrary
from .manifest import Manifest, ManifestKind, ToolEntry
from .network import FetchErrorCode, RetrievalClient
from .policy import GateDecision, OfflineGate
from .settings import OfflinePolicy, ToolVaultConfig, load_config

__version__ = "0.1.0"

__all__ = [
    "ArchiveExtractor",
    "ConfigError",
    "EventDispatcher",
    "ExtractResult",
    "ExtractionError",
    "FetchErrorCode",
    "GateDecision",
    "HydrationError",
    "HydrationEvent",
    "HydrationEventType",
    "HydrationInProgressError",
    "HydrationReport",
    "Hydrator",
    "LocalLibrary",
    "Manifest",
    "ManifestKind",
    "OfflineGate",
    "OfflinePolicy",
    "RetrievalClient",
    "ToolEntry",
    "ToolOutcome",
    "ToolRequest",
    "ToolState",
    "ToolVaultConfig",
    "TransportError",
    "__version__",
    "load_config",
]
