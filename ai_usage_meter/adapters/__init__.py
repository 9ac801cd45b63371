"""
Telemetry source adapters.

One adapter per assistant CLI, each converting that tool's local logs and
hook payloads into canonical telemetry events.
"""

from .base import (
    CollectionCancelled,
    CollectOptions,
    HookPayloadError,
    HookUnsupportedError,
    TelemetrySource,
)
from .registry import all_sources, source_by_system, system_names

__all__ = [
    "CollectionCancelled",
    "CollectOptions",
    "HookPayloadError",
    "HookUnsupportedError",
    "TelemetrySource",
    "all_sources",
    "source_by_system",
    "system_names",
]
