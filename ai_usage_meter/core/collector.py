"""
Collection run across telemetry sources.

Adapters are scanned concurrently; their output is merged afterwards in
source order through a single dedup cache, so the first source in the list
wins when two sources observe the same interaction.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from ..adapters.base import CollectionCancelled, CollectOptions, TelemetrySource
from .dedup import DedupCache
from .events import TelemetryEvent, normalize_event

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


@dataclass
class CollectionReport:
    """Outcome of one collection run.

    Attributes:
        events: Deduplicated events in source order
        counts: Events contributed per system after deduplication
        errors: Failure message per system that could not be scanned
        cancelled: True if the run was cancelled; events are partial
    """
    events: List[TelemetryEvent] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False


def _run_source(
    source: TelemetrySource,
    options: CollectOptions,
    cancel: Optional[threading.Event],
) -> Tuple[List[TelemetryEvent], Optional[str], bool]:
    system = source.system()
    try:
        return source.collect(options, cancel), None, False
    except CollectionCancelled as exc:
        logger.info("Collection of %s cancelled after %d events", system, len(exc.events))
        return exc.events, None, True
    except Exception as exc:
        logger.warning("Skipping source %s: %s", system, exc)
        return [], f"{type(exc).__name__}: {exc}", False


def collect_all(
    sources: Sequence[TelemetrySource],
    options_by_system: Mapping[str, CollectOptions],
    cancel: Optional[threading.Event] = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
    cache: Optional[DedupCache] = None,
) -> CollectionReport:
    """Scan every source and merge the results.

    A failing source is recorded in ``errors`` and never blocks the others.

    Args:
        sources: Adapters in merge order
        options_by_system: Collect options keyed by system name; a missing
            entry scans with empty options
        cancel: Shared cancellation flag
        max_workers: Thread pool size
        cache: Dedup cache to merge through; a fresh one when omitted

    Returns:
        CollectionReport with the merged events
    """
    if max_workers < 1:
        raise ValueError("max_workers must be at least 1")
    cache = cache if cache is not None else DedupCache()
    report = CollectionReport()
    if not sources:
        return report

    with ThreadPoolExecutor(max_workers=min(max_workers, len(sources))) as pool:
        futures = [
            pool.submit(_run_source, source, options_by_system.get(source.system(), CollectOptions()), cancel)
            for source in sources
        ]
        results = [future.result() for future in futures]

    for source, (events, error, cancelled) in zip(sources, results):
        system = source.system()
        if error is not None:
            report.errors[system] = error
        report.cancelled = report.cancelled or cancelled

        admitted = cache.filter(normalize_event(event) for event in events)
        report.events.extend(admitted)
        report.counts[system] = len(admitted)
        logger.debug("%s: %d candidate events, %d kept", system, len(events), len(admitted))

    return report


def ingest_hook_payload(
    source: TelemetrySource,
    raw: bytes,
    options: CollectOptions,
    cache: Optional[DedupCache] = None,
) -> List[TelemetryEvent]:
    """Parse one hook payload and pass it through deduplication.

    Raises:
        HookUnsupportedError: If the source has no hook integration
        HookPayloadError: If the payload is not valid JSON
    """
    cache = cache if cache is not None else DedupCache()
    events = source.parse_hook_payload(raw, options)
    return cache.filter(normalize_event(event) for event in events)
