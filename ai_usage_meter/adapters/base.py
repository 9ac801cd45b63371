"""
Source adapter contract and shared scanning helpers.

Each supported assistant CLI is represented by one ``TelemetrySource``. An
adapter scans the files or databases named in its ``CollectOptions`` and
parses single-shot hook payloads into canonical events.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from ..core.events import TelemetryEvent
from ..core.extraction import expand_home

logger = logging.getLogger(__name__)

MAX_LINE_BYTES = 8 * 1024 * 1024
_DISCARD_CHUNK_BYTES = 64 * 1024


class HookUnsupportedError(Exception):
    """Raised by sources that do not accept hook payloads."""

    def __init__(self, system: str):
        super().__init__(f"{system} does not support hook payloads")
        self.system = system


class HookPayloadError(ValueError):
    """Raised when a hook payload is not a decodable JSON document."""


class CollectionCancelled(Exception):
    """Raised when a collection run is cancelled mid-scan.

    Carries the events produced before the cancellation was observed.
    """

    def __init__(self, events: Optional[List[TelemetryEvent]] = None):
        super().__init__("collection cancelled")
        self.events = list(events or [])


@dataclass
class CollectOptions:
    """Resolved source locations for one adapter.

    Attributes:
        paths: Single-path options (e.g. ``db_path``)
        path_lists: Multi-path options (e.g. ``events_dirs``)
        account_id: Account identifier stamped on emitted events
    """
    paths: Dict[str, str] = field(default_factory=dict)
    path_lists: Dict[str, List[str]] = field(default_factory=dict)
    account_id: Optional[str] = None

    def path(self, key: str, fallback: str = "") -> str:
        value = (self.paths.get(key) or "").strip()
        if value:
            return expand_home(value)
        return expand_home(fallback)

    def paths_for(self, key: str, fallback: Sequence[str] = ()) -> List[str]:
        values = self.path_lists.get(key)
        if not values:
            values = list(fallback)
        return [expand_home(v) for v in values if v and v.strip()]


def check_cancelled(cancel: Optional[threading.Event], events: List[TelemetryEvent]) -> None:
    """Raise ``CollectionCancelled`` with ``events`` when ``cancel`` is set."""
    if cancel is not None and cancel.is_set():
        raise CollectionCancelled(events)


class TelemetrySource(ABC):
    """Adapter for one assistant CLI's local telemetry."""

    @abstractmethod
    def system(self) -> str:
        """Stable system name, e.g. ``claude_code``."""

    @abstractmethod
    def collect(
        self,
        options: CollectOptions,
        cancel: Optional[threading.Event] = None,
    ) -> List[TelemetryEvent]:
        """Scan the configured locations and return candidate events.

        Missing files, directories or tables produce no events.

        Raises:
            CollectionCancelled: If ``cancel`` is set during the scan
        """

    def parse_hook_payload(self, raw: bytes, options: CollectOptions) -> List[TelemetryEvent]:
        """Parse one hook payload into events.

        Raises:
            HookUnsupportedError: If this source has no hook integration
            HookPayloadError: If the payload is not valid JSON
        """
        raise HookUnsupportedError(self.system())


def decode_hook_payload(raw: bytes) -> Optional[Dict[str, Any]]:
    """Decode a hook payload into a JSON object.

    Returns:
        The decoded object, or ``None`` for a blank payload

    Raises:
        HookPayloadError: If the payload is not a UTF-8 JSON object
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise HookPayloadError(f"hook payload is not UTF-8: {exc}") from exc
    text = (raw or "").strip()
    if not text:
        return None
    try:
        root = json.loads(text)
    except json.JSONDecodeError as exc:
        raise HookPayloadError(f"hook payload is not valid JSON: {exc}") from exc
    if not isinstance(root, dict):
        raise HookPayloadError("hook payload must be a JSON object")
    return root


def _discard_rest_of_line(handle) -> None:
    while True:
        chunk = handle.readline(_DISCARD_CHUNK_BYTES)
        if not chunk or chunk.endswith(b"\n"):
            return


def iter_jsonl_records(
    path: str,
    max_line_bytes: int = MAX_LINE_BYTES,
) -> Iterator[Tuple[int, Dict[str, Any]]]:
    """Yield ``(line_number, record)`` for each JSON object line of a file.

    Blank lines, malformed JSON and non-object values are skipped. A line
    longer than ``max_line_bytes`` is skipped without being held in memory.
    An unreadable file yields nothing.

    Args:
        path: Line-delimited JSON file
        max_line_bytes: Per-line size ceiling

    Yields:
        1-based line number and the decoded object
    """
    try:
        handle = open(path, "rb")
    except OSError as exc:
        logger.debug("Cannot open %s: %s", path, exc)
        return

    with handle:
        line_number = 0
        while True:
            line = handle.readline(max_line_bytes + 1)
            if not line:
                return
            line_number += 1

            if len(line) > max_line_bytes and not line.endswith(b"\n"):
                logger.warning("Skipping oversized line %d in %s", line_number, path)
                _discard_rest_of_line(handle)
                continue

            text = line.strip()
            if not text:
                continue
            try:
                record = json.loads(text)
            except (json.JSONDecodeError, UnicodeDecodeError):
                logger.debug("Skipping malformed line %d in %s", line_number, path)
                continue
            if not isinstance(record, dict):
                continue
            yield line_number, record


def collect_files(roots: Iterable[str], extensions: Iterable[str]) -> List[str]:
    """Collect files with matching extensions under the given roots.

    A root may be a file or a directory. Missing roots are ignored.

    Returns:
        Sorted, de-duplicated file paths
    """
    wanted = {ext.lower() for ext in extensions}
    files = set()
    for root in roots:
        root = expand_home(root)
        if not root:
            continue
        if os.path.isfile(root):
            if os.path.splitext(root)[1].lower() in wanted:
                files.add(root)
            continue
        if not os.path.isdir(root):
            continue
        for dirpath, _dirnames, filenames in os.walk(root):
            for name in filenames:
                if os.path.splitext(name)[1].lower() in wanted:
                    files.add(os.path.join(dirpath, name))
    return sorted(files)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
