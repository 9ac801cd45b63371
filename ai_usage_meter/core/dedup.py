"""
Deduplication of canonical events.

The same interaction can be observed more than once: a transcript line
repeated across overlapping files, or a transcript record and the hook
payload of the same turn. Each event gets a stable identity key and the
first occurrence wins.

An empty key means "cannot be deduplicated" and the event is always kept.
Two identical events without any identifiers therefore both survive and
may be double counted.
"""

from datetime import timezone
from typing import Iterable, List, Set

from .events import EventType, TelemetryEvent


def _utc_instant(event: TelemetryEvent) -> str:
    occurred = event.occurred_at
    if occurred.tzinfo is None:
        return occurred.replace(tzinfo=timezone.utc).isoformat()
    return occurred.astimezone(timezone.utc).isoformat()


def _fingerprint(event: TelemetryEvent) -> str:
    counts = (
        event.input_tokens,
        event.output_tokens,
        event.cache_read_tokens,
        event.cache_write_tokens,
    )
    if not event.session_id and all(c is None for c in counts):
        return ""
    parts = [
        event.session_id,
        _utc_instant(event),
        event.model_raw,
    ] + ["" if c is None else str(c) for c in counts]
    return "fp:" + "|".join(parts)


def _message_key(event: TelemetryEvent) -> str:
    if event.request_id:
        return "req:" + event.request_id
    if event.message_id:
        return "msg:" + event.message_id
    return _fingerprint(event)


def _tool_key(event: TelemetryEvent) -> str:
    if event.tool_call_id:
        return "tool:" + event.tool_call_id
    base = event.message_id or event.request_id
    if not base or event.tool_index is None:
        return ""
    return "tool:%s|%s|%d" % (base, event.tool_name.lower(), event.tool_index)


def build_dedup_key(event: TelemetryEvent) -> str:
    """Derive the identity key of an event.

    message_usage: request id, else message id, else a fingerprint of
    session, timestamp, model and the four raw token counts.
    tool_usage: tool call id, else message (or request) id + tool name +
    position of the call inside the message.
    turn_completed: request or turn id.
    raw_envelope: never deduplicated.

    Args:
        event: Candidate event

    Returns:
        Dedup key, or ``""`` when no identity can be derived
    """
    if event.event_type == EventType.MESSAGE_USAGE:
        return _message_key(event)
    if event.event_type == EventType.TOOL_USAGE:
        return _tool_key(event)
    if event.event_type == EventType.TURN_COMPLETED:
        turn = event.request_id or event.turn_id
        return "turn:" + turn if turn else ""
    return ""


class DedupCache:
    """Set of dedup keys seen during one aggregation run."""

    def __init__(self):
        self._seen: Set[str] = set()

    def __len__(self) -> int:
        return len(self._seen)

    def seen(self, key: str) -> bool:
        return key in self._seen

    def admit(self, event: TelemetryEvent) -> bool:
        """Return True if the event should be kept, recording its key."""
        key = build_dedup_key(event)
        if not key:
            return True
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def filter(self, events: Iterable[TelemetryEvent]) -> List[TelemetryEvent]:
        """Keep the first occurrence of each key, preserving input order."""
        return [event for event in events if self.admit(event)]
