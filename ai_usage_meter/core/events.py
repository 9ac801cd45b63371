"""
Canonical telemetry event model.

Every source adapter converts its records into ``TelemetryEvent`` values.
Events are immutable once emitted; normalization returns a new instance.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .token_counter import TokenUsage


class Channel(Enum):
    """Transport the event was observed on."""
    HOOK = "hook"
    STREAMING = "streaming"
    JSONL = "jsonl"
    API = "api"
    SQLITE = "sqlite"


class EventType(Enum):
    """Classification of a canonical event."""
    TURN_COMPLETED = "turn_completed"
    MESSAGE_USAGE = "message_usage"
    TOOL_USAGE = "tool_usage"
    RAW_ENVELOPE = "raw_envelope"


class EventStatus(Enum):
    """Outcome reported for the event."""
    OK = "ok"
    ERROR = "error"
    ABORTED = "aborted"
    UNKNOWN = "unknown"


TOKEN_FIELDS = (
    "input_tokens",
    "output_tokens",
    "reasoning_tokens",
    "cache_read_tokens",
    "cache_write_tokens",
)


@dataclass(frozen=True)
class TelemetryEvent:
    """Normalized, source-independent usage record.

    Correlation fields use an empty string for "absent". Usage fields use
    ``None`` for "not reported", which is different from a reported zero.
    ``payload`` is kept for audit and debugging only; aggregation never
    reads it.
    """
    schema_version: str
    channel: Channel
    occurred_at: datetime
    event_type: EventType

    account_id: str = ""
    workspace_id: str = ""
    session_id: str = ""
    turn_id: str = ""
    message_id: str = ""
    request_id: str = ""
    tool_call_id: str = ""

    provider_id: str = ""
    agent_name: str = ""
    model_raw: str = ""

    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    reasoning_tokens: Optional[int] = None
    cache_read_tokens: Optional[int] = None
    cache_write_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    requests: Optional[int] = None
    cost_usd: Optional[float] = None

    tool_name: str = ""
    tool_index: Optional[int] = None

    status: EventStatus = EventStatus.OK
    payload: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def is_actionable(self) -> bool:
        """True when the event can be tied to a session, turn or message."""
        return bool(self.session_id or self.turn_id or self.message_id)

    def token_usage(self) -> TokenUsage:
        """Token counters with unreported fields treated as zero."""
        return TokenUsage(
            input_tokens=self.input_tokens or 0,
            output_tokens=self.output_tokens or 0,
            cache_read_tokens=self.cache_read_tokens or 0,
            cache_write_tokens=self.cache_write_tokens or 0,
            reasoning_tokens=self.reasoning_tokens or 0,
        )


def normalize_event(event: TelemetryEvent) -> TelemetryEvent:
    """Fill ``total_tokens`` from the sub-fields when it was not reported.

    Only present sub-fields are summed. An event without any token field is
    returned unchanged.

    Args:
        event: Candidate event from an adapter

    Returns:
        The same event, or a copy with ``total_tokens`` set
    """
    if event.total_tokens is not None:
        return event
    parts = [getattr(event, name) for name in TOKEN_FIELDS]
    present = [p for p in parts if p is not None]
    if not present:
        return event
    return replace(event, total_tokens=sum(present))


def has_usage(event: TelemetryEvent) -> bool:
    """Whether the event reports any positive token count or cost."""
    for name in TOKEN_FIELDS + ("total_tokens",):
        value = getattr(event, name)
        if value is not None and value > 0:
            return True
    return event.cost_usd is not None and event.cost_usd > 0
