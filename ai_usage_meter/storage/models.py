"""
Row mapping for the event ledger.

Converts canonical telemetry events to and from ``telemetry_event`` rows.
"""

import json
from datetime import datetime, timezone
from typing import Any, Optional, Sequence, Tuple

from ..core.events import Channel, EventStatus, EventType, TelemetryEvent

EVENT_COLUMNS = (
    "dedup_key",
    "schema_version",
    "channel",
    "occurred_at",
    "event_type",
    "account_id",
    "workspace_id",
    "session_id",
    "turn_id",
    "message_id",
    "request_id",
    "tool_call_id",
    "provider_id",
    "agent_name",
    "model_raw",
    "input_tokens",
    "output_tokens",
    "reasoning_tokens",
    "cache_read_tokens",
    "cache_write_tokens",
    "total_tokens",
    "requests",
    "cost_usd",
    "tool_name",
    "tool_index",
    "status",
    "payload",
)


def iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def event_to_row(event: TelemetryEvent, dedup_key: str) -> Tuple[Any, ...]:
    """Row values in ``EVENT_COLUMNS`` order.

    An empty dedup key is stored as NULL so that events without identity
    are never rejected by the unique constraint.
    """
    return (
        dedup_key or None,
        event.schema_version,
        event.channel.value,
        iso_utc(event.occurred_at),
        event.event_type.value,
        event.account_id,
        event.workspace_id,
        event.session_id,
        event.turn_id,
        event.message_id,
        event.request_id,
        event.tool_call_id,
        event.provider_id,
        event.agent_name,
        event.model_raw,
        event.input_tokens,
        event.output_tokens,
        event.reasoning_tokens,
        event.cache_read_tokens,
        event.cache_write_tokens,
        event.total_tokens,
        event.requests,
        event.cost_usd,
        event.tool_name,
        event.tool_index,
        event.status.value,
        json.dumps(event.payload, default=str, sort_keys=True),
    )


def _load_payload(text: Optional[str]) -> dict:
    if not text:
        return {}
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


def row_to_event(row: Sequence[Any]) -> TelemetryEvent:
    """Rebuild an event from a row selected with ``EVENT_COLUMNS[1:]``."""
    (
        schema_version, channel, occurred_at, event_type,
        account_id, workspace_id, session_id, turn_id, message_id, request_id, tool_call_id,
        provider_id, agent_name, model_raw,
        input_tokens, output_tokens, reasoning_tokens, cache_read_tokens, cache_write_tokens,
        total_tokens, requests, cost_usd,
        tool_name, tool_index, status, payload,
    ) = row
    return TelemetryEvent(
        schema_version=schema_version,
        channel=Channel(channel),
        occurred_at=datetime.fromisoformat(occurred_at),
        event_type=EventType(event_type),
        account_id=account_id or "",
        workspace_id=workspace_id or "",
        session_id=session_id or "",
        turn_id=turn_id or "",
        message_id=message_id or "",
        request_id=request_id or "",
        tool_call_id=tool_call_id or "",
        provider_id=provider_id or "",
        agent_name=agent_name or "",
        model_raw=model_raw or "",
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        reasoning_tokens=reasoning_tokens,
        cache_read_tokens=cache_read_tokens,
        cache_write_tokens=cache_write_tokens,
        total_tokens=total_tokens,
        requests=requests,
        cost_usd=cost_usd,
        tool_name=tool_name or "",
        tool_index=tool_index,
        status=EventStatus(status),
        payload=_load_payload(payload),
    )
