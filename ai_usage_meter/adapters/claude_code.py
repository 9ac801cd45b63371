"""
Claude Code telemetry adapter.

Reads the per-project conversation transcripts (one JSON record per line) and
the payloads of Claude Code hooks.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..core.events import Channel, EventStatus, EventType, TelemetryEvent, has_usage, normalize_event
from ..core.extraction import (
    first_non_empty,
    first_path_number,
    first_path_string,
    first_path_timestamp,
    parse_timestamp,
    sanitize_workspace,
    to_int,
)
from ..core.pricing import PRICING_TABLE, PricingTable, calculate_cost
from ..core.token_counter import TokenUsage
from .base import (
    CollectOptions,
    CollectionCancelled,
    TelemetrySource,
    check_cancelled,
    collect_files,
    decode_hook_payload,
    iter_jsonl_records,
    utc_now,
)

logger = logging.getLogger(__name__)

SYSTEM = "claude_code"
PROVIDER_ID = "anthropic"
DEFAULT_ACCOUNT_ID = "claude-code"
TRANSCRIPT_SCHEMA = "claude_jsonl_v1"
HOOK_SCHEMA = "claude_hook_v1"

_ERROR_DECISIONS = {"block", "blocked", "error", "failed"}


def _usage_counts(usage: Dict[str, Any]) -> Dict[str, Optional[int]]:
    return {
        "input_tokens": to_int(first_path_number(usage, ["input_tokens"])),
        "output_tokens": to_int(first_path_number(usage, ["output_tokens"])),
        "reasoning_tokens": to_int(first_path_number(usage, ["reasoning_tokens"])),
        "cache_read_tokens": to_int(first_path_number(usage, ["cache_read_input_tokens"])),
        "cache_write_tokens": to_int(first_path_number(usage, ["cache_creation_input_tokens"])),
    }


class ClaudeCodeSource(TelemetrySource):
    """Claude Code transcripts and hooks."""

    def __init__(
        self,
        pricing: PricingTable = PRICING_TABLE,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.pricing = pricing
        self.clock = clock

    def system(self) -> str:
        return SYSTEM

    def collect(
        self,
        options: CollectOptions,
        cancel: Optional[threading.Event] = None,
    ) -> List[TelemetryEvent]:
        roots = [options.path("projects_dir"), options.path("alt_projects_dir")]
        files = collect_files([r for r in roots if r], [".jsonl"])

        events: List[TelemetryEvent] = []
        for path in files:
            check_cancelled(cancel, events)
            try:
                events.extend(self.parse_transcript(path, options, cancel))
            except CollectionCancelled as exc:
                raise CollectionCancelled(events + exc.events) from None
        logger.debug("claude_code: %d events from %d files", len(events), len(files))
        return events

    def parse_transcript(
        self,
        path: str,
        options: Optional[CollectOptions] = None,
        cancel: Optional[threading.Event] = None,
    ) -> List[TelemetryEvent]:
        """Parse one transcript file.

        Every assistant record with a ``message.usage`` block yields a
        ``message_usage`` event followed by one ``tool_usage`` event per
        ``tool_use`` content part.

        Args:
            path: Transcript file
            options: Collect options (for the account id)
            cancel: Cancellation flag checked per line

        Raises:
            CollectionCancelled: Carrying this file's events so far
        """
        account_id = first_non_empty(options.account_id if options else "", DEFAULT_ACCOUNT_ID)
        out: List[TelemetryEvent] = []

        for line_number, record in iter_jsonl_records(path):
            check_cancelled(cancel, out)

            if record.get("type") != "assistant":
                continue
            message = record.get("message")
            if not isinstance(message, dict) or not isinstance(message.get("usage"), dict):
                continue

            occurred_at = parse_timestamp(record.get("timestamp")) or self.clock()
            session_id = first_path_string(record, ["sessionId"], ["session_id"])
            request_id = first_path_string(record, ["requestId"], ["request_id"])
            message_key = first_path_string(message, ["id"])
            turn_id = first_non_empty(request_id, message_key) or f"{session_id}:{line_number}"
            message_id = message_key or turn_id
            model = first_path_string(message, ["model"]) or "unknown"
            workspace = sanitize_workspace(first_path_string(record, ["cwd"]))

            counts = _usage_counts(message["usage"])
            usage = TokenUsage(**{name: value or 0 for name, value in counts.items()})
            try:
                cost = calculate_cost(model, usage, self.pricing)
            except ValueError:
                cost = None
            source_ref = {"file": path, "line": line_number}

            out.append(normalize_event(TelemetryEvent(
                schema_version=TRANSCRIPT_SCHEMA,
                channel=Channel.JSONL,
                occurred_at=occurred_at,
                event_type=EventType.MESSAGE_USAGE,
                account_id=account_id,
                workspace_id=workspace,
                session_id=session_id,
                turn_id=turn_id,
                message_id=message_id,
                request_id=request_id,
                provider_id=PROVIDER_ID,
                agent_name=SYSTEM,
                model_raw=model,
                cost_usd=cost,
                status=EventStatus.OK,
                payload=dict(source_ref),
                **{name: value or 0 for name, value in counts.items()},
            )))

            content = message.get("content")
            if not isinstance(content, list):
                continue
            for index, part in enumerate(content):
                if not isinstance(part, dict) or part.get("type") != "tool_use":
                    continue
                out.append(TelemetryEvent(
                    schema_version=TRANSCRIPT_SCHEMA,
                    channel=Channel.JSONL,
                    occurred_at=occurred_at,
                    event_type=EventType.TOOL_USAGE,
                    account_id=account_id,
                    workspace_id=workspace,
                    session_id=session_id,
                    turn_id=turn_id,
                    message_id=message_id,
                    request_id=request_id,
                    tool_call_id=first_path_string(part, ["id"]),
                    provider_id=PROVIDER_ID,
                    agent_name=SYSTEM,
                    model_raw=model,
                    tool_name=(first_path_string(part, ["name"]) or "unknown").lower(),
                    tool_index=index,
                    requests=1,
                    status=EventStatus.OK,
                    payload=dict(source_ref),
                ))
        return out

    def parse_hook_payload(self, raw: bytes, options: CollectOptions) -> List[TelemetryEvent]:
        root = decode_hook_payload(raw)
        if root is None:
            return []

        occurred_at = first_path_timestamp(root, ["timestamp"], ["occurred_at"], ["time"]) or self.clock()
        event_name = first_non_empty(
            first_path_string(root, ["hook_event_name"], ["hook_event"], ["event"], ["type"]),
            "hook",
        ).lower()
        request_id = first_path_string(root, ["request_id"], ["requestId"])
        common = dict(
            schema_version=HOOK_SCHEMA,
            channel=Channel.HOOK,
            occurred_at=occurred_at,
            account_id=first_non_empty(
                options.account_id,
                first_path_string(root, ["account_id"], ["accountId"]),
                DEFAULT_ACCOUNT_ID,
            ),
            workspace_id=sanitize_workspace(
                first_path_string(root, ["cwd"], ["workspace_id"], ["workspaceId"])
            ),
            session_id=first_path_string(root, ["session_id"], ["sessionId"], ["session", "id"]),
            turn_id=first_non_empty(
                request_id,
                first_path_string(root, ["turn_id"], ["turnId"]),
            ),
            message_id=first_path_string(root, ["message", "id"], ["message_id"], ["messageId"]),
            request_id=request_id,
            provider_id=PROVIDER_ID,
            agent_name=SYSTEM,
            model_raw=first_path_string(root, ["model"], ["model_id"], ["message", "model"]),
            requests=1,
            payload=root,
        )

        usage_event = normalize_event(TelemetryEvent(
            event_type=EventType.MESSAGE_USAGE,
            input_tokens=to_int(first_path_number(
                root, ["usage", "input_tokens"], ["message", "usage", "input_tokens"])),
            output_tokens=to_int(first_path_number(
                root, ["usage", "output_tokens"], ["message", "usage", "output_tokens"])),
            reasoning_tokens=to_int(first_path_number(
                root, ["usage", "reasoning_tokens"], ["message", "usage", "reasoning_tokens"])),
            cache_read_tokens=to_int(first_path_number(
                root, ["usage", "cache_read_input_tokens"],
                ["message", "usage", "cache_read_input_tokens"])),
            cache_write_tokens=to_int(first_path_number(
                root, ["usage", "cache_creation_input_tokens"],
                ["message", "usage", "cache_creation_input_tokens"])),
            total_tokens=to_int(first_path_number(
                root, ["usage", "total_tokens"], ["message", "usage", "total_tokens"])),
            cost_usd=first_path_number(root, ["usage", "cost_usd"], ["cost_usd"]),
            status=EventStatus.OK,
            **common,
        ))
        if has_usage(usage_event):
            return [usage_event]

        if "tool" in event_name:
            tool_name = first_non_empty(
                first_path_string(root, ["tool_name"], ["tool", "name"], ["tool_input", "name"], ["tool"]),
                "unknown",
            ).lower()
            return [TelemetryEvent(
                event_type=EventType.TOOL_USAGE,
                tool_call_id=first_path_string(root, ["tool_call_id"], ["toolUseID"], ["tool_use_id"]),
                tool_name=tool_name,
                status=EventStatus.OK,
                **common,
            )]

        decision = first_path_string(root, ["decision"], ["status"]).lower()
        status = EventStatus.ERROR if decision in _ERROR_DECISIONS else EventStatus.OK
        return [TelemetryEvent(
            event_type=EventType.TURN_COMPLETED,
            status=status,
            **common,
        )]
