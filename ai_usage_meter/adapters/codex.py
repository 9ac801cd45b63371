"""
Codex telemetry adapter.

Codex session logs carry a running ``total_token_usage`` snapshot on every
``token_count`` event; per-turn usage is reconstructed as the difference
between consecutive snapshots of the same file.
"""

import logging
import os
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..core.deltas import CounterDeltaReconstructor
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

SYSTEM = "codex"
PROVIDER_ID = "openai"
SESSION_SCHEMA = "codex_session_v1"
NOTIFY_SCHEMA = "codex_notify_v1"

# Snapshot counter name -> canonical event field
SNAPSHOT_FIELDS = {
    "input_tokens": "input_tokens",
    "cached_input_tokens": "cache_read_tokens",
    "output_tokens": "output_tokens",
    "reasoning_output_tokens": "reasoning_tokens",
    "total_tokens": "total_tokens",
}

_ERROR_OUTCOMES = {"error", "failed", "failure"}
_ABORTED_OUTCOMES = {"aborted", "canceled", "cancelled"}


def _snapshot(info: Dict[str, Any]) -> Optional[Dict[str, int]]:
    usage = info.get("total_token_usage")
    if not isinstance(usage, dict):
        return None
    return {name: to_int(first_path_number(usage, [name])) or 0 for name in SNAPSHOT_FIELDS}


class CodexSource(TelemetrySource):
    """Codex session logs and notify hook."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock

    def system(self) -> str:
        return SYSTEM

    def collect(
        self,
        options: CollectOptions,
        cancel: Optional[threading.Event] = None,
    ) -> List[TelemetryEvent]:
        sessions_dir = options.path("sessions_dir")
        if not sessions_dir:
            return []
        files = collect_files([sessions_dir], [".jsonl"])

        reconstructor = CounterDeltaReconstructor(total_key="total_tokens")
        events: List[TelemetryEvent] = []
        for path in files:
            check_cancelled(cancel, events)
            try:
                events.extend(self.parse_session_file(path, reconstructor, options, cancel))
            except CollectionCancelled as exc:
                raise CollectionCancelled(events + exc.events) from None
        logger.debug("codex: %d events from %d files", len(events), len(files))
        return events

    def parse_session_file(
        self,
        path: str,
        reconstructor: Optional[CounterDeltaReconstructor] = None,
        options: Optional[CollectOptions] = None,
        cancel: Optional[threading.Event] = None,
    ) -> List[TelemetryEvent]:
        """Parse one session log into per-turn ``message_usage`` events.

        ``session_meta`` and ``turn_context`` records update the session id
        and model applied to the records that follow them.

        Args:
            path: Session log file; its name stem is the default session id
            reconstructor: Delta state shared across the run, keyed by path
            options: Collect options (for the account id)
            cancel: Cancellation flag checked per line

        Raises:
            CollectionCancelled: Carrying this file's events so far
        """
        if reconstructor is None:
            reconstructor = CounterDeltaReconstructor(total_key="total_tokens")
        account_id = first_non_empty(options.account_id if options else "", SYSTEM)
        session_id = os.path.splitext(os.path.basename(path))[0]
        model = ""
        workspace = ""
        turn_index = 0
        out: List[TelemetryEvent] = []

        for line_number, record in iter_jsonl_records(path):
            check_cancelled(cancel, out)

            payload = record.get("payload")
            if not isinstance(payload, dict):
                continue
            kind = record.get("type")

            if kind == "session_meta":
                session_id = first_path_string(payload, ["session_id"], ["id"]) or session_id
                model = first_path_string(payload, ["model"]) or model
                workspace = sanitize_workspace(first_path_string(payload, ["cwd"])) or workspace
                continue
            if kind == "turn_context":
                model = first_path_string(payload, ["model"]) or model
                workspace = sanitize_workspace(first_path_string(payload, ["cwd"])) or workspace
                continue
            if kind != "event_msg" or payload.get("type") != "token_count":
                continue

            info = payload.get("info")
            if not isinstance(info, dict):
                continue
            snapshot = _snapshot(info)
            if snapshot is None:
                continue
            delta = reconstructor.observe(path, snapshot)
            if delta is None:
                continue
            turn_index += 1

            request_id = first_path_string(payload, ["request_id"])
            out.append(TelemetryEvent(
                schema_version=SESSION_SCHEMA,
                channel=Channel.JSONL,
                occurred_at=parse_timestamp(record.get("timestamp")) or self.clock(),
                event_type=EventType.MESSAGE_USAGE,
                account_id=account_id,
                workspace_id=workspace,
                session_id=session_id,
                turn_id=request_id or f"{session_id}:{turn_index}",
                message_id=first_path_string(payload, ["message_id"]) or f"{session_id}:{line_number}",
                request_id=request_id,
                provider_id=PROVIDER_ID,
                agent_name=SYSTEM,
                model_raw=model,
                status=EventStatus.OK,
                payload={"file": path, "line": line_number},
                **{SNAPSHOT_FIELDS[name]: value for name, value in delta.items()},
            ))
        return out

    def parse_hook_payload(self, raw: bytes, options: CollectOptions) -> List[TelemetryEvent]:
        root = decode_hook_payload(raw)
        if root is None:
            return []

        occurred_at = first_path_timestamp(root, ["timestamp"], ["occurred_at"], ["time"]) or self.clock()
        request_id = first_path_string(root, ["request_id"], ["requestID"])
        common = dict(
            schema_version=NOTIFY_SCHEMA,
            channel=Channel.HOOK,
            occurred_at=occurred_at,
            account_id=first_non_empty(
                options.account_id,
                first_path_string(root, ["account_id"], ["accountID"]),
                SYSTEM,
            ),
            workspace_id=sanitize_workspace(
                first_path_string(root, ["cwd"], ["workspace_id"], ["workspaceID"])
            ),
            session_id=first_path_string(root, ["session_id"], ["sessionID"], ["session", "id"]),
            turn_id=first_path_string(root, ["turn_id"], ["turnID"], ["request_id"], ["requestID"]),
            message_id=first_path_string(
                root, ["message_id"], ["messageID"], ["last_assistant_message", "id"]
            ),
            request_id=request_id,
            provider_id=first_non_empty(
                first_path_string(root, ["provider_id"], ["providerID"], ["provider"]),
                PROVIDER_ID,
            ),
            agent_name=SYSTEM,
            model_raw=first_path_string(
                root, ["model"], ["model_id"], ["modelID"], ["last_assistant_message", "model"]
            ),
            requests=1,
            payload=root,
        )

        usage_event = normalize_event(TelemetryEvent(
            event_type=EventType.MESSAGE_USAGE,
            input_tokens=to_int(first_path_number(
                root,
                ["usage", "input_tokens"],
                ["usage", "inputTokens"],
                ["info", "total_token_usage", "input_tokens"],
                ["last_assistant_message", "usage", "input_tokens"],
            )),
            output_tokens=to_int(first_path_number(
                root,
                ["usage", "output_tokens"],
                ["usage", "outputTokens"],
                ["info", "total_token_usage", "output_tokens"],
                ["last_assistant_message", "usage", "output_tokens"],
            )),
            reasoning_tokens=to_int(first_path_number(
                root,
                ["usage", "reasoning_tokens"],
                ["usage", "reasoning_output_tokens"],
                ["info", "total_token_usage", "reasoning_output_tokens"],
                ["last_assistant_message", "usage", "reasoning_tokens"],
            )),
            cache_read_tokens=to_int(first_path_number(
                root,
                ["usage", "cache_read_tokens"],
                ["usage", "cached_input_tokens"],
                ["info", "total_token_usage", "cached_input_tokens"],
                ["last_assistant_message", "usage", "cached_input_tokens"],
            )),
            cache_write_tokens=to_int(first_path_number(
                root,
                ["usage", "cache_write_tokens"],
                ["last_assistant_message", "usage", "cache_write_tokens"],
            )),
            total_tokens=to_int(first_path_number(
                root,
                ["usage", "total_tokens"],
                ["usage", "totalTokens"],
                ["info", "total_token_usage", "total_tokens"],
                ["last_assistant_message", "usage", "total_tokens"],
            )),
            cost_usd=first_path_number(
                root, ["usage", "cost_usd"], ["usage", "costUSD"], ["cost_usd"], ["costUSD"]
            ),
            status=EventStatus.OK,
            **common,
        ))
        if has_usage(usage_event):
            return [usage_event]

        outcome = first_path_string(root, ["status"], ["result"], ["outcome"]).lower()
        if outcome in _ERROR_OUTCOMES:
            status = EventStatus.ERROR
        elif outcome in _ABORTED_OUTCOMES:
            status = EventStatus.ABORTED
        else:
            status = EventStatus.OK
        return [TelemetryEvent(event_type=EventType.TURN_COMPLETED, status=status, **common)]
