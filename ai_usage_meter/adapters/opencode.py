"""
OpenCode telemetry adapter.

OpenCode keeps its history in an embedded SQLite database (``message``,
``part`` and ``session`` tables whose rows carry a JSON ``data`` column). Its
plugin system can also append bus events to line-delimited files and pipe
hook payloads to the meter.
"""

import json
import logging
import os
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.events import Channel, EventStatus, EventType, TelemetryEvent, normalize_event
from ..core.extraction import (
    first_non_empty,
    first_path_number,
    first_path_string,
    path_value,
    sanitize_workspace,
    to_int,
    unix_auto,
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

SYSTEM = "opencode"
DEFAULT_PROVIDER_ID = "zen"
DEFAULT_ACCOUNT_ID = "zen"
EVENT_SCHEMA = "opencode_event_v1"
HOOK_SCHEMA = "opencode_hook_v1"
SQLITE_SCHEMA = "opencode_sqlite_v1"

_MESSAGE_QUERY = """
    SELECT m.id, m.session_id, m.time_created, m.time_updated, m.data,
           COALESCE(s.directory, '')
    FROM message m
    LEFT JOIN session s ON s.id = m.session_id
    ORDER BY m.time_updated ASC
"""

_MESSAGE_QUERY_NO_SESSION = """
    SELECT m.id, m.session_id, m.time_created, m.time_updated, m.data, ''
    FROM message m
    ORDER BY m.time_updated ASC
"""

_PART_QUERY = """
    SELECT p.id, p.message_id, p.session_id, p.time_created, p.time_updated,
           p.data, COALESCE(m.data, '{}')
    FROM part p
    LEFT JOIN message m ON m.id = p.message_id
    ORDER BY p.time_updated ASC
"""

_OK_TOOL_STATES = {"", "completed", "complete", "success", "succeeded"}
_ERROR_TOOL_STATES = {"error", "failed", "failure"}
_ABORTED_TOOL_STATES = {"aborted", "cancelled", "canceled", "terminated"}
_PENDING_TOOL_STATES = {"running", "pending", "queued", "in_progress", "in-progress"}


def _candidates(*suffixes: List[str]) -> List[List[str]]:
    prefixes = (["usage"], ["message", "usage"])
    return [prefix + suffix for suffix in suffixes for prefix in prefixes]


_INPUT_PATHS = _candidates(["input_tokens"], ["inputTokens"], ["input"]) + [
    ["tokens", "input"], ["input_tokens"], ["inputTokens"],
]
_OUTPUT_PATHS = _candidates(["output_tokens"], ["outputTokens"], ["output"]) + [
    ["tokens", "output"], ["output_tokens"], ["outputTokens"],
]
_REASONING_PATHS = _candidates(["reasoning_tokens"], ["reasoningTokens"], ["reasoning"]) + [
    ["tokens", "reasoning"], ["reasoning_tokens"], ["reasoningTokens"],
]
_CACHE_READ_PATHS = _candidates(
    ["cache_read_input_tokens"], ["cacheReadInputTokens"], ["cache_read_tokens"],
    ["cacheReadTokens"], ["cache", "read"],
) + [["tokens", "cache", "read"]]
_CACHE_WRITE_PATHS = _candidates(
    ["cache_creation_input_tokens"], ["cacheCreationInputTokens"], ["cache_write_tokens"],
    ["cacheWriteTokens"], ["cache", "write"],
) + [["tokens", "cache", "write"]]
_TOTAL_PATHS = _candidates(["total_tokens"], ["totalTokens"], ["total"]) + [
    ["tokens", "total"], ["total_tokens"], ["totalTokens"],
]
_COST_PATHS = _candidates(["cost_usd"], ["costUSD"], ["cost"]) + [
    ["cost_usd"], ["costUSD"], ["cost"],
]


def extract_usage(root: Dict[str, Any]) -> Dict[str, Any]:
    """Token counts and cost from any of the known OpenCode shapes."""
    return {
        "input_tokens": to_int(first_path_number(root, *_INPUT_PATHS)),
        "output_tokens": to_int(first_path_number(root, *_OUTPUT_PATHS)),
        "reasoning_tokens": to_int(first_path_number(root, *_REASONING_PATHS)),
        "cache_read_tokens": to_int(first_path_number(root, *_CACHE_READ_PATHS)),
        "cache_write_tokens": to_int(first_path_number(root, *_CACHE_WRITE_PATHS)),
        "total_tokens": to_int(first_path_number(root, *_TOTAL_PATHS)),
        "cost_usd": first_path_number(root, *_COST_PATHS),
    }


def map_tool_status(raw: str) -> Tuple[EventStatus, bool]:
    """Map a tool part state to an event status.

    Returns:
        ``(status, include)``; in-flight parts are not included
    """
    state = (raw or "").strip().lower()
    if state in _OK_TOOL_STATES:
        return EventStatus.OK, True
    if state in _ERROR_TOOL_STATES:
        return EventStatus.ERROR, True
    if state in _ABORTED_TOOL_STATES:
        return EventStatus.ABORTED, True
    if state in _PENDING_TOOL_STATES:
        return EventStatus.UNKNOWN, False
    return EventStatus.UNKNOWN, True


def _finish_status(finish: str) -> EventStatus:
    finish = finish.lower()
    if "abort" in finish or "cancel" in finish:
        return EventStatus.ABORTED
    if "error" in finish or "fail" in finish:
        return EventStatus.ERROR
    return EventStatus.OK


def _decode_json_object(text: Any) -> Dict[str, Any]:
    if not isinstance(text, (str, bytes)) or not text:
        return {}
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return value if isinstance(value, dict) else {}


def _usage_present(usage: Dict[str, Any]) -> bool:
    return any(value is not None and value > 0 for value in usage.values())


def _epoch(value: Optional[float]) -> Optional[datetime]:
    if value is None or value <= 0:
        return None
    try:
        return unix_auto(value)
    except (OverflowError, OSError, ValueError):
        return None


def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
    cursor = conn.cursor()
    try:
        cursor.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ? LIMIT 1",
            (table,),
        )
        return cursor.fetchone() is not None
    finally:
        cursor.close()


class OpenCodeSource(TelemetrySource):
    """OpenCode database, event files and plugin hook."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock

    def system(self) -> str:
        return SYSTEM

    def collect(
        self,
        options: CollectOptions,
        cancel: Optional[threading.Event] = None,
    ) -> List[TelemetryEvent]:
        account_id = first_non_empty(options.account_id, DEFAULT_ACCOUNT_ID)
        events: List[TelemetryEvent] = []

        db_path = options.path("db_path")
        if db_path:
            events.extend(self.collect_sqlite(db_path, account_id, cancel))

        roots = options.paths_for("events_dirs")
        events_file = options.path("events_file")
        if events_file:
            roots.append(events_file)
        for path in collect_files(roots, [".jsonl", ".ndjson"]):
            check_cancelled(cancel, events)
            try:
                events.extend(self.parse_event_file(path, account_id, cancel))
            except CollectionCancelled as exc:
                raise CollectionCancelled(events + exc.events) from None

        logger.debug("opencode: %d events", len(events))
        return events

    def collect_sqlite(
        self,
        db_path: str,
        account_id: str = DEFAULT_ACCOUNT_ID,
        cancel: Optional[threading.Event] = None,
    ) -> List[TelemetryEvent]:
        """Read assistant messages and tool parts from the OpenCode database.

        A missing database file or ``message`` table yields no events. The
        database is opened read-only.

        Raises:
            CollectionCancelled: Carrying the rows converted so far
        """
        if not os.path.isfile(db_path):
            return []
        try:
            conn = sqlite3.connect(Path(db_path).resolve().as_uri() + "?mode=ro", uri=True)
        except sqlite3.Error as exc:
            logger.warning("Cannot open OpenCode database %s: %s", db_path, exc)
            return []

        out: List[TelemetryEvent] = []
        try:
            if not _table_exists(conn, "message"):
                return []
            query = _MESSAGE_QUERY if _table_exists(conn, "session") else _MESSAGE_QUERY_NO_SESSION
            self._read_messages(conn, query, db_path, account_id, cancel, out)
            if _table_exists(conn, "part"):
                self._read_tool_parts(conn, db_path, account_id, cancel, out)
        except sqlite3.Error as exc:
            logger.warning("Failed reading OpenCode database %s: %s", db_path, exc)
        finally:
            conn.close()
        return out

    def _read_messages(
        self,
        conn: sqlite3.Connection,
        query: str,
        db_path: str,
        account_id: str,
        cancel: Optional[threading.Event],
        out: List[TelemetryEvent],
    ) -> None:
        cursor = conn.cursor()
        try:
            cursor.execute(query)
            for row in cursor:
                check_cancelled(cancel, out)
                event = self._message_row_event(row, db_path, account_id)
                if event is not None:
                    out.append(event)
        finally:
            cursor.close()

    def _message_row_event(self, row: tuple, db_path: str, account_id: str) -> Optional[TelemetryEvent]:
        row_id, row_session, time_created, time_updated, data, directory = row
        payload = _decode_json_object(data)
        if first_path_string(payload, ["role"]).lower() != "assistant":
            return None

        usage = extract_usage(payload)
        completed = _epoch(first_path_number(payload, ["time", "completed"]))
        created = _epoch(first_path_number(payload, ["time", "created"]))
        if completed is None and not _usage_present(usage):
            return None

        message_id = first_non_empty(
            str(row_id or ""),
            first_path_string(payload, ["id"], ["messageID"]),
        )
        if not message_id:
            return None

        occurred_at = (
            completed
            or created
            or _epoch(time_updated if isinstance(time_updated, (int, float)) else None)
            or _epoch(time_created if isinstance(time_created, (int, float)) else None)
            or self.clock()
        )
        return normalize_event(TelemetryEvent(
            schema_version=SQLITE_SCHEMA,
            channel=Channel.SQLITE,
            occurred_at=occurred_at,
            event_type=EventType.MESSAGE_USAGE,
            account_id=account_id,
            workspace_id=sanitize_workspace(first_non_empty(
                first_path_string(payload, ["path", "cwd"], ["path", "root"]),
                directory or "",
            )),
            session_id=first_non_empty(str(row_session or ""), first_path_string(payload, ["sessionID"])),
            turn_id=first_path_string(payload, ["parentID"], ["turnID"]),
            message_id=message_id,
            provider_id=first_non_empty(
                first_path_string(payload, ["providerID"], ["model", "providerID"]),
                DEFAULT_PROVIDER_ID,
            ),
            agent_name=first_non_empty(first_path_string(payload, ["agent"]), SYSTEM),
            model_raw=first_path_string(payload, ["modelID"], ["model", "modelID"]),
            status=_finish_status(first_path_string(payload, ["finish"])),
            payload={"source": {"db_path": db_path, "table": "message"}, "message": payload},
            **usage,
        ))

    def _read_tool_parts(
        self,
        conn: sqlite3.Connection,
        db_path: str,
        account_id: str,
        cancel: Optional[threading.Event],
        out: List[TelemetryEvent],
    ) -> None:
        cursor = conn.cursor()
        try:
            cursor.execute(_PART_QUERY)
            for row in cursor:
                check_cancelled(cancel, out)
                event = self._tool_row_event(row, db_path, account_id)
                if event is not None:
                    out.append(event)
        finally:
            cursor.close()

    def _tool_row_event(self, row: tuple, db_path: str, account_id: str) -> Optional[TelemetryEvent]:
        part_id, row_message, row_session, time_created, time_updated, part_data, message_data = row
        part = _decode_json_object(part_data)
        if first_path_string(part, ["type"]) != "tool":
            return None
        message = _decode_json_object(message_data)

        tool_call_id = first_non_empty(
            first_path_string(part, ["callID"], ["call_id"]),
            str(part_id or ""),
        )
        if not tool_call_id:
            return None
        status, include = map_tool_status(first_path_string(part, ["state", "status"]))
        if not include:
            return None

        occurred_at = (
            _epoch(first_path_number(
                part,
                ["state", "time", "end"],
                ["state", "time", "start"],
                ["time", "end"],
                ["time", "start"],
            ))
            or _epoch(time_updated if isinstance(time_updated, (int, float)) else None)
            or _epoch(time_created if isinstance(time_created, (int, float)) else None)
            or self.clock()
        )
        return TelemetryEvent(
            schema_version=SQLITE_SCHEMA,
            channel=Channel.SQLITE,
            occurred_at=occurred_at,
            event_type=EventType.TOOL_USAGE,
            account_id=account_id,
            workspace_id=sanitize_workspace(first_path_string(message, ["path", "cwd"], ["path", "root"])),
            session_id=first_non_empty(
                str(row_session or ""),
                first_path_string(part, ["sessionID"]),
                first_path_string(message, ["sessionID"]),
            ),
            message_id=first_non_empty(
                str(row_message or ""),
                first_path_string(part, ["messageID"]),
                first_path_string(message, ["id"]),
            ),
            tool_call_id=tool_call_id,
            provider_id=first_non_empty(
                first_path_string(message, ["providerID"], ["model", "providerID"]),
                DEFAULT_PROVIDER_ID,
            ),
            agent_name=first_non_empty(first_path_string(message, ["agent"]), SYSTEM),
            model_raw=first_path_string(message, ["modelID"], ["model", "modelID"]),
            tool_name=first_non_empty(first_path_string(part, ["tool"], ["name"]), "unknown").lower(),
            requests=1,
            status=status,
            payload={"source": {"db_path": db_path, "table": "part"}, "part": part},
        )

    def parse_event_file(
        self,
        path: str,
        account_id: str = DEFAULT_ACCOUNT_ID,
        cancel: Optional[threading.Event] = None,
    ) -> List[TelemetryEvent]:
        """Parse a plugin event log (``.jsonl`` or ``.ndjson``).

        Only ``message.updated`` for assistant messages and
        ``tool.execute.after`` records produce events.
        """
        out: List[TelemetryEvent] = []
        for line_number, record in iter_jsonl_records(path):
            check_cancelled(cancel, out)
            event = self._bus_event(
                record,
                channel=Channel.JSONL,
                fallback_id=f"{path}:{line_number}",
                account_id=account_id,
            )
            if event is not None:
                out.append(event)
        return out

    def _bus_event(
        self,
        record: Dict[str, Any],
        channel: Channel,
        account_id: str,
        fallback_id: str = "",
    ) -> Optional[TelemetryEvent]:
        kind = first_path_string(record, ["type"], ["event"])

        if kind == "message.updated":
            info, _ = path_value(record, ["properties", "info"])
            if not isinstance(info, dict) or first_path_string(info, ["role"]).lower() != "assistant":
                return None
            message_id = first_path_string(info, ["id"]) or fallback_id
            if not message_id:
                return None
            tokens = {
                "input_tokens": to_int(first_path_number(info, ["tokens", "input"])) or 0,
                "output_tokens": to_int(first_path_number(info, ["tokens", "output"])) or 0,
                "reasoning_tokens": to_int(first_path_number(info, ["tokens", "reasoning"])) or 0,
                "cache_read_tokens": to_int(first_path_number(info, ["tokens", "cache", "read"])) or 0,
                "cache_write_tokens": to_int(first_path_number(info, ["tokens", "cache", "write"])) or 0,
            }
            occurred_at = (
                _epoch(first_path_number(info, ["time", "completed"]))
                or _epoch(first_path_number(info, ["time", "created"]))
                or self.clock()
            )
            return normalize_event(TelemetryEvent(
                schema_version=EVENT_SCHEMA,
                channel=channel,
                occurred_at=occurred_at,
                event_type=EventType.MESSAGE_USAGE,
                account_id=account_id,
                workspace_id=sanitize_workspace(first_path_string(info, ["path", "cwd"])),
                session_id=first_path_string(info, ["sessionID"]),
                turn_id=first_path_string(info, ["parentID"]),
                message_id=message_id,
                provider_id=first_non_empty(first_path_string(info, ["providerID"]), DEFAULT_PROVIDER_ID),
                agent_name=SYSTEM,
                model_raw=first_path_string(info, ["modelID"]),
                cost_usd=first_path_number(info, ["cost"]) or 0.0,
                status=EventStatus.OK,
                payload={"event_type": kind, "record": record},
                **tokens,
            ))

        if kind == "tool.execute.after":
            tool = record.get("payload")
            if not isinstance(tool, dict):
                return None
            tool_call_id = first_path_string(tool, ["toolCallID"]) or fallback_id
            if not tool_call_id:
                return None
            return TelemetryEvent(
                schema_version=EVENT_SCHEMA,
                channel=channel,
                occurred_at=_epoch(first_path_number(tool, ["timestamp"])) or self.clock(),
                event_type=EventType.TOOL_USAGE,
                account_id=account_id,
                session_id=first_path_string(tool, ["sessionID"]),
                message_id=first_path_string(tool, ["messageID"]),
                tool_call_id=tool_call_id,
                provider_id=DEFAULT_PROVIDER_ID,
                agent_name=SYSTEM,
                tool_name=first_non_empty(
                    first_path_string(tool, ["toolName"], ["name"]), "unknown"
                ).lower(),
                requests=1,
                status=EventStatus.OK,
                payload={"event_type": kind, "record": record},
            )
        return None

    def parse_hook_payload(self, raw: bytes, options: CollectOptions) -> List[TelemetryEvent]:
        """Parse an OpenCode plugin hook payload.

        Accepted shapes are ``{"event": {...}}``, ``{"hook": name, "input":
        ..., "output": ...}`` and a bare bus event ``{"type": ...}``.
        Anything unrecognized is kept as a ``raw_envelope`` event.
        """
        root = decode_hook_payload(raw)
        if root is None:
            return []
        account_id = first_non_empty(options.account_id, DEFAULT_ACCOUNT_ID)

        if isinstance(root.get("event"), dict):
            envelope = root["event"]
            event = self._bus_event(envelope, channel=Channel.HOOK, account_id=account_id)
            return [event or self._raw_envelope(root, account_id, first_path_string(envelope, ["type"], ["event"]))]

        if "hook" in root:
            hook = first_path_string(root, ["hook"])
            if hook == "tool.execute.after":
                return [self._tool_execute_after_hook(root, account_id)]
            if hook == "chat.message":
                return [self._chat_message_hook(root, account_id)]
            return [self._raw_envelope(root, account_id, hook)]

        if "type" in root:
            event = self._bus_event(root, channel=Channel.HOOK, account_id=account_id)
            return [event or self._raw_envelope(root, account_id, first_path_string(root, ["type"]))]

        return [self._raw_envelope(root, account_id, "")]

    def _hook_time(self, root: Dict[str, Any]) -> datetime:
        return (
            _epoch(first_path_number(root, ["timestamp"], ["time"], ["occurred_at"]))
            or self.clock()
        )

    def _tool_execute_after_hook(self, root: Dict[str, Any], account_id: str) -> TelemetryEvent:
        tool_call_id = first_path_string(root, ["input", "callID"])
        if not tool_call_id:
            return self._raw_envelope(root, account_id, "tool.execute.after")
        return TelemetryEvent(
            schema_version=HOOK_SCHEMA,
            channel=Channel.HOOK,
            occurred_at=self._hook_time(root),
            event_type=EventType.TOOL_USAGE,
            account_id=account_id,
            session_id=first_path_string(root, ["input", "sessionID"]),
            tool_call_id=tool_call_id,
            provider_id=DEFAULT_PROVIDER_ID,
            agent_name=SYSTEM,
            tool_name=first_non_empty(first_path_string(root, ["input", "tool"]), "unknown").lower(),
            requests=1,
            status=EventStatus.OK,
            payload=dict(root, hook="tool.execute.after"),
        )

    def _chat_message_hook(self, root: Dict[str, Any], account_id: str) -> TelemetryEvent:
        output = root.get("output") if isinstance(root.get("output"), dict) else {}
        session_id = first_path_string(root, ["input", "sessionID"], ["output", "message", "sessionID"])
        turn_id = first_path_string(root, ["input", "messageID"], ["output", "message", "id"])
        if not session_id and not turn_id:
            return self._raw_envelope(root, account_id, "chat.message")

        usage = extract_usage(output)
        provider_id = first_non_empty(
            first_path_string(
                output,
                ["message", "model", "providerID"],
                ["message", "info", "providerID"],
                ["model", "providerID"],
                ["providerID"],
                ["provider_id"],
            ),
            first_path_string(root, ["input", "model", "providerID"]),
            DEFAULT_PROVIDER_ID,
        )
        model = first_non_empty(
            first_path_string(
                output,
                ["message", "model", "modelID"],
                ["message", "info", "modelID"],
                ["model", "modelID"],
                ["modelID"],
                ["model_id"],
            ),
            first_path_string(root, ["input", "model", "modelID"]),
        )
        return normalize_event(TelemetryEvent(
            schema_version=HOOK_SCHEMA,
            channel=Channel.HOOK,
            occurred_at=self._hook_time(root),
            event_type=EventType.MESSAGE_USAGE,
            account_id=account_id,
            session_id=session_id,
            turn_id=turn_id,
            message_id=first_path_string(root, ["output", "message", "id"], ["input", "messageID"]),
            provider_id=provider_id,
            agent_name=SYSTEM,
            model_raw=model,
            requests=1,
            status=EventStatus.OK,
            payload=dict(root, hook="chat.message"),
            **usage,
        ))

    def _raw_envelope(self, root: Dict[str, Any], account_id: str, detected: str) -> TelemetryEvent:
        return TelemetryEvent(
            schema_version=HOOK_SCHEMA,
            channel=Channel.HOOK,
            occurred_at=self._hook_time(root),
            event_type=EventType.RAW_ENVELOPE,
            account_id=account_id,
            workspace_id=sanitize_workspace(first_path_string(
                root, ["workspace_id"], ["workspaceID"], ["event", "properties", "info", "path", "cwd"]
            )),
            session_id=first_path_string(
                root,
                ["session_id"],
                ["sessionID"],
                ["input", "sessionID"],
                ["output", "message", "sessionID"],
                ["event", "properties", "info", "sessionID"],
            ),
            turn_id=first_path_string(
                root,
                ["turn_id"],
                ["turnID"],
                ["input", "messageID"],
                ["output", "message", "id"],
                ["event", "properties", "info", "parentID"],
            ),
            message_id=first_path_string(
                root,
                ["message_id"],
                ["messageID"],
                ["input", "messageID"],
                ["output", "message", "id"],
                ["event", "properties", "info", "id"],
            ),
            tool_call_id=first_path_string(
                root, ["tool_call_id"], ["toolCallID"], ["input", "callID"], ["event", "payload", "toolCallID"]
            ),
            provider_id=first_non_empty(
                first_path_string(
                    root,
                    ["provider_id"],
                    ["providerID"],
                    ["input", "model", "providerID"],
                    ["model", "providerID"],
                    ["event", "properties", "info", "providerID"],
                ),
                DEFAULT_PROVIDER_ID,
            ),
            agent_name=SYSTEM,
            model_raw=first_path_string(
                root,
                ["model_id"],
                ["modelID"],
                ["input", "model", "modelID"],
                ["model", "modelID"],
                ["event", "properties", "info", "modelID"],
            ),
            status=EventStatus.UNKNOWN,
            payload=dict(
                root,
                captured_as="raw_envelope",
                detected_event=first_non_empty(
                    detected,
                    first_path_string(root, ["hook"], ["type"], ["event"]),
                ),
            ),
        )
