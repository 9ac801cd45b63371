"""
Tests for the OpenCode database, event file and hook adapter.
"""

import json
import sqlite3
import threading
from datetime import datetime, timezone

import pytest

from ai_usage_meter.adapters.base import CollectionCancelled, CollectOptions
from ai_usage_meter.adapters.opencode import OpenCodeSource, extract_usage, map_tool_status
from ai_usage_meter.core.events import Channel, EventStatus, EventType

FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
T_MS = 1740823200000  # 2025-03-01T10:00:00Z


def _assistant_message(message_id, session_id="ses_1", **extra):
    data = {
        "id": message_id,
        "sessionID": session_id,
        "role": "assistant",
        "modelID": "claude-sonnet-4-5",
        "providerID": "anthropic",
        "parentID": "msg_user_1",
        "path": {"cwd": "/home/dev/shop", "root": "/home/dev/shop"},
        "cost": 0.0123,
        "tokens": {"input": 1200, "output": 300, "reasoning": 0, "cache": {"read": 50, "write": 10}},
        "time": {"created": T_MS, "completed": T_MS + 4000},
        "finish": "stop",
    }
    data.update(extra)
    return data


def _create_db(path, with_session=True, with_part=True):
    conn = sqlite3.connect(str(path))
    try:
        conn.execute(
            "CREATE TABLE message (id TEXT PRIMARY KEY, session_id TEXT, "
            "time_created INTEGER, time_updated INTEGER, data TEXT)"
        )
        if with_session:
            conn.execute("CREATE TABLE session (id TEXT PRIMARY KEY, directory TEXT)")
        if with_part:
            conn.execute(
                "CREATE TABLE part (id TEXT PRIMARY KEY, message_id TEXT, session_id TEXT, "
                "time_created INTEGER, time_updated INTEGER, data TEXT)"
            )
        conn.commit()
    finally:
        conn.close()


class CancelAfterFirstRow(OpenCodeSource):
    """Sets the cancel flag once the first row of ``table`` is converted."""

    def __init__(self, cancel, table="message"):
        super().__init__(clock=lambda: FIXED_NOW)
        self.cancel = cancel
        self.table = table

    def _message_row_event(self, row, db_path, account_id):
        event = super()._message_row_event(row, db_path, account_id)
        if self.table == "message":
            self.cancel.set()
        return event

    def _tool_row_event(self, row, db_path, account_id):
        event = super()._tool_row_event(row, db_path, account_id)
        if self.table == "part":
            self.cancel.set()
        return event


def _assert_writable(path):
    """Fail if a reader still holds the database open with a pending statement."""
    conn = sqlite3.connect(str(path), timeout=0)
    try:
        conn.execute("BEGIN EXCLUSIVE")
        conn.execute("CREATE TABLE write_check (id INTEGER)")
        conn.commit()
    finally:
        conn.close()


def _insert(path, table, row):
    conn = sqlite3.connect(str(path))
    try:
        placeholders = ", ".join("?" for _ in row)
        conn.execute(f"INSERT INTO {table} VALUES ({placeholders})", row)
        conn.commit()
    finally:
        conn.close()


class TestOpenCodeDatabase:
    """Test reads from the embedded SQLite database."""

    def setup_method(self):
        self.source = OpenCodeSource(clock=lambda: FIXED_NOW)

    def test_messages_and_tool_parts(self, tmp_path):
        db = tmp_path / "opencode.db"
        _create_db(db)
        _insert(db, "session", ("ses_1", "/home/dev/shop"))
        _insert(db, "message", ("msg_1", "ses_1", T_MS, T_MS + 4000, json.dumps(_assistant_message("msg_1"))))
        _insert(db, "message", ("msg_u", "ses_1", T_MS, T_MS, json.dumps({"id": "msg_u", "role": "user"})))
        _insert(db, "part", ("prt_1", "msg_1", "ses_1", T_MS, T_MS + 1000, json.dumps({
            "type": "tool", "callID": "call_1", "tool": "Bash",
            "state": {"status": "completed", "time": {"start": T_MS, "end": T_MS + 900}},
        })))
        _insert(db, "part", ("prt_2", "msg_1", "ses_1", T_MS, T_MS + 1000, json.dumps({
            "type": "tool", "callID": "call_2", "tool": "edit", "state": {"status": "running"},
        })))
        _insert(db, "part", ("prt_3", "msg_1", "ses_1", T_MS, T_MS + 1000, json.dumps({
            "type": "text", "text": "hello",
        })))

        events = self.source.collect(CollectOptions(paths={"db_path": str(db)}))

        usage = [e for e in events if e.event_type == EventType.MESSAGE_USAGE]
        tools = [e for e in events if e.event_type == EventType.TOOL_USAGE]
        assert len(usage) == 1
        assert len(tools) == 1

        message = usage[0]
        assert message.channel == Channel.SQLITE
        assert message.schema_version == "opencode_sqlite_v1"
        assert message.message_id == "msg_1"
        assert message.session_id == "ses_1"
        assert message.turn_id == "msg_user_1"
        assert message.provider_id == "anthropic"
        assert message.account_id == "zen"
        assert message.model_raw == "claude-sonnet-4-5"
        assert message.workspace_id == "shop"
        assert message.input_tokens == 1200
        assert message.cache_read_tokens == 50
        assert message.cache_write_tokens == 10
        assert message.total_tokens == 1560
        assert message.cost_usd == pytest.approx(0.0123)
        assert message.occurred_at == datetime(2025, 3, 1, 10, 0, 4, tzinfo=timezone.utc)

        tool = tools[0]
        assert tool.tool_call_id == "call_1"
        assert tool.tool_name == "bash"
        assert tool.status == EventStatus.OK
        assert tool.message_id == "msg_1"

    def test_missing_database(self, tmp_path):
        events = self.source.collect(CollectOptions(paths={"db_path": str(tmp_path / "absent.db")}))
        assert events == []

    def test_missing_message_table(self, tmp_path):
        db = tmp_path / "empty.db"
        conn = sqlite3.connect(str(db))
        conn.execute("CREATE TABLE other (id TEXT)")
        conn.commit()
        conn.close()
        assert self.source.collect_sqlite(str(db)) == []

    def test_without_session_and_part_tables(self, tmp_path):
        db = tmp_path / "partial.db"
        _create_db(db, with_session=False, with_part=False)
        _insert(db, "message", ("msg_1", "ses_1", T_MS, T_MS, json.dumps(_assistant_message("msg_1"))))
        events = self.source.collect_sqlite(str(db))
        assert len(events) == 1
        assert events[0].event_type == EventType.MESSAGE_USAGE

    def test_unfinished_message_without_usage_skipped(self, tmp_path):
        db = tmp_path / "pending.db"
        _create_db(db)
        pending = _assistant_message("msg_2", tokens={}, cost=None, time={"created": T_MS})
        _insert(db, "message", ("msg_2", "ses_1", T_MS, T_MS, json.dumps(pending)))
        assert self.source.collect_sqlite(str(db)) == []

    def _three_messages_with_tools(self, db):
        _create_db(db)
        for index in range(3):
            message_id = "msg_%d" % index
            _insert(db, "message", (
                message_id, "ses_1", T_MS + index * 1000, T_MS + index * 1000,
                json.dumps(_assistant_message(message_id)),
            ))
            _insert(db, "part", ("prt_%d" % index, message_id, "ses_1", T_MS, T_MS + index * 1000, json.dumps({
                "type": "tool", "callID": "call_%d" % index, "tool": "bash",
                "state": {"status": "completed"},
            })))

    def test_cancellation_during_messages(self, tmp_path):
        """Cancelling mid-query returns converted rows and releases the database."""
        db = tmp_path / "cancel.db"
        self._three_messages_with_tools(db)
        cancel = threading.Event()

        with pytest.raises(CollectionCancelled) as exc_info:
            CancelAfterFirstRow(cancel).collect(CollectOptions(paths={"db_path": str(db)}), cancel)

        partial = exc_info.value.events
        assert [e.message_id for e in partial] == ["msg_0"]
        assert all(e.event_type == EventType.MESSAGE_USAGE for e in partial)
        _assert_writable(db)

    def test_cancellation_during_tool_parts(self, tmp_path):
        db = tmp_path / "cancel_parts.db"
        self._three_messages_with_tools(db)
        cancel = threading.Event()

        with pytest.raises(CollectionCancelled) as exc_info:
            CancelAfterFirstRow(cancel, table="part").collect_sqlite(str(db), cancel=cancel)

        partial = exc_info.value.events
        usage = [e for e in partial if e.event_type == EventType.MESSAGE_USAGE]
        tools = [e for e in partial if e.event_type == EventType.TOOL_USAGE]
        assert len(usage) == 3
        assert len(tools) == 1
        _assert_writable(db)

    def test_database_left_unmodified(self, tmp_path):
        db = tmp_path / "ro.db"
        _create_db(db)
        before = db.read_bytes()
        self.source.collect_sqlite(str(db))
        assert db.read_bytes() == before


class TestOpenCodeEventFiles:
    """Test plugin event logs."""

    def test_message_and_tool_bus_events(self, tmp_path):
        events_dir = tmp_path / "events"
        events_dir.mkdir()
        lines = [
            {"type": "message.updated", "properties": {"info": _assistant_message("msg_9")}},
            {"type": "message.updated", "properties": {"info": {"id": "u1", "role": "user"}}},
            {"type": "tool.execute.after", "payload": {
                "toolCallID": "call_9", "toolName": "Grep", "sessionID": "ses_1",
                "messageID": "msg_9", "timestamp": T_MS,
            }},
            {"type": "session.idle"},
        ]
        with open(events_dir / "bus.ndjson", "w", encoding="utf-8") as f:
            for line in lines:
                f.write(json.dumps(line) + "\n")

        source = OpenCodeSource(clock=lambda: FIXED_NOW)
        events = source.collect(CollectOptions(path_lists={"events_dirs": [str(events_dir)]}))

        assert [e.event_type for e in events] == [EventType.MESSAGE_USAGE, EventType.TOOL_USAGE]
        assert events[0].schema_version == "opencode_event_v1"
        assert events[0].total_tokens == 1560
        assert events[1].tool_name == "grep"
        assert events[1].occurred_at == datetime(2025, 3, 1, 10, tzinfo=timezone.utc)


class TestOpenCodeHooks:
    """Test plugin hook payload shapes."""

    def setup_method(self):
        self.source = OpenCodeSource(clock=lambda: FIXED_NOW)

    def _parse(self, payload):
        return self.source.parse_hook_payload(json.dumps(payload).encode("utf-8"), CollectOptions())

    def test_wrapped_bus_event(self):
        events = self._parse({"event": {
            "type": "message.updated",
            "properties": {"info": _assistant_message("msg_h")},
        }})
        assert events[0].event_type == EventType.MESSAGE_USAGE
        assert events[0].channel == Channel.HOOK

    def test_tool_execute_after_hook(self):
        events = self._parse({
            "hook": "tool.execute.after",
            "input": {"tool": "Read", "sessionID": "ses_1", "callID": "call_h"},
            "output": {"title": "read file"},
        })
        assert events[0].event_type == EventType.TOOL_USAGE
        assert events[0].tool_call_id == "call_h"
        assert events[0].tool_name == "read"

    def test_chat_message_hook(self):
        events = self._parse({
            "hook": "chat.message",
            "input": {"sessionID": "ses_1", "messageID": "msg_c",
                      "model": {"providerID": "openai", "modelID": "gpt-5"}},
            "output": {"message": {"id": "msg_c"}, "usage": {"input_tokens": 7, "output_tokens": 3}},
        })
        event = events[0]
        assert event.event_type == EventType.MESSAGE_USAGE
        assert event.provider_id == "openai"
        assert event.model_raw == "gpt-5"
        assert event.total_tokens == 10

    def test_unknown_shape_becomes_raw_envelope(self):
        events = self._parse({"hook": "session.compacted", "sessionID": "ses_1"})
        event = events[0]
        assert event.event_type == EventType.RAW_ENVELOPE
        assert event.status == EventStatus.UNKNOWN
        assert event.session_id == "ses_1"
        assert event.payload["captured_as"] == "raw_envelope"
        assert event.payload["detected_event"] == "session.compacted"

    def test_tool_hook_without_call_id_is_raw(self):
        events = self._parse({"hook": "tool.execute.after", "input": {"tool": "Read"}})
        assert events[0].event_type == EventType.RAW_ENVELOPE


class TestOpenCodeHelpers:
    """Test usage extraction and tool status mapping."""

    def test_extract_usage_shapes(self):
        assert extract_usage({"tokens": {"input": 5, "cache": {"read": 2}}})["cache_read_tokens"] == 2
        assert extract_usage({"usage": {"inputTokens": 9}})["input_tokens"] == 9
        assert extract_usage({"message": {"usage": {"output_tokens": 4}}})["output_tokens"] == 4
        assert extract_usage({})["total_tokens"] is None

    @pytest.mark.parametrize("raw,expected", [
        ("completed", (EventStatus.OK, True)),
        ("error", (EventStatus.ERROR, True)),
        ("aborted", (EventStatus.ABORTED, True)),
        ("running", (EventStatus.UNKNOWN, False)),
        ("weird", (EventStatus.UNKNOWN, True)),
    ])
    def test_map_tool_status(self, raw, expected):
        assert map_tool_status(raw) == expected
