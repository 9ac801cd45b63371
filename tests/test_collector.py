"""
Tests for concurrent collection and merge.
"""

import threading
from datetime import datetime, timezone
from typing import List, Optional

import pytest

from ai_usage_meter.adapters.base import (
    CollectionCancelled,
    CollectOptions,
    HookUnsupportedError,
    TelemetrySource,
)
from ai_usage_meter.adapters.claude_code import ClaudeCodeSource
from ai_usage_meter.core.collector import collect_all, ingest_hook_payload
from ai_usage_meter.core.dedup import DedupCache
from ai_usage_meter.core.events import Channel, EventType, TelemetryEvent

T0 = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)


def _usage(request_id: str, agent: str, tokens: int = 10) -> TelemetryEvent:
    return TelemetryEvent(
        schema_version="test_v1",
        channel=Channel.JSONL,
        occurred_at=T0,
        event_type=EventType.MESSAGE_USAGE,
        request_id=request_id,
        agent_name=agent,
        input_tokens=tokens,
    )


class StaticSource(TelemetrySource):
    """Source returning a fixed list of events."""

    def __init__(self, name: str, events: List[TelemetryEvent]):
        self.name = name
        self.events = events
        self.seen_options: Optional[CollectOptions] = None

    def system(self) -> str:
        return self.name

    def collect(self, options, cancel=None):
        self.seen_options = options
        return list(self.events)


class FailingSource(TelemetrySource):
    def system(self) -> str:
        return "broken"

    def collect(self, options, cancel=None):
        raise OSError("permission denied")


class CancellingSource(TelemetrySource):
    """Source that observes cancellation after producing one event."""

    def system(self) -> str:
        return "slow"

    def collect(self, options, cancel=None):
        produced = [_usage("slow-1", "slow")]
        if cancel is not None and cancel.is_set():
            raise CollectionCancelled(produced)
        return produced


class TestCollectAll:
    """Test collection runs across several sources."""

    def test_merge_in_source_order(self):
        """The first source wins when two sources report the same request."""
        first = StaticSource("alpha", [_usage("req-1", "alpha"), _usage("req-2", "alpha")])
        second = StaticSource("beta", [_usage("req-2", "beta"), _usage("req-3", "beta")])
        report = collect_all([first, second], {})

        assert [(e.request_id, e.agent_name) for e in report.events] == [
            ("req-1", "alpha"),
            ("req-2", "alpha"),
            ("req-3", "beta"),
        ]
        assert report.counts == {"alpha": 2, "beta": 1}
        assert report.errors == {}
        assert not report.cancelled

    def test_events_are_normalized(self):
        report = collect_all([StaticSource("alpha", [_usage("req-1", "alpha", tokens=42)])], {})
        assert report.events[0].total_tokens == 42

    def test_failing_source_does_not_block_others(self):
        healthy = StaticSource("alpha", [_usage("req-1", "alpha")])
        report = collect_all([FailingSource(), healthy], {})

        assert len(report.events) == 1
        assert "broken" in report.errors
        assert "permission denied" in report.errors["broken"]
        assert report.counts["broken"] == 0

    def test_cancellation_keeps_partial_events(self):
        cancel = threading.Event()
        cancel.set()
        report = collect_all([CancellingSource(), StaticSource("alpha", [_usage("a", "alpha")])], {}, cancel=cancel)

        assert report.cancelled
        assert {e.request_id for e in report.events} == {"slow-1", "a"}

    def test_options_routed_by_system(self):
        source = StaticSource("alpha", [])
        options = CollectOptions(paths={"db_path": "/tmp/x.db"})
        collect_all([source], {"alpha": options})
        assert source.seen_options is options

    def test_missing_options_default_to_empty(self):
        source = StaticSource("alpha", [])
        collect_all([source], {})
        assert source.seen_options == CollectOptions()

    def test_shared_cache_across_runs(self):
        cache = DedupCache()
        source = StaticSource("alpha", [_usage("req-1", "alpha")])
        assert len(collect_all([source], {}, cache=cache).events) == 1
        assert len(collect_all([source], {}, cache=cache).events) == 0

    def test_no_sources(self):
        report = collect_all([], {})
        assert report.events == []

    def test_invalid_worker_count(self):
        with pytest.raises(ValueError):
            collect_all([], {}, max_workers=0)


class TestIngestHookPayload:
    """Test single-payload ingestion."""

    def test_unsupported_source(self):
        with pytest.raises(HookUnsupportedError) as exc_info:
            ingest_hook_payload(StaticSource("alpha", []), b"{}", CollectOptions())
        assert exc_info.value.system == "alpha"

    def test_duplicate_payloads_filtered_with_shared_cache(self):
        source = ClaudeCodeSource(clock=lambda: T0)
        raw = b'{"hook_event_name": "Stop", "request_id": "req-1", "usage": {"input_tokens": 5}}'
        cache = DedupCache()
        assert len(ingest_hook_payload(source, raw, CollectOptions(), cache)) == 1
        assert ingest_hook_payload(source, raw, CollectOptions(), cache) == []
