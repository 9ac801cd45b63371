"""
Unit tests for cumulative counter delta reconstruction.
"""

from ai_usage_meter.core.deltas import CounterDeltaReconstructor


def _snap(inp, out, total=None):
    return {
        "input_tokens": inp,
        "output_tokens": out,
        "total_tokens": inp + out if total is None else total,
    }


class TestCounterDeltaReconstructor:
    """Test snapshot to delta conversion."""

    def test_first_snapshot_is_its_own_delta(self):
        reconstructor = CounterDeltaReconstructor()
        assert reconstructor.observe("s1", _snap(100, 20)) == _snap(100, 20)

    def test_consecutive_snapshots_yield_differences(self):
        reconstructor = CounterDeltaReconstructor()
        reconstructor.observe("s1", _snap(100, 20))
        delta = reconstructor.observe("s1", _snap(250, 50))
        assert delta == {"input_tokens": 150, "output_tokens": 30, "total_tokens": 180}

    def test_unchanged_snapshot_yields_nothing(self):
        reconstructor = CounterDeltaReconstructor()
        reconstructor.observe("s1", _snap(100, 20))
        assert reconstructor.observe("s1", _snap(100, 20)) is None

    def test_counter_reset_uses_raw_snapshot(self):
        """A decreasing counter never produces negative usage."""
        reconstructor = CounterDeltaReconstructor()
        reconstructor.observe("s1", _snap(500, 100))
        delta = reconstructor.observe("s1", _snap(40, 10))
        assert delta == _snap(40, 10)
        assert reconstructor.previous("s1") == _snap(40, 10)

    def test_deltas_never_negative(self):
        reconstructor = CounterDeltaReconstructor()
        snapshots = [_snap(10, 1), _snap(30, 5), _snap(5, 0), _snap(5, 0), _snap(60, 9)]
        for snapshot in snapshots:
            delta = reconstructor.observe("s1", snapshot)
            if delta is not None:
                assert all(value >= 0 for value in delta.values())

    def test_streams_are_independent(self):
        reconstructor = CounterDeltaReconstructor()
        reconstructor.observe("a", _snap(100, 0))
        assert reconstructor.observe("b", _snap(100, 0)) == _snap(100, 0)

    def test_total_key_drives_emptiness(self):
        """A zero total suppresses the delta even if sub-fields moved."""
        reconstructor = CounterDeltaReconstructor()
        reconstructor.observe("s1", _snap(10, 0, total=10))
        assert reconstructor.observe("s1", {"input_tokens": 12, "output_tokens": 0, "total_tokens": 10}) is None

    def test_sum_used_without_total_key(self):
        reconstructor = CounterDeltaReconstructor(total_key=None)
        assert reconstructor.observe("s1", {"input_tokens": 0, "output_tokens": 0}) is None
        assert reconstructor.observe("s1", {"input_tokens": 3, "output_tokens": 0}) == {
            "input_tokens": 3,
            "output_tokens": 0,
        }

    def test_reset(self):
        reconstructor = CounterDeltaReconstructor()
        reconstructor.observe("a", _snap(100, 0))
        reconstructor.observe("b", _snap(100, 0))
        reconstructor.reset("a")
        assert reconstructor.previous("a") is None
        assert reconstructor.previous("b") is not None
        reconstructor.reset()
        assert reconstructor.previous("b") is None
