"""
Cumulative counter to per-turn delta reconstruction.

Some sources log a running "usage so far" snapshot on every turn instead of
the usage of that turn. The reconstructor remembers the last snapshot per
stream (one session or one file) and turns each new snapshot into a delta.
"""

from typing import Dict, Mapping, Optional

Counters = Dict[str, int]


class CounterDeltaReconstructor:
    """Turns cumulative counter snapshots into per-observation deltas.

    Policy:
    - First snapshot of a stream: the delta is the snapshot itself.
    - Any negative field (counter reset): the delta is replaced by the raw
      snapshot rather than reporting negative usage.
    - A delta whose total is zero or negative yields ``None``.

    Instances are scoped to one aggregation run and are not thread-safe.
    """

    def __init__(self, total_key: Optional[str] = "total_tokens"):
        """
        Args:
            total_key: Counter holding the snapshot's own total. When absent
                from a delta, the total is the sum of all fields.
        """
        self.total_key = total_key
        self._previous: Dict[str, Counters] = {}

    def observe(self, stream_key: str, snapshot: Mapping[str, int]) -> Optional[Counters]:
        """Record ``snapshot`` for ``stream_key`` and return its delta.

        Args:
            stream_key: Identity of the logical stream (session or file)
            snapshot: Cumulative counters, field name to value

        Returns:
            The per-observation delta, or ``None`` when it carries no usage
        """
        current = {name: int(value) for name, value in snapshot.items()}
        previous = self._previous.get(stream_key)
        self._previous[stream_key] = current

        if previous is None:
            delta = dict(current)
        else:
            delta = {name: value - previous.get(name, 0) for name, value in current.items()}
            if any(value < 0 for value in delta.values()):
                delta = dict(current)

        if self._total(delta) <= 0:
            return None
        return delta

    def previous(self, stream_key: str) -> Optional[Counters]:
        snapshot = self._previous.get(stream_key)
        return dict(snapshot) if snapshot is not None else None

    def reset(self, stream_key: Optional[str] = None) -> None:
        """Forget one stream, or every stream when ``stream_key`` is None."""
        if stream_key is None:
            self._previous.clear()
        else:
            self._previous.pop(stream_key, None)

    def _total(self, counters: Counters) -> int:
        if self.total_key and self.total_key in counters:
            return counters[self.total_key]
        return sum(counters.values())
