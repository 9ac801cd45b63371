"""
Billing-window aggregation.

Buckets message usage into fixed-duration rolling billing blocks (five hours
by default) and UTC calendar days, and derives the live metrics of the block
that contains "now".

Block algorithm:
1. Sort usage events by ``occurred_at``.
2. A block starts at the hour floor of the first event not yet covered and
   lasts ``duration``.
3. An event strictly after the current block's end starts a new block, so
   every event belongs to exactly one block.

Blocks are rebuilt from scratch on every pass; nothing is updated in place.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from .events import EventType, TelemetryEvent
from .pricing import PRICING_TABLE, PricingTable, calculate_cost

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_DURATION = timedelta(hours=5)
MIN_BURN_RATE_ELAPSED = timedelta(minutes=1)


@dataclass(frozen=True)
class BillingBlock:
    """Aggregated usage of one billing window ``[start, end)``."""
    start: datetime
    end: datetime
    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    reasoning_tokens: int = 0
    total_tokens: int = 0
    message_count: int = 0
    models_seen: FrozenSet[str] = frozenset()

    def contains(self, instant: datetime) -> bool:
        """Whether ``instant`` falls in the live window ``[start, end)``.

        Used to find the active block. Event assignment is wider: an event
        exactly at ``end`` still joins this block (see ``assign_blocks``), so
        ``contains`` is False for the last instant of a block that holds one.
        """
        return self.start <= instant < self.end


@dataclass(frozen=True)
class DailyTotal:
    """Usage of one UTC calendar day."""
    day: date
    cost_usd: float
    input_tokens: int
    output_tokens: int
    cache_read_tokens: int
    cache_write_tokens: int
    total_tokens: int
    message_count: int
    models_seen: FrozenSet[str]


@dataclass(frozen=True)
class Metric:
    """Named numeric output consumed by the report layer."""
    used: float
    unit: str
    window: str


@dataclass
class UsageSummary:
    """Result of one aggregation pass."""
    blocks: List[BillingBlock]
    active_block: Optional[BillingBlock]
    burn_rate_usd_per_hour: Optional[float]
    daily: List[DailyTotal]
    metrics: Dict[str, Metric] = field(default_factory=dict)
    resets: Dict[str, datetime] = field(default_factory=dict)


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def floor_to_hour(dt: datetime) -> datetime:
    """Round a datetime down to the start of its hour."""
    return dt.replace(minute=0, second=0, microsecond=0)


def usage_events(events: Iterable[TelemetryEvent]) -> List[TelemetryEvent]:
    """Message usage events sorted by occurrence time."""
    selected = [e for e in events if e.event_type == EventType.MESSAGE_USAGE]
    selected.sort(key=lambda e: _utc(e.occurred_at))
    return selected


def event_cost(event: TelemetryEvent, pricing: PricingTable = PRICING_TABLE) -> float:
    """Reported cost when present, otherwise a pricing-table estimate."""
    if event.cost_usd is not None:
        return event.cost_usd
    try:
        return calculate_cost(event.model_raw, event.token_usage(), pricing)
    except ValueError:
        logger.debug("No pricing for model %r; counting zero cost", event.model_raw)
        return 0.0


def assign_blocks(
    events: Iterable[TelemetryEvent],
    duration: timedelta = DEFAULT_BLOCK_DURATION,
) -> List[Tuple[datetime, datetime, List[TelemetryEvent]]]:
    """Walk sorted usage events and group them into billing windows.

    Args:
        events: Events in any order; non-usage events are ignored
        duration: Length of one billing block

    Returns:
        ``(start, end, events)`` tuples in chronological order
    """
    if duration <= timedelta(0):
        raise ValueError("billing block duration must be positive")

    groups: List[Tuple[datetime, datetime, List[TelemetryEvent]]] = []
    for event in usage_events(events):
        occurred = _utc(event.occurred_at)
        if not groups or occurred > groups[-1][1]:
            start = floor_to_hour(occurred)
            groups.append((start, start + duration, []))
        groups[-1][2].append(event)
    return groups


def _fold_block(
    start: datetime,
    end: datetime,
    events: List[TelemetryEvent],
    pricing: PricingTable,
) -> BillingBlock:
    cost = 0.0
    input_tokens = output_tokens = cache_read = cache_write = reasoning = total = 0
    models = set()
    for event in events:
        usage = event.token_usage()
        cost += event_cost(event, pricing)
        input_tokens += usage.input_tokens
        output_tokens += usage.output_tokens
        cache_read += usage.cache_read_tokens
        cache_write += usage.cache_write_tokens
        reasoning += usage.reasoning_tokens
        total += event.total_tokens if event.total_tokens is not None else usage.total_tokens
        if event.model_raw:
            models.add(event.model_raw)
    return BillingBlock(
        start=start,
        end=end,
        cost_usd=cost,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_read_tokens=cache_read,
        cache_write_tokens=cache_write,
        reasoning_tokens=reasoning,
        total_tokens=total,
        message_count=len(events),
        models_seen=frozenset(models),
    )


def compute_billing_blocks(
    events: Iterable[TelemetryEvent],
    duration: timedelta = DEFAULT_BLOCK_DURATION,
    pricing: PricingTable = PRICING_TABLE,
) -> List[BillingBlock]:
    """Compute every billing block covered by the usage events."""
    return [
        _fold_block(start, end, grouped, pricing)
        for start, end, grouped in assign_blocks(events, duration)
    ]


def find_active_block(blocks: Iterable[BillingBlock], now: datetime) -> Optional[BillingBlock]:
    """The block whose interval contains ``now``, if any."""
    now = _utc(now)
    for block in blocks:
        if block.contains(now):
            return block
    return None


def burn_rate(
    block: BillingBlock,
    now: datetime,
    min_elapsed: timedelta = MIN_BURN_RATE_ELAPSED,
) -> Optional[float]:
    """Block cost per elapsed wall-clock hour since the block started.

    Returns ``None`` until more than ``min_elapsed`` has passed, or when
    the block has no cost yet.
    """
    elapsed = _utc(now) - block.start
    if elapsed <= min_elapsed or block.cost_usd <= 0:
        return None
    return block.cost_usd / (elapsed.total_seconds() / 3600.0)


def daily_totals(
    events: Iterable[TelemetryEvent],
    pricing: PricingTable = PRICING_TABLE,
) -> List[DailyTotal]:
    """Bucket usage events by UTC calendar day, oldest first."""
    buckets: Dict[date, List[TelemetryEvent]] = defaultdict(list)
    for event in usage_events(events):
        buckets[_utc(event.occurred_at).date()].append(event)

    totals = []
    for day in sorted(buckets):
        day_start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
        folded = _fold_block(day_start, day_start + timedelta(days=1), buckets[day], pricing)
        totals.append(DailyTotal(
            day=day,
            cost_usd=folded.cost_usd,
            input_tokens=folded.input_tokens,
            output_tokens=folded.output_tokens,
            cache_read_tokens=folded.cache_read_tokens,
            cache_write_tokens=folded.cache_write_tokens,
            total_tokens=folded.total_tokens,
            message_count=folded.message_count,
            models_seen=folded.models_seen,
        ))
    return totals


def _window_label(duration: timedelta) -> str:
    hours = duration.total_seconds() / 3600.0
    if hours.is_integer():
        return "rolling-%dh" % int(hours)
    return "rolling-%.1fh" % hours


def summarize_usage(
    events: Iterable[TelemetryEvent],
    now: datetime,
    duration: timedelta = DEFAULT_BLOCK_DURATION,
    pricing: PricingTable = PRICING_TABLE,
    min_burn_elapsed: timedelta = MIN_BURN_RATE_ELAPSED,
) -> UsageSummary:
    """Run one aggregation pass and derive the named metrics.

    Live block metrics and the ``billing_block`` reset are only emitted when
    a block contains ``now``.

    Args:
        events: Canonical events (non-usage events are ignored)
        now: Current instant; naive values are taken as UTC
        duration: Billing block length
        pricing: Table used for events without a reported cost
        min_burn_elapsed: Minimum block age before a burn rate is reported

    Returns:
        UsageSummary with blocks, daily totals, metrics and resets
    """
    now = _utc(now)
    events = list(events)
    blocks = compute_billing_blocks(events, duration, pricing)
    daily = daily_totals(events, pricing)
    active = find_active_block(blocks, now)
    window = _window_label(duration)

    metrics: Dict[str, Metric] = {}
    resets: Dict[str, datetime] = {}
    rate = None

    if active is not None:
        metrics["block_cost_usd"] = Metric(active.cost_usd, "USD", window)
        metrics["block_input_tokens"] = Metric(float(active.input_tokens), "tokens", window)
        metrics["block_output_tokens"] = Metric(float(active.output_tokens), "tokens", window)
        metrics["block_total_tokens"] = Metric(float(active.total_tokens), "tokens", window)
        metrics["block_messages"] = Metric(float(active.message_count), "messages", window)
        resets["billing_block"] = active.end

        rate = burn_rate(active, now, min_burn_elapsed)
        if rate is not None:
            metrics["burn_rate_usd_per_hour"] = Metric(rate, "USD/h", window)

    today = next((d for d in daily if d.day == now.date()), None)
    if today is not None and today.cost_usd > 0:
        metrics["daily_cost_usd"] = Metric(today.cost_usd, "USD", "1d")

    all_time = sum(d.cost_usd for d in daily)
    if all_time > 0:
        metrics["total_cost_usd"] = Metric(all_time, "USD", "all-time")

    return UsageSummary(
        blocks=blocks,
        active_block=active,
        burn_rate_usd_per_hour=rate,
        daily=daily,
        metrics=metrics,
        resets=resets,
    )
