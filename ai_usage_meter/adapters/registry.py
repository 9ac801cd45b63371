"""
Flat registry of the supported telemetry sources.
"""

from typing import List, Optional

from ..core.pricing import PRICING_TABLE, PricingTable
from .base import TelemetrySource
from .claude_code import ClaudeCodeSource
from .codex import CodexSource
from .opencode import OpenCodeSource


def all_sources(pricing: PricingTable = PRICING_TABLE) -> List[TelemetrySource]:
    """Fresh adapter instances, in collection and merge order.

    Args:
        pricing: Table used by adapters that estimate cost while parsing
    """
    return [
        CodexSource(),
        ClaudeCodeSource(pricing=pricing),
        OpenCodeSource(),
    ]


def source_by_system(system: str, pricing: PricingTable = PRICING_TABLE) -> Optional[TelemetrySource]:
    """Adapter whose ``system()`` matches, or None."""
    wanted = (system or "").strip().lower()
    for source in all_sources(pricing):
        if source.system() == wanted:
            return source
    return None


def system_names() -> List[str]:
    return [source.system() for source in all_sources()]
