"""
Token counting and usage tracking.

Holds the token counters shared by pricing, delta reconstruction and
billing aggregation.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts without estimation or model-specific logic.
    Reasoning tokens are tracked separately but billed as output tokens by
    the providers, so pricing ignores them.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    reasoning_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        """Total tokens used across every counter."""
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_write_tokens
            + self.reasoning_tokens
        )
