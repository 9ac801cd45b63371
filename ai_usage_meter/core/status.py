"""
Usage status derivation from percentage metrics.

Statuses set by an upstream data-availability failure (``auth``, ``error``,
``unsupported``) take precedence over threshold evaluation.
"""

from enum import Enum
from typing import Mapping, Optional

from .live_usage import UsageAPIAuthError

DEFAULT_NEAR_LIMIT_PERCENT = 90.0
DEFAULT_LIMITED_PERCENT = 100.0


class UsageStatus(Enum):
    """Coarse quota status for a provider."""
    OK = "ok"
    NEAR_LIMIT = "near_limit"
    LIMITED = "limited"
    AUTH = "auth"
    ERROR = "error"
    UNSUPPORTED = "unsupported"
    UNKNOWN = "unknown"


TERMINAL_STATUSES = frozenset({UsageStatus.AUTH, UsageStatus.ERROR, UsageStatus.UNSUPPORTED})


def derive_status(
    percent_metrics: Mapping[str, float],
    current: Optional[UsageStatus] = None,
    near_limit: float = DEFAULT_NEAR_LIMIT_PERCENT,
    limited: float = DEFAULT_LIMITED_PERCENT,
) -> UsageStatus:
    """Derive status from "percent of quota consumed" metrics.

    Args:
        percent_metrics: Metric name to percent used (0-100, may exceed 100)
        current: Status already set upstream; terminal values are kept
        near_limit: Percent at which status becomes near_limit
        limited: Percent at which status becomes limited

    Returns:
        The derived UsageStatus
    """
    if current in TERMINAL_STATUSES:
        return current

    values = list(percent_metrics.values())
    if any(v >= limited for v in values):
        return UsageStatus.LIMITED
    if any(v >= near_limit for v in values):
        return UsageStatus.NEAR_LIMIT
    return UsageStatus.OK


def status_for_failure(error: BaseException) -> UsageStatus:
    """Map an upstream fetch failure to a terminal status."""
    if isinstance(error, UsageAPIAuthError):
        return UsageStatus.AUTH
    return UsageStatus.ERROR
