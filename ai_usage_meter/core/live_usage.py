"""
Live usage endpoint client.

Fetches the server-side utilization windows (five-hour, seven-day and the
per-model seven-day buckets) for an organization. Credentials are supplied by
the caller as cookies or headers.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import httpx

from .extraction import number_from_any, parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://claude.ai"
DEFAULT_TIMEOUT_SECONDS = 10.0
USAGE_WINDOWS = (
    "five_hour",
    "seven_day",
    "seven_day_sonnet",
    "seven_day_opus",
    "seven_day_cowork",
    "seven_day_oauth_apps",
    "extra_usage",
)
_DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Referer": "https://claude.ai/settings/usage",
    "anthropic-client-platform": "web_claude_ai",
}


class UsageAPIError(RuntimeError):
    """Raised when the live usage endpoint cannot provide data."""

    def __init__(self, message: str, status_code: Optional[int] = None, endpoint: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class UsageAPIAuthError(UsageAPIError):
    """Raised when the endpoint rejects the supplied credentials."""


class UsageAPIUnavailableError(UsageAPIError):
    """Raised on transport failures, timeouts or unusable responses."""


@dataclass(frozen=True)
class UsageWindow:
    """Utilization of one quota window, in percent."""
    utilization: float
    resets_at: Optional[datetime] = None


def parse_usage_windows(body: Any) -> Dict[str, UsageWindow]:
    """Extract the known quota windows from a decoded response body.

    Windows that are missing, null or without a numeric utilization are
    left out.
    """
    windows: Dict[str, UsageWindow] = {}
    if not isinstance(body, dict):
        return windows
    for name in USAGE_WINDOWS:
        bucket = body.get(name)
        if not isinstance(bucket, dict):
            continue
        utilization = number_from_any(bucket.get("utilization"))
        if utilization is None:
            continue
        windows[name] = UsageWindow(
            utilization=utilization,
            resets_at=parse_timestamp(bucket.get("resets_at")),
        )
    return windows


def usage_percent_metrics(windows: Mapping[str, UsageWindow]) -> Dict[str, float]:
    """Metric name to percent used, ready for ``derive_status``."""
    return {"usage_" + name: window.utilization for name, window in windows.items()}


class LiveUsageClient:
    """Client for ``GET /api/organizations/{org}/usage``.

    Performs a single request per call; retries are left to the caller.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        cookies: Optional[Mapping[str, str]] = None,
        headers: Optional[Mapping[str, str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: Scheme and host of the usage endpoint
            timeout: Request timeout in seconds
            cookies: Session cookies sent with the request
            headers: Extra headers, merged over the defaults
            transport: Optional httpx transport (tests use MockTransport)
        """
        merged_headers = dict(_DEFAULT_HEADERS)
        merged_headers.update(headers or {})
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers=merged_headers,
            cookies=dict(cookies or {}),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "LiveUsageClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def fetch_usage(self, org_id: str) -> Dict[str, UsageWindow]:
        """Fetch the utilization windows of one organization.

        Args:
            org_id: Organization identifier

        Returns:
            Window name to UsageWindow

        Raises:
            UsageAPIAuthError: On 401 or 403
            UsageAPIUnavailableError: On transport errors, timeouts, any
                other non-200 status or an undecodable body
        """
        if not org_id or not org_id.strip():
            raise ValueError("org_id must not be empty")

        endpoint = f"/api/organizations/{org_id.strip()}/usage"
        try:
            response = self._client.get(endpoint)
        except httpx.TimeoutException as exc:
            raise UsageAPIUnavailableError(f"Usage API timed out: {exc}", endpoint=endpoint) from exc
        except httpx.HTTPError as exc:
            raise UsageAPIUnavailableError(f"Usage API request failed: {exc}", endpoint=endpoint) from exc

        if response.status_code in (401, 403):
            raise UsageAPIAuthError(
                f"Usage API rejected credentials ({response.status_code})",
                status_code=response.status_code,
                endpoint=endpoint,
            )
        if response.status_code != 200:
            raise UsageAPIUnavailableError(
                f"Usage API returned {response.status_code}: {response.text[:512]}",
                status_code=response.status_code,
                endpoint=endpoint,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise UsageAPIUnavailableError(
                "Usage API returned an undecodable body",
                status_code=response.status_code,
                endpoint=endpoint,
            ) from exc

        windows = parse_usage_windows(body)
        logger.debug("Fetched %d usage windows for org %s", len(windows), org_id)
        return windows
