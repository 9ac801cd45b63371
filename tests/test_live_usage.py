"""
Tests for the live usage endpoint client.

Uses httpx.MockTransport so no network traffic is made.
"""

from datetime import datetime, timezone

import httpx
import pytest

from ai_usage_meter.core.live_usage import (
    LiveUsageClient,
    UsageAPIAuthError,
    UsageAPIError,
    UsageAPIUnavailableError,
    UsageWindow,
    parse_usage_windows,
    usage_percent_metrics,
)

USAGE_BODY = {
    "five_hour": {"utilization": 42.5, "resets_at": "2025-03-01T15:00:00Z"},
    "seven_day": {"utilization": 91, "resets_at": "2025-03-05T00:00:00+00:00"},
    "seven_day_opus": None,
    "seven_day_sonnet": {"utilization": None},
    "unrelated": {"utilization": 99},
}


def _client(handler) -> LiveUsageClient:
    return LiveUsageClient(
        base_url="https://usage.test",
        cookies={"sessionKey": "sk-test"},
        transport=httpx.MockTransport(handler),
    )


class TestParseUsageWindows:
    """Test response body parsing."""

    def test_known_windows_only(self):
        windows = parse_usage_windows(USAGE_BODY)
        assert set(windows) == {"five_hour", "seven_day"}
        assert windows["five_hour"] == UsageWindow(
            utilization=42.5,
            resets_at=datetime(2025, 3, 1, 15, tzinfo=timezone.utc),
        )

    def test_non_mapping_body(self):
        assert parse_usage_windows([1, 2]) == {}

    def test_percent_metrics(self):
        metrics = usage_percent_metrics(parse_usage_windows(USAGE_BODY))
        assert metrics == {"usage_five_hour": 42.5, "usage_seven_day": 91.0}


class TestLiveUsageClient:
    """Test request handling and error mapping."""

    def test_successful_fetch(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["cookie"] = request.headers.get("cookie", "")
            return httpx.Response(200, json=USAGE_BODY)

        with _client(handler) as client:
            windows = client.fetch_usage("org-123")

        assert seen["path"] == "/api/organizations/org-123/usage"
        assert "sessionKey=sk-test" in seen["cookie"]
        assert windows["seven_day"].utilization == 91.0

    @pytest.mark.parametrize("status_code", [401, 403])
    def test_auth_errors(self, status_code):
        def handler(request):
            return httpx.Response(status_code, json={"error": "denied"})

        with _client(handler) as client:
            with pytest.raises(UsageAPIAuthError) as exc_info:
                client.fetch_usage("org-123")

        assert exc_info.value.status_code == status_code
        assert exc_info.value.endpoint == "/api/organizations/org-123/usage"

    def test_server_error(self):
        def handler(request):
            return httpx.Response(500, text="oops")

        with _client(handler) as client:
            with pytest.raises(UsageAPIUnavailableError) as exc_info:
                client.fetch_usage("org-123")
        assert exc_info.value.status_code == 500

    def test_undecodable_body(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>not json</html>")

        with _client(handler) as client:
            with pytest.raises(UsageAPIUnavailableError):
                client.fetch_usage("org-123")

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with _client(handler) as client:
            with pytest.raises(UsageAPIUnavailableError):
                client.fetch_usage("org-123")

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with _client(handler) as client:
            with pytest.raises(UsageAPIUnavailableError, match="timed out"):
                client.fetch_usage("org-123")

    def test_errors_share_base_class(self):
        assert issubclass(UsageAPIAuthError, UsageAPIError)
        assert issubclass(UsageAPIUnavailableError, UsageAPIError)

    def test_empty_org_rejected(self):
        with _client(lambda request: httpx.Response(200, json={})) as client:
            with pytest.raises(ValueError):
                client.fetch_usage("  ")
