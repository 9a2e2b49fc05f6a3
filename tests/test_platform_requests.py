"""Tests for the adapter request contract (auth headers, refresh and retry, timeouts)."""

import pytest
import requests

from src.config import PlatformAppConfig
from src.core.brokers.dhan import DhanPlatform
from src.core.brokers.errors import (
    PlatformApiError,
    PlatformTimeoutError,
    SyncCancelled,
    TokenRefreshFailed,
)
from src.core.brokers.models import Deadline, PlatformCredentials, PlatformId
from src.core.brokers.upstox import UpstoxPlatform
from src.core.brokers.zerodha import ZerodhaPlatform

APP = PlatformAppConfig(client_id="app-id", client_secret="app-secret", redirect_uri="https://app/cb")


def dhan(http, refresh_token="refresh-token", **kwargs):
    credentials = PlatformCredentials(
        platform=PlatformId.DHAN,
        access_token="old-token",
        refresh_token=refresh_token,
    )
    return DhanPlatform(credentials, app_config=APP, http=http, **kwargs)


class TestMakeRequest:
    """Tests for TradingPlatform.make_request."""

    def test_returns_decoded_body(self, http, respond):
        """Should return the JSON body of a 2xx response."""
        http.request.return_value = respond(200, {"data": [1, 2]})

        assert dhan(http).make_request("/orders") == {"data": [1, 2]}

        method, url = http.request.call_args.args
        assert method == "GET"
        assert url == "https://api.dhan.co/orders"
        assert http.request.call_args.kwargs["headers"]["Authorization"] == "Bearer old-token"
        assert http.request.call_args.kwargs["timeout"] == 10.0

    def test_refreshes_once_and_retries_on_401(self, http, respond):
        """Should refresh the token and retry exactly once after a 401."""
        http.request.side_effect = [
            respond(401, {"message": "expired"}),
            respond(200, {"access_token": "new-token", "refresh_token": "new-refresh", "expires_in": 3600}),
            respond(200, {"data": []}),
        ]
        adapter = dhan(http)

        assert adapter.make_request("/orders") == {"data": []}

        assert http.request.call_count == 3
        refresh_call = http.request.call_args_list[1]
        assert refresh_call.args == ("POST", "https://api.dhan.co/oauth/token")
        assert refresh_call.kwargs["json"]["grant_type"] == "refresh_token"
        assert refresh_call.kwargs["json"]["client_id"] == "app-id"

        retry_call = http.request.call_args_list[2]
        assert retry_call.kwargs["headers"]["Authorization"] == "Bearer new-token"
        assert adapter.refreshed_tokens.access_token == "new-token"
        assert adapter.get_credentials().refresh_token == "new-refresh"

    def test_second_401_raises_api_error(self, http, respond):
        """Should not refresh twice; a second 401 is a PlatformApiError."""
        http.request.side_effect = [
            respond(401, {"message": "expired"}),
            respond(200, {"access_token": "new-token"}),
            respond(401, {"message": "still expired"}),
        ]

        with pytest.raises(PlatformApiError) as exc_info:
            dhan(http).make_request("/orders")

        assert exc_info.value.status == 401
        assert not isinstance(exc_info.value, TokenRefreshFailed)
        assert http.request.call_count == 3

    def test_failed_refresh_raises_token_refresh_failed(self, http, respond):
        """Should raise TokenRefreshFailed without retrying when refresh is impossible."""
        http.request.return_value = respond(401, {"message": "expired"})

        with pytest.raises(TokenRefreshFailed):
            dhan(http, refresh_token=None).make_request("/orders")

        assert http.request.call_count == 1

    def test_rejected_refresh_raises_token_refresh_failed(self, http, respond):
        """Should raise TokenRefreshFailed when the refresh endpoint says no."""
        http.request.side_effect = [
            respond(401, {"message": "expired"}),
            respond(400, {"error": "invalid_grant"}),
        ]

        with pytest.raises(TokenRefreshFailed):
            dhan(http).make_request("/orders")

        assert http.request.call_count == 2

    def test_non_2xx_raises_api_error_with_body(self, http, respond):
        """Should raise PlatformApiError carrying status and body."""
        http.request.return_value = respond(503, {"message": "maintenance"})

        with pytest.raises(PlatformApiError) as exc_info:
            dhan(http).make_request("/orders")

        assert exc_info.value.status == 503
        assert exc_info.value.body == {"message": "maintenance"}

    def test_non_json_body_falls_back_to_text(self, http, respond):
        """Should return raw text when the body is not JSON."""
        http.request.return_value = respond(200, text="OK")

        assert dhan(http).make_request("/orders") == "OK"

    def test_timeout_raises_platform_timeout(self, http):
        """Should translate requests timeouts to PlatformTimeoutError."""
        http.request.side_effect = requests.Timeout("read timed out")

        with pytest.raises(PlatformTimeoutError) as exc_info:
            dhan(http).make_request("/orders")

        assert isinstance(exc_info.value, TimeoutError)

    def test_connection_error_raises_api_error(self, http):
        """Should translate transport failures to PlatformApiError with status 0."""
        http.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(PlatformApiError) as exc_info:
            dhan(http).make_request("/orders")

        assert exc_info.value.status == 0

    def test_custom_timeout_is_used(self, http, respond):
        """Should pass the adapter timeout to requests."""
        http.request.return_value = respond(200, {})

        dhan(http, timeout=3.5).make_request("/orders")

        assert http.request.call_args.kwargs["timeout"] == 3.5


class TestDeadline:
    """Tests for deadline and cancellation handling."""

    def test_expired_deadline_stops_before_http(self, http):
        """Should raise SyncCancelled without sending a request."""
        with pytest.raises(SyncCancelled):
            dhan(http, deadline=Deadline(seconds=0)).make_request("/orders")

        http.request.assert_not_called()

    def test_cancelled_deadline_stops_before_http(self, http):
        """Should raise SyncCancelled once cancel() was called."""
        deadline = Deadline()
        deadline.cancel()

        with pytest.raises(SyncCancelled):
            dhan(http, deadline=deadline).make_request("/orders")

        http.request.assert_not_called()

    def test_deadline_caps_request_timeout(self, http, respond):
        """Should shorten the request timeout to the time left."""
        http.request.return_value = respond(200, {})

        dhan(http, deadline=Deadline(seconds=2)).make_request("/orders")

        assert http.request.call_args.kwargs["timeout"] <= 2

    def test_no_limit_keeps_timeout(self):
        """Should leave the timeout alone without a time limit."""
        assert Deadline().bound(10.0) == 10.0
        assert Deadline().remaining() is None
        assert not Deadline().expired


class TestPlatformHeaders:
    """Tests for platform specific auth headers and errors."""

    def test_upstox_sends_api_version(self, http, respond):
        """Should send bearer token and Api-Version 2.0."""
        http.request.return_value = respond(200, {"status": "success", "data": {}})
        credentials = PlatformCredentials(platform=PlatformId.UPSTOX, access_token="up-token")

        UpstoxPlatform(credentials, http=http).make_request("/v2/user/profile")

        headers = http.request.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer up-token"
        assert headers["Api-Version"] == "2.0"

    def test_upstox_reactivation_error(self, http, respond):
        """Should surface UDAPI100058 as account reactivation required."""
        http.request.return_value = respond(
            403,
            {"status": "error", "errors": [{"errorCode": "UDAPI100058", "message": "inactive"}]},
        )
        credentials = PlatformCredentials(platform=PlatformId.UPSTOX, access_token="up-token")

        with pytest.raises(PlatformApiError, match="reactivat"):
            UpstoxPlatform(credentials, http=http).make_request("/v2/user/profile")

    def test_zerodha_token_header(self, http, respond):
        """Should send 'token api_key:access_token' and the Kite version."""
        http.request.return_value = respond(200, {"data": []})
        credentials = PlatformCredentials(platform=PlatformId.ZERODHA, access_token="kite-token")

        ZerodhaPlatform(credentials, app_config=APP, http=http).make_request("/trades")

        headers = http.request.call_args.kwargs["headers"]
        assert headers["Authorization"] == "token app-id:kite-token"
        assert headers["X-Kite-Version"] == "3"

    def test_zerodha_expired_token(self, http, respond):
        """Should not refresh and should ask the user to reconnect on TokenException."""
        http.request.return_value = respond(403, {"error_type": "TokenException", "message": "expired"})
        credentials = PlatformCredentials(platform=PlatformId.ZERODHA, access_token="kite-token")
        adapter = ZerodhaPlatform(credentials, app_config=APP, http=http)

        assert adapter.refresh_token() is None
        with pytest.raises(PlatformApiError, match="reconnect"):
            adapter.make_request("/trades")
