"""Base trading platform adapter."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import requests

from src.config import PlatformAppConfig, get_settings
from src.core.brokers.errors import (
    PlatformApiError,
    PlatformTimeoutError,
    TokenRefreshFailed,
)
from src.core.brokers.models import (
    Deadline,
    PlatformAccountInfo,
    PlatformCredentials,
    PlatformId,
    PlatformTrade,
    TokenSet,
)

logger = logging.getLogger(__name__)
settings = get_settings()


class TradingPlatform(ABC):
    """Abstract base class for brokerage platform adapters.

    Each adapter implements methods to:
    1. Verify the stored credentials
    2. Fetch and normalize trades
    3. Fetch profile and holdings
    4. Refresh an expired access token

    All HTTP goes through make_request(), which attaches auth headers,
    applies the timeout and retries once after refreshing on HTTP 401.
    """

    base_url: str = ""

    def __init__(
        self,
        credentials: PlatformCredentials,
        app_config: Optional[PlatformAppConfig] = None,
        timeout: Optional[float] = None,
        deadline: Optional[Deadline] = None,
        http: Optional[requests.Session] = None,
    ):
        """Initialize the adapter.

        Args:
            credentials: Credential set of the account
            app_config: Platform application id/secret (needed for refresh)
            timeout: Per-request timeout in seconds (defaults to settings)
            deadline: Optional budget shared by every request of one sync
            http: Optional requests session
        """
        self.credentials = credentials
        self.app_config = app_config
        self.timeout = timeout or settings.request_timeout_seconds
        self.deadline = deadline
        self.http = http or requests.Session()
        self.refreshed_tokens: Optional[TokenSet] = None

    @property
    @abstractmethod
    def platform(self) -> PlatformId:
        """Return the platform identifier."""
        pass

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Return human-readable platform name."""
        pass

    @abstractmethod
    def authenticate(self) -> bool:
        """Check that the stored credentials are accepted.

        Returns:
            True if an authenticated call succeeded
        """
        pass

    @abstractmethod
    def get_trades(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[PlatformTrade]:
        """Fetch trades executed in a date range.

        Args:
            start_date: Inclusive lower bound
            end_date: Inclusive upper bound

        Returns:
            Normalized trades; empty list when the platform has none
        """
        pass

    @abstractmethod
    def get_trade_history(
        self,
        symbol: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[PlatformTrade]:
        """Fetch historical trades, optionally for a single symbol."""
        pass

    @abstractmethod
    def get_account_info(self) -> Optional[PlatformAccountInfo]:
        """Fetch profile and holdings. Returns None instead of raising."""
        pass

    @abstractmethod
    def refresh_token(self) -> Optional[TokenSet]:
        """Exchange the refresh token for a new token pair.

        On success the in-memory credentials are updated and the new pair is
        kept on ``refreshed_tokens`` for the caller to persist.

        Returns:
            New TokenSet, or None if refresh is unsupported or was rejected
        """
        pass

    def get_credentials(self) -> PlatformCredentials:
        """Copy of the current credentials, including refreshed tokens."""
        return replace(self.credentials, extras=dict(self.credentials.extras))

    def auth_headers(self) -> Dict[str, str]:
        """Headers that authenticate a request."""
        return {"Authorization": f"Bearer {self.credentials.access_token}"}

    def make_request(
        self,
        endpoint: str,
        method: str = "GET",
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Call the platform API and return the decoded JSON body.

        Raises:
            TokenRefreshFailed: 401 and the token could not be refreshed
            PlatformApiError: any other non-2xx response, or a second 401
            PlatformTimeoutError: the request timed out
            SyncCancelled: the deadline passed before the call
        """
        response = self._send(method, endpoint, json=body, params=params)

        if response.status_code == 401:
            logger.info(f"{self.display_name}: 401 on {endpoint}, refreshing token")
            if not self.refresh_token():
                raise TokenRefreshFailed(self.display_name, response_body(response))
            response = self._send(method, endpoint, json=body, params=params)

        if not 200 <= response.status_code < 300:
            logger.warning(f"{self.display_name}: {method} {endpoint} failed with {response.status_code}")
            raise self.api_error(response)

        return response_body(response)

    def api_error(self, response: requests.Response) -> PlatformApiError:
        """Build the error raised for a non-2xx response."""
        return PlatformApiError(response.status_code, response_body(response))

    def _send(
        self,
        method: str,
        endpoint: str,
        authenticated: bool = True,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> requests.Response:
        """Send one HTTP request under the timeout and deadline."""
        timeout = self.timeout
        if self.deadline is not None:
            self.deadline.check()
            timeout = self.deadline.bound(timeout)

        request_headers = {"Accept": "application/json"}
        if authenticated:
            request_headers.update(self.auth_headers())
        request_headers.update(headers or {})

        url = endpoint if endpoint.startswith("http") else f"{self.base_url}{endpoint}"
        try:
            return self.http.request(
                method,
                url,
                headers=request_headers,
                timeout=timeout,
                **kwargs,
            )
        except requests.Timeout as e:
            raise PlatformTimeoutError(f"{self.display_name} request to {endpoint} timed out") from e
        except requests.RequestException as e:
            raise PlatformApiError(0, str(e), f"{self.display_name} request to {endpoint} failed: {e}") from e

    def _probe(self, endpoint: str) -> bool:
        """Run an authenticated GET and report whether it succeeded."""
        try:
            self.make_request(endpoint)
            return True
        except (PlatformApiError, PlatformTimeoutError) as e:
            logger.error(f"{self.display_name} authentication failed: {e}")
            return False

    def _store_tokens(self, tokens: TokenSet) -> TokenSet:
        """Apply refreshed tokens to the credentials and remember them."""
        self.credentials.apply(tokens)
        self.refreshed_tokens = tokens
        logger.info(f"{self.display_name}: access token refreshed")
        return tokens


def tokens_from_payload(payload: Any) -> Optional[TokenSet]:
    """Read an OAuth token response (access_token, refresh_token, expires_in)."""
    if not isinstance(payload, dict):
        return None
    access_token = payload.get("access_token") or payload.get("accessToken")
    if not access_token:
        return None

    expiry = None
    expires_in = payload.get("expires_in")
    if expires_in:
        try:
            expiry = datetime.utcnow() + timedelta(seconds=int(expires_in))
        except (TypeError, ValueError):
            logger.debug(f"Ignoring non-numeric expires_in: {expires_in!r}")

    return TokenSet(
        access_token=access_token,
        refresh_token=payload.get("refresh_token") or payload.get("refreshToken"),
        token_expiry=expiry,
    )


def rows(payload: Any) -> List[Dict[str, Any]]:
    """List of records from a response that is a list or wraps one in 'data'."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        return payload["data"]
    return []


def response_body(response: requests.Response) -> Any:
    """Decode a JSON response, falling back to the raw text."""
    try:
        return response.json()
    except ValueError:
        return response.text or {}
