"""Broker integration exceptions."""

from __future__ import annotations

from typing import Any, Optional


class PlatformError(Exception):
    """Base error for broker platform integrations."""
    pass


class Unauthorized(PlatformError):
    """No authenticated user for the request."""
    pass


class NotConfigured(PlatformError):
    """Application credentials for a platform are missing."""

    def __init__(self, platform: str):
        self.platform = platform
        super().__init__(f"{platform} integration is not configured")


class UnsupportedPlatform(PlatformError):
    """Platform identifier has no adapter."""

    def __init__(self, platform: Any):
        self.platform = platform
        super().__init__(f"Unsupported platform: {platform}")


class AccountNotFound(PlatformError):
    """Trading account does not exist."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class OAuthError(PlatformError):
    """Broker redirected back with an error instead of a code."""

    def __init__(self, provider: str, code: str):
        self.provider = provider
        self.code = code
        super().__init__(f"{provider} authorization failed: {code}")


class MissingAuthorizationCode(PlatformError):
    """OAuth callback carried no authorization code."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"{provider} callback is missing the authorization code")


class TokenExchangeFailed(PlatformError):
    """Authorization code could not be exchanged for tokens."""

    def __init__(self, provider: str, status: Optional[int] = None, detail: Any = None):
        self.provider = provider
        self.status = status
        self.detail = detail
        super().__init__(f"{provider} token exchange failed (status={status}): {detail}")


class PlatformApiError(PlatformError):
    """Broker API returned a non-success response."""

    def __init__(self, status: int, body: Any = None, message: Optional[str] = None):
        self.status = status
        self.body = body
        super().__init__(message or f"Platform API error {status}: {body}")


class TokenRefreshFailed(PlatformApiError):
    """Access token expired and could not be refreshed."""

    def __init__(self, platform: str, body: Any = None):
        self.platform = platform
        super().__init__(401, body, f"{platform} token refresh failed; reconnect the account")


class PlatformTimeoutError(PlatformError, TimeoutError):
    """Broker API did not answer in time."""
    pass


class PlatformNotImplemented(PlatformError, NotImplementedError):
    """Platform is listed but its API integration does not exist yet."""

    def __init__(self, platform: str):
        self.platform = platform
        super().__init__(f"{platform} API integration is not implemented")


class SyncCancelled(PlatformError):
    """Sync deadline passed or cancellation was requested."""
    pass
