"""Broker integration module for automatic trade syncing.

Supports:
- Dhan, Upstox and Zerodha (OAuth)
- Angel One (SmartAPI key, client code, PIN and TOTP)
- Groww, Fyers, SAS Online, 5paisa and ICICI Direct (listed, not yet integrated)

Usage:
    from src.core.brokers import OAuthService, SyncOptions, TradeSyncService

    # Send the user to the broker's login page
    url = OAuthService(db).build_authorization_url("UPSTOX", state=user.email)

    # Pull trades from a connected account
    sync_service = TradeSyncService(db)
    result = sync_service.sync_account(account_id, SyncOptions(update_existing=True))
"""

from src.core.brokers.base import TradingPlatform
from src.core.brokers.errors import (
    AccountNotFound,
    MissingAuthorizationCode,
    NotConfigured,
    OAuthError,
    PlatformApiError,
    PlatformError,
    PlatformNotImplemented,
    PlatformTimeoutError,
    SyncCancelled,
    TokenExchangeFailed,
    TokenRefreshFailed,
    Unauthorized,
    UnsupportedPlatform,
)
from src.core.brokers.factory import (
    create_platform,
    get_platform_fields,
    get_supported_platforms,
    resolve_platform,
)
from src.core.brokers.models import (
    Deadline,
    PlatformCredentials,
    PlatformId,
    PlatformTrade,
    SyncOptions,
    SyncResult,
    SyncStatus,
    TokenSet,
)
from src.core.brokers.oauth import OAuthService, redirect_error_code
from src.core.brokers.sync import TradeSyncService, get_trade_sync_service

__all__ = [
    # Models
    "Deadline",
    "PlatformCredentials",
    "PlatformId",
    "PlatformTrade",
    "SyncOptions",
    "SyncResult",
    "SyncStatus",
    "TokenSet",
    # Adapters
    "TradingPlatform",
    "create_platform",
    "get_platform_fields",
    "get_supported_platforms",
    "resolve_platform",
    # Services
    "OAuthService",
    "TradeSyncService",
    "get_trade_sync_service",
    "redirect_error_code",
    # Errors
    "AccountNotFound",
    "MissingAuthorizationCode",
    "NotConfigured",
    "OAuthError",
    "PlatformApiError",
    "PlatformError",
    "PlatformNotImplemented",
    "PlatformTimeoutError",
    "SyncCancelled",
    "TokenExchangeFailed",
    "TokenRefreshFailed",
    "Unauthorized",
    "UnsupportedPlatform",
]
