"""Broker OAuth connection flow.

Flow:
1. /api/auth/{platform} redirects the user to the broker's login page
2. The broker redirects back to /api/auth/{platform}/callback with a code
3. The code is exchanged for tokens and the trading account is stored

Angel One has no code flow; connect_with_credentials() logs in with the
user's SmartAPI key, client code, PIN and TOTP instead.
"""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlencode

import requests
from sqlalchemy.orm import Session

from src.config import PlatformAppConfig, Settings, get_settings
from src.core.brokers.base import response_body, tokens_from_payload
from src.core.brokers.errors import (
    MissingAuthorizationCode,
    NotConfigured,
    OAuthError,
    PlatformError,
    TokenExchangeFailed,
    Unauthorized,
)
from src.core.brokers.factory import PLATFORMS, create_platform, resolve_platform
from src.core.brokers.models import PlatformCredentials, PlatformId, ProfileInfo, TokenSet
from src.core.brokers.repository import TradingAccountRepository, UserRepository
from src.db.models import TradingAccount

logger = logging.getLogger(__name__)

# Zerodha access tokens expire at the end of the trading day
ZERODHA_TOKEN_LIFETIME = timedelta(hours=24)


class OAuthProvider(ABC):
    """Authorization-code flow of one broker."""

    platform: PlatformId
    name: str = ""
    authorize_url: str = ""
    token_url: str = ""
    code_param: str = "code"

    def __init__(self, http: requests.Session, timeout: float):
        self.http = http
        self.timeout = timeout

    @abstractmethod
    def authorization_url(self, app: PlatformAppConfig, state: Optional[str] = None) -> str:
        """Broker login URL for the app."""
        pass

    def authorization_code(self, params: Mapping[str, str]) -> str:
        """Pull the authorization code out of the callback query.

        Raises:
            OAuthError: broker reported an error
            MissingAuthorizationCode: no code in the query
        """
        error = params.get("error")
        if error:
            raise OAuthError(self.name, error)
        code = params.get(self.code_param)
        if not code:
            raise MissingAuthorizationCode(self.name)
        return code

    @abstractmethod
    def exchange(self, app: PlatformAppConfig, code: str) -> Tuple[TokenSet, Optional[ProfileInfo]]:
        """Exchange the code for tokens.

        Returns:
            (tokens, profile) where profile is set if the token response carries one
        """
        pass

    def fetch_profile(self, app: PlatformAppConfig, tokens: TokenSet) -> Optional[ProfileInfo]:
        """Best-effort profile lookup with the new access token."""
        return None

    def _post(self, url: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self.http.post(url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error(f"{self.name} token exchange request failed: {e}")
            raise TokenExchangeFailed(self.name, None, str(e)) from e

        body = response_body(response)
        if not 200 <= response.status_code < 300:
            logger.error(f"{self.name} token exchange failed: {response.status_code}")
            raise TokenExchangeFailed(self.name, response.status_code, body)
        if not isinstance(body, dict) or body.get("error"):
            logger.error(f"{self.name} token exchange was rejected")
            raise TokenExchangeFailed(
                self.name,
                response.status_code,
                body.get("error") if isinstance(body, dict) else body,
            )
        return body

    def _adapter_profile(
        self,
        app: PlatformAppConfig,
        tokens: TokenSet,
        *endpoints: str,
    ) -> Optional[Dict[str, Any]]:
        adapter = create_platform(
            self.platform,
            PlatformCredentials(platform=self.platform, access_token=tokens.access_token),
            app_config=app,
            timeout=self.timeout,
            http=self.http,
        )
        for endpoint in endpoints:
            try:
                response = adapter.make_request(endpoint)
            except PlatformError as e:
                logger.warning(f"{self.name} profile lookup via {endpoint} failed: {e}")
                continue
            if isinstance(response, dict):
                return response.get("data") or response
        return None


class DhanOAuth(OAuthProvider):
    platform = PlatformId.DHAN
    name = "Dhan"
    authorize_url = "https://api.dhan.co/oauth/authorize"
    token_url = "https://api.dhan.co/oauth/token"

    def authorization_url(self, app: PlatformAppConfig, state: Optional[str] = None) -> str:
        query = {
            "client_id": app.client_id,
            "redirect_uri": app.redirect_uri,
            "response_type": "code",
            "scope": "read",
        }
        if state:
            query["state"] = state
        return f"{self.authorize_url}?{urlencode(query)}"

    def exchange(self, app: PlatformAppConfig, code: str) -> Tuple[TokenSet, Optional[ProfileInfo]]:
        body = self._post(
            self.token_url,
            json={
                "grant_type": "authorization_code",
                "code": code,
                "client_id": app.client_id,
                "client_secret": app.client_secret,
                "redirect_uri": app.redirect_uri,
            },
            headers={"Content-Type": "application/json"},
        )
        tokens = tokens_from_payload(body)
        if not tokens:
            raise TokenExchangeFailed(self.name, 200, "no access token in response")
        return tokens, None

    def fetch_profile(self, app: PlatformAppConfig, tokens: TokenSet) -> Optional[ProfileInfo]:
        data = self._adapter_profile(app, tokens, "/user/profile")
        if not data:
            return None
        return ProfileInfo(
            account_id=data.get("userId") or data.get("dhanClientId"),
            name=data.get("name"),
            email=data.get("email"),
        )


class UpstoxOAuth(OAuthProvider):
    platform = PlatformId.UPSTOX
    name = "Upstox"
    authorize_url = "https://api.upstox.com/v2/login/authorization/dialog"
    token_url = "https://api.upstox.com/v2/login/authorization/token"

    def authorization_url(self, app: PlatformAppConfig, state: Optional[str] = None) -> str:
        query = {
            "client_id": app.client_id,
            "redirect_uri": app.redirect_uri,
            "response_type": "code",
        }
        if state:
            query["state"] = state
        return f"{self.authorize_url}?{urlencode(query)}"

    def exchange(self, app: PlatformAppConfig, code: str) -> Tuple[TokenSet, Optional[ProfileInfo]]:
        body = self._post(
            self.token_url,
            data={
                "code": code,
                "client_id": app.client_id,
                "client_secret": app.client_secret,
                "redirect_uri": app.redirect_uri,
                "grant_type": "authorization_code",
            },
            headers={"Accept": "application/json", "Api-Version": "2.0"},
        )
        tokens = tokens_from_payload(body)
        if not tokens:
            raise TokenExchangeFailed(self.name, 200, "no access token in response")

        profile = None
        if body.get("user_id"):
            profile = ProfileInfo(
                account_id=body.get("user_id"),
                name=body.get("user_name"),
                email=body.get("email"),
            )
        return tokens, profile

    def fetch_profile(self, app: PlatformAppConfig, tokens: TokenSet) -> Optional[ProfileInfo]:
        data = self._adapter_profile(app, tokens, "/v2/user/profile", "/index/user/profile")
        if not data:
            return None
        return ProfileInfo(
            account_id=data.get("user_id"),
            name=data.get("user_name") or data.get("name"),
            email=data.get("email"),
        )


class ZerodhaOAuth(OAuthProvider):
    """Kite Connect login flow.

    The callback carries request_token (and status=failed on a failed
    login). The token exchange is signed with sha256(api_key + request_token
    + api_secret).
    """

    platform = PlatformId.ZERODHA
    name = "Zerodha"
    authorize_url = "https://kite.trade/connect/login"
    token_url = "https://api.kite.trade/session/token"
    code_param = "request_token"

    def authorization_url(self, app: PlatformAppConfig, state: Optional[str] = None) -> str:
        query = {"api_key": app.client_id, "v": "3", "redirect_uri": app.redirect_uri}
        if state:
            # Kite echoes redirect_params back to the callback
            query["redirect_params"] = urlencode({"state": state})
        return f"{self.authorize_url}?{urlencode(query)}"

    def authorization_code(self, params: Mapping[str, str]) -> str:
        if params.get("status") == "failed":
            raise OAuthError(self.name, "login_failed")
        return super().authorization_code(params)

    def exchange(self, app: PlatformAppConfig, code: str) -> Tuple[TokenSet, Optional[ProfileInfo]]:
        checksum = hashlib.sha256(f"{app.client_id}{code}{app.client_secret}".encode()).hexdigest()
        body = self._post(
            self.token_url,
            data={"api_key": app.client_id, "request_token": code, "checksum": checksum},
            headers={"X-Kite-Version": "3"},
        )
        data = body.get("data") or {}
        if body.get("status") != "success" or not data.get("access_token"):
            raise TokenExchangeFailed(self.name, 200, body.get("message") or "no access token in response")

        tokens = TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or None,
            token_expiry=datetime.utcnow() + ZERODHA_TOKEN_LIFETIME,
        )
        profile = ProfileInfo(
            account_id=data.get("user_id"),
            name=data.get("user_name"),
            email=data.get("email"),
        )
        return tokens, profile


OAUTH_PROVIDERS = {
    PlatformId.DHAN: DhanOAuth,
    PlatformId.UPSTOX: UpstoxOAuth,
    PlatformId.ZERODHA: ZerodhaOAuth,
}


def redirect_error_code(platform: str, error: Exception) -> str:
    """Query-string error code the web app shows for a failed connection."""
    prefix = str(getattr(platform, "value", platform)).lower()
    if isinstance(error, OAuthError):
        return f"{prefix}_{error.code}"
    if isinstance(error, MissingAuthorizationCode):
        return "no_authorization_code"
    if isinstance(error, NotConfigured):
        return f"{prefix}_not_configured"
    if isinstance(error, TokenExchangeFailed):
        return "token_exchange_failed"
    if isinstance(error, Unauthorized):
        return "user_not_found"
    return "callback_error"


class OAuthService:
    """Connects trading accounts through OAuth or direct credentials."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        http: Optional[requests.Session] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.http = http or requests.Session()
        self.users = UserRepository(db)
        self.accounts = TradingAccountRepository(db)

    def provider(self, platform: str) -> OAuthProvider:
        platform_id = resolve_platform(platform)
        provider_cls = OAUTH_PROVIDERS.get(platform_id)
        if provider_cls is None:
            raise NotConfigured(PLATFORMS[platform_id].label)
        return provider_cls(self.http, self.settings.request_timeout_seconds)

    def _app_config(self, provider: OAuthProvider) -> PlatformAppConfig:
        app = self.settings.platform_app(provider.platform)
        if app is None:
            logger.error(f"{provider.name} OAuth is not configured")
            raise NotConfigured(provider.name)
        return app

    def build_authorization_url(self, platform: str, state: Optional[str] = None) -> str:
        """URL of the broker login page.

        Raises:
            UnsupportedPlatform: unknown platform
            NotConfigured: platform has no code flow or no client credentials
        """
        provider = self.provider(platform)
        # Login URLs only need the client id
        client_id = getattr(self.settings, f"{provider.platform.value.lower()}_client_id", "")
        if not client_id:
            logger.error(f"{provider.name} client id is not configured")
            raise NotConfigured(provider.name)

        app = PlatformAppConfig(
            client_id=client_id,
            client_secret="",
            redirect_uri=self.settings.redirect_uri(provider.platform),
        )
        return provider.authorization_url(app, state)

    def handle_callback(
        self,
        user_email: Optional[str],
        platform: str,
        params: Mapping[str, str],
    ) -> TradingAccount:
        """Finish an OAuth login and store the connected account.

        Args:
            user_email: Email of the logged-in user
            platform: Platform identifier
            params: Callback query parameters

        Returns:
            The created or updated TradingAccount

        Raises:
            OAuthError, MissingAuthorizationCode, NotConfigured,
            TokenExchangeFailed, Unauthorized
        """
        provider = self.provider(platform)
        user = self.users.get_by_email(user_email) if user_email else None
        if user is None:
            logger.error(f"{provider.name} callback: user not found")
            raise Unauthorized("User not found")

        code = provider.authorization_code(params)
        app = self._app_config(provider)

        tokens, profile = provider.exchange(app, code)
        logger.info(f"{provider.name} token exchange succeeded")
        if profile is None or not profile.account_id:
            profile = provider.fetch_profile(app, tokens) or profile

        account_id = (profile.account_id if profile else None) or f"{provider.platform.value.lower()}_{user.id}"
        account_name = (profile.name if profile else None) or (
            f"{provider.name} Account ({(profile.account_id if profile else None) or 'Unknown'})"
        )

        account, created = self.accounts.upsert_credential(
            user_id=user.id,
            platform=provider.platform,
            account_id=account_id,
            account_name=account_name,
            tokens=tokens,
            api_key=app.client_id if provider.platform == PlatformId.ZERODHA else None,
        )
        logger.info(f"{'Created' if created else 'Updated'} {provider.name} account {account.id}")
        return account

    def connect_with_credentials(
        self,
        user_email: Optional[str],
        platform: str,
        fields: Mapping[str, str],
    ) -> TradingAccount:
        """Connect a platform that logs in with user-supplied credentials.

        Args:
            user_email: Email of the logged-in user
            platform: Platform identifier
            fields: Values for the platform's credential fields

        Raises:
            Unauthorized: unknown user
            PlatformError: platform does not take credentials or login failed
        """
        platform_id = resolve_platform(platform)
        spec = PLATFORMS[platform_id]
        user = self.users.get_by_email(user_email) if user_email else None
        if user is None:
            raise Unauthorized("User not found")

        if spec.connection == "oauth":
            raise PlatformError(f"{spec.label} connects through OAuth at /api/auth/{platform_id.value.lower()}")
        missing = [f.label for f in spec.fields if f.required and not fields.get(f.name)]
        if missing:
            raise PlatformError(f"Missing required fields: {', '.join(missing)}")

        extras = {
            name: str(value)
            for name, value in fields.items()
            if name not in ("api_key", "api_secret") and value
        }
        credentials = PlatformCredentials(
            platform=platform_id,
            api_key=fields.get("api_key"),
            api_secret=fields.get("api_secret"),
            extras=extras,
        )
        adapter = create_platform(
            platform_id,
            credentials,
            app_config=self.settings.platform_app(platform_id),
            http=self.http,
        )
        if not adapter.authenticate():
            message = getattr(adapter, "last_error", None) or "Authentication failed"
            raise PlatformError(f"{spec.label}: {message}")

        # The TOTP is single-use
        extras.pop("totp", None)
        account_id = extras.get("clientcode") or f"{platform_id.value.lower()}_{user.id}"
        account, _ = self.accounts.upsert_credential(
            user_id=user.id,
            platform=platform_id,
            account_id=account_id,
            account_name=f"{spec.label} Account ({account_id})",
            tokens=adapter.refreshed_tokens,
            api_key=credentials.api_key,
            api_secret=credentials.api_secret,
            extras=extras,
        )
        logger.info(f"Connected {spec.label} account {account.id}")
        return account
