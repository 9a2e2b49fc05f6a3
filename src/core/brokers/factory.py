"""Adapter factory and platform catalogue."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Type, Union

import requests

from src.config import PlatformAppConfig
from src.core.brokers.angel_one import AngelOnePlatform
from src.core.brokers.base import TradingPlatform
from src.core.brokers.dhan import DhanPlatform
from src.core.brokers.errors import UnsupportedPlatform
from src.core.brokers.models import Deadline, PlatformCredentials, PlatformId
from src.core.brokers.stubs import (
    FivePaisaPlatform,
    FyersPlatform,
    GrowwPlatform,
    IciciDirectPlatform,
    SasOnlinePlatform,
)
from src.core.brokers.upstox import UpstoxPlatform
from src.core.brokers.zerodha import ZerodhaPlatform


@dataclass(frozen=True)
class CredentialField:
    """An input a user fills in to connect an account manually."""

    name: str
    label: str
    type: str = "text"  # text, password
    required: bool = True
    description: Optional[str] = None


@dataclass(frozen=True)
class PlatformSpec:
    """Catalogue entry for one platform."""

    adapter: Type[TradingPlatform]
    label: str
    description: str
    connection: str  # oauth, credentials, unavailable
    fields: List[CredentialField] = field(default_factory=list)


def _key_secret(name: str) -> List[CredentialField]:
    return [
        CredentialField("api_key", "API Key", description=f"Your {name} API key"),
        CredentialField("api_secret", "API Secret", "password", description=f"Your {name} API secret"),
    ]


PLATFORMS: Dict[PlatformId, PlatformSpec] = {
    PlatformId.ANGEL_ONE: PlatformSpec(
        AngelOnePlatform,
        "Angel One",
        "Angel Broking trading platform",
        "credentials",
        [
            CredentialField("api_key", "SmartAPI API Key", description="SmartAPI key from smartapi.angelbroking.com"),
            CredentialField("clientcode", "Client Code", description="Your Angel One client code"),
            CredentialField("api_secret", "PIN", "password", description="Your Angel One trading PIN"),
            CredentialField("totp", "TOTP", description="Current code from your authenticator app"),
            CredentialField("state", "State", required=False, description="State your account is registered in"),
        ],
    ),
    PlatformId.ZERODHA: PlatformSpec(ZerodhaPlatform, "Zerodha", "Zerodha Kite trading platform", "oauth"),
    PlatformId.UPSTOX: PlatformSpec(UpstoxPlatform, "Upstox", "Upstox trading platform", "oauth"),
    PlatformId.DHAN: PlatformSpec(DhanPlatform, "Dhan", "Dhan trading platform", "oauth"),
    PlatformId.FIVE_PAISA: PlatformSpec(
        FivePaisaPlatform, "5paisa", "5paisa trading platform", "unavailable", _key_secret("5paisa")
    ),
    PlatformId.ICICI_DIRECT: PlatformSpec(
        IciciDirectPlatform, "ICICI Direct", "ICICI Direct trading platform", "unavailable", _key_secret("ICICI Direct")
    ),
    PlatformId.GROWW: PlatformSpec(
        GrowwPlatform, "Groww", "Groww trading platform", "unavailable", _key_secret("Groww")
    ),
    PlatformId.FYERS: PlatformSpec(
        FyersPlatform,
        "Fyers",
        "Fyers trading platform",
        "unavailable",
        _key_secret("Fyers") + [
            CredentialField("access_token", "Access Token", description="Your Fyers access token"),
        ],
    ),
    PlatformId.SAS_ONLINE: PlatformSpec(
        SasOnlinePlatform, "SAS Online", "SAS Online trading platform", "unavailable", _key_secret("SAS Online")
    ),
}


def resolve_platform(platform: Union[str, PlatformId]) -> PlatformId:
    """Normalize a platform identifier ('dhan', 'ANGEL_ONE', 'angel-one').

    Raises:
        UnsupportedPlatform: identifier does not name a known platform
    """
    if isinstance(platform, PlatformId):
        return platform
    key = str(platform or "").strip().upper().replace("-", "_")
    try:
        return PlatformId(key)
    except ValueError:
        raise UnsupportedPlatform(platform) from None


def create_platform(
    platform: Union[str, PlatformId],
    credentials: PlatformCredentials,
    app_config: Optional[PlatformAppConfig] = None,
    timeout: Optional[float] = None,
    deadline: Optional[Deadline] = None,
    http: Optional[requests.Session] = None,
) -> TradingPlatform:
    """Build the adapter for a platform. Performs no I/O.

    Args:
        platform: Platform identifier
        credentials: Credential set of the account
        app_config: Platform application config (needed for token refresh)
        timeout: Per-request timeout override
        deadline: Optional budget shared by the adapter's requests
        http: Optional requests session

    Returns:
        Adapter instance

    Raises:
        UnsupportedPlatform: identifier has no adapter
    """
    platform_id = resolve_platform(platform)
    spec = PLATFORMS.get(platform_id)
    if spec is None:
        raise UnsupportedPlatform(platform)

    return spec.adapter(
        credentials,
        app_config=app_config,
        timeout=timeout,
        deadline=deadline,
        http=http,
    )


def get_supported_platforms() -> List[Dict[str, str]]:
    """List platforms as value/label/description entries."""
    return [
        {
            "value": platform_id.value,
            "label": spec.label,
            "description": spec.description,
            "connection": spec.connection,
        }
        for platform_id, spec in PLATFORMS.items()
    ]


def get_platform_fields(platform: Union[str, PlatformId]) -> List[CredentialField]:
    """Credential inputs needed to connect a platform manually."""
    return list(PLATFORMS[resolve_platform(platform)].fields)
