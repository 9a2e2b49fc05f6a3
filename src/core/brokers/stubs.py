"""Platforms that are listed for connection but have no API integration yet.

Every operation raises PlatformNotImplemented so callers can tell these
apart from transient failures.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from src.core.brokers.base import TradingPlatform
from src.core.brokers.errors import PlatformNotImplemented
from src.core.brokers.models import PlatformAccountInfo, PlatformId, PlatformTrade, TokenSet


class UnimplementedPlatform(TradingPlatform):
    """Adapter whose every operation raises PlatformNotImplemented."""

    platform_id: PlatformId
    name: str = ""

    @property
    def platform(self) -> PlatformId:
        return self.platform_id

    @property
    def display_name(self) -> str:
        return self.name

    def _unsupported(self):
        return PlatformNotImplemented(self.display_name)

    def authenticate(self) -> bool:
        raise self._unsupported()

    def get_trades(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[PlatformTrade]:
        raise self._unsupported()

    def get_trade_history(
        self,
        symbol: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[PlatformTrade]:
        raise self._unsupported()

    def get_account_info(self) -> Optional[PlatformAccountInfo]:
        raise self._unsupported()

    def refresh_token(self) -> Optional[TokenSet]:
        raise self._unsupported()

    def make_request(
        self,
        endpoint: str,
        method: str = "GET",
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        raise self._unsupported()


class GrowwPlatform(UnimplementedPlatform):
    platform_id = PlatformId.GROWW
    name = "Groww"
    base_url = "https://api.groww.in"


class FyersPlatform(UnimplementedPlatform):
    platform_id = PlatformId.FYERS
    name = "Fyers"
    base_url = "https://api.fyers.in"


class SasOnlinePlatform(UnimplementedPlatform):
    platform_id = PlatformId.SAS_ONLINE
    name = "SAS Online"
    base_url = "https://api.sasonline.in"


class FivePaisaPlatform(UnimplementedPlatform):
    platform_id = PlatformId.FIVE_PAISA
    name = "5paisa"
    base_url = "https://openapi.5paisa.com"


class IciciDirectPlatform(UnimplementedPlatform):
    platform_id = PlatformId.ICICI_DIRECT
    name = "ICICI Direct"
    base_url = "https://api.icicidirect.com"
