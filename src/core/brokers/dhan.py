"""Dhan trading platform adapter.

Dhan exposes a REST API authenticated with an OAuth bearer token.

Setup:
1. Register an app at https://dhanhq.co/ to get a client id and secret
2. Set DHAN_CLIENT_ID and DHAN_CLIENT_SECRET in your .env
3. Connect the account through /api/auth/dhan
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from src.core.brokers.base import TradingPlatform, response_body, rows, tokens_from_payload
from src.core.brokers.errors import PlatformError
from src.core.brokers.models import (
    PlatformAccountInfo,
    PlatformId,
    PlatformTrade,
    TokenSet,
    TradeSide,
)
from src.core.brokers.parsing import (
    parse_option_details,
    parse_timestamp,
    resolve_instrument_type,
    to_float,
)

logger = logging.getLogger(__name__)


class DhanPlatform(TradingPlatform):
    """Dhan adapter."""

    base_url = "https://api.dhan.co"

    @property
    def platform(self) -> PlatformId:
        return PlatformId.DHAN

    @property
    def display_name(self) -> str:
        return "Dhan"

    def authenticate(self) -> bool:
        if not self.credentials.access_token:
            logger.error("Dhan: no access token; connect the account first")
            return False
        return self._probe("/user/profile")

    def get_trades(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[PlatformTrade]:
        return self._fetch_orders(start_date=start_date, end_date=end_date)

    def get_trade_history(
        self,
        symbol: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[PlatformTrade]:
        return self._fetch_orders(symbol=symbol, start_date=start_date, end_date=end_date)

    def get_account_info(self) -> Optional[PlatformAccountInfo]:
        try:
            profile = self.make_request("/user/profile")
            holdings = self.make_request("/holdings")
        except PlatformError as e:
            logger.error(f"Error fetching Dhan account info: {e}")
            return None

        return PlatformAccountInfo(
            platform=self.platform,
            profile=profile.get("data", profile) if isinstance(profile, dict) else None,
            holdings=rows(holdings),
        )

    def refresh_token(self) -> Optional[TokenSet]:
        if not self.credentials.refresh_token:
            logger.warning("Dhan: refresh token not available")
            return None
        if not self.app_config:
            logger.warning("Dhan: application credentials not configured, cannot refresh")
            return None

        response = self._send(
            "POST",
            "/oauth/token",
            authenticated=False,
            json={
                "grant_type": "refresh_token",
                "refresh_token": self.credentials.refresh_token,
                "client_id": self.app_config.client_id,
                "client_secret": self.app_config.client_secret,
            },
        )
        if not 200 <= response.status_code < 300:
            logger.error(f"Dhan token refresh failed: {response.status_code}")
            return None

        tokens = tokens_from_payload(response_body(response))
        if not tokens:
            logger.error("Dhan token refresh returned no access token")
            return None
        return self._store_tokens(tokens)

    def _fetch_orders(
        self,
        symbol: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[PlatformTrade]:
        params: Dict[str, str] = {}
        if symbol:
            params["symbol"] = symbol
        if start_date:
            params["fromDate"] = start_date.strftime("%Y-%m-%d")
        if end_date:
            params["toDate"] = end_date.strftime("%Y-%m-%d")

        response = self.make_request("/orders", params=params or None)
        return [self._to_trade(row) for row in rows(response)]

    def _to_trade(self, row: Dict[str, Any]) -> PlatformTrade:
        symbol = row.get("symbol") or row.get("tradingSymbol") or ""
        side = (row.get("side") or row.get("transactionType") or "").lower()
        option = parse_option_details(symbol)
        product = row.get("productType") or row.get("exchangeSegment")

        return PlatformTrade(
            external_id=str(row.get("orderId") or row.get("tradeId") or ""),
            symbol=symbol,
            side=TradeSide.LONG if side == "buy" else TradeSide.SHORT,
            instrument_type=resolve_instrument_type(symbol, product, option),
            entry_price=to_float(row.get("price"), 0.0),
            quantity=to_float(row.get("quantity"), 0.0),
            entry_date=parse_timestamp(row.get("orderTime") or row.get("tradeTime") or row.get("createTime")),
            order_id=row.get("orderId"),
            status=row.get("status") or row.get("orderStatus") or "COMPLETE",
            exchange=row.get("exchange"),
            segment=row.get("exchangeSegment"),
            product_type=row.get("productType"),
            raw=row,
            **option,
        )
