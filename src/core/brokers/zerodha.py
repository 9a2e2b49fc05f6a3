"""Zerodha (Kite Connect v3) trading platform adapter.

Kite only exposes the current day's trade book, so syncs pick up today's
executions. Access tokens cannot be refreshed; they expire daily and the
user has to log in again through /api/auth/zerodha.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from src.core.brokers.base import TradingPlatform, response_body, rows
from src.core.brokers.errors import PlatformApiError, PlatformError
from src.core.brokers.models import (
    PlatformAccountInfo,
    PlatformId,
    PlatformTrade,
    TokenSet,
    TradeSide,
)
from src.core.brokers.parsing import (
    Fill,
    pair_fills,
    parse_option_details,
    parse_timestamp,
    resolve_instrument_type,
    to_float,
)

logger = logging.getLogger(__name__)

KITE_VERSION = "3"


class ZerodhaPlatform(TradingPlatform):
    """Zerodha adapter over the Kite Connect REST API."""

    base_url = "https://api.kite.trade"

    @property
    def platform(self) -> PlatformId:
        return PlatformId.ZERODHA

    @property
    def display_name(self) -> str:
        return "Zerodha"

    @property
    def api_key(self) -> str:
        if self.credentials.api_key:
            return self.credentials.api_key
        return self.app_config.client_id if self.app_config else ""

    def auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"token {self.api_key}:{self.credentials.access_token}",
            "X-Kite-Version": KITE_VERSION,
        }

    def api_error(self, response: requests.Response) -> PlatformApiError:
        body = response_body(response)
        if isinstance(body, dict) and body.get("error_type") == "TokenException":
            return PlatformApiError(
                response.status_code,
                body,
                "Zerodha access token has expired. Please reconnect your account.",
            )
        return PlatformApiError(response.status_code, body)

    def authenticate(self) -> bool:
        if not self.credentials.access_token:
            logger.error("Zerodha: no access token; log in through Kite Connect first")
            return False
        return self._probe("/user/profile")

    def get_trades(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[PlatformTrade]:
        raw = self._todays_trades(start_date, end_date)
        if not raw:
            return []
        return pair_fills((self._to_fill(row) for row in raw), open_pnl=self._day_pnl())

    def get_trade_history(
        self,
        symbol: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[PlatformTrade]:
        raw = self._todays_trades(start_date, end_date)
        if symbol:
            raw = [row for row in raw if row.get("tradingsymbol") == symbol]
        return [self._to_trade(row) for row in raw]

    def get_account_info(self) -> Optional[PlatformAccountInfo]:
        try:
            profile = self.make_request("/user/profile")
            holdings = self.make_request("/portfolio/holdings")
        except PlatformError as e:
            logger.error(f"Error fetching Zerodha account info: {e}")
            return None

        return PlatformAccountInfo(
            platform=self.platform,
            profile=profile.get("data") if isinstance(profile, dict) else None,
            holdings=rows(holdings),
        )

    def refresh_token(self) -> Optional[TokenSet]:
        logger.info("Zerodha: refresh tokens are not supported")
        return None

    def _todays_trades(
        self,
        start_date: Optional[datetime],
        end_date: Optional[datetime],
    ) -> List[Dict[str, Any]]:
        raw = rows(self.make_request("/trades"))
        if not (start_date or end_date):
            return raw

        lower = start_date or datetime.min
        upper = end_date or datetime.utcnow()
        kept = []
        for row in raw:
            when = parse_timestamp(row.get("fill_timestamp") or row.get("exchange_timestamp"))
            # Rows without a timestamp are kept
            if when is None or lower <= when <= upper:
                kept.append(row)
        return kept

    def _day_pnl(self) -> Dict[str, float]:
        """Day P&L by symbol, used for trades still open."""
        try:
            response = self.make_request("/portfolio/positions")
        except PlatformApiError as e:
            logger.warning(f"Zerodha: positions unavailable ({e.status})")
            return {}

        day = (response.get("data") or {}).get("day", []) if isinstance(response, dict) else []
        pnl = {}
        for position in day:
            value = to_float(position.get("pnl"))
            if value:
                pnl[position.get("tradingsymbol")] = value
        return pnl

    def _to_fill(self, row: Dict[str, Any]) -> Fill:
        return Fill(
            symbol=row.get("tradingsymbol") or "",
            side=(row.get("transaction_type") or "").upper(),
            quantity=to_float(row.get("quantity"), 0.0),
            price=to_float(row.get("average_price"), 0.0),
            order_id=row.get("order_id"),
            trade_id=row.get("trade_id"),
            timestamp=parse_timestamp(row.get("fill_timestamp") or row.get("exchange_timestamp")),
            exchange=row.get("exchange"),
            segment=row.get("segment") or "EQ",
            product=row.get("product"),
            raw=row,
        )

    def _to_trade(self, row: Dict[str, Any]) -> PlatformTrade:
        symbol = row.get("tradingsymbol") or ""
        option = parse_option_details(symbol)
        product = row.get("product") or "CNC"
        return PlatformTrade(
            external_id=str(row.get("trade_id") or ""),
            symbol=symbol,
            side=TradeSide.LONG if row.get("transaction_type") == "BUY" else TradeSide.SHORT,
            instrument_type=resolve_instrument_type(symbol, product, option),
            entry_price=to_float(row.get("average_price"), 0.0),
            quantity=to_float(row.get("quantity"), 0.0),
            entry_date=parse_timestamp(row.get("fill_timestamp") or row.get("exchange_timestamp")),
            order_id=row.get("order_id"),
            status="OPEN",
            exchange=row.get("exchange") or "NSE",
            segment=row.get("segment") or "EQ",
            product_type=product,
            raw=row,
            **option,
        )
