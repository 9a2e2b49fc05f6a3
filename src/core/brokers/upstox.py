"""Upstox trading platform adapter (API v2)."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from src.core.brokers.base import TradingPlatform, response_body, rows, tokens_from_payload
from src.core.brokers.errors import PlatformApiError, PlatformError, TokenRefreshFailed
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
    parse_clock,
    parse_option_details,
    parse_timestamp,
    resolve_instrument_type,
    timestamp_from_order_id,
    to_float,
)

logger = logging.getLogger(__name__)

REACTIVATION_REQUIRED = "UDAPI100058"

_TIMESTAMP_FIELDS = (
    "exchange_timestamp",
    "order_timestamp",
    "trade_timestamp",
    "timestamp",
    "filled_at",
    "fill_timestamp",
)
_TIME_FIELDS = ("fill_time", "filltimestamp", "filled_time", "updatedTime")


def error_code(body: Any) -> Optional[str]:
    """First error code of an Upstox error response."""
    errors = body.get("errors") if isinstance(body, dict) else None
    if not errors:
        return None
    return errors[0].get("errorCode") or errors[0].get("error_code")


def needs_reactivation(error: PlatformApiError) -> bool:
    return error_code(error.body) == REACTIVATION_REQUIRED


class UpstoxPlatform(TradingPlatform):
    """Upstox adapter.

    Today's executions come from the trade book, falling back to completed
    orders; older executions come from the charges/historical-trades report.
    """

    base_url = "https://api.upstox.com"

    @property
    def platform(self) -> PlatformId:
        return PlatformId.UPSTOX

    @property
    def display_name(self) -> str:
        return "Upstox"

    def auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials.access_token}",
            "Api-Version": "2.0",
        }

    def api_error(self, response: requests.Response) -> PlatformApiError:
        body = response_body(response)
        code = error_code(body)
        if code:
            errors = body["errors"]
            if code == REACTIVATION_REQUIRED:
                return PlatformApiError(
                    response.status_code,
                    body,
                    "Account reactivation required. Please reactivate your Upstox account.",
                )
            return PlatformApiError(
                response.status_code,
                body,
                f"Upstox API error: {code} - {errors[0].get('message')}",
            )
        return PlatformApiError(response.status_code, body)

    def authenticate(self) -> bool:
        if not self.credentials.access_token:
            logger.error("Upstox: no access token; connect the account first")
            return False
        return self._probe("/v2/user/profile") or self._probe("/index/user/profile")

    def get_trades(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[PlatformTrade]:
        try:
            raw = self._list_records("/v2/order/trades/get-trades-for-day")
        except PlatformApiError as e:
            if isinstance(e, TokenRefreshFailed) or needs_reactivation(e):
                raise
            logger.warning(f"Upstox: trade book not available ({e.status}), trying orders")
            raw = []

        if not raw:
            # Fallback errors propagate
            orders = self._list_records("/v2/order/retrieve-all")
            raw = [
                order for order in orders
                if any(word in (order.get("status") or "").lower() for word in ("complete", "filled"))
            ]

        if not raw:
            return []

        return pair_fills(self._to_fill(row) for row in raw)

    def get_trade_history(
        self,
        symbol: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[PlatformTrade]:
        if not start_date or not end_date:
            raise ValueError("Start date and end date are required for Upstox historical trades")

        params = {
            "start_date": start_date.strftime("%Y-%m-%d"),
            "end_date": end_date.strftime("%Y-%m-%d"),
            "page_number": 1,
            "page_size": 100,
        }
        if symbol:
            params["symbol"] = symbol

        response = self.make_request("/v2/charges/historical-trades", params=params)
        if not isinstance(response, dict) or response.get("status") != "success":
            return []
        return [self._history_trade(row) for row in rows(response)]

    def get_account_info(self) -> Optional[PlatformAccountInfo]:
        try:
            try:
                profile = self.make_request("/v2/user/profile")
                holdings = self.make_request("/v2/portfolio/holdings")
            except PlatformApiError as e:
                if isinstance(e, TokenRefreshFailed):
                    raise
                logger.info(f"Upstox: v2 endpoints failed ({e.status}), trying index endpoints")
                profile = self.make_request("/index/user/profile")
                holdings = self.make_request("/index/portfolio/positions")
        except PlatformError as e:
            logger.error(f"Error fetching Upstox account info: {e}")
            return None

        return PlatformAccountInfo(
            platform=self.platform,
            profile=profile.get("data") if isinstance(profile, dict) else None,
            holdings=rows(holdings),
        )

    def refresh_token(self) -> Optional[TokenSet]:
        if not self.credentials.refresh_token:
            logger.warning("Upstox: refresh token not available")
            return None
        if not self.app_config:
            logger.warning("Upstox: application credentials not configured, cannot refresh")
            return None

        response = self._send(
            "POST",
            "/v2/login/authorization/token",
            authenticated=False,
            headers={"Api-Version": "2.0"},
            data={
                "client_id": self.app_config.client_id,
                "client_secret": self.app_config.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": self.credentials.refresh_token,
            },
        )
        if not 200 <= response.status_code < 300:
            logger.error(f"Upstox token refresh failed: {response.status_code}")
            return None

        tokens = tokens_from_payload(response_body(response))
        if not tokens:
            logger.error("Upstox token refresh returned no access token")
            return None
        return self._store_tokens(tokens)

    def _list_records(self, endpoint: str) -> List[Dict[str, Any]]:
        """Records from a list endpoint; [] unless the response reports success."""
        response = self.make_request(endpoint)
        if isinstance(response, dict) and response.get("status") == "success":
            return rows(response)
        return []

    def _to_fill(self, row: Dict[str, Any]) -> Fill:
        return Fill(
            symbol=row.get("symbol") or row.get("trading_symbol") or row.get("tradingsymbol") or "",
            side=(row.get("transaction_type") or row.get("type") or "").upper(),
            quantity=to_float(row.get("quantity"), 0.0),
            price=to_float(row.get("price") or row.get("average_price"), 0.0),
            order_id=row.get("order_id"),
            trade_id=row.get("trade_id"),
            timestamp=fill_timestamp(row),
            exchange=row.get("exchange"),
            segment=row.get("segment"),
            product=row.get("segment") or row.get("product"),
            raw=row,
        )

    def _history_trade(self, row: Dict[str, Any]) -> PlatformTrade:
        symbol = (
            row.get("symbol") or row.get("scrip_name") or row.get("trading_symbol")
            or row.get("tradingsymbol") or ""
        )
        option = parse_option_details(symbol)
        return PlatformTrade(
            external_id=str(row.get("trade_id") or row.get("order_id") or ""),
            symbol=symbol,
            side=TradeSide.LONG if (row.get("transaction_type") or "").lower() == "buy" else TradeSide.SHORT,
            instrument_type=resolve_instrument_type(symbol, row.get("segment"), option),
            entry_price=to_float(row.get("price") or row.get("average_price"), 0.0),
            quantity=to_float(row.get("quantity"), 0.0),
            entry_date=parse_timestamp(row.get("trade_date")),
            order_id=row.get("order_id"),
            status=row.get("status") or "COMPLETE",
            exchange=row.get("exchange"),
            segment=row.get("segment"),
            raw=row,
            **option,
        )


def fill_timestamp(row: Dict[str, Any]) -> Optional[datetime]:
    """Execution time of an Upstox trade or order row.

    Prefers explicit timestamp fields. Otherwise the date comes from the
    YYMMDD prefix of the order id and the time from any HH:MM[:SS] field.
    """
    for key in _TIMESTAMP_FIELDS:
        parsed = parse_timestamp(row.get(key))
        if parsed:
            return parsed

    clock = next((c for c in (parse_clock(row.get(key)) for key in _TIME_FIELDS) if c), None)
    return timestamp_from_order_id(row.get("order_id") or row.get("trade_id"), clock)
