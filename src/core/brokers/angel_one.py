"""Angel One (SmartAPI) trading platform adapter.

Angel One has no OAuth code flow for retail API users. Accounts are
connected with the SmartAPI key, client code, PIN and a current TOTP; the
login returns a JWT plus refresh token that later syncs reuse.

Credential extras:
- clientcode: Angel One client id
- totp: current 6-digit TOTP (only needed for a fresh login)
- state: optional opaque value echoed by the login API
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from src.core.brokers.base import TradingPlatform, response_body, rows
from src.core.brokers.errors import PlatformError
from src.core.brokers.models import (
    PlatformAccountInfo,
    PlatformId,
    PlatformTrade,
    TokenSet,
    TradeSide,
)
from src.core.brokers.parsing import (
    parse_clock,
    parse_option_details,
    parse_timestamp,
    resolve_instrument_type,
    timestamp_from_order_id,
    to_float,
)

logger = logging.getLogger(__name__)

INVALID_TOTP = "AB1050"
TOTP_REQUIRED_MESSAGE = (
    "TOTP (2FA) is required for your Angel One account. Enable it at "
    "smartapi.angelbroking.com/enable-totp and add it to your authenticator app."
)

LOGIN_ENDPOINT = "/rest/auth/angelbroking/user/v1/loginByPassword"
REFRESH_ENDPOINT = "/rest/auth/angelbroking/jwt/v1/generateTokens"
TRADE_BOOK_ENDPOINT = "/rest/secure/angelbroking/order/v1/getTradeBook"
PROFILE_ENDPOINT = "/rest/secure/angelbroking/user/v1/getProfile"
HOLDINGS_ENDPOINT = "/rest/secure/angelbroking/portfolio/v1/getHolding"

DEFAULT_TOKEN_LIFETIME_MS = 3600000


class AngelOnePlatform(TradingPlatform):
    """Angel One adapter."""

    base_url = "https://apiconnect.angelbroking.com"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.last_error: Optional[str] = None

    @property
    def platform(self) -> PlatformId:
        return PlatformId.ANGEL_ONE

    @property
    def display_name(self) -> str:
        return "Angel One"

    def auth_headers(self) -> Dict[str, str]:
        headers = {
            "X-UserType": "USER",
            "X-SourceID": "WEB",
            "X-ClientLocalIP": "CLIENT_LOCAL_IP",
            "X-ClientPublicIP": "CLIENT_PUBLIC_IP",
            "X-MACAddress": "MAC_ADDRESS",
            "X-PrivateKey": self.credentials.api_key or "",
        }
        if self.credentials.access_token:
            headers["Authorization"] = f"Bearer {self.credentials.access_token}"
        return headers

    def authenticate(self) -> bool:
        """Reuse a live JWT, otherwise log in (or refresh when no login secrets are stored)."""
        creds = self.credentials
        if creds.access_token and (creds.token_expiry is None or datetime.utcnow() < creds.token_expiry):
            return self._probe(PROFILE_ENDPOINT)

        extras = creds.extras
        can_login = bool(extras.get("clientcode") and creds.api_secret and extras.get("totp"))
        if not can_login and creds.refresh_token:
            try:
                return self.refresh_token() is not None
            except PlatformError as e:
                self.last_error = str(e)
                logger.error(f"Angel One token refresh failed: {e}")
                return False

        return self.login() is not None

    def login(self) -> Optional[TokenSet]:
        """Log in with client code, PIN and TOTP.

        Returns:
            TokenSet on success; None with ``last_error`` set otherwise
        """
        extras = self.credentials.extras
        payload = {
            "clientcode": extras.get("clientcode") or self.credentials.api_key,
            "password": self.credentials.api_secret,
            "state": extras.get("state", ""),
        }
        totp = (extras.get("totp") or "").strip()
        if totp:
            payload["totp"] = totp

        try:
            response = response_body(self._send("POST", LOGIN_ENDPOINT, json=payload))
        except PlatformError as e:
            self.last_error = str(e)
            logger.error(f"Angel One login failed: {e}")
            return None

        if not isinstance(response, dict):
            self.last_error = "Unexpected login response"
            return None

        message = str(response.get("message") or "")
        if response.get("errorcode") == INVALID_TOTP or "totp" in message.lower():
            self.last_error = TOTP_REQUIRED_MESSAGE
            logger.error("Angel One login rejected: invalid TOTP")
            return None

        tokens = self._tokens_from(response)
        if not tokens:
            self.last_error = message or "Authentication failed"
            logger.error(f"Angel One login failed: {self.last_error}")
            return None

        self.last_error = None
        return self._store_tokens(tokens)

    def refresh_token(self) -> Optional[TokenSet]:
        if not self.credentials.refresh_token:
            logger.warning("Angel One: refresh token not available")
            return None

        response = self._send(
            "POST",
            REFRESH_ENDPOINT,
            json={"refreshToken": self.credentials.refresh_token},
        )
        if not 200 <= response.status_code < 300:
            logger.error(f"Angel One token refresh failed: {response.status_code}")
            return None

        tokens = self._tokens_from(response_body(response))
        if not tokens:
            logger.error("Angel One token refresh was rejected")
            return None
        return self._store_tokens(tokens)

    def get_trades(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[PlatformTrade]:
        raw = self._trade_book(start_date, end_date)
        if not raw:
            return []

        by_symbol: Dict[str, List[Dict[str, Any]]] = {}
        for row in raw:
            by_symbol.setdefault(row.get("tradingsymbol") or "", []).append(row)

        trades: List[PlatformTrade] = []
        for symbol, fills in by_symbol.items():
            buys = sorted((f for f in fills if f.get("transactiontype") == "BUY"), key=_fill_sort_key)
            sells = sorted((f for f in fills if f.get("transactiontype") == "SELL"), key=_fill_sort_key)

            # Fills are matched one-to-one in time order
            for buy, sell in zip(buys, sells):
                entry = to_float(buy.get("fillprice"), 0.0)
                exit_ = to_float(sell.get("fillprice"), 0.0)
                quantity = to_float(buy.get("fillsize"), 0.0)
                trades.append(self._trade(
                    buy,
                    external_id=f"angel_one_{buy.get('orderid')}_{sell.get('orderid')}",
                    side=TradeSide.LONG,
                    exit_price=exit_,
                    exit_date=_fill_time(sell),
                    profit_loss=round((exit_ - entry) * quantity, 2),
                    status="COMPLETE",
                ))
            for buy in buys[len(sells):]:
                trades.append(self._trade(
                    buy,
                    external_id=f"angel_one_{buy.get('orderid')}_open",
                    side=TradeSide.LONG,
                    status="OPEN",
                ))
            for sell in sells[len(buys):]:
                trades.append(self._trade(
                    sell,
                    external_id=f"angel_one_{sell.get('orderid')}_short",
                    side=TradeSide.SHORT,
                    status="OPEN",
                ))

        return trades

    def get_trade_history(
        self,
        symbol: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[PlatformTrade]:
        raw = self._trade_book(start_date, end_date)
        if symbol:
            raw = [row for row in raw if row.get("tradingsymbol") == symbol]
        return [
            self._trade(
                row,
                external_id=str(row.get("fillid") or row.get("orderid") or ""),
                side=TradeSide.LONG if row.get("transactiontype") == "BUY" else TradeSide.SHORT,
                profit_loss=to_float(row.get("realizedpnl")),
                status="COMPLETE",
            )
            for row in raw
        ]

    def get_account_info(self) -> Optional[PlatformAccountInfo]:
        try:
            profile = self.make_request(PROFILE_ENDPOINT)
            holdings = self.make_request(HOLDINGS_ENDPOINT)
        except PlatformError as e:
            logger.error(f"Error fetching Angel One account info: {e}")
            return None

        return PlatformAccountInfo(
            platform=self.platform,
            profile=profile.get("data") if isinstance(profile, dict) else None,
            holdings=rows(holdings),
        )

    def _trade_book(
        self,
        start_date: Optional[datetime],
        end_date: Optional[datetime],
    ) -> List[Dict[str, Any]]:
        response = self.make_request(TRADE_BOOK_ENDPOINT)
        if not isinstance(response, dict) or not response.get("status"):
            return []

        raw = rows(response)
        if not (start_date or end_date):
            return raw

        lower = start_date or datetime.min
        upper = end_date or datetime.max
        return [
            row for row in raw
            if _fill_time(row) is None or lower <= _fill_time(row) <= upper
        ]

    def _trade(self, row: Dict[str, Any], **fields) -> PlatformTrade:
        symbol = row.get("tradingsymbol") or ""
        option = parse_option_details(symbol, day_first=True)
        product = row.get("producttype")
        base = dict(
            symbol=symbol,
            instrument_type=resolve_instrument_type(symbol, product, option),
            entry_price=to_float(row.get("fillprice"), 0.0),
            quantity=to_float(row.get("fillsize"), 0.0),
            entry_date=_fill_time(row),
            order_id=row.get("orderid"),
            exchange=row.get("exchange"),
            product_type=product,
            raw=row,
            **option,
        )
        base.update(fields)
        return PlatformTrade(**base)

    @staticmethod
    def _tokens_from(response: Any) -> Optional[TokenSet]:
        if not isinstance(response, dict) or not response.get("status"):
            return None
        data = response.get("data") or {}
        if not data.get("jwtToken"):
            return None
        lifetime_ms = to_float(data.get("tokenExpiryTime"), DEFAULT_TOKEN_LIFETIME_MS)
        return TokenSet(
            access_token=data["jwtToken"],
            refresh_token=data.get("refreshToken"),
            token_expiry=datetime.utcnow() + timedelta(milliseconds=lifetime_ms),
        )


def _fill_time(row: Dict[str, Any]) -> Optional[datetime]:
    """Fill time of a trade-book row.

    filltime is either a full "24-Jun-2025 12:38:10" timestamp or just the
    clock time, in which case the date comes from the order id.
    """
    value = row.get("filltime")
    parsed = parse_timestamp(value)
    if parsed:
        return parsed
    return timestamp_from_order_id(row.get("orderid"), parse_clock(value))


def _fill_sort_key(row: Dict[str, Any]) -> datetime:
    return _fill_time(row) or datetime.min
