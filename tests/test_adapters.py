"""Tests for broker adapters and trade normalization."""

from datetime import datetime

import pytest
import requests

from src.core.brokers.angel_one import LOGIN_ENDPOINT, TOTP_REQUIRED_MESSAGE, AngelOnePlatform
from src.core.brokers.dhan import DhanPlatform
from src.core.brokers.errors import PlatformApiError, PlatformNotImplemented
from src.core.brokers.models import (
    InstrumentType,
    OptionType,
    PlatformCredentials,
    PlatformId,
    TradeSide,
)
from src.core.brokers.parsing import (
    Fill,
    pair_fills,
    parse_option_details,
    parse_timestamp,
    resolve_instrument_type,
    timestamp_from_order_id,
)
from src.core.brokers.stubs import (
    FivePaisaPlatform,
    FyersPlatform,
    GrowwPlatform,
    IciciDirectPlatform,
    SasOnlinePlatform,
)
from src.core.brokers.upstox import REACTIVATION_REQUIRED, UpstoxPlatform
from src.core.brokers.zerodha import ZerodhaPlatform


def routed(respond, routes):
    """side_effect answering each request by the first matching URL suffix."""

    def _request(method, url, **kwargs):
        for suffix, (status, body) in routes.items():
            if url.endswith(suffix):
                return respond(status, body)
        return respond(404, {"message": f"no route for {url}"})

    return _request


class TestDhanPlatform:
    """Tests for DhanPlatform."""

    def test_get_trades_normalizes_orders(self, http, respond):
        """Should map Dhan order rows to platform trades."""
        http.request.return_value = respond(200, {"data": [
            {
                "orderId": "1001",
                "tradingSymbol": "RELIANCE",
                "transactionType": "BUY",
                "price": "2500.5",
                "quantity": "10",
                "orderTime": "2025-06-24 09:30:00",
                "productType": "CNC",
                "exchangeSegment": "NSE_EQ",
                "orderStatus": "TRADED",
            },
            {
                "orderId": "1002",
                "tradingSymbol": "NIFTY24JAN21500CE",
                "transactionType": "SELL",
                "price": "120",
                "quantity": "50",
                "orderTime": "2024-01-10 11:00:00",
                "productType": "INTRADAY",
            },
        ]})
        adapter = DhanPlatform(
            PlatformCredentials(platform=PlatformId.DHAN, access_token="t"),
            http=http,
        )

        trades = adapter.get_trades(datetime(2025, 6, 1), datetime(2025, 6, 30))

        assert http.request.call_args.kwargs["params"] == {"fromDate": "2025-06-01", "toDate": "2025-06-30"}
        stock, option = trades
        assert stock.external_id == "1001"
        assert stock.side == TradeSide.LONG
        assert stock.instrument_type == InstrumentType.STOCK
        assert stock.entry_price == 2500.5
        assert stock.quantity == 10.0
        assert stock.entry_date == datetime(2025, 6, 24, 9, 30)
        assert stock.status == "TRADED"

        assert option.side == TradeSide.SHORT
        assert option.instrument_type == InstrumentType.OPTIONS
        assert option.option_type == OptionType.CALL
        assert option.strike_price == 21500.0

    def test_empty_response(self, http, respond):
        """Should return an empty list when there are no orders."""
        http.request.return_value = respond(200, {"data": []})
        adapter = DhanPlatform(PlatformCredentials(platform=PlatformId.DHAN, access_token="t"), http=http)

        assert adapter.get_trades() == []
        assert http.request.call_args.kwargs["params"] is None

    def test_authenticate_without_token(self, http):
        """Should fail without calling the API when no token is stored."""
        adapter = DhanPlatform(PlatformCredentials(platform=PlatformId.DHAN), http=http)

        assert adapter.authenticate() is False
        http.request.assert_not_called()


class TestUpstoxPlatform:
    """Tests for UpstoxPlatform."""

    def _adapter(self, http):
        return UpstoxPlatform(
            PlatformCredentials(platform=PlatformId.UPSTOX, access_token="up-token"),
            http=http,
        )

    def test_pairs_buy_and_sell(self, http, respond):
        """Should collapse a buy and a sell into one completed trade."""
        fills = [
            {
                "trading_symbol": "INFY",
                "transaction_type": "BUY",
                "quantity": 10,
                "average_price": 500,
                "order_id": "250624000001",
                "trade_id": "T1",
                "exchange": "NSE",
                "segment": "EQ",
                "exchange_timestamp": "2025-06-24 09:30:00",
            },
            {
                "trading_symbol": "INFY",
                "transaction_type": "SELL",
                "quantity": 10,
                "average_price": 510,
                "order_id": "250624000002",
                "trade_id": "T2",
                "exchange": "NSE",
                "segment": "EQ",
                "exchange_timestamp": "2025-06-24 14:45:00",
            },
        ]
        http.request.return_value = respond(200, {"status": "success", "data": fills})

        trades = self._adapter(http).get_trades()

        assert http.request.call_count == 1
        assert len(trades) == 1
        trade = trades[0]
        assert trade.external_id == "250624000001_250624000002"
        assert trade.side == TradeSide.LONG
        assert trade.entry_price == 500.0
        assert trade.exit_price == 510.0
        assert trade.profit_loss == 100.0
        assert trade.entry_date == datetime(2025, 6, 24, 9, 30)
        assert trade.exit_date == datetime(2025, 6, 24, 14, 45)
        assert trade.status == "COMPLETE"

    def test_falls_back_to_completed_orders(self, http, respond):
        """Should use completed orders when the trade book is unavailable."""
        http.request.side_effect = routed(respond, {
            "/v2/order/trades/get-trades-for-day": (404, {"status": "error", "errors": []}),
            "/v2/order/retrieve-all": (200, {"status": "success", "data": [
                {
                    "trading_symbol": "TCS",
                    "transaction_type": "BUY",
                    "quantity": 5,
                    "average_price": 3000,
                    "order_id": "250624000003",
                    "status": "complete",
                    "fill_time": "10:15:30",
                },
                {
                    "trading_symbol": "WIPRO",
                    "transaction_type": "BUY",
                    "quantity": 1,
                    "average_price": 250,
                    "order_id": "250624000004",
                    "status": "cancelled",
                },
            ]}),
        })

        trades = self._adapter(http).get_trades()

        assert [t.external_id for t in trades] == ["250624000003_open"]
        assert trades[0].status == "OPEN"
        assert trades[0].entry_date == datetime(2025, 6, 24, 10, 15, 30)

    def test_no_executions(self, http, respond):
        """Should return an empty list when neither source has executions."""
        http.request.return_value = respond(200, {"status": "success", "data": []})

        assert self._adapter(http).get_trades() == []
        assert http.request.call_count == 2

    def test_both_sources_failing_raises(self, http, respond):
        """Should raise when the completed-orders fallback fails too."""
        http.request.side_effect = routed(respond, {
            "/v2/order/trades/get-trades-for-day": (503, {"status": "error", "errors": []}),
            "/v2/order/retrieve-all": (500, {"status": "error", "errors": [
                {"errorCode": "UDAPI100500", "message": "Something went wrong"},
            ]}),
        })

        with pytest.raises(PlatformApiError) as exc_info:
            self._adapter(http).get_trades()

        assert exc_info.value.status == 500
        assert "UDAPI100500" in str(exc_info.value)

    def test_reactivation_error_is_raised(self, http, respond):
        """Should surface the reactivation error without trying the fallback."""
        http.request.side_effect = routed(respond, {
            "/v2/order/trades/get-trades-for-day": (500, {"status": "error", "errors": [
                {"errorCode": REACTIVATION_REQUIRED, "message": "Reactivate account"},
            ]}),
        })

        with pytest.raises(PlatformApiError, match="reactivation required"):
            self._adapter(http).get_trades()

        assert http.request.call_count == 1

    def test_history_requires_dates(self, http):
        """Should reject a historical query without a date range."""
        with pytest.raises(ValueError, match="required"):
            self._adapter(http).get_trade_history(start_date=datetime(2025, 1, 1))

        http.request.assert_not_called()

    def test_history_params(self, http, respond):
        """Should query the historical trades report with paging params."""
        http.request.return_value = respond(200, {"status": "success", "data": [
            {
                "scrip_name": "INFY",
                "transaction_type": "BUY",
                "quantity": "4",
                "price": "1500",
                "trade_id": "H1",
                "trade_date": "2025-05-02",
                "segment": "EQ",
            },
        ]})

        trades = self._adapter(http).get_trade_history(
            symbol="INFY",
            start_date=datetime(2025, 5, 1),
            end_date=datetime(2025, 5, 31),
        )

        params = http.request.call_args.kwargs["params"]
        assert params["start_date"] == "2025-05-01"
        assert params["end_date"] == "2025-05-31"
        assert params["symbol"] == "INFY"
        assert trades[0].external_id == "H1"
        assert trades[0].entry_date == datetime(2025, 5, 2)


class TestZerodhaPlatform:
    """Tests for ZerodhaPlatform."""

    def _adapter(self, http):
        return ZerodhaPlatform(
            PlatformCredentials(platform=PlatformId.ZERODHA, api_key="kite-key", access_token="kite-token"),
            http=http,
        )

    def _trade_book(self, respond):
        return {
            "/trades": (200, {"data": [
                {
                    "tradingsymbol": "TCS",
                    "transaction_type": "BUY",
                    "quantity": 5,
                    "average_price": 3000,
                    "order_id": "O1",
                    "trade_id": "F1",
                    "fill_timestamp": "2025-06-24 10:00:00",
                    "product": "MIS",
                    "exchange": "NSE",
                },
                {
                    "tradingsymbol": "TCS",
                    "transaction_type": "SELL",
                    "quantity": 5,
                    "average_price": 3050,
                    "order_id": "O2",
                    "trade_id": "F2",
                    "fill_timestamp": "2025-06-24 14:00:00",
                    "product": "MIS",
                    "exchange": "NSE",
                },
                {
                    "tradingsymbol": "HDFCBANK",
                    "transaction_type": "BUY",
                    "quantity": 2,
                    "average_price": 1600,
                    "order_id": "O3",
                    "trade_id": "F3",
                    "fill_timestamp": "2025-06-24 11:00:00",
                    "product": "CNC",
                    "exchange": "NSE",
                },
            ]}),
            "/portfolio/positions": (200, {"data": {"day": [
                {"tradingsymbol": "HDFCBANK", "pnl": -120.5},
            ]}}),
        }

    def test_pairs_trades_and_uses_day_pnl(self, http, respond):
        """Should pair today's fills and take open P&L from positions."""
        http.request.side_effect = routed(respond, self._trade_book(respond))

        trades = self._adapter(http).get_trades()

        by_id = {t.external_id: t for t in trades}
        assert set(by_id) == {"O1_O2", "O3_open"}
        assert by_id["O1_O2"].profit_loss == 250.0
        assert by_id["O1_O2"].status == "COMPLETE"
        assert by_id["O3_open"].profit_loss == -120.5
        assert by_id["O3_open"].status == "OPEN"
        assert by_id["O3_open"].segment == "EQ"

    def test_positions_failure_is_tolerated(self, http, respond):
        """Should still return trades when positions are unavailable."""
        routes = self._trade_book(respond)
        routes["/portfolio/positions"] = (500, {"message": "down"})
        http.request.side_effect = routed(respond, routes)

        trades = self._adapter(http).get_trades()

        open_trade = next(t for t in trades if t.external_id == "O3_open")
        assert open_trade.profit_loss is None

    def test_date_filter(self, http, respond):
        """Should drop fills outside the requested window."""
        http.request.side_effect = routed(respond, self._trade_book(respond))

        trades = self._adapter(http).get_trade_history(
            start_date=datetime(2025, 6, 24, 10, 30),
            end_date=datetime(2025, 6, 24, 12, 0),
        )

        assert [t.external_id for t in trades] == ["F3"]

    def test_uses_stored_api_key(self, http, respond):
        """Should prefer the account's api key over the app config."""
        http.request.return_value = respond(200, {"data": []})

        self._adapter(http).get_trades()

        assert http.request.call_args.kwargs["headers"]["Authorization"] == "token kite-key:kite-token"


class TestAngelOnePlatform:
    """Tests for AngelOnePlatform."""

    def _adapter(self, http, **fields):
        base = dict(
            platform=PlatformId.ANGEL_ONE,
            api_key="smart-key",
            api_secret="1234",
            extras={"clientcode": "A123", "totp": "654321"},
        )
        base.update(fields)
        return AngelOnePlatform(PlatformCredentials(**base), http=http)

    def test_pairs_trade_book_fills(self, http, respond):
        """Should match buys and sells and date fills from the order id."""
        http.request.return_value = respond(200, {"status": True, "data": [
            {
                "tradingsymbol": "SBIN-EQ",
                "transactiontype": "BUY",
                "fillprice": "800",
                "fillsize": "10",
                "orderid": "250624000100",
                "filltime": "09:20:00",
                "exchange": "NSE",
                "producttype": "INTRADAY",
            },
            {
                "tradingsymbol": "SBIN-EQ",
                "transactiontype": "SELL",
                "fillprice": "810",
                "fillsize": "10",
                "orderid": "250624000200",
                "filltime": "11:00:00",
                "exchange": "NSE",
                "producttype": "INTRADAY",
            },
        ]})

        trades = self._adapter(http, access_token="jwt").get_trades()

        assert len(trades) == 1
        trade = trades[0]
        assert trade.external_id == "angel_one_250624000100_250624000200"
        assert trade.profit_loss == 100.0
        assert trade.entry_date == datetime(2025, 6, 24, 9, 20)
        assert trade.exit_date == datetime(2025, 6, 24, 11, 0)
        assert trade.instrument_type == InstrumentType.STOCK

    def test_unmatched_sell_is_short(self, http, respond):
        """Should report a sell without a buy as an open short."""
        http.request.return_value = respond(200, {"status": True, "data": [
            {
                "tradingsymbol": "NIFTY25JUN2524500CE",
                "transactiontype": "SELL",
                "fillprice": "95",
                "fillsize": "75",
                "orderid": "250624000300",
                "filltime": "24-Jun-2025 13:05:00",
                "producttype": "CARRYFORWARD",
            },
        ]})

        trade, = self._adapter(http, access_token="jwt").get_trades()

        assert trade.external_id == "angel_one_250624000300_short"
        assert trade.side == TradeSide.SHORT
        assert trade.instrument_type == InstrumentType.OPTIONS
        assert trade.expiry_date == datetime(2025, 6, 25)

    def test_login_stores_tokens(self, http, respond):
        """Should log in with client code, PIN and TOTP and keep the JWT."""
        http.request.return_value = respond(200, {
            "status": True,
            "message": "SUCCESS",
            "data": {"jwtToken": "jwt", "refreshToken": "rt", "feedToken": "feed"},
        })
        adapter = self._adapter(http)

        assert adapter.authenticate() is True

        method, url = http.request.call_args.args
        assert method == "POST"
        assert url.endswith(LOGIN_ENDPOINT)
        assert http.request.call_args.kwargs["json"] == {
            "clientcode": "A123",
            "password": "1234",
            "state": "",
            "totp": "654321",
        }
        assert http.request.call_args.kwargs["headers"]["X-PrivateKey"] == "smart-key"
        assert adapter.refreshed_tokens.access_token == "jwt"
        assert adapter.credentials.refresh_token == "rt"
        assert adapter.credentials.token_expiry > datetime.utcnow()
        assert adapter.last_error is None

    def test_invalid_totp(self, http, respond):
        """Should explain how to enable TOTP when the login rejects it."""
        http.request.return_value = respond(200, {
            "status": False,
            "message": "Invalid totp",
            "errorcode": "AB1050",
            "data": None,
        })
        adapter = self._adapter(http)

        assert adapter.authenticate() is False
        assert adapter.last_error == TOTP_REQUIRED_MESSAGE
        assert adapter.refreshed_tokens is None

    def test_refreshes_without_login_secrets(self, http, respond):
        """Should use the refresh token when no TOTP is available."""
        http.request.return_value = respond(200, {
            "status": True,
            "data": {"jwtToken": "jwt-2", "refreshToken": "rt-2", "tokenExpiryTime": 60000},
        })
        adapter = self._adapter(http, extras={"clientcode": "A123"}, refresh_token="rt-1")

        assert adapter.authenticate() is True

        assert http.request.call_args.kwargs["json"] == {"refreshToken": "rt-1"}
        assert adapter.credentials.access_token == "jwt-2"

    @pytest.mark.parametrize("failure", [
        requests.ConnectionError("connection refused"),
        requests.Timeout("read timed out"),
    ])
    def test_refresh_transport_failure(self, http, failure):
        """Should report False instead of raising when the refresh call fails."""
        http.request.side_effect = failure
        adapter = self._adapter(http, extras={"clientcode": "A123"}, refresh_token="rt-1")

        assert adapter.authenticate() is False

        assert adapter.last_error
        assert adapter.refreshed_tokens is None


class TestUnimplementedPlatforms:
    """Tests for listed platforms without an API integration."""

    @pytest.mark.parametrize("adapter_class,platform", [
        (GrowwPlatform, PlatformId.GROWW),
        (FyersPlatform, PlatformId.FYERS),
        (SasOnlinePlatform, PlatformId.SAS_ONLINE),
        (FivePaisaPlatform, PlatformId.FIVE_PAISA),
        (IciciDirectPlatform, PlatformId.ICICI_DIRECT),
    ])
    def test_every_operation_raises(self, http, adapter_class, platform):
        """Should raise PlatformNotImplemented and never touch the network."""
        adapter = adapter_class(PlatformCredentials(platform=platform), http=http)

        assert adapter.platform == platform
        for call in (
            adapter.authenticate,
            adapter.get_trades,
            adapter.get_trade_history,
            adapter.get_account_info,
            adapter.refresh_token,
            lambda: adapter.make_request("/anything"),
        ):
            with pytest.raises(PlatformNotImplemented):
                call()

        http.request.assert_not_called()

    def test_is_not_implemented_error(self, http):
        """Should be catchable as NotImplementedError."""
        adapter = GrowwPlatform(PlatformCredentials(platform=PlatformId.GROWW), http=http)

        with pytest.raises(NotImplementedError, match="Groww"):
            adapter.get_trades()


class TestParsing:
    """Tests for symbol and timestamp parsing."""

    def test_monthly_option_symbol(self):
        """Should expire a monthly contract on the month's last Thursday."""
        details = parse_option_details("NIFTY24JAN21500CE")

        assert details == {
            "strike_price": 21500.0,
            "expiry_date": datetime(2024, 1, 25),
            "option_type": OptionType.CALL,
        }

    def test_monthly_put_in_leap_february(self):
        """Should handle a put expiring on 29 February."""
        details = parse_option_details("BANKNIFTY24FEB45000PE")

        assert details["expiry_date"] == datetime(2024, 2, 29)
        assert details["option_type"] == OptionType.PUT

    def test_weekly_option_symbol(self):
        """Should read the YY M DD weekly expiry."""
        details = parse_option_details("NIFTY2411821500CE")

        assert details["expiry_date"] == datetime(2024, 1, 18)
        assert details["strike_price"] == 21500.0

    def test_dated_option_symbol(self):
        """Should read a DDMMMYY expiry when day_first is set."""
        details = parse_option_details("NIFTY25JUN2524500CE", day_first=True)

        assert details["expiry_date"] == datetime(2025, 6, 25)
        assert details["strike_price"] == 24500.0

    @pytest.mark.parametrize("symbol", ["RELIANCE", "", None, "SBIN-EQ"])
    def test_non_option_symbols(self, symbol):
        """Should return no option details for plain symbols."""
        assert parse_option_details(symbol) == {}

    def test_futures_symbol(self):
        """Should classify a FUT symbol as futures."""
        assert resolve_instrument_type("NIFTY24JANFUT", None) == InstrumentType.FUTURES
        assert resolve_instrument_type("RELIANCE", "CNC") == InstrumentType.STOCK

    def test_parse_timestamp_formats(self):
        """Should accept ISO, offset and day-month-year timestamps."""
        assert parse_timestamp("2025-06-24 09:30:00") == datetime(2025, 6, 24, 9, 30)
        assert parse_timestamp("2025-06-24T09:30:00+05:30") == datetime(2025, 6, 24, 4, 0)
        assert parse_timestamp("24-Jun-2025 12:38:10") == datetime(2025, 6, 24, 12, 38, 10)
        assert parse_timestamp(0) == datetime(1970, 1, 1)

    @pytest.mark.parametrize("value", [None, "", "not a date"])
    def test_parse_timestamp_unparsable(self, value):
        """Should return None instead of raising."""
        assert parse_timestamp(value) is None

    def test_timestamp_from_order_id(self):
        """Should read the YYMMDD prefix of an order id."""
        assert timestamp_from_order_id("250624000123", (10, 15, 0)) == datetime(2025, 6, 24, 10, 15)
        assert timestamp_from_order_id("ABC123") is None
        assert timestamp_from_order_id("259999000001") is None

    def test_pair_fills_partial_exit(self):
        """Should split a partly sold position into a closed and an open trade."""
        when = datetime(2025, 6, 24, 9, 15)
        fills = [
            Fill("ITC", "BUY", 10, 400.0, "B1", None, when),
            Fill("ITC", "SELL", 4, 410.0, "S1", None, when),
        ]

        closed, remainder = pair_fills(fills)

        assert closed.external_id == "B1_S1"
        assert closed.quantity == 4
        assert closed.profit_loss == 40.0
        assert remainder.external_id == "B1_open"
        assert remainder.quantity == 6
        assert remainder.status == "OPEN"
