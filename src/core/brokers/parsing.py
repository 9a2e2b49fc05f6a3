"""Normalization helpers shared by the broker adapters."""

from __future__ import annotations

import calendar
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from src.core.brokers.models import InstrumentType, OptionType, PlatformTrade, TradeSide

logger = logging.getLogger(__name__)

_MONTHS = {name.upper(): idx for idx, name in enumerate(calendar.month_abbr) if name}

# NIFTY24JAN21500CE (monthly expiry: YY MMM)
_MONTHLY_OPTION = re.compile(r"^(?P<underlying>[A-Z&-]+?)(?P<yy>\d{2})(?P<mon>[A-Z]{3})(?P<strike>\d+(?:\.\d+)?)(?P<kind>CE|PE)$")
# NIFTY25JUN2524500CE (DD MMM YY, as in Angel One trade books)
_DATED_OPTION = re.compile(r"^(?P<underlying>[A-Z&-]+?)(?P<dd>\d{2})(?P<mon>[A-Z]{3})(?P<yy>\d{2})(?P<strike>\d+(?:\.\d+)?)(?P<kind>CE|PE)$")
# NIFTY2411821500CE (weekly expiry: YY M DD, month as 1-9/O/N/D)
_WEEKLY_OPTION = re.compile(r"^(?P<underlying>[A-Z&-]+?)(?P<yy>\d{2})(?P<m>[1-9OND])(?P<dd>\d{2})(?P<strike>\d+(?:\.\d+)?)(?P<kind>CE|PE)$")
_WEEKLY_MONTHS = {"O": 10, "N": 11, "D": 12}

_TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d",
    "%d-%b-%Y %H:%M:%S",  # 24-Jun-2025 12:38:10
    "%d-%b-%Y",
    "%d/%m/%Y %H:%M:%S",
)


def to_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    """Coerce a broker number (often a string) to float."""
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def round2(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return round(value, 2)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a broker timestamp into a naive UTC datetime.

    Accepts datetimes, ISO-8601 strings (with or without offset) and the
    day-month-year formats some brokers use. Returns None when unparsable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        # Epoch seconds or milliseconds
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    else:
        text = str(value).strip()
        parsed = None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            for fmt in _TIMESTAMP_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            logger.debug(f"Unparsable timestamp: {text!r}")
            return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def map_instrument_type(product_type: Optional[str]) -> InstrumentType:
    """Map a product/segment/instrument string to an instrument class."""
    kind = (product_type or "").upper()
    if "OPT" in kind or "CE" in kind or "PE" in kind:
        return InstrumentType.OPTIONS
    if "FUT" in kind:
        return InstrumentType.FUTURES
    return InstrumentType.STOCK


def parse_option_details(symbol: Optional[str], day_first: bool = False) -> Dict[str, Any]:
    """Extract strike, expiry and option type from an F&O trading symbol.

    Args:
        symbol: Trading symbol such as NIFTY24JAN21500CE
        day_first: Symbol carries a full DDMMMYY expiry (Angel One style)

    Returns:
        Dict with strike_price, expiry_date, option_type; empty if not an option
    """
    if not symbol:
        return {}
    text = symbol.upper().replace(" ", "")

    try:
        match = _DATED_OPTION.match(text) if day_first else None
        if match and match.group("mon") in _MONTHS:
            expiry = datetime(
                2000 + int(match.group("yy")),
                _MONTHS[match.group("mon")],
                int(match.group("dd")),
            )
            return _option_details(match, expiry)

        match = _MONTHLY_OPTION.match(text)
        if match and match.group("mon") in _MONTHS:
            year = 2000 + int(match.group("yy"))
            month = _MONTHS[match.group("mon")]
            # Monthly contracts expire on the last Thursday
            last_day = calendar.monthrange(year, month)[1]
            expiry = datetime(year, month, last_day)
            while expiry.weekday() != calendar.THURSDAY:
                expiry = expiry.replace(day=expiry.day - 1)
            return _option_details(match, expiry)

        match = _WEEKLY_OPTION.match(text)
        if match:
            m = match.group("m")
            month = _WEEKLY_MONTHS.get(m) or int(m)
            expiry = datetime(2000 + int(match.group("yy")), month, int(match.group("dd")))
            return _option_details(match, expiry)
    except ValueError:
        logger.debug(f"Option symbol {symbol} has an impossible expiry")

    return {}


def _option_details(match: re.Match, expiry: datetime) -> Dict[str, Any]:
    return {
        "strike_price": float(match.group("strike")),
        "expiry_date": expiry,
        "option_type": OptionType.CALL if match.group("kind") == "CE" else OptionType.PUT,
    }


def resolve_instrument_type(
    symbol: Optional[str],
    hint: Optional[str],
    option_details: Optional[Dict[str, Any]] = None,
) -> InstrumentType:
    """Instrument class from the symbol first, then the broker's product hint."""
    # TODO: look up the exchange instrument master instead of guessing from names
    if option_details:
        return InstrumentType.OPTIONS
    if symbol and symbol.upper().endswith("FUT"):
        return InstrumentType.FUTURES
    return map_instrument_type(hint)


@dataclass
class Fill:
    """One execution as reported by a broker's trade book."""

    symbol: str
    side: str  # BUY / SELL
    quantity: float
    price: float
    order_id: Optional[str]
    trade_id: Optional[str]
    timestamp: Optional[datetime]
    exchange: Optional[str] = None
    segment: Optional[str] = None
    product: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def ref(self) -> str:
        return str(self.order_id or self.trade_id or "")


def _average(fills: List[Fill]) -> tuple:
    quantity = sum(f.quantity for f in fills)
    value = sum(f.quantity * f.price for f in fills)
    return quantity, (value / quantity if quantity > 0 else 0.0)


def pair_fills(
    fills: Iterable[Fill],
    open_pnl: Optional[Dict[str, float]] = None,
) -> List[PlatformTrade]:
    """Collapse same-day fills into round-trip trades per symbol.

    Buys and sells of a symbol are averaged. Matched quantity becomes one
    COMPLETE trade with realized P&L; an unmatched buy remainder becomes an
    OPEN long (``<ref>_open``) and sell-only activity an OPEN short
    (``<ref>_short``).

    Args:
        fills: Executions in broker order
        open_pnl: Optional day P&L by symbol for open longs

    Returns:
        List of paired trades, symbols in first-seen order
    """
    by_symbol: "OrderedDict[str, List[Fill]]" = OrderedDict()
    for fill in fills:
        by_symbol.setdefault(fill.symbol, []).append(fill)

    trades: List[PlatformTrade] = []
    for symbol, symbol_fills in by_symbol.items():
        buys = [f for f in symbol_fills if f.side == "BUY"]
        sells = [f for f in symbol_fills if f.side == "SELL"]
        buy_qty, avg_buy = _average(buys)
        sell_qty, avg_sell = _average(sells)

        option = parse_option_details(symbol)
        first = (buys or sells)[0]
        instrument = resolve_instrument_type(symbol, first.product or first.segment, option)

        def build(**kwargs) -> PlatformTrade:
            base = dict(
                symbol=symbol,
                instrument_type=instrument,
                exchange=first.exchange,
                segment=first.segment,
                product_type=first.product,
                **option,
            )
            base.update(kwargs)
            return PlatformTrade(**base)

        if buy_qty > 0 and sell_qty > 0:
            buy, sell = buys[0], sells[0]
            matched = min(buy_qty, sell_qty)
            trades.append(build(
                external_id=f"{buy.ref}_{sell.ref}",
                side=TradeSide.LONG,
                entry_price=round(avg_buy, 2),
                exit_price=round(avg_sell, 2),
                quantity=matched,
                entry_date=buy.timestamp,
                exit_date=sell.timestamp,
                profit_loss=round((avg_sell - avg_buy) * matched, 2),
                order_id=f"{buy.order_id}_{sell.order_id}",
                status="COMPLETE",
                raw={"buy": buy.raw, "sell": sell.raw},
            ))
            if buy_qty > sell_qty:
                trades.append(build(
                    external_id=f"{buy.ref}_open",
                    side=TradeSide.LONG,
                    entry_price=round(avg_buy, 2),
                    quantity=buy_qty - sell_qty,
                    entry_date=buy.timestamp,
                    order_id=buy.order_id,
                    status="OPEN",
                    raw={"buy": buy.raw},
                ))
        elif buy_qty > 0:
            buy = buys[0]
            trades.append(build(
                external_id=f"{buy.ref}_open",
                side=TradeSide.LONG,
                entry_price=round(avg_buy, 2),
                quantity=buy_qty,
                entry_date=buy.timestamp,
                profit_loss=(open_pnl or {}).get(symbol),
                order_id=buy.order_id,
                status="OPEN",
                raw={"buy": buy.raw},
            ))
        elif sell_qty > 0:
            sell = sells[0]
            trades.append(build(
                external_id=f"{sell.ref}_short",
                side=TradeSide.SHORT,
                entry_price=round(avg_sell, 2),
                quantity=sell_qty,
                entry_date=sell.timestamp,
                order_id=sell.order_id,
                status="OPEN",
                raw={"sell": sell.raw},
            ))

    return trades


_CLOCK = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


def parse_clock(value: Any) -> Optional[tuple]:
    """(hours, minutes, seconds) from an HH:MM[:SS] string."""
    match = _CLOCK.match(str(value or "").strip())
    if not match:
        return None
    return int(match.group(1)), int(match.group(2)), int(match.group(3) or 0)


def timestamp_from_order_id(order_id: Any, clock: Optional[tuple] = None) -> Optional[datetime]:
    """Trade date from the YYMMDD prefix Indian brokers put on order ids.

    Args:
        order_id: Broker order id such as 250624000123456
        clock: Optional (hours, minutes, seconds) of the fill

    Returns:
        Datetime, or None if the id does not start with a valid date
    """
    ref = str(order_id or "")
    if len(ref) < 6 or not ref[:6].isdigit():
        return None
    hours, minutes, seconds = clock or (0, 0, 0)
    try:
        return datetime(2000 + int(ref[0:2]), int(ref[2:4]), int(ref[4:6]), hours, minutes, seconds)
    except ValueError:
        logger.debug(f"Order id {ref} does not carry a date")
        return None
