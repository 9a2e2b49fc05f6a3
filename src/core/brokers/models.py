"""Broker integration data models."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from src.core.brokers.errors import SyncCancelled


class PlatformId(str, Enum):
    """Supported brokerage platforms."""

    ANGEL_ONE = "ANGEL_ONE"
    ZERODHA = "ZERODHA"
    UPSTOX = "UPSTOX"
    DHAN = "DHAN"
    GROWW = "GROWW"
    FYERS = "FYERS"
    SAS_ONLINE = "SAS_ONLINE"
    FIVE_PAISA = "5PAISA"
    ICICI_DIRECT = "ICICI_DIRECT"


class TradeSide(str, Enum):
    """Direction of a trade."""

    LONG = "LONG"
    SHORT = "SHORT"


class InstrumentType(str, Enum):
    """Instrument class of a trade."""

    STOCK = "STOCK"
    FUTURES = "FUTURES"
    OPTIONS = "OPTIONS"


class OptionType(str, Enum):
    """Call or put."""

    CALL = "CALL"
    PUT = "PUT"


class SyncStatus(str, Enum):
    """Connection state of a trading account."""

    PENDING = "PENDING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"


@dataclass
class TokenSet:
    """Tokens returned by a refresh or a code exchange."""

    access_token: str
    refresh_token: Optional[str] = None
    token_expiry: Optional[datetime] = None


@dataclass
class PlatformCredentials:
    """Credential set an adapter authenticates with."""

    platform: PlatformId
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expiry: Optional[datetime] = None
    extras: Dict[str, str] = field(default_factory=dict)

    def apply(self, tokens: TokenSet) -> None:
        """Replace the token pair with a freshly issued one."""
        self.access_token = tokens.access_token
        if tokens.refresh_token:
            self.refresh_token = tokens.refresh_token
        self.token_expiry = tokens.token_expiry


@dataclass
class PlatformTrade:
    """A trade normalized from a broker response."""

    external_id: str
    symbol: str
    side: TradeSide
    instrument_type: InstrumentType
    entry_price: float
    quantity: float
    entry_date: Optional[datetime]
    order_id: Optional[str] = None
    exit_price: Optional[float] = None
    exit_date: Optional[datetime] = None
    profit_loss: Optional[float] = None
    strike_price: Optional[float] = None
    expiry_date: Optional[datetime] = None
    option_type: Optional[OptionType] = None
    premium: Optional[float] = None
    status: str = "COMPLETE"
    exchange: Optional[str] = None
    segment: Optional[str] = None
    product_type: Optional[str] = None
    raw: Optional[Dict[str, Any]] = field(default=None, repr=False)


@dataclass
class ProfileInfo:
    """Broker-side identity of a connected account."""

    account_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None


@dataclass
class PlatformAccountInfo:
    """Profile and holdings snapshot of an account."""

    platform: PlatformId
    profile: Optional[Dict[str, Any]] = None
    holdings: Optional[List[Dict[str, Any]]] = None


class Deadline:
    """Wall-clock budget and cancel flag shared by the calls of one sync."""

    def __init__(
        self,
        seconds: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.expires_at = time.monotonic() + seconds if seconds is not None else None
        self.cancel_event = cancel_event or threading.Event()

    def cancel(self) -> None:
        self.cancel_event.set()

    def remaining(self) -> Optional[float]:
        """Seconds left, or None for no limit."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return self.cancel_event.is_set() or (remaining is not None and remaining <= 0)

    def check(self) -> None:
        """Raise SyncCancelled once the budget is spent or cancel was requested."""
        if self.cancel_event.is_set():
            raise SyncCancelled("Sync was cancelled")
        if self.expired:
            raise SyncCancelled("Sync deadline exceeded")

    def bound(self, timeout: float) -> float:
        """Clamp a per-request timeout to the time left."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        return min(timeout, remaining)


@dataclass
class SyncOptions:
    """Options for one sync run."""

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    update_existing: bool = True
    force_full_sync: bool = False
    match_on_trade_id: bool = True  # False matches on (symbol, entry_date) only
    deadline: Optional[Deadline] = None


@dataclass(frozen=True)
class SyncResult:
    """Result of syncing trades from a broker account."""

    success: bool
    account_id: str
    platform: Optional[str]
    trades_fetched: int = 0
    trades_created: int = 0
    trades_updated: int = 0
    trades_skipped: int = 0
    error_count: int = 0
    error_message: Optional[str] = None
    error_details: List[str] = field(default_factory=list)
    duration_ms: int = 0
    platform_trade_ids: List[str] = field(default_factory=list)
    synced_at: datetime = field(default_factory=datetime.utcnow)
