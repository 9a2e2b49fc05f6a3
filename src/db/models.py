"""SQLAlchemy ORM models."""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Get current UTC timestamp."""
    return datetime.utcnow()


class User(Base):
    """Ledger owner."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=generate_uuid)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    trading_accounts = relationship(
        "TradingAccount", back_populates="user", cascade="all, delete-orphan"
    )
    trades = relationship("Trade", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"


class TradingAccount(Base):
    """A user's connection to one brokerage platform.

    Holds the credential set used by the platform adapter. One row per
    (user, platform); reconnecting through OAuth updates the row in place.
    """

    __tablename__ = "trading_accounts"
    __table_args__ = (UniqueConstraint("user_id", "platform", name="uq_account_user_platform"),)

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    platform = Column(String(20), nullable=False)  # PlatformId value
    account_id = Column(String(100), nullable=False)  # Broker-side client id
    account_name = Column(String(255), nullable=True)

    # Credential set
    api_key = Column(String(255), nullable=True)
    api_secret = Column(String(255), nullable=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expiry = Column(DateTime, nullable=True)
    config = Column(JSON, nullable=True)  # Platform-specific extras

    is_active = Column(Boolean, default=True, nullable=False)
    sync_status = Column(String(20), default="PENDING", nullable=False)
    last_sync_at = Column(DateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="trading_accounts")
    trades = relationship("Trade", back_populates="account")
    sync_runs = relationship("SyncRun", back_populates="account", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<TradingAccount(id={self.id}, platform={self.platform}, status={self.sync_status})>"


class Trade(Base):
    """Trade journal entry."""

    __tablename__ = "trades"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    account_id = Column(String, ForeignKey("trading_accounts.id"), nullable=True, index=True)
    platform = Column(String(20), nullable=True)
    platform_trade_id = Column(String(100), nullable=True, index=True)
    order_id = Column(String(100), nullable=True)

    symbol = Column(String(50), nullable=False)
    side = Column(String(10), nullable=False)  # LONG / SHORT
    instrument_type = Column(String(10), default="STOCK", nullable=False)
    entry_price = Column(Float, nullable=False)
    exit_price = Column(Float, nullable=True)
    quantity = Column(Float, nullable=False)
    entry_date = Column(DateTime, nullable=False)
    exit_date = Column(DateTime, nullable=True)
    profit_loss = Column(Float, nullable=True)

    # Options
    strike_price = Column(Float, nullable=True)
    expiry_date = Column(DateTime, nullable=True)
    option_type = Column(String(4), nullable=True)  # CALL / PUT
    premium = Column(Float, nullable=True)

    exchange = Column(String(20), nullable=True)
    segment = Column(String(20), nullable=True)
    product_type = Column(String(20), nullable=True)
    status = Column(String(20), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="trades")
    account = relationship("TradingAccount", back_populates="trades")

    def __repr__(self) -> str:
        return f"<Trade(id={self.id}, symbol={self.symbol}, side={self.side}, qty={self.quantity})>"


class SyncRun(Base):
    """One sync attempt against a trading account."""

    __tablename__ = "sync_runs"

    id = Column(String, primary_key=True, default=generate_uuid)
    account_id = Column(String, ForeignKey("trading_accounts.id"), nullable=False, index=True)
    platform = Column(String(20), nullable=False)
    started_at = Column(DateTime, default=utcnow, nullable=False)
    finished_at = Column(DateTime, nullable=True)
    success = Column(Boolean, default=False, nullable=False)
    trades_fetched = Column(Integer, default=0, nullable=False)
    trades_created = Column(Integer, default=0, nullable=False)
    trades_updated = Column(Integer, default=0, nullable=False)
    trades_skipped = Column(Integer, default=0, nullable=False)
    error_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    # Relationships
    account = relationship("TradingAccount", back_populates="sync_runs")

    def __repr__(self) -> str:
        return f"<SyncRun(account_id={self.account_id}, success={self.success}, started_at={self.started_at})>"
