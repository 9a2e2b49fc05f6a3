"""Shared fixtures: SQLite database and fake HTTP responses."""

from datetime import datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from src.core.brokers.models import InstrumentType, PlatformTrade, TradeSide
from src.db.database import make_session_scope
from src.db.models import Base, TradingAccount, User


@pytest.fixture
def session_factory(tmp_path):
    """Session factory bound to a throwaway SQLite file."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def session_scope(session_factory):
    return make_session_scope(session_factory)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def user(db):
    user = User(email="trader@example.com", name="Trader")
    db.add(user)
    db.flush()
    return user


@pytest.fixture
def make_account(db, user):
    """Create a trading account for the test user."""

    def _make(platform="DHAN", **fields):
        account = TradingAccount(
            user_id=fields.pop("user_id", user.id),
            platform=platform,
            account_id=fields.pop("account_id", f"{platform.lower()}-client"),
            account_name=fields.pop("account_name", f"{platform} Account"),
            access_token=fields.pop("access_token", "access-token"),
            refresh_token=fields.pop("refresh_token", "refresh-token"),
            sync_status=fields.pop("sync_status", "CONNECTED"),
            **fields,
        )
        db.add(account)
        db.flush()
        return account

    return _make


def fake_response(status_code=200, json_data=None, text=""):
    """Mock of a requests.Response."""
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    if json_data is None:
        response.json.side_effect = ValueError("No JSON")
    else:
        response.json.return_value = json_data
    return response


@pytest.fixture
def respond():
    return fake_response


@pytest.fixture
def http():
    """Mock requests.Session; set .request.side_effect per test."""
    return MagicMock()


@pytest.fixture
def platform_trade():
    """Build a normalized platform trade."""

    def _make(external_id="T1", symbol="RELIANCE", **fields):
        base = dict(
            external_id=external_id,
            symbol=symbol,
            side=TradeSide.LONG,
            instrument_type=InstrumentType.STOCK,
            entry_price=100.0,
            quantity=10.0,
            entry_date=datetime(2025, 6, 24, 9, 30),
            order_id=f"ORD-{external_id}",
        )
        base.update(fields)
        return PlatformTrade(**base)

    return _make
