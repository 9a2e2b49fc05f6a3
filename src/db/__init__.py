"""Database module."""

from .database import get_db, init_db, engine, SessionLocal, make_session_scope
from .models import Base, User, TradingAccount, Trade, SyncRun

__all__ = [
    "get_db",
    "init_db",
    "engine",
    "SessionLocal",
    "make_session_scope",
    "Base",
    "User",
    "TradingAccount",
    "Trade",
    "SyncRun",
]
