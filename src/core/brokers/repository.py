"""Trading account and trade repositories."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from src.config import get_settings
from src.core.brokers.models import PlatformCredentials, PlatformId, SyncStatus, TokenSet
from src.db.models import SyncRun, Trade, TradingAccount, User

logger = logging.getLogger(__name__)
settings = get_settings()

TradeKey = Tuple[str, Optional[str], Optional[datetime]]


def trade_key(
    symbol: str,
    platform_trade_id: Optional[str],
    entry_date: Optional[datetime],
    match_on_trade_id: bool = True,
) -> TradeKey:
    """Key two trades must share to be the same ledger entry."""
    return (
        (symbol or "").upper(),
        platform_trade_id if match_on_trade_id else None,
        entry_date.replace(microsecond=0) if entry_date else None,
    )


class UserRepository:
    """Repository for User lookups."""

    def __init__(self, db: Session):
        """Initialize repository with database session."""
        self.db = db

    def get_by_email(self, email: str) -> Optional[User]:
        return self.db.query(User).filter_by(email=email).first()

    def get_or_create_default(self) -> User:
        """Get or create the default user for single-user mode."""
        user = self.get_by_email(settings.default_user_email)
        if not user:
            user = User(email=settings.default_user_email)
            self.db.add(user)
            self.db.flush()  # Get the ID without committing
        return user


class TradingAccountRepository:
    """Repository for TradingAccount records."""

    def __init__(self, db: Session):
        """Initialize repository with database session."""
        self.db = db

    def find_account_by_id(self, account_id: str) -> Optional[TradingAccount]:
        return self.db.query(TradingAccount).filter_by(id=account_id).first()

    def find_accounts_by_user_and_platform(
        self,
        user_id: str,
        platform: PlatformId,
    ) -> List[TradingAccount]:
        return (
            self.db.query(TradingAccount)
            .filter_by(user_id=user_id, platform=platform.value)
            .order_by(TradingAccount.created_at)
            .all()
        )

    def find_active_accounts(self, user_id: Optional[str] = None) -> List[TradingAccount]:
        """Active accounts, oldest first.

        Args:
            user_id: Restrict to one user's accounts

        Returns:
            List of active accounts
        """
        query = self.db.query(TradingAccount).filter(
            TradingAccount.is_active == True  # noqa: E712
        )
        if user_id:
            query = query.filter(TradingAccount.user_id == user_id)
        return query.order_by(TradingAccount.created_at).all()

    def get_for_user(self, user_id: str, include_inactive: bool = False) -> List[TradingAccount]:
        query = self.db.query(TradingAccount).filter(TradingAccount.user_id == user_id)
        if not include_inactive:
            query = query.filter(TradingAccount.is_active == True)  # noqa: E712
        return query.order_by(TradingAccount.created_at).all()

    def upsert_credential(
        self,
        user_id: str,
        platform: PlatformId,
        account_id: str,
        account_name: str,
        tokens: Optional[TokenSet] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        extras: Optional[Dict[str, Any]] = None,
    ) -> Tuple[TradingAccount, bool]:
        """Create or update the user's account for a platform.

        Returns:
            (account, created)
        """
        existing = self.find_accounts_by_user_and_platform(user_id, platform)
        account = existing[0] if existing else None
        created = account is None

        if created:
            account = TradingAccount(
                user_id=user_id,
                platform=platform.value,
                account_id=account_id,
            )
            self.db.add(account)

        account.account_id = account_id or account.account_id
        account.account_name = account_name
        account.is_active = True
        account.sync_status = SyncStatus.CONNECTED.value
        account.last_sync_error = None
        if tokens:
            account.access_token = tokens.access_token
            account.refresh_token = tokens.refresh_token
            account.token_expiry = tokens.token_expiry
        if api_key is not None:
            account.api_key = api_key
        if api_secret is not None:
            account.api_secret = api_secret
        if extras is not None:
            account.config = dict(extras)

        self.db.flush()
        return account, created

    def update_tokens(self, account: TradingAccount, tokens: TokenSet) -> None:
        """Persist a refreshed token pair."""
        account.access_token = tokens.access_token
        if tokens.refresh_token:
            account.refresh_token = tokens.refresh_token
        account.token_expiry = tokens.token_expiry
        self.db.flush()

    def mark_sync_status(
        self,
        account: TradingAccount,
        status: SyncStatus,
        error: Optional[str] = None,
        synced_at: Optional[datetime] = None,
    ) -> None:
        account.sync_status = status.value
        account.last_sync_error = error
        if synced_at:
            account.last_sync_at = synced_at
        self.db.flush()

    def deactivate(self, account: TradingAccount) -> None:
        """Mark inactive. Accounts are never deleted so trades keep their link."""
        account.is_active = False
        self.db.flush()

    @staticmethod
    def credentials_for(account: TradingAccount) -> PlatformCredentials:
        """Credential set an adapter is built with."""
        return PlatformCredentials(
            platform=PlatformId(account.platform),
            api_key=account.api_key,
            api_secret=account.api_secret,
            access_token=account.access_token,
            refresh_token=account.refresh_token,
            token_expiry=account.token_expiry,
            extras={k: str(v) for k, v in (account.config or {}).items()},
        )

    def record_sync_run(self, run: SyncRun) -> SyncRun:
        self.db.add(run)
        self.db.flush()
        return run

    def get_sync_runs(self, account_id: str, limit: int = 10) -> List[SyncRun]:
        return (
            self.db.query(SyncRun)
            .filter_by(account_id=account_id)
            .order_by(SyncRun.started_at.desc())
            .limit(limit)
            .all()
        )


class TradeRepository:
    """Repository for ledger Trade records."""

    def __init__(self, db: Session):
        """Initialize repository with database session."""
        self.db = db

    def get_trades_for_account(self, account_id: str) -> List[Trade]:
        return (
            self.db.query(Trade)
            .filter_by(account_id=account_id)
            .order_by(Trade.created_at)
            .all()
        )

    def index_by_key(
        self,
        account_id: str,
        match_on_trade_id: bool = True,
    ) -> Dict[TradeKey, List[Trade]]:
        """Existing trades of an account grouped by matching key."""
        index: Dict[TradeKey, List[Trade]] = defaultdict(list)
        for trade in self.get_trades_for_account(account_id):
            key = trade_key(trade.symbol, trade.platform_trade_id, trade.entry_date, match_on_trade_id)
            index[key].append(trade)
        return index

    def find_trade_by_key(
        self,
        account_id: str,
        symbol: str,
        platform_trade_id: Optional[str],
        entry_date: Optional[datetime],
        match_on_trade_id: bool = True,
    ) -> List[Trade]:
        """All trades of an account sharing a matching key."""
        key = trade_key(symbol, platform_trade_id, entry_date, match_on_trade_id)
        return self.index_by_key(account_id, match_on_trade_id).get(key, [])

    def create_trade(self, **fields) -> Trade:
        trade = Trade(**fields)
        self.db.add(trade)
        self.db.flush()
        return trade

    def update_trade(self, trade: Trade, **fields) -> Trade:
        for name, value in fields.items():
            setattr(trade, name, value)
        self.db.flush()
        return trade
