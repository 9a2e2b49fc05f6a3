"""Trade sync service.

Pulls trades from a connected brokerage account and reconciles them against
the trade ledger:

- no stored trade with the same key -> create
- stored trade and update_existing is off -> skip
- stored trade with different ledger fields -> update, otherwise skip

Each account syncs in its own unit of work. Failures are reported through
SyncResult and never raised to the caller.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import requests
from sqlalchemy.orm import Session

from src.config import get_settings
from src.core.brokers.base import TradingPlatform
from src.core.brokers.errors import AccountNotFound, PlatformError
from src.core.brokers.factory import create_platform
from src.core.brokers.models import PlatformTrade, SyncOptions, SyncResult, SyncStatus, TradeSide
from src.core.brokers.parsing import round2
from src.core.brokers.repository import TradeRepository, TradingAccountRepository, trade_key
from src.db.database import SessionScope, get_db
from src.db.models import SyncRun, Trade, TradingAccount

logger = logging.getLogger(__name__)
settings = get_settings()

# Ledger fields refreshed when a stored trade is updated
UPDATABLE_FIELDS = (
    "entry_price",
    "exit_price",
    "quantity",
    "profit_loss",
    "entry_date",
    "exit_date",
    "status",
)

# Incremental syncs re-read this much history before the last sync
INCREMENTAL_OVERLAP = timedelta(days=1)


def compute_profit_loss(trade: PlatformTrade) -> Optional[float]:
    """Realized P&L from entry and exit prices, or the broker's own figure."""
    if trade.profit_loss is not None:
        return round2(trade.profit_loss)
    if trade.exit_price is None:
        return None
    move = trade.exit_price - trade.entry_price
    if trade.side == TradeSide.SHORT:
        move = -move
    return round2(move * trade.quantity)


def ledger_fields(trade: PlatformTrade) -> Dict[str, Any]:
    """Trade row columns for a normalized platform trade."""
    return {
        "symbol": trade.symbol,
        "side": trade.side.value,
        "instrument_type": trade.instrument_type.value,
        "entry_price": trade.entry_price,
        "exit_price": trade.exit_price,
        "quantity": trade.quantity,
        "entry_date": trade.entry_date,
        "exit_date": trade.exit_date,
        "profit_loss": compute_profit_loss(trade),
        "strike_price": trade.strike_price,
        "expiry_date": trade.expiry_date,
        "option_type": trade.option_type.value if trade.option_type else None,
        "premium": trade.premium,
        "exchange": trade.exchange,
        "segment": trade.segment,
        "product_type": trade.product_type,
        "status": trade.status,
        "order_id": trade.order_id,
    }


class _Tally:
    """Mutable counters for one sync run."""

    def __init__(self):
        self.fetched = 0
        self.created = 0
        self.updated = 0
        self.skipped = 0
        self.errors: List[str] = []
        self.trade_ids: List[str] = []


class TradeSyncService:
    """Service for syncing trades from connected trading accounts."""

    def __init__(
        self,
        db: Session,
        session_scope: Optional[SessionScope] = None,
        http: Optional[requests.Session] = None,
    ):
        """Initialize the service.

        Args:
            db: Session used for single-account operations
            session_scope: Unit-of-work factory; when given, sync_all_accounts
                runs each account in its own session on a worker thread
            http: Optional requests session shared by the adapters
        """
        self.db = db
        self.session_scope = session_scope
        self.http = http
        self.accounts = TradingAccountRepository(db)
        self.trades = TradeRepository(db)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync_account(
        self,
        account_id: str,
        options: Optional[SyncOptions] = None,
    ) -> SyncResult:
        """Sync trades from one trading account.

        Args:
            account_id: TradingAccount id
            options: Date range and reconciliation options

        Returns:
            SyncResult with counts and errors
        """
        options = options or SyncOptions()
        started = time.monotonic()
        try:
            return self._sync(account_id, options, started)
        except Exception as e:
            logger.exception(f"Unexpected error syncing account {account_id}")
            return SyncResult(
                success=False,
                account_id=account_id,
                platform=None,
                error_count=1,
                error_message=str(e),
                error_details=[f"{type(e).__name__}: {e}"],
                duration_ms=int((time.monotonic() - started) * 1000),
            )

    def _sync(self, account_id: str, options: SyncOptions, started: float) -> SyncResult:
        started_at = datetime.utcnow()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        account = self.accounts.find_account_by_id(account_id)
        if account is None:
            message = str(AccountNotFound(account_id))
            logger.warning(message)
            return SyncResult(
                success=False,
                account_id=account_id,
                platform=None,
                error_count=1,
                error_message=message,
                error_details=[message],
                duration_ms=elapsed_ms(),
            )

        if not account.is_active:
            message = f"Account is not active: {account_id}"
            logger.warning(message)
            return SyncResult(
                success=False,
                account_id=account_id,
                platform=account.platform,
                error_count=1,
                error_message=message,
                error_details=[message],
                duration_ms=elapsed_ms(),
            )

        tally = _Tally()
        adapter: Optional[TradingPlatform] = None
        try:
            adapter = self._build_adapter(account, options)
            start_date, end_date = self._date_range(account, options)
            logger.info(
                f"Syncing {account.platform} account {account.id} "
                f"({start_date:%Y-%m-%d} to {end_date:%Y-%m-%d})"
            )
            fresh = adapter.get_trades(start_date, end_date)
        except Exception as e:
            logger.error(f"Sync failed for account {account.id}: {e}")
            self._persist_tokens(account, adapter)
            self.accounts.mark_sync_status(account, SyncStatus.ERROR, error=str(e))
            result = SyncResult(
                success=False,
                account_id=account.id,
                platform=account.platform,
                error_count=1,
                error_message=str(e),
                error_details=[f"{type(e).__name__}: {e}"],
                duration_ms=elapsed_ms(),
            )
            self._record_run(account, started_at, result)
            return result

        self._persist_tokens(account, adapter)
        self._reconcile(account, fresh, options, tally)

        error_message = None
        if tally.errors:
            error_message = f"{len(tally.errors)} trade(s) failed to sync"
        self.accounts.mark_sync_status(
            account,
            SyncStatus.CONNECTED,
            error=error_message,
            synced_at=datetime.utcnow(),
        )

        result = SyncResult(
            success=not tally.errors,
            account_id=account.id,
            platform=account.platform,
            trades_fetched=tally.fetched,
            trades_created=tally.created,
            trades_updated=tally.updated,
            trades_skipped=tally.skipped,
            error_count=len(tally.errors),
            error_message=error_message,
            error_details=list(tally.errors),
            duration_ms=elapsed_ms(),
            platform_trade_ids=list(tally.trade_ids),
        )
        self._record_run(account, started_at, result)

        logger.info(
            f"Synced {account.platform} account {account.id}: "
            f"{result.trades_created} created, {result.trades_updated} updated, "
            f"{result.trades_skipped} skipped, {result.error_count} errors"
        )
        return result

    def sync_all_accounts(
        self,
        options: Optional[SyncOptions] = None,
        max_concurrency: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> List[SyncResult]:
        """Sync every active account.

        Args:
            options: Options applied to each account
            max_concurrency: Worker threads (defaults to settings)
            user_id: Restrict to one user's accounts

        Returns:
            List of SyncResults, one per account, in account order
        """
        account_ids = [a.id for a in self.accounts.find_active_accounts(user_id=user_id)]
        if not account_ids:
            logger.info("No active trading accounts to sync")
            return []

        if self.session_scope is None:
            return [self.sync_account(account_id, options) for account_id in account_ids]

        workers = max(1, min(max_concurrency or settings.sync_max_concurrency, len(account_ids)))
        logger.info(f"Syncing {len(account_ids)} accounts with {workers} workers")
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="trade-sync") as pool:
            return list(pool.map(lambda account_id: self._sync_isolated(account_id, options), account_ids))

    def _sync_isolated(self, account_id: str, options: Optional[SyncOptions]) -> SyncResult:
        """Sync one account in a fresh unit of work."""
        started = time.monotonic()
        try:
            with self.session_scope() as db:
                return TradeSyncService(db, http=self.http).sync_account(account_id, options)
        except Exception as e:
            # Raised by the commit at the end of the unit of work
            logger.error(f"Saving sync results failed for account {account_id}: {e}")
            return SyncResult(
                success=False,
                account_id=account_id,
                platform=None,
                error_count=1,
                error_message=str(e),
                error_details=[f"{type(e).__name__}: {e}"],
                duration_ms=int((time.monotonic() - started) * 1000),
            )

    def _reconcile(
        self,
        account: TradingAccount,
        fresh: List[PlatformTrade],
        options: SyncOptions,
        tally: _Tally,
    ) -> None:
        existing = self.trades.index_by_key(account.id, options.match_on_trade_id)
        tally.fetched = len(fresh)

        for position, trade in enumerate(fresh, start=1):
            try:
                tally.trade_ids.append(trade.external_id)

                if trade.entry_date is None:
                    logger.warning(
                        f"Skipping {trade.symbol} ({trade.external_id}): no parsable entry date"
                    )
                    tally.skipped += 1
                    continue

                key = trade_key(
                    trade.symbol,
                    trade.external_id,
                    trade.entry_date,
                    options.match_on_trade_id,
                )
                matches = existing.get(key)

                # Savepoint per row so a failed flush leaves the session usable
                if not matches:
                    with self.db.begin_nested():
                        created = self.trades.create_trade(
                            user_id=account.user_id,
                            account_id=account.id,
                            platform=account.platform,
                            platform_trade_id=trade.external_id,
                            notes=f"Auto-synced from {account.platform} - {trade.order_id or trade.external_id}",
                            **ledger_fields(trade),
                        )
                    existing.setdefault(key, []).append(created)
                    tally.created += 1
                    continue

                if not options.update_existing:
                    tally.skipped += 1
                    continue

                stored = self._pick_match(matches, key)
                changes = self._changed_fields(stored, trade)
                if changes:
                    with self.db.begin_nested():
                        self.trades.update_trade(stored, **changes)
                    tally.updated += 1
                else:
                    tally.skipped += 1

            except Exception as e:
                logger.error(
                    f"Error processing trade {trade.external_id} "
                    f"({position}/{len(fresh)}) for account {account.id}: {e}"
                )
                tally.errors.append(f"{trade.external_id}: {e}")

    @staticmethod
    def _pick_match(matches: List[Trade], key) -> Trade:
        if len(matches) > 1:
            logger.warning(
                f"{len(matches)} stored trades share key {key}; updating the most recent"
            )
        return max(matches, key=lambda t: t.created_at or datetime.min)

    @staticmethod
    def _changed_fields(stored: Trade, trade: PlatformTrade) -> Dict[str, Any]:
        fresh = ledger_fields(trade)
        return {
            name: fresh[name]
            for name in UPDATABLE_FIELDS
            if getattr(stored, name) != fresh[name]
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _build_adapter(self, account: TradingAccount, options: SyncOptions) -> TradingPlatform:
        return create_platform(
            account.platform,
            TradingAccountRepository.credentials_for(account),
            app_config=settings.platform_app(account.platform),
            deadline=options.deadline,
            http=self.http,
        )

    @staticmethod
    def _date_range(account: TradingAccount, options: SyncOptions):
        end_date = options.end_date or datetime.utcnow()
        if options.start_date:
            return options.start_date, end_date

        window_start = end_date - timedelta(days=settings.sync_default_days)
        if options.force_full_sync or not account.last_sync_at:
            return window_start, end_date
        return max(window_start, account.last_sync_at - INCREMENTAL_OVERLAP), end_date

    def _persist_tokens(self, account: TradingAccount, adapter: Optional[TradingPlatform]) -> None:
        if adapter is None or adapter.refreshed_tokens is None:
            return
        self.accounts.update_tokens(account, adapter.refreshed_tokens)
        logger.info(f"Stored refreshed tokens for account {account.id}")

    def _record_run(self, account: TradingAccount, started_at: datetime, result: SyncResult) -> None:
        self.accounts.record_sync_run(SyncRun(
            account_id=account.id,
            platform=account.platform,
            started_at=started_at,
            finished_at=datetime.utcnow(),
            success=result.success,
            trades_fetched=result.trades_fetched,
            trades_created=result.trades_created,
            trades_updated=result.trades_updated,
            trades_skipped=result.trades_skipped,
            error_count=result.error_count,
            error_message=result.error_message,
        ))

    # ------------------------------------------------------------------
    # Account management
    # ------------------------------------------------------------------

    def get_account(self, account_id: str) -> TradingAccount:
        account = self.accounts.find_account_by_id(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def list_accounts(self, user_id: str, include_inactive: bool = False) -> List[TradingAccount]:
        """Trading accounts of a user."""
        return self.accounts.get_for_user(user_id, include_inactive=include_inactive)

    def get_sync_history(self, account_id: str, limit: int = 10) -> List[SyncRun]:
        """Most recent sync runs of an account, newest first."""
        return self.accounts.get_sync_runs(account_id, limit=limit)

    def get_account_status(self, account_id: str) -> Optional[Dict[str, Any]]:
        """Connection and sync state of an account, or None if it does not exist."""
        account = self.accounts.find_account_by_id(account_id)
        if account is None:
            return None
        return {
            "id": account.id,
            "platform": account.platform,
            "account_id": account.account_id,
            "account_name": account.account_name,
            "is_active": account.is_active,
            "sync_status": account.sync_status,
            "last_sync_at": account.last_sync_at,
            "last_sync_error": account.last_sync_error,
            "trade_count": len(self.trades.get_trades_for_account(account.id)),
        }

    def test_connection(self, account_id: str) -> bool:
        """Authenticate against the platform without syncing.

        Raises:
            AccountNotFound: no such account
            PlatformNotImplemented: platform has no API integration
        """
        account = self.get_account(account_id)
        adapter = self._build_adapter(account, SyncOptions())
        try:
            ok = adapter.authenticate()
        except PlatformError as e:
            if isinstance(e, NotImplementedError):
                raise
            logger.error(f"Connection test failed for account {account.id}: {e}")
            ok = False
        self._persist_tokens(account, adapter)

        if ok:
            self.accounts.mark_sync_status(account, SyncStatus.CONNECTED)
        else:
            self.accounts.mark_sync_status(
                account,
                SyncStatus.ERROR,
                error=getattr(adapter, "last_error", None) or "Authentication failed",
            )
        return ok

    def deactivate_account(self, account_id: str) -> bool:
        """Disconnect an account. Its trades stay in the ledger."""
        self.accounts.deactivate(self.get_account(account_id))
        return True


def get_trade_sync_service(db: Session) -> TradeSyncService:
    """Factory function for the trade sync service."""
    return TradeSyncService(db, session_scope=get_db)
