"""Scheduler for running periodic background trade syncs."""

from __future__ import annotations

import logging
import signal
import sys
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.config import get_settings
from src.core.brokers.models import SyncOptions
from src.core.brokers.sync import TradeSyncService
from src.db.database import get_db

logger = logging.getLogger(__name__)
settings = get_settings()


def run_sync_cycle(
    lookback_hours: Optional[int] = None,
    max_concurrency: Optional[int] = None,
) -> list:
    """Sync recent trades of every active account once.

    Returns:
        List of SyncResults
    """
    lookback = lookback_hours or settings.background_sync_lookback_hours
    end_date = datetime.utcnow()
    options = SyncOptions(
        start_date=end_date - timedelta(hours=lookback),
        end_date=end_date,
        update_existing=True,
    )
    with get_db() as db:
        service = TradeSyncService(db, session_scope=get_db)
        return service.sync_all_accounts(options, max_concurrency=max_concurrency)


class BackgroundSyncScheduler:
    """Scheduler for periodic background syncs."""

    def __init__(
        self,
        interval_minutes: Optional[int] = None,
        lookback_hours: Optional[int] = None,
        max_concurrency: Optional[int] = None,
    ):
        """Initialize the scheduler.

        Args:
            interval_minutes: Minutes between cycles (defaults to settings)
            lookback_hours: Hours of history each cycle re-reads
            max_concurrency: Accounts synced in parallel
        """
        self.interval = interval_minutes or settings.background_sync_interval_minutes
        self.lookback_hours = lookback_hours or settings.background_sync_lookback_hours
        self.max_concurrency = max_concurrency
        self.scheduler = BlockingScheduler()
        self._cycle_count = 0
        self._shutdown_requested = False

    def _run_cycle(self) -> None:
        """Execute a single sync cycle."""
        self._cycle_count += 1
        timestamp = datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S UTC")

        logger.info(f"[Cycle {self._cycle_count}] Starting at {timestamp}")

        try:
            results = run_sync_cycle(
                lookback_hours=self.lookback_hours,
                max_concurrency=self.max_concurrency,
            )

            if results:
                created = sum(r.trades_created for r in results)
                updated = sum(r.trades_updated for r in results)
                failed = sum(1 for r in results if not r.success)
                logger.info(
                    f"[Cycle {self._cycle_count}] {len(results)} account(s): "
                    f"{created} created, {updated} updated, {failed} failed"
                )
            else:
                logger.info(f"[Cycle {self._cycle_count}] No active accounts")

        except Exception as e:
            logger.error(f"[Cycle {self._cycle_count}] Error: {e}")

    def _handle_signal(self, signum, frame) -> None:
        """Handle shutdown signals gracefully."""
        if self._shutdown_requested:
            # Force exit on second signal
            logger.warning("Received second shutdown signal, forcing exit...")
            sys.exit(1)

        logger.info("Received shutdown signal, stopping scheduler...")
        self._shutdown_requested = True
        self.stop()

    def start(self) -> None:
        """Start the scheduler (blocking)."""
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

        self.scheduler.add_job(
            self._run_cycle,
            trigger=IntervalTrigger(minutes=self.interval),
            id="background_sync",
            name="Background Trade Sync",
            replace_existing=True,
            max_instances=1,
        )

        logger.info(
            f"Starting background sync every {self.interval} min "
            f"(lookback {self.lookback_hours}h)"
        )
        logger.info("Press Ctrl+C to stop")

        # Run first cycle immediately
        self._run_cycle()

        try:
            self.scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            pass  # Expected on shutdown
        finally:
            logger.info("Scheduler stopped")

    def stop(self) -> None:
        """Stop the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler shutdown complete")


def start_scheduler(
    interval_minutes: Optional[int] = None,
    lookback_hours: Optional[int] = None,
    max_concurrency: Optional[int] = None,
) -> None:
    """Start the background sync scheduler (convenience function)."""
    scheduler = BackgroundSyncScheduler(
        interval_minutes=interval_minutes,
        lookback_hours=lookback_hours,
        max_concurrency=max_concurrency,
    )
    scheduler.start()
