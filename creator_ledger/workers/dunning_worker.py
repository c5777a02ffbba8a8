"""
Dunning background worker.

Runs a dunning sweep every ``dunning_sweep_interval_seconds`` and refreshes
creator risk profiles afterwards. A Redlock lock ensures only one worker
sweeps at a time when several are deployed.
"""
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog
from redlock import Redlock
from sqlalchemy import select

from creator_ledger.config import get_settings
from creator_ledger.core.dunning import DunningEngine
from creator_ledger.core.fees import FeePercentResolver
from creator_ledger.core.ledger import LedgerManager
from creator_ledger.core.notifications import build_notifier
from creator_ledger.core.risk import RiskEngine
from creator_ledger.core.webhooks import PaymentSettlementService
from creator_ledger.database.connection import close_db, get_session_factory
from creator_ledger.database.models import Wallet
from creator_ledger.integrations.registry import build_registry
from creator_ledger.monitoring.logging import setup_logging
from creator_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SWEEP_LOCK_KEY = "dunning:sweep:lock"


class DunningWorker:
    """Periodic dunning and risk sweeps guarded by a distributed lock."""

    def __init__(
        self,
        dunning: DunningEngine,
        risk: RiskEngine,
        redlock: Optional[Redlock] = None,
    ):
        self.settings = get_settings()
        self.dunning = dunning
        self.risk = risk
        self.redlock = redlock

    def _get_redlock(self) -> Redlock:
        """Get or create Redlock instance."""
        if self.redlock is None:
            self.redlock = Redlock([{"url": self.settings.redis_url}])
        return self.redlock

    async def refresh_risk_profiles(self) -> int:
        """Recalculate the risk profile of every wallet owner."""
        session_factory = get_session_factory()
        async with session_factory() as db:
            user_ids = (await db.scalars(select(Wallet.user_id))).all()
            for user_id in user_ids:
                await self.risk.recalculate(db, user_id)
                await db.commit()
        return len(user_ids)

    async def run_once(self) -> Optional[Dict[str, int]]:
        """
        Run one sweep if the sweep lock can be taken.

        Returns:
            Optional[Dict[str, int]]: Sweep counts, or None if another worker holds the lock
        """
        redlock = self._get_redlock()
        lock = redlock.lock(SWEEP_LOCK_KEY, self.settings.dunning_sweep_interval_seconds * 1000)
        if not lock:
            metrics.record_distributed_lock("failed")
            logger.info("dunning_sweep_lock_busy", lock_key=SWEEP_LOCK_KEY)
            return None

        metrics.record_distributed_lock("acquired")
        try:
            session_factory = get_session_factory()
            async with session_factory() as db:
                stats = await self.dunning.run_sweep(db)
            refreshed = await self.refresh_risk_profiles()
            logger.info("risk_profiles_refreshed", count=refreshed)
            return stats
        finally:
            redlock.unlock(lock)


async def start_dunning_worker(interval_seconds: Optional[int] = None) -> None:
    """
    Start the dunning worker.

    Args:
        interval_seconds: Seconds between sweeps (defaults to settings)
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.dunning_sweep_interval_seconds

    registry = build_registry(settings)
    notifier = build_notifier()
    ledger = LedgerManager()
    risk = RiskEngine()
    settlement = PaymentSettlementService(ledger, notifier, FeePercentResolver())
    worker = DunningWorker(DunningEngine(registry, settlement, notifier), risk)

    logger.info("dunning_worker_starting", interval_seconds=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("dunning_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await worker.run_once()
            except Exception as e:
                # Keep sweeping; the next run picks up whatever this one missed
                logger.error("dunning_sweep_error", error=str(e), error_type=type(e).__name__)

            remaining = float(interval)
            while remaining > 0 and running:
                sleep_time = min(remaining, 5)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time
    finally:
        await registry.close()
        close = getattr(notifier, "close", None)
        if close is not None:
            await close()
        await close_db()
        logger.info("dunning_worker_stopped")


def main() -> None:
    """Console entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Dunning worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between sweeps (default: settings)"
    )
    args = parser.parse_args()

    asyncio.run(start_dunning_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
