"""
Dunning worker tests with a mocked distributed lock.
"""
import pytest
from sqlalchemy import select

from creator_ledger.database.models import RiskProfile
from creator_ledger.workers.dunning_worker import SWEEP_LOCK_KEY, DunningWorker


class TestDunningWorker:
    """Test suite for the periodic sweep."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sweep_runs_under_lock(
        self, test_db: any, services: any, seed: any, mocker: any
    ) -> None:
        """The sweep runs, refreshes risk profiles and releases the lock."""
        await seed.wallet("creator_1", balance_minor=100)
        redlock = mocker.Mock()
        redlock.lock.return_value = mocker.sentinel.lock
        worker = DunningWorker(services.dunning, services.risk, redlock=redlock)

        stats = await worker.run_once()

        assert stats["scheduled"] == 0
        assert redlock.lock.call_args.args[0] == SWEEP_LOCK_KEY
        redlock.unlock.assert_called_once_with(mocker.sentinel.lock)
        profile = await test_db.scalar(
            select(RiskProfile).where(RiskProfile.user_id == "creator_1")
        )
        assert profile is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_busy_lock_skips_sweep(self, services: any, mocker: any) -> None:
        """Another worker holding the lock means this one does nothing."""
        redlock = mocker.Mock()
        redlock.lock.return_value = False
        run_sweep = mocker.patch.object(services.dunning, "run_sweep")
        worker = DunningWorker(services.dunning, services.risk, redlock=redlock)

        assert await worker.run_once() is None
        run_sweep.assert_not_called()
        redlock.unlock.assert_not_called()
