"""
Dunning: recovery of failed subscription renewals.

A sweep does three things, each committed per subscription:

1. Schedule the next retry for active, auto-renewing subscriptions whose
   latest payment failed. The first retry is due a delay after the failure,
   every later one a delay after the previous attempt ran.
2. Run due attempts. An attempt is claimed by setting ``attempted_at`` before
   the provider is asked again, so concurrent sweeps never run it twice.
3. Cancel ``past_due`` subscriptions whose grace period has ended.

Everything is driven by stored timestamps, so a sweep can run at any time (and
more than once) without losing or duplicating work.
"""
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from creator_ledger.config import get_settings
from creator_ledger.core.errors import RoutingError
from creator_ledger.core.notifications import Notifier, safe_notify
from creator_ledger.core.webhooks import PaymentSettlementService
from creator_ledger.database.models import DunningAttempt, Payment, Subscription, utcnow
from creator_ledger.database.repositories import insert_ignore
from creator_ledger.integrations.base import ProviderError, VerificationResult
from creator_ledger.integrations.registry import ProviderRegistry
from creator_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class DunningEngine:
    """Schedules and runs renewal retries, then enforces the grace period."""

    def __init__(
        self,
        registry: ProviderRegistry,
        settlement: PaymentSettlementService,
        notifier: Notifier,
        schedule: Optional[List[timedelta]] = None,
        grace_period: Optional[timedelta] = None,
    ):
        settings = get_settings()
        self.registry = registry
        self.settlement = settlement
        self.notifier = notifier
        self.schedule = schedule or settings.get_dunning_schedule()
        self.grace_period = grace_period or timedelta(days=settings.grace_period_days)

    async def run_sweep(self, db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Run one full sweep.

        Args:
            db: Database session
            now: Sweep time (defaults to the current UTC time)

        Returns:
            Dict[str, int]: Counts of what the sweep did
        """
        now = now or utcnow()
        stats = {"scheduled": 0, "recovered": 0, "failed": 0, "past_due": 0, "cancelled": 0}

        stats["scheduled"] = await self.schedule_attempts(db, now)
        for attempt_id in await self._due_attempt_ids(db, now):
            result = await self.run_attempt(db, attempt_id, now)
            if result in stats:
                stats[result] += 1
            if result == "past_due":
                stats["failed"] += 1
        stats["cancelled"] = await self.expire_grace_periods(db, now)

        logger.info("dunning_sweep_completed", **stats)
        return stats

    async def schedule_attempts(self, db: AsyncSession, now: datetime) -> int:
        """Create the next pending attempt for every subscription that needs one."""
        rows = (
            await db.execute(
                select(Subscription.id, Payment.id)
                .join(Payment, Payment.id == Subscription.latest_payment_id)
                .where(
                    Subscription.status == "active",
                    Subscription.auto_renew.is_(True),
                    Subscription.next_billing_date <= now,
                    Payment.status == "failed",
                )
            )
        ).all()

        scheduled = 0
        for subscription_id, payment_id in rows:
            if await self._schedule_next(db, subscription_id, payment_id):
                scheduled += 1
            await db.commit()
        return scheduled

    async def _schedule_next(
        self, db: AsyncSession, subscription_id: uuid.UUID, payment_id: uuid.UUID
    ) -> bool:
        attempts = (
            await db.scalars(
                select(DunningAttempt)
                .where(
                    DunningAttempt.subscription_id == subscription_id,
                    DunningAttempt.payment_id == payment_id,
                )
                .order_by(DunningAttempt.attempt_number)
            )
        ).all()
        if any(a.attempted_at is None for a in attempts):
            return False
        if len(attempts) >= len(self.schedule):
            return False

        if attempts:
            base = attempts[-1].attempted_at
        else:
            payment = await db.get(Payment, payment_id)
            base = payment.settled_at or payment.updated_at
        scheduled_at = base + self.schedule[len(attempts)]

        # Numbered per failed payment, restarting at 1 each billing cycle
        attempt_number = len(attempts) + 1

        inserted = await insert_ignore(
            db,
            DunningAttempt,
            {
                "id": uuid.uuid4(),
                "subscription_id": subscription_id,
                "payment_id": payment_id,
                "attempt_number": attempt_number,
                "scheduled_at": scheduled_at,
                "status": "pending",
                "created_at": utcnow(),
            },
            index_elements=["subscription_id", "payment_id", "attempt_number"],
        )
        if inserted:
            logger.info(
                "dunning_attempt_scheduled",
                subscription_id=str(subscription_id),
                attempt_number=attempt_number,
                scheduled_at=scheduled_at.isoformat(),
            )
        return inserted

    async def _due_attempt_ids(self, db: AsyncSession, now: datetime) -> List[uuid.UUID]:
        return list(
            (
                await db.scalars(
                    select(DunningAttempt.id)
                    .where(
                        DunningAttempt.status == "pending",
                        DunningAttempt.attempted_at.is_(None),
                        DunningAttempt.scheduled_at <= now,
                    )
                    .order_by(DunningAttempt.scheduled_at)
                )
            ).all()
        )

    async def run_attempt(self, db: AsyncSession, attempt_id: uuid.UUID, now: datetime) -> str:
        """
        Claim and run one due attempt.

        Returns:
            str: ``recovered``, ``failed``, ``past_due`` or ``skipped``
        """
        claimed = await db.execute(
            update(DunningAttempt)
            .where(DunningAttempt.id == attempt_id, DunningAttempt.attempted_at.is_(None))
            .values(attempted_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            await db.rollback()
            return "skipped"
        await db.commit()

        attempt = await db.get(DunningAttempt, attempt_id, populate_existing=True)
        subscription = await db.get(Subscription, attempt.subscription_id, populate_existing=True)
        payment = await db.get(Payment, attempt.payment_id, populate_existing=True)

        if subscription is None or payment is None or subscription.status != "active":
            attempt.status = "failed"
            attempt.error_message = "Subscription no longer active"
            await db.commit()
            return "skipped"

        try:
            client = self.registry.get(payment.provider)
            verification = await client.verify(payment.reference or "")
        except (ProviderError, RoutingError) as e:
            logger.warning(
                "dunning_verification_error",
                attempt_id=str(attempt_id),
                provider=payment.provider,
                error=str(e),
            )
            verification = VerificationResult(
                reference=payment.reference or "", status="failed", failure_reason=str(e)
            )

        if verification.status == "successful":
            outcome = await self.settlement.apply_verification(db, payment, verification)
            attempt.status = "success"
            await db.commit()
            await self.settlement.deliver(outcome)

            metrics.record_dunning_attempt("success")
            logger.info(
                "dunning_recovered",
                subscription_id=str(subscription.id),
                attempt_number=attempt.attempt_number,
            )
            return "recovered"

        attempt.status = "failed"
        attempt.error_message = verification.failure_reason or "Payment still not completed"
        metrics.record_dunning_attempt("failed")

        retries_done = await db.scalar(
            select(func.count(DunningAttempt.id)).where(
                DunningAttempt.subscription_id == subscription.id,
                DunningAttempt.payment_id == payment.id,
            )
        )
        if (retries_done or 0) < len(self.schedule):
            await db.commit()
            logger.info(
                "dunning_attempt_failed",
                subscription_id=str(subscription.id),
                attempt_number=attempt.attempt_number,
            )
            return "failed"

        subscription.status = "past_due"
        subscription.grace_period_ends_at = now + self.grace_period
        await db.commit()

        logger.warning(
            "subscription_past_due",
            subscription_id=str(subscription.id),
            grace_period_ends_at=subscription.grace_period_ends_at.isoformat(),
        )
        await safe_notify(
            self.notifier,
            subscription.fan_id,
            "payment_method_update_required",
            "Update your payment method",
            f"We could not renew your subscription. Update your payment method within "
            f"{self.grace_period.days} days to keep access.",
            "/settings/billing",
        )
        return "past_due"

    async def expire_grace_periods(self, db: AsyncSession, now: datetime) -> int:
        """Cancel past-due subscriptions whose grace period has ended."""
        expired = (
            await db.scalars(
                select(Subscription).where(
                    Subscription.status == "past_due",
                    Subscription.grace_period_ends_at <= now,
                )
            )
        ).all()

        cancelled = 0
        for subscription in expired:
            result = await db.execute(
                update(Subscription)
                .where(Subscription.id == subscription.id, Subscription.status == "past_due")
                .values(status="cancelled", cancelled_at=now, auto_renew=False)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount == 0:
                continue
            cancelled += 1
            metrics.record_subscription_cancelled("grace_period_expired")
            logger.info("subscription_cancelled_after_grace", subscription_id=str(subscription.id))
            await safe_notify(
                self.notifier,
                subscription.fan_id,
                "subscription_cancelled",
                "Subscription cancelled",
                "Your subscription was cancelled because the payment could not be completed.",
                "/subscriptions",
            )
        return cancelled
