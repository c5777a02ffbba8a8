"""
Creator risk scoring.

The score is a pure function of observable signals, clamped to 0..100, so
recomputing with identical inputs always yields the identical profile. The
score maps to payout limits; the highest band blocks payouts entirely.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from creator_ledger.core.errors import RiskLimitExceededError
from creator_ledger.core.kyc import KYC_APPROVED, DatabaseKycProvider, KycStatusProvider
from creator_ledger.database.models import (
    Chargeback,
    Payment,
    PayoutRequest,
    RiskProfile,
    Subscription,
    utcnow,
)
from creator_ledger.database.repositories import upsert

logger = structlog.get_logger(__name__)

KYC_NOT_APPROVED_WEIGHT = 20
CHARGEBACK_WEIGHT = 15
FAILED_PAYMENTS_WEIGHT = 20
SUBSCRIBER_SPIKE_WEIGHT = 25

FAILED_PAYMENTS_COUNT_THRESHOLD = 5
FAILED_PAYMENTS_RATE_THRESHOLD = 0.30
FAILED_PAYMENTS_MIN_SAMPLE = 5
SUBSCRIBER_SPIKE_FACTOR = 5

# (minimum score, monthly limit USD cents, daily limit USD cents), highest band first
LIMIT_BANDS: List[Tuple[int, int, int]] = [
    (80, 0, 0),
    (60, 10_000, 2_000),
    (40, 25_000, 5_000),
    (20, 50_000, 10_000),
    (0, 1_000_000, 100_000),
]
BLOCKED_SCORE = 80


@dataclass(frozen=True)
class RiskSignals:
    """Observed behaviour feeding the score."""

    kyc_status: str
    chargeback_count: int = 0
    failed_payments_30d: int = 0
    total_payments_30d: int = 0
    subscribers_last_7d: int = 0
    subscribers_prev_7d: int = 0


@dataclass(frozen=True)
class RiskAssessment:
    """Score, limits and the flags that produced them."""

    score: int
    monthly_limit_minor: int
    daily_limit_minor: int
    blocked: bool
    flags: Dict[str, Any] = field(default_factory=dict)


def limits_for_score(score: int) -> Tuple[int, int]:
    """Monthly and daily payout limits (USD cents) for a score."""
    for minimum, monthly, daily in LIMIT_BANDS:
        if score >= minimum:
            return monthly, daily
    return LIMIT_BANDS[-1][1], LIMIT_BANDS[-1][2]


def compute_risk(signals: RiskSignals) -> RiskAssessment:
    """
    Score a set of signals.

    Args:
        signals: Observed signals

    Returns:
        RiskAssessment: Deterministic assessment for these signals
    """
    score = 0
    flags: Dict[str, Any] = {}

    if signals.kyc_status != KYC_APPROVED:
        score += KYC_NOT_APPROVED_WEIGHT
        flags["kyc_not_approved"] = signals.kyc_status

    if signals.chargeback_count:
        score += CHARGEBACK_WEIGHT * signals.chargeback_count
        flags["chargebacks"] = signals.chargeback_count

    failure_rate = (
        signals.failed_payments_30d / signals.total_payments_30d
        if signals.total_payments_30d
        else 0.0
    )
    if signals.failed_payments_30d > FAILED_PAYMENTS_COUNT_THRESHOLD or (
        signals.total_payments_30d >= FAILED_PAYMENTS_MIN_SAMPLE
        and failure_rate > FAILED_PAYMENTS_RATE_THRESHOLD
    ):
        score += FAILED_PAYMENTS_WEIGHT
        flags["failed_payments_30d"] = signals.failed_payments_30d

    if (
        signals.subscribers_prev_7d > 0
        and signals.subscribers_last_7d > signals.subscribers_prev_7d * SUBSCRIBER_SPIKE_FACTOR
    ):
        score += SUBSCRIBER_SPIKE_WEIGHT
        flags["subscriber_spike"] = {
            "last_7d": signals.subscribers_last_7d,
            "prev_7d": signals.subscribers_prev_7d,
        }

    score = max(0, min(100, score))
    monthly, daily = limits_for_score(score)
    return RiskAssessment(
        score=score,
        monthly_limit_minor=monthly,
        daily_limit_minor=daily,
        blocked=score >= BLOCKED_SCORE,
        flags=flags,
    )


class RiskEngine:
    """Collects signals, persists profiles and enforces payout limits."""

    def __init__(self, kyc_provider: Optional[KycStatusProvider] = None):
        self.kyc_provider = kyc_provider or DatabaseKycProvider()

    async def collect_signals(
        self, db: AsyncSession, user_id: str, now: datetime
    ) -> RiskSignals:
        """Read the signals for ``user_id`` as of ``now``."""
        kyc_status = await self.kyc_provider.get_kyc_status(db, user_id)

        chargeback_count = await db.scalar(
            select(func.count(Chargeback.id)).where(
                Chargeback.creator_id == user_id,
                Chargeback.status.in_(("open", "lost")),
            )
        )

        since_30d = now - timedelta(days=30)
        failed = await db.scalar(
            select(func.count(Payment.id)).where(
                Payment.creator_id == user_id,
                Payment.status == "failed",
                Payment.created_at >= since_30d,
            )
        )
        total = await db.scalar(
            select(func.count(Payment.id)).where(
                Payment.creator_id == user_id,
                Payment.created_at >= since_30d,
            )
        )

        week_ago = now - timedelta(days=7)
        two_weeks_ago = now - timedelta(days=14)
        last_week = await db.scalar(
            select(func.count(Subscription.id)).where(
                Subscription.creator_id == user_id,
                Subscription.created_at >= week_ago,
                Subscription.created_at < now,
            )
        )
        prev_week = await db.scalar(
            select(func.count(Subscription.id)).where(
                Subscription.creator_id == user_id,
                Subscription.created_at >= two_weeks_ago,
                Subscription.created_at < week_ago,
            )
        )

        return RiskSignals(
            kyc_status=kyc_status,
            chargeback_count=chargeback_count or 0,
            failed_payments_30d=failed or 0,
            total_payments_30d=total or 0,
            subscribers_last_7d=last_week or 0,
            subscribers_prev_7d=prev_week or 0,
        )

    async def recalculate(
        self, db: AsyncSession, user_id: str, now: Optional[datetime] = None
    ) -> RiskAssessment:
        """
        Recompute and persist the user's risk profile.

        Args:
            db: Database session
            user_id: User to score
            now: Evaluation time (defaults to the current UTC time)

        Returns:
            RiskAssessment: The stored assessment
        """
        now = now or utcnow()
        signals = await self.collect_signals(db, user_id, now)
        assessment = compute_risk(signals)

        await upsert(
            db,
            RiskProfile,
            {
                "user_id": user_id,
                "risk_score": assessment.score,
                "monthly_limit_minor": assessment.monthly_limit_minor,
                "daily_limit_minor": assessment.daily_limit_minor,
                "blocked": assessment.blocked,
                "flags": assessment.flags,
                "last_calculated_at": now,
            },
            index_elements=["user_id"],
            update_columns=[
                "risk_score",
                "monthly_limit_minor",
                "daily_limit_minor",
                "blocked",
                "flags",
                "last_calculated_at",
            ],
        )

        logger.info(
            "risk_score_recalculated",
            user_id=user_id,
            risk_score=assessment.score,
            blocked=assessment.blocked,
            flags=assessment.flags,
        )
        return assessment

    async def get_profile(self, db: AsyncSession, user_id: str) -> RiskAssessment:
        """Stored assessment, computing one on first use."""
        profile = await db.scalar(
            select(RiskProfile)
            .where(RiskProfile.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        if profile is None:
            return await self.recalculate(db, user_id)
        return RiskAssessment(
            score=profile.risk_score,
            monthly_limit_minor=profile.monthly_limit_minor,
            daily_limit_minor=profile.daily_limit_minor,
            blocked=profile.blocked,
            flags=dict(profile.flags or {}),
        )

    async def check_payout_allowed(
        self,
        db: AsyncSession,
        user_id: str,
        amount_minor: int,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Enforce the user's payout limits for a new request.

        Raises:
            RiskLimitExceededError: If blocked or the daily/monthly total would be exceeded
        """
        now = now or utcnow()
        assessment = await self.get_profile(db, user_id)
        if assessment.blocked:
            logger.warning("payout_blocked_by_risk", user_id=user_id, risk_score=assessment.score)
            raise RiskLimitExceededError(
                f"Payouts blocked for {user_id} (score {assessment.score})",
                "Payouts are blocked for this account",
            )

        async def _requested_since(since: datetime) -> int:
            total = await db.scalar(
                select(func.coalesce(func.sum(PayoutRequest.amount_minor), 0)).where(
                    PayoutRequest.user_id == user_id,
                    PayoutRequest.status.notin_(("failed", "cancelled")),
                    PayoutRequest.created_at >= since,
                )
            )
            return int(total or 0)

        daily = await _requested_since(now - timedelta(days=1))
        if daily + amount_minor > assessment.daily_limit_minor:
            raise RiskLimitExceededError(
                f"Daily payout limit {assessment.daily_limit_minor} exceeded for {user_id}",
                "Daily payout limit exceeded",
            )

        monthly = await _requested_since(now - timedelta(days=30))
        if monthly + amount_minor > assessment.monthly_limit_minor:
            raise RiskLimitExceededError(
                f"Monthly payout limit {assessment.monthly_limit_minor} exceeded for {user_id}",
                "Monthly payout limit exceeded",
            )
