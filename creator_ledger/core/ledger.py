"""
Creator wallet ledger.

Every balance mutation is a single conditional UPDATE, so concurrent
requests against one wallet can never drive ``pending_payouts`` above
``balance`` or either value below zero. When a conditional update touches no
row, the wallet is re-read to report why.

Implements:
- Lazy wallet creation
- Payout reservation and settlement
- Earnings credit (idempotent per payment, repays chargeback debt first)
- Freezing and unfreezing
"""
import uuid
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from creator_ledger.config import get_settings
from creator_ledger.core.errors import (
    InsufficientBalanceError,
    InvalidTransitionError,
    NotFoundError,
    PaymentValidationError,
    WalletFrozenError,
)
from creator_ledger.database.models import Earnings, Wallet, utcnow
from creator_ledger.database.repositories import get_wallet, insert_ignore
from creator_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SETTLEMENT_OUTCOMES = frozenset({"completed", "failed", "cancelled"})

# Optimistic retries for credit_earnings under concurrent credits
_CREDIT_RETRIES = 5


class LedgerManager:
    """Wallet mutations for creators."""

    def __init__(self) -> None:
        self.settings = get_settings()

    async def get_or_create_wallet(self, db: AsyncSession, user_id: str) -> Wallet:
        """
        Return the user's wallet, creating an empty one if needed.

        Safe under concurrent first use: creation is an insert-if-absent.
        """
        wallet = await get_wallet(db, user_id)
        if wallet is not None:
            return wallet

        now = utcnow()
        await insert_ignore(
            db,
            Wallet,
            {
                "id": uuid.uuid4(),
                "user_id": user_id,
                "balance_minor": 0,
                "pending_payouts_minor": 0,
                "debt_minor": 0,
                "currency": self.settings.settlement_currency,
                "frozen": False,
                "version": 0,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["user_id"],
        )
        wallet = await get_wallet(db, user_id, refresh=True)
        if wallet is None:
            raise NotFoundError(f"Wallet for {user_id} could not be created")
        logger.info("wallet_created", user_id=user_id, wallet_id=str(wallet.id))
        return wallet

    @staticmethod
    async def _reload(db: AsyncSession, wallet_id: uuid.UUID) -> Wallet:
        wallet = await db.get(Wallet, wallet_id, populate_existing=True)
        if wallet is None:
            raise NotFoundError(f"Wallet {wallet_id} not found", "Wallet not found")
        return wallet

    async def reserve_for_payout(
        self, db: AsyncSession, wallet_id: uuid.UUID, amount_minor: int
    ) -> Wallet:
        """
        Move ``amount_minor`` of available balance into pending payouts.

        Args:
            db: Database session
            wallet_id: Wallet to reserve from
            amount_minor: Amount in settlement minor units

        Returns:
            Wallet: Refreshed wallet

        Raises:
            WalletFrozenError: If the wallet is frozen
            InsufficientBalanceError: If available balance is below the amount
        """
        if amount_minor <= 0:
            raise PaymentValidationError("Payout amount must be positive")

        stmt = (
            update(Wallet)
            .where(
                Wallet.id == wallet_id,
                Wallet.frozen.is_(False),
                Wallet.balance_minor - Wallet.pending_payouts_minor >= amount_minor,
            )
            .values(
                pending_payouts_minor=Wallet.pending_payouts_minor + amount_minor,
                version=Wallet.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        wallet = await self._reload(db, wallet_id)

        if result.rowcount == 0:
            if wallet.frozen:
                metrics.record_wallet_reservation("frozen")
                logger.warning("payout_reservation_rejected_frozen", wallet_id=str(wallet_id))
                raise WalletFrozenError(f"Wallet {wallet_id} is frozen")
            metrics.record_wallet_reservation("insufficient_balance")
            logger.warning(
                "payout_reservation_rejected_balance",
                wallet_id=str(wallet_id),
                requested=amount_minor,
                available=wallet.available_minor,
            )
            raise InsufficientBalanceError(
                f"Wallet {wallet_id} has {wallet.available_minor} available, "
                f"{amount_minor} requested"
            )

        metrics.record_wallet_reservation("reserved")
        logger.info(
            "payout_reserved",
            wallet_id=str(wallet_id),
            amount_minor=amount_minor,
            pending_payouts_minor=wallet.pending_payouts_minor,
        )
        return wallet

    async def settle_payout(
        self, db: AsyncSession, wallet_id: uuid.UUID, amount_minor: int, outcome: str
    ) -> Wallet:
        """
        Settle a reserved payout.

        ``completed`` removes the amount from both balance and pending payouts;
        ``failed`` and ``cancelled`` release the reservation only.

        Raises:
            WalletFrozenError: If completing a payout on a frozen wallet
            InvalidTransitionError: If the reservation does not cover the amount
        """
        if outcome not in SETTLEMENT_OUTCOMES:
            raise PaymentValidationError(f"Unknown settlement outcome: {outcome}")

        if outcome == "completed":
            stmt = (
                update(Wallet)
                .where(
                    Wallet.id == wallet_id,
                    Wallet.frozen.is_(False),
                    Wallet.pending_payouts_minor >= amount_minor,
                    Wallet.balance_minor >= amount_minor,
                )
                .values(
                    balance_minor=Wallet.balance_minor - amount_minor,
                    pending_payouts_minor=Wallet.pending_payouts_minor - amount_minor,
                    version=Wallet.version + 1,
                    updated_at=utcnow(),
                )
            )
        else:
            stmt = (
                update(Wallet)
                .where(Wallet.id == wallet_id, Wallet.pending_payouts_minor >= amount_minor)
                .values(
                    pending_payouts_minor=Wallet.pending_payouts_minor - amount_minor,
                    version=Wallet.version + 1,
                    updated_at=utcnow(),
                )
            )

        result = await db.execute(stmt.execution_options(synchronize_session=False))
        wallet = await self._reload(db, wallet_id)
        if result.rowcount == 0:
            if outcome == "completed" and wallet.frozen:
                raise WalletFrozenError(f"Wallet {wallet_id} is frozen")
            raise InvalidTransitionError(
                f"Wallet {wallet_id} pending payouts {wallet.pending_payouts_minor} "
                f"do not cover {amount_minor}"
            )

        logger.info(
            "payout_settled",
            wallet_id=str(wallet_id),
            amount_minor=amount_minor,
            outcome=outcome,
            balance_minor=wallet.balance_minor,
            pending_payouts_minor=wallet.pending_payouts_minor,
        )
        return wallet

    async def credit_earnings(
        self,
        db: AsyncSession,
        creator_id: str,
        payment_id: uuid.UUID,
        amount_minor: int,
    ) -> Optional[Earnings]:
        """
        Credit a settled payment's creator earnings.

        At most one credit per payment. Outstanding chargeback debt is repaid
        from the credit before the balance grows.

        Args:
            db: Database session
            creator_id: Creator receiving the earnings
            payment_id: Settled payment
            amount_minor: Earnings in settlement minor units

        Returns:
            Optional[Earnings]: The earnings row, or None if already credited
        """
        wallet = await self.get_or_create_wallet(db, creator_id)

        inserted = await insert_ignore(
            db,
            Earnings,
            {
                "id": uuid.uuid4(),
                "creator_id": creator_id,
                "payment_id": payment_id,
                "amount_minor": amount_minor,
                "debt_applied_minor": 0,
                "created_at": utcnow(),
            },
            index_elements=["payment_id"],
        )
        if not inserted:
            logger.info("earnings_already_credited", payment_id=str(payment_id))
            return None

        debt_applied = 0
        for _ in range(_CREDIT_RETRIES):
            wallet = await self._reload(db, wallet.id)
            debt_applied = min(wallet.debt_minor, amount_minor)
            result = await db.execute(
                update(Wallet)
                .where(Wallet.id == wallet.id, Wallet.version == wallet.version)
                .values(
                    balance_minor=Wallet.balance_minor + (amount_minor - debt_applied),
                    debt_minor=Wallet.debt_minor - debt_applied,
                    version=Wallet.version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                break
        else:
            raise InvalidTransitionError(f"Wallet {wallet.id} changed concurrently; retry credit")

        earnings = await db.scalar(select(Earnings).where(Earnings.payment_id == payment_id))
        if earnings is not None and debt_applied:
            earnings.debt_applied_minor = debt_applied

        logger.info(
            "earnings_credited",
            creator_id=creator_id,
            payment_id=str(payment_id),
            amount_minor=amount_minor,
            debt_applied_minor=debt_applied,
        )
        return earnings

    async def add_debt(self, db: AsyncSession, user_id: str, amount_minor: int) -> Wallet:
        """Record an amount owed by the creator, repaid from future earnings."""
        wallet = await self.get_or_create_wallet(db, user_id)
        await db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id)
            .values(
                debt_minor=Wallet.debt_minor + amount_minor,
                version=Wallet.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.info("wallet_debt_added", user_id=user_id, amount_minor=amount_minor)
        return await self._reload(db, wallet.id)

    async def freeze(self, db: AsyncSession, user_id: str, reason: str) -> Wallet:
        """Freeze the user's wallet, creating it if needed."""
        wallet = await self.get_or_create_wallet(db, user_id)
        await db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id)
            .values(
                frozen=True,
                frozen_reason=reason,
                version=Wallet.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.warning("wallet_frozen", user_id=user_id, reason=reason)
        return await self._reload(db, wallet.id)

    async def unfreeze(self, db: AsyncSession, user_id: str) -> Wallet:
        """
        Unfreeze the user's wallet.

        Raises:
            NotFoundError: If the user has no wallet
        """
        wallet = await get_wallet(db, user_id)
        if wallet is None:
            raise NotFoundError(f"Wallet for {user_id} not found", "Wallet not found")
        await db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id)
            .values(
                frozen=False,
                frozen_reason=None,
                version=Wallet.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.info("wallet_unfrozen", user_id=user_id)
        return await self._reload(db, wallet.id)
