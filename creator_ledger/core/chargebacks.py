"""
Chargeback handling.

A dispute freezes the creator's wallet immediately and is recorded once per
provider transaction. Resolution is an administrative action: a lost
chargeback becomes debt repaid from future earnings, and the wallet is only
unfrozen once no open chargeback remains.
"""
import uuid
from typing import Any, Dict

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from creator_ledger.config import get_settings
from creator_ledger.core.audit import record_payment_event
from creator_ledger.core.currency import convert_minor
from creator_ledger.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    PaymentValidationError,
)
from creator_ledger.core.ledger import LedgerManager
from creator_ledger.core.notifications import Notifier, safe_notify
from creator_ledger.core.risk import RiskEngine
from creator_ledger.database.models import Chargeback, utcnow
from creator_ledger.database.repositories import get_payment_by_reference, get_wallet, insert_ignore
from creator_ledger.integrations.base import NormalizedEvent
from creator_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CHARGEBACK_OUTCOMES = frozenset({"won", "lost"})
FREEZE_REASON_PREFIX = "Chargeback: "


class ChargebackHandler:
    """Records disputes and applies their resolution to the creator's wallet."""

    def __init__(self, ledger: LedgerManager, risk: RiskEngine, notifier: Notifier):
        self.settings = get_settings()
        self.ledger = ledger
        self.risk = risk
        self.notifier = notifier

    async def handle_dispute(self, db: AsyncSession, event: NormalizedEvent) -> Dict[str, Any]:
        """
        Record a dispute and freeze the creator's wallet.

        Unknown payments are acknowledged without any change so the provider
        stops redelivering.

        Args:
            db: Database session
            event: Normalized dispute event

        Returns:
            Dict[str, Any]: Processing result
        """
        payment = None
        if event.reference:
            payment = await get_payment_by_reference(db, event.reference, for_id=True)
        if payment is None or not payment.creator_id:
            logger.warning(
                "chargeback_payment_not_found",
                provider=event.provider,
                reference=event.reference,
                transaction_id=event.transaction_id,
            )
            await db.rollback()
            return {"status": "acknowledged", "reason": "unknown_payment"}

        transaction_id = event.transaction_id or event.reference or str(payment.id)
        chargeback_id = uuid.uuid4()
        inserted = await insert_ignore(
            db,
            Chargeback,
            {
                "id": chargeback_id,
                "user_id": payment.user_id,
                "creator_id": payment.creator_id,
                "payment_id": payment.id,
                "provider": event.provider,
                "transaction_id": transaction_id,
                "amount_minor": event.amount_minor or payment.amount_minor,
                "currency": event.currency or payment.currency,
                "status": "open",
                "reason": event.reason,
                "created_at": utcnow(),
            },
            index_elements=["provider", "transaction_id"],
        )
        if not inserted:
            await db.rollback()
            logger.info(
                "chargeback_already_recorded",
                provider=event.provider,
                transaction_id=transaction_id,
            )
            return {"status": "duplicate"}

        await self.ledger.freeze(db, payment.creator_id, f"{FREEZE_REASON_PREFIX}{chargeback_id}")
        record_payment_event(
            db,
            payment.id,
            "chargeback.opened",
            {"chargeback_id": str(chargeback_id), "reason": event.reason},
        )
        await self.risk.recalculate(db, payment.creator_id)
        await db.commit()

        metrics.record_chargeback(event.provider, "open")
        logger.warning(
            "chargeback_opened",
            chargeback_id=str(chargeback_id),
            creator_id=payment.creator_id,
            payment_id=str(payment.id),
        )

        await safe_notify(
            self.notifier,
            payment.creator_id,
            "chargeback",
            "Chargeback received",
            "A payment was disputed. Your wallet is frozen while the dispute is reviewed.",
            "/creator/wallet",
        )
        for admin_id in self.settings.get_admin_user_ids():
            await safe_notify(
                self.notifier,
                admin_id,
                "chargeback_review",
                "Chargeback needs review",
                f"Chargeback {chargeback_id} opened for creator {payment.creator_id}.",
                f"/admin/chargebacks/{chargeback_id}",
            )
        return {"status": "chargeback_opened", "chargeback_id": str(chargeback_id)}

    async def resolve(
        self, db: AsyncSession, chargeback_id: uuid.UUID, outcome: str, actor_id: str
    ) -> Chargeback:
        """
        Resolve an open chargeback.

        Args:
            db: Database session
            chargeback_id: Chargeback to resolve
            outcome: ``won`` or ``lost``
            actor_id: Administrator resolving it

        Returns:
            Chargeback: The resolved chargeback

        Raises:
            PaymentValidationError: If the outcome is unknown
            NotFoundError: If the chargeback does not exist
            InvalidTransitionError: If it is already resolved
        """
        if outcome not in CHARGEBACK_OUTCOMES:
            raise PaymentValidationError(f"Unknown chargeback outcome: {outcome}")

        now = utcnow()
        result = await db.execute(
            update(Chargeback)
            .where(Chargeback.id == chargeback_id, Chargeback.status == "open")
            .values(status=outcome, resolved_by=actor_id, resolved_at=now)
            .execution_options(synchronize_session=False)
        )
        chargeback = await db.get(Chargeback, chargeback_id, populate_existing=True)
        if chargeback is None:
            raise NotFoundError(f"Chargeback {chargeback_id} not found", "Chargeback not found")
        if result.rowcount == 0:
            raise InvalidTransitionError(
                f"Chargeback {chargeback_id} is already {chargeback.status}",
                "Chargeback already resolved",
            )

        if outcome == "lost":
            debt_minor = convert_minor(
                chargeback.amount_minor, chargeback.currency, self.settings.settlement_currency
            ) + self.settings.chargeback_fee_minor.get(chargeback.provider, 0)
            await self.ledger.add_debt(db, chargeback.creator_id, debt_minor)

        open_count = await db.scalar(
            select(func.count(Chargeback.id)).where(
                Chargeback.creator_id == chargeback.creator_id,
                Chargeback.status == "open",
            )
        )
        wallet = await get_wallet(db, chargeback.creator_id, refresh=True)
        if (
            not open_count
            and wallet is not None
            and wallet.frozen
            and (wallet.frozen_reason or "").startswith(FREEZE_REASON_PREFIX)
        ):
            await self.ledger.unfreeze(db, chargeback.creator_id)

        record_payment_event(
            db,
            chargeback.payment_id,
            f"chargeback.{outcome}",
            {"chargeback_id": str(chargeback.id), "resolved_by": actor_id},
        )
        await self.risk.recalculate(db, chargeback.creator_id)
        await db.commit()

        metrics.record_chargeback(chargeback.provider, outcome)
        logger.info(
            "chargeback_resolved",
            chargeback_id=str(chargeback.id),
            outcome=outcome,
            resolved_by=actor_id,
            remaining_open=open_count or 0,
        )
        await safe_notify(
            self.notifier,
            chargeback.creator_id,
            "chargeback_resolved",
            f"Chargeback {outcome}",
            "The dispute has been resolved."
            if outcome == "won"
            else "The dispute was lost. The amount and fee will be deducted from future earnings.",
            "/creator/wallet",
        )
        return chargeback
