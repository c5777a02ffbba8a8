"""
Creator payout workflow.

State machine::

    pending -> processing -> completed
                          -> failed
    pending -> cancelled

Funds are reserved when the request is created and settled in the same
transaction as the terminal status change. Transitions are conditional on the
current status, so two administrators racing on one request cannot both win.
"""
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from creator_ledger.config import get_settings
from creator_ledger.core.currency import convert_minor, from_minor_units, to_minor_units
from creator_ledger.core.errors import (
    InsufficientBalanceError,
    InvalidTransitionError,
    KycRequiredError,
    NotFoundError,
    PaymentError,
    PaymentValidationError,
    WalletFrozenError,
)
from creator_ledger.core.kyc import KYC_APPROVED, DatabaseKycProvider, KycStatusProvider
from creator_ledger.core.ledger import LedgerManager
from creator_ledger.core.notifications import LoggingNotifier, Notifier, safe_notify
from creator_ledger.core.risk import RiskEngine
from creator_ledger.core.routing import ProviderSelector, validate_phone_number
from creator_ledger.database.models import PayoutRequest, Wallet, utcnow
from creator_ledger.database.repositories import get_wallet
from creator_ledger.integrations.base import ProviderError
from creator_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PAYOUT_METHODS = frozenset({"mobile_money", "bank_transfer"})

ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"processing", "cancelled"}),
    "processing": frozenset({"completed", "failed"}),
}
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})

PAYOUT_FAILED_MESSAGE = "Payout could not be sent. Please try again later."
PAYOUT_HELD_MESSAGE = "Payout was sent but is held for review."


def validate_account_details(method: str, account_details: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check that the details needed for ``method`` are present.

    Returns:
        Dict[str, Any]: Details with the phone number normalized

    Raises:
        PaymentValidationError: If the method is unknown or details are missing
    """
    if method not in PAYOUT_METHODS:
        raise PaymentValidationError(f"Unsupported payout method: {method}")
    details = dict(account_details or {})
    if method == "mobile_money":
        details["phone_number"] = validate_phone_number(details.get("phone_number"))
    else:
        missing = [key for key in ("account_number", "bank_code") if not details.get(key)]
        if missing:
            raise PaymentValidationError(
                f"Bank transfer requires {' and '.join(missing)}"
            )
    return details


class PayoutService:
    """Creates, guards and advances payout requests."""

    def __init__(
        self,
        ledger: LedgerManager,
        risk: RiskEngine,
        selector: ProviderSelector,
        kyc_provider: Optional[KycStatusProvider] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.settings = get_settings()
        self.ledger = ledger
        self.risk = risk
        self.selector = selector
        self.kyc_provider = kyc_provider or DatabaseKycProvider()
        self.notifier = notifier or LoggingNotifier()

    def _settlement_amount(self, amount_minor: int, currency: str) -> int:
        if amount_minor <= 0:
            raise PaymentValidationError("Payout amount must be positive")
        minimum = to_minor_units(Decimal(self.settings.min_payout_usd), "USD")
        if convert_minor(amount_minor, currency, "USD") < minimum:
            raise PaymentValidationError(
                f"Minimum payout is {self.settings.min_payout_usd} USD"
            )
        return convert_minor(amount_minor, currency, self.settings.settlement_currency)

    async def _guard(
        self,
        db: AsyncSession,
        user_id: str,
        amount_minor: int,
        check_balance: bool = False,
    ) -> Wallet:
        """
        Checks shared by payout requests and the withdrawal guard.

        Raises:
            KycRequiredError: If KYC is not approved
            RiskLimitExceededError: If the payout breaks the risk limits
            WalletFrozenError: If the wallet is frozen
            InsufficientBalanceError: If there is no wallet (or too little balance)
        """
        kyc_status = await self.kyc_provider.get_kyc_status(db, user_id)
        if kyc_status != KYC_APPROVED:
            raise KycRequiredError(f"KYC status for {user_id} is {kyc_status}")

        await self.risk.check_payout_allowed(db, user_id, amount_minor)

        wallet = await get_wallet(db, user_id, refresh=True)
        if wallet is None:
            raise InsufficientBalanceError(f"User {user_id} has no wallet")
        if wallet.frozen:
            raise WalletFrozenError(f"Wallet {wallet.id} is frozen: {wallet.frozen_reason}")
        if check_balance and wallet.available_minor < amount_minor:
            raise InsufficientBalanceError(
                f"Wallet {wallet.id} has {wallet.available_minor} available, "
                f"{amount_minor} requested"
            )
        return wallet

    async def withdrawal_guard(
        self, db: AsyncSession, user_id: str, amount_minor: int, currency: str
    ) -> Optional[Dict[str, str]]:
        """
        Pre-check a withdrawal without reserving anything.

        Returns:
            Optional[Dict[str, str]]: None if allowed, otherwise ``{code, message}``
        """
        try:
            settlement_amount = self._settlement_amount(amount_minor, currency)
            await self._guard(db, user_id, settlement_amount, check_balance=True)
        except PaymentError as e:
            logger.info("withdrawal_guard_rejected", user_id=user_id, code=e.code, reason=str(e))
            return {"code": e.code, "message": e.public_message}
        return None

    async def request_payout(
        self,
        db: AsyncSession,
        user_id: str,
        amount_minor: int,
        currency: str,
        method: str,
        account_details: Dict[str, Any],
    ) -> PayoutRequest:
        """
        Create a payout request and reserve its funds.

        Args:
            db: Database session
            user_id: Requesting creator
            amount_minor: Amount in minor units of ``currency``
            currency: Currency the creator asked for
            method: ``mobile_money`` or ``bank_transfer``
            account_details: Destination details for the method

        Returns:
            PayoutRequest: The pending request

        Raises:
            PaymentValidationError: If details or amount are invalid
            KycRequiredError: If KYC is not approved
            RiskLimitExceededError: If the payout breaks the risk limits
            WalletFrozenError: If the wallet is frozen
            InsufficientBalanceError: If the available balance is too low
        """
        details = validate_account_details(method, account_details)
        settlement_amount = self._settlement_amount(amount_minor, currency)
        wallet = await self._guard(db, user_id, settlement_amount)

        try:
            await self.ledger.reserve_for_payout(db, wallet.id, settlement_amount)
            payout = PayoutRequest(
                id=uuid.uuid4(),
                wallet_id=wallet.id,
                user_id=user_id,
                amount_minor=settlement_amount,
                currency=self.settings.settlement_currency,
                requested_amount_minor=amount_minor,
                requested_currency=currency.upper(),
                method=method,
                status="pending",
                account_details=details,
            )
            db.add(payout)
            await db.commit()
        except PaymentError:
            await db.rollback()
            raise

        metrics.record_payout_transition("pending")
        logger.info(
            "payout_requested",
            payout_id=str(payout.id),
            user_id=user_id,
            amount_minor=settlement_amount,
            method=method,
        )
        return payout

    async def _apply_transition(
        self,
        db: AsyncSession,
        payout: PayoutRequest,
        target: str,
        actor_id: str,
        notes: Optional[str] = None,
        **extra: Any,
    ) -> None:
        if target not in ALLOWED_TRANSITIONS.get(payout.status, frozenset()):
            raise InvalidTransitionError(
                f"Payout {payout.id} cannot move from {payout.status} to {target}"
            )

        values: Dict[str, Any] = {"status": target, "processed_by": actor_id, **extra}
        if notes is not None:
            values["admin_notes"] = notes
        if target in TERMINAL_STATUSES:
            values["processed_at"] = utcnow()

        result = await db.execute(
            update(PayoutRequest)
            .where(PayoutRequest.id == payout.id, PayoutRequest.status == payout.status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidTransitionError(
                f"Payout {payout.id} changed concurrently", "Payout was already updated"
            )

        if target in TERMINAL_STATUSES:
            await self.ledger.settle_payout(db, payout.wallet_id, payout.amount_minor, target)

    async def transition(
        self,
        db: AsyncSession,
        payout_id: uuid.UUID,
        target: str,
        actor_id: str,
        notes: Optional[str] = None,
    ) -> PayoutRequest:
        """
        Move a payout to ``target`` (administrative).

        Raises:
            NotFoundError: If the payout does not exist
            InvalidTransitionError: If the move is not allowed from the current status
            WalletFrozenError: If completing a payout on a frozen wallet
        """
        payout = await db.get(PayoutRequest, payout_id, populate_existing=True)
        if payout is None:
            raise NotFoundError(f"Payout {payout_id} not found", "Payout not found")

        previous = payout.status
        try:
            await self._apply_transition(db, payout, target, actor_id, notes)
            await db.commit()
        except PaymentError:
            await db.rollback()
            raise
        await db.refresh(payout)

        metrics.record_payout_transition(target)
        logger.info(
            "payout_transitioned",
            payout_id=str(payout_id),
            from_status=previous,
            to_status=target,
            actor_id=actor_id,
        )
        await self._notify_outcome(payout)
        return payout

    async def route_payout(
        self, db: AsyncSession, payout_id: uuid.UUID, actor_id: str
    ) -> Dict[str, Any]:
        """
        Send a pending payout through a payout-capable provider (administrative).

        Flow:
        1. Select a provider for the method and currency
        2. Move the request to ``processing`` and commit
        3. Initiate the transfer
        4. Complete or fail the request according to the provider result

        Returns:
            Dict[str, Any]: ``{success, provider, status, payout_id, error?}``

        Raises:
            NotFoundError: If the payout does not exist
            InvalidTransitionError: If the payout is not pending
            WalletFrozenError: If the wallet was frozen after the request was made
            RoutingError: If no provider can send it
        """
        payout = await db.get(PayoutRequest, payout_id, populate_existing=True)
        if payout is None:
            raise NotFoundError(f"Payout {payout_id} not found", "Payout not found")
        if payout.status != "pending":
            raise InvalidTransitionError(f"Payout {payout_id} is {payout.status}, not pending")

        wallet = await db.get(Wallet, payout.wallet_id, populate_existing=True)
        if wallet is not None and wallet.frozen:
            wallet_id = payout.wallet_id
            logger.warning(
                "payout_route_refused_frozen",
                payout_id=str(payout_id),
                wallet_id=str(wallet_id),
                frozen_reason=wallet.frozen_reason,
            )
            await db.rollback()
            raise WalletFrozenError(f"Wallet {wallet_id} is frozen; payout {payout_id} not sent")

        client = self.selector.select_for_payout(payout.method, payout.requested_currency)
        try:
            await self._apply_transition(db, payout, "processing", actor_id, provider=client.name)
            await db.commit()
        except PaymentError:
            await db.rollback()
            raise
        await db.refresh(payout)
        metrics.record_payout_transition("processing")

        try:
            transfer = await client.initiate_transfer(
                payout.requested_amount_minor,
                payout.requested_currency,
                payout.method,
                payout.account_details,
                str(payout.id),
            )
        except ProviderError as e:
            logger.error(
                "payout_transfer_failed",
                payout_id=str(payout.id),
                provider=client.name,
                error=str(e),
                error_type=e.error_type.value,
            )
            await self.transition(db, payout.id, "failed", actor_id, notes=f"Transfer failed: {e}")
            return {
                "success": False,
                "provider": client.name,
                "status": "failed",
                "payout_id": str(payout.id),
                "error": PAYOUT_FAILED_MESSAGE,
            }

        payout_key = str(payout.id)
        # The transfer reference is kept even if settlement below is refused
        await db.execute(
            update(PayoutRequest)
            .where(PayoutRequest.id == payout.id)
            .values(provider_reference=transfer.payout_id)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        if transfer.status == "pending":
            logger.info("payout_transfer_pending", payout_id=payout_key, provider=client.name)
            return {
                "success": True,
                "provider": client.name,
                "status": "processing",
                "payout_id": payout_key,
            }

        target = "completed" if transfer.status == "completed" else "failed"
        try:
            await self.transition(db, uuid.UUID(payout_key), target, actor_id)
        except WalletFrozenError:
            # Sent but not settled: stays processing with its funds reserved
            logger.error(
                "payout_settlement_held_frozen",
                payout_id=payout_key,
                provider=client.name,
                provider_reference=transfer.payout_id,
            )
            return {
                "success": True,
                "provider": client.name,
                "status": "processing",
                "payout_id": payout_key,
                "error": PAYOUT_HELD_MESSAGE,
            }
        return {
            "success": target == "completed",
            "provider": client.name,
            "status": target,
            "payout_id": payout_key,
        }

    async def _notify_outcome(self, payout: PayoutRequest) -> None:
        if payout.status == "completed":
            await safe_notify(
                self.notifier,
                payout.user_id,
                "payout_completed",
                "Payout sent",
                f"Your payout of {from_minor_units(payout.amount_minor, payout.currency)} "
                f"{payout.currency} was sent.",
                "/creator/wallet",
            )
        elif payout.status in ("failed", "cancelled"):
            await safe_notify(
                self.notifier,
                payout.user_id,
                f"payout_{payout.status}",
                f"Payout {payout.status}",
                "The reserved amount is available in your wallet again.",
                "/creator/wallet",
            )
