"""
Payout workflow tests: guards, state machine, provider routing and races.
"""
import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from creator_ledger.core.errors import (
    InsufficientBalanceError,
    InvalidTransitionError,
    KycRequiredError,
    NotFoundError,
    PaymentValidationError,
    RiskLimitExceededError,
    WalletFrozenError,
)
from creator_ledger.core.payouts import PAYOUT_FAILED_MESSAGE, PAYOUT_HELD_MESSAGE
from creator_ledger.database.models import PayoutRequest, utcnow

BANK_DETAILS = {"account_number": "0123456789", "bank_code": "058", "account_name": "Ada"}
MOMO_DETAILS = {"phone_number": "+254 712 345 678"}


async def request_usd(services: any, db: any, amount_minor: int, user_id: str = "creator_1"):
    return await services.payouts.request_payout(
        db, user_id, amount_minor, "USD", "bank_transfer", BANK_DETAILS
    )


class TestPayoutRequests:
    """Test suite for creating payout requests."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_request_reserves_funds(self, test_db: any, services: any, seed: any) -> None:
        """A new request is pending and its amount is reserved."""
        await seed.creator("creator_1", balance_minor=5000)

        payout = await request_usd(services, test_db, 2000)

        assert payout.status == "pending"
        assert payout.amount_minor == 2000
        assert payout.currency == "USD"
        wallet = await seed.get_wallet("creator_1")
        assert wallet.pending_payouts_minor == 2000
        assert wallet.balance_minor == 5000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_local_currency_request_is_converted(
        self, test_db: any, services: any, seed: any
    ) -> None:
        """A KES request is reserved in USD and keeps the requested amount."""
        await seed.creator("creator_1", balance_minor=5000)

        payout = await services.payouts.request_payout(
            test_db, "creator_1", 130000, "kes", "mobile_money", MOMO_DETAILS
        )

        assert payout.amount_minor == 1000
        assert payout.requested_amount_minor == 130000
        assert payout.requested_currency == "KES"
        assert payout.account_details["phone_number"] == "+254712345678"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_minimum_payout(self, test_db: any, services: any, seed: any) -> None:
        """Requests below the minimum are refused."""
        await seed.creator("creator_1", balance_minor=5000)

        with pytest.raises(PaymentValidationError, match="Minimum payout"):
            await request_usd(services, test_db, 999)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_kyc_must_be_approved(self, test_db: any, services: any, seed: any) -> None:
        """Pending or missing KYC blocks payouts."""
        await seed.kyc("creator_1", status="pending")
        await seed.wallet("creator_1", balance_minor=5000)
        await seed.wallet("creator_2", balance_minor=5000)

        with pytest.raises(KycRequiredError):
            await request_usd(services, test_db, 1000)
        with pytest.raises(KycRequiredError):
            await request_usd(services, test_db, 1000, user_id="creator_2")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_frozen_wallet(self, test_db: any, services: any, seed: any) -> None:
        """Frozen wallets cannot request payouts."""
        await seed.kyc("creator_1")
        await seed.risk_profile("creator_1")
        await seed.wallet("creator_1", balance_minor=5000, frozen=True, frozen_reason="Review")

        with pytest.raises(WalletFrozenError):
            await request_usd(services, test_db, 1000)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_blocked_by_risk(self, test_db: any, services: any, seed: any) -> None:
        """A blocked risk profile refuses every payout."""
        await seed.kyc("creator_1")
        await seed.risk_profile(
            "creator_1", risk_score=85, monthly_limit_minor=0, daily_limit_minor=0, blocked=True
        )
        await seed.wallet("creator_1", balance_minor=5000)

        with pytest.raises(RiskLimitExceededError) as exc_info:
            await request_usd(services, test_db, 1000)
        assert exc_info.value.public_message == "Payouts are blocked for this account"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_daily_limit_counts_open_requests(
        self, test_db: any, services: any, seed: any
    ) -> None:
        """Earlier requests in the window count toward the daily limit."""
        await seed.kyc("creator_1")
        await seed.risk_profile("creator_1", daily_limit_minor=2000, monthly_limit_minor=10000)
        await seed.wallet("creator_1", balance_minor=10000)

        await request_usd(services, test_db, 1500)
        with pytest.raises(RiskLimitExceededError, match="Daily"):
            await request_usd(services, test_db, 1000)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_insufficient_balance_leaves_no_request(
        self, test_db: any, services: any, seed: any
    ) -> None:
        """A failed reservation creates no payout row."""
        await seed.creator("creator_1", balance_minor=1500)

        with pytest.raises(InsufficientBalanceError):
            await request_usd(services, test_db, 2000)
        assert await test_db.scalar(select(func.count(PayoutRequest.id))) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bank_transfer_requires_account(
        self, test_db: any, services: any, seed: any
    ) -> None:
        """Bank transfers need an account number and bank code."""
        await seed.creator("creator_1", balance_minor=5000)

        with pytest.raises(PaymentValidationError, match="bank_code"):
            await services.payouts.request_payout(
                test_db, "creator_1", 2000, "USD", "bank_transfer", {"account_number": "1"}
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_mobile_money_requires_phone(
        self, test_db: any, services: any, seed: any, paystack_provider: any
    ) -> None:
        """Mobile money without a phone number is refused before any provider call."""
        await seed.creator("creator_1", balance_minor=5000)

        with pytest.raises(PaymentValidationError, match="Phone number is required"):
            await services.payouts.request_payout(
                test_db, "creator_1", 130000, "KES", "mobile_money", {}
            )

        assert paystack_provider.transfers == []
        assert await test_db.scalar(select(func.count(PayoutRequest.id))) == 0
        assert (await seed.get_wallet("creator_1")).pending_payouts_minor == 0


class TestPayoutTransitions:
    """Test suite for the administrative state machine."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_complete_deducts_balance(
        self, test_db: any, services: any, seed: any, notifier: any
    ) -> None:
        """pending -> processing -> completed moves money out of the wallet."""
        await seed.creator("creator_1", balance_minor=5000)
        payout = await request_usd(services, test_db, 2000)

        await services.payouts.transition(test_db, payout.id, "processing", "admin_1")
        done = await services.payouts.transition(
            test_db, payout.id, "completed", "admin_1", notes="Sent manually"
        )

        assert done.status == "completed"
        assert done.processed_by == "admin_1"
        assert done.processed_at is not None
        assert done.admin_notes == "Sent manually"
        wallet = await seed.get_wallet("creator_1")
        assert (wallet.balance_minor, wallet.pending_payouts_minor) == (3000, 0)
        assert "payout_completed" in notifier.kinds_for("creator_1")
        completed = [n for n in notifier.sent if n["kind"] == "payout_completed"]
        assert completed[0]["body"] == "Your payout of 20.00 USD was sent."

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_releases_reservation(
        self, test_db: any, services: any, seed: any
    ) -> None:
        """Cancelling a pending request makes the funds available again."""
        await seed.creator("creator_1", balance_minor=5000)
        payout = await request_usd(services, test_db, 2000)

        await services.payouts.transition(test_db, payout.id, "cancelled", "admin_1")

        wallet = await seed.get_wallet("creator_1")
        assert (wallet.balance_minor, wallet.pending_payouts_minor) == (5000, 0)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cannot_skip_processing(self, test_db: any, services: any, seed: any) -> None:
        """A pending payout cannot complete directly."""
        await seed.creator("creator_1", balance_minor=5000)
        payout = await request_usd(services, test_db, 2000)

        with pytest.raises(InvalidTransitionError):
            await services.payouts.transition(test_db, payout.id, "completed", "admin_1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_terminal_states_are_final(
        self, test_db: any, services: any, seed: any
    ) -> None:
        """Nothing leaves a terminal state."""
        await seed.creator("creator_1", balance_minor=5000)
        payout = await request_usd(services, test_db, 2000)
        await services.payouts.transition(test_db, payout.id, "processing", "admin_1")
        await services.payouts.transition(test_db, payout.id, "failed", "admin_1")

        for target in ("completed", "processing", "cancelled", "failed"):
            with pytest.raises(InvalidTransitionError):
                await services.payouts.transition(test_db, payout.id, target, "admin_1")

        wallet = await seed.get_wallet("creator_1")
        assert (wallet.balance_minor, wallet.pending_payouts_minor) == (5000, 0)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_payout(self, test_db: any, services: any) -> None:
        """Transitions on missing payouts are not found."""
        with pytest.raises(NotFoundError):
            await services.payouts.transition(test_db, uuid.uuid4(), "processing", "admin_1")


class TestPayoutRouting:
    """Test suite for sending payouts through providers."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_route_completes_payout(
        self, test_db: any, services: any, seed: any, paystack_provider: any
    ) -> None:
        """The transfer is sent in the requested currency and completes the payout."""
        await seed.creator("creator_1", balance_minor=5000)
        payout = await services.payouts.request_payout(
            test_db, "creator_1", 130000, "KES", "mobile_money", MOMO_DETAILS
        )

        result = await services.payouts.route_payout(test_db, payout.id, "admin_1")

        assert result == {
            "success": True,
            "provider": "PAYSTACK",
            "status": "completed",
            "payout_id": str(payout.id),
        }
        transfer = paystack_provider.transfers[0]
        assert (transfer["amount_minor"], transfer["currency"]) == (130000, "KES")
        stored = await seed.payout(payout.id)
        assert stored.provider == "PAYSTACK"
        assert stored.provider_reference == f"tr_{payout.id}"
        wallet = await seed.get_wallet("creator_1")
        assert (wallet.balance_minor, wallet.pending_payouts_minor) == (4000, 0)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_route_transfer_failure_releases_funds(
        self, test_db: any, services: any, seed: any, flutterwave_provider: any
    ) -> None:
        """A rejected transfer fails the payout and returns a generic error."""
        await seed.creator("creator_1", balance_minor=5000)
        flutterwave_provider.fail_transfers = True
        payout = await services.payouts.request_payout(
            test_db, "creator_1", 148000, "UGX", "bank_transfer", BANK_DETAILS
        )

        result = await services.payouts.route_payout(test_db, payout.id, "admin_1")

        assert result["success"] is False
        assert result["provider"] == "FLUTTERWAVE"
        assert result["error"] == PAYOUT_FAILED_MESSAGE
        stored = await seed.payout(payout.id)
        assert stored.status == "failed"
        assert "Recipient rejected" in stored.admin_notes
        wallet = await seed.get_wallet("creator_1")
        assert (wallet.balance_minor, wallet.pending_payouts_minor) == (5000, 0)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_route_pending_transfer_stays_processing(
        self, test_db: any, services: any, seed: any, paystack_provider: any
    ) -> None:
        """An asynchronous transfer leaves the payout processing with its funds reserved."""
        await seed.creator("creator_1", balance_minor=5000)
        paystack_provider.transfer_status = "pending"
        payout = await services.payouts.request_payout(
            test_db, "creator_1", 130000, "KES", "mobile_money", MOMO_DETAILS
        )

        result = await services.payouts.route_payout(test_db, payout.id, "admin_1")

        assert result["status"] == "processing"
        assert (await seed.payout(payout.id)).status == "processing"
        assert (await seed.get_wallet("creator_1")).pending_payouts_minor == 1000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_route_refused_when_wallet_frozen(
        self, test_db: any, services: any, seed: any, paystack_provider: any
    ) -> None:
        """A wallet frozen after the request blocks the transfer and keeps the payout pending."""
        await seed.creator("creator_1", balance_minor=5000)
        payout = await services.payouts.request_payout(
            test_db, "creator_1", 130000, "KES", "mobile_money", MOMO_DETAILS
        )
        payout_id = payout.id
        await services.ledger.freeze(test_db, "creator_1", "Chargeback: dp_1")
        await test_db.commit()

        with pytest.raises(WalletFrozenError):
            await services.payouts.route_payout(test_db, payout_id, "admin_1")

        assert paystack_provider.transfers == []
        assert (await seed.payout(payout_id)).status == "pending"
        wallet = await seed.get_wallet("creator_1")
        assert (wallet.balance_minor, wallet.pending_payouts_minor) == (5000, 1000)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_freeze_during_transfer_keeps_reference(
        self,
        test_db: any,
        services: any,
        seed: any,
        session_factory: any,
        paystack_provider: any,
    ) -> None:
        """A freeze landing mid-transfer holds the payout in processing with its reference."""
        await seed.creator("creator_1", balance_minor=5000)
        payout = await services.payouts.request_payout(
            test_db, "creator_1", 130000, "KES", "mobile_money", MOMO_DETAILS
        )
        payout_id = payout.id
        send = paystack_provider.initiate_transfer

        async def freeze_then_send(*args: any, **kwargs: any) -> any:
            async with session_factory() as other:
                await services.ledger.freeze(other, "creator_1", "Chargeback: dp_1")
                await other.commit()
            return await send(*args, **kwargs)

        paystack_provider.initiate_transfer = freeze_then_send

        result = await services.payouts.route_payout(test_db, payout_id, "admin_1")

        assert result["status"] == "processing"
        assert result["error"] == PAYOUT_HELD_MESSAGE
        assert len(paystack_provider.transfers) == 1
        stored = await seed.payout(payout_id)
        assert stored.status == "processing"
        assert stored.provider_reference == f"tr_{payout_id}"
        wallet = await seed.get_wallet("creator_1")
        assert wallet.frozen is True
        assert (wallet.balance_minor, wallet.pending_payouts_minor) == (5000, 1000)

        await services.ledger.unfreeze(test_db, "creator_1")
        await test_db.commit()
        done = await services.payouts.transition(test_db, payout_id, "completed", "admin_1")

        assert done.status == "completed"
        wallet = await seed.get_wallet("creator_1")
        assert (wallet.balance_minor, wallet.pending_payouts_minor) == (4000, 0)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_route_requires_pending(self, test_db: any, services: any, seed: any) -> None:
        """Only pending payouts can be routed."""
        await seed.creator("creator_1", balance_minor=5000)
        payout = await request_usd(services, test_db, 2000)
        await services.payouts.transition(test_db, payout.id, "cancelled", "admin_1")

        with pytest.raises(InvalidTransitionError):
            await services.payouts.route_payout(test_db, payout.id, "admin_1")


class TestWithdrawalGuard:
    """Test suite for the read-only withdrawal pre-check."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_allowed(self, test_db: any, services: any, seed: any) -> None:
        """A covered withdrawal passes."""
        await seed.creator("creator_1", balance_minor=5000)

        assert await services.payouts.withdrawal_guard(test_db, "creator_1", 2000, "USD") is None
        assert (await seed.get_wallet("creator_1")).pending_payouts_minor == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejections_carry_codes(self, test_db: any, services: any, seed: any) -> None:
        """Rejections report a code and a public message."""
        await seed.creator("creator_1", balance_minor=1500)

        too_much = await services.payouts.withdrawal_guard(test_db, "creator_1", 2000, "USD")
        no_kyc = await services.payouts.withdrawal_guard(test_db, "stranger", 2000, "USD")

        assert too_much["code"] == "insufficient_balance"
        assert no_kyc["code"] == "kyc_required"
        assert "message" in no_kyc


class TestConcurrentPayoutRequests:
    """Concurrent payout requests for one creator."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_two_requests_cannot_overdraw(
        self, session_factory: any, services: any, seed: any
    ) -> None:
        """Two 10 USD requests against 15 USD: one succeeds, one is refused."""
        await seed.creator("creator_1", balance_minor=1500)

        async def attempt() -> str:
            async with session_factory() as db:
                try:
                    await request_usd(services, db, 1000)
                    return "ok"
                except InsufficientBalanceError:
                    return "refused"

        results = await asyncio.gather(attempt(), attempt())

        assert sorted(results) == ["ok", "refused"]
        wallet = await seed.get_wallet("creator_1")
        assert wallet.pending_payouts_minor == 1000
        assert wallet.pending_payouts_minor <= wallet.balance_minor

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_racing_admins_settle_once(
        self, session_factory: any, services: any, seed: any
    ) -> None:
        """Two administrators completing one payout settle it exactly once."""
        await seed.creator("creator_1", balance_minor=5000)
        async with session_factory() as db:
            payout = await request_usd(services, db, 2000)
            await services.payouts.transition(db, payout.id, "processing", "admin_1")

        async def complete(actor: str) -> str:
            async with session_factory() as db:
                try:
                    await services.payouts.transition(db, payout.id, "completed", actor)
                    return "ok"
                except InvalidTransitionError:
                    return "refused"

        results = await asyncio.gather(complete("admin_1"), complete("admin_2"))

        assert sorted(results) == ["ok", "refused"]
        wallet = await seed.get_wallet("creator_1")
        assert (wallet.balance_minor, wallet.pending_payouts_minor) == (3000, 0)


class TestPayoutLimitWindows:
    """Risk limit windows over earlier requests."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_old_requests_fall_out_of_daily_window(
        self, test_db: any, services: any, seed: any
    ) -> None:
        """Only requests within the last day count toward the daily limit."""
        await seed.kyc("creator_1")
        await seed.risk_profile("creator_1", daily_limit_minor=2000, monthly_limit_minor=10000)
        wallet = await seed.wallet("creator_1", balance_minor=10000)
        test_db.add(
            PayoutRequest(
                wallet_id=wallet.id,
                user_id="creator_1",
                amount_minor=1500,
                requested_amount_minor=1500,
                requested_currency="USD",
                method="bank_transfer",
                status="completed",
                account_details=BANK_DETAILS,
                created_at=utcnow() - timedelta(days=2),
            )
        )
        await test_db.commit()

        payout = await request_usd(services, test_db, 1500)
        assert payout.status == "pending"
