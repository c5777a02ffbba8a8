"""
Pytest configuration and fixtures.

Tests run against a SQLite file database (through aiosqlite) created per test,
in-memory fake providers and a fake Redis.
"""
import json
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Mapping, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creator_ledger.api.dependencies import Services
from creator_ledger.api.main import create_app
from creator_ledger.config import Settings, get_settings
from creator_ledger.core.currency import SUPPORTED_CURRENCIES
from creator_ledger.database.connection import close_db, get_session_factory, init_db
from creator_ledger.database.models import (
    KycVerification,
    Payment,
    PayoutRequest,
    RiskProfile,
    Subscription,
    Wallet,
    utcnow,
)
from creator_ledger.database.repositories import get_wallet
from creator_ledger.integrations.base import (
    CheckoutSession,
    NormalizedEvent,
    PaymentProviderClient,
    ProviderError,
    ProviderErrorType,
    TransferResult,
    VerificationResult,
    WebhookSignatureError,
)
from creator_ledger.integrations.registry import ProviderRegistry

TEST_SIGNATURE = "valid-test-signature"


class FakeProvider(PaymentProviderClient):
    """In-memory provider with scriptable outcomes."""

    def __init__(
        self,
        name: str,
        methods: frozenset,
        currencies: frozenset,
        supports_payouts: bool = False,
    ):
        self.name = name
        self.payment_methods = methods
        self.currencies = currencies
        self.supports_payouts = supports_payouts

        self.verify_status: Dict[str, str] = {}
        self.default_status = "successful"
        self.fail_sessions = False
        self.fail_verify = False
        self.fail_transfers = False
        self.transfer_status = "completed"

        self.sessions: List[Dict[str, Any]] = []
        self.transfers: List[Dict[str, Any]] = []
        self.verified: List[str] = []

    async def create_session(
        self,
        amount_minor: int,
        currency: str,
        payer_email: str,
        reference: str,
        metadata: Dict[str, Any],
    ) -> CheckoutSession:
        if self.fail_sessions:
            raise ProviderError("Card declined", ProviderErrorType.PERMANENT, provider=self.name)
        self.sessions.append(
            {
                "amount_minor": amount_minor,
                "currency": currency,
                "payer_email": payer_email,
                "reference": reference,
                "metadata": metadata,
            }
        )
        return CheckoutSession(
            reference=f"{self.name.lower()}_{reference}",
            redirect_url=f"https://pay.example.com/{reference}",
        )

    async def verify(self, reference: str) -> VerificationResult:
        self.verified.append(reference)
        if self.fail_verify:
            raise ProviderError("Provider timeout", ProviderErrorType.TRANSIENT, provider=self.name)
        status = self.verify_status.get(reference, self.default_status)
        return VerificationResult(
            reference=reference,
            status=status,
            failure_reason="Insufficient funds" if status == "failed" else None,
        )

    async def initiate_transfer(
        self,
        amount_minor: int,
        currency: str,
        method: str,
        account_details: Dict[str, Any],
        reference: str,
    ) -> TransferResult:
        if not self.supports_payouts:
            return await super().initiate_transfer(
                amount_minor, currency, method, account_details, reference
            )
        if self.fail_transfers:
            raise ProviderError(
                "Recipient rejected", ProviderErrorType.PERMANENT, provider=self.name
            )
        self.transfers.append(
            {
                "amount_minor": amount_minor,
                "currency": currency,
                "method": method,
                "reference": reference,
            }
        )
        return TransferResult(payout_id=f"tr_{reference}", status=self.transfer_status)

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> NormalizedEvent:
        lowered = {k.lower(): v for k, v in headers.items()}
        if lowered.get("x-test-signature") != TEST_SIGNATURE:
            raise WebhookSignatureError("Invalid test signature")
        body = json.loads(payload)
        return NormalizedEvent(
            provider=self.name,
            event_id=body["id"],
            event_type=body.get("type", "test.event"),
            kind=body.get("kind", "payment"),
            reference=body.get("reference"),
            status=body.get("status"),
            amount_minor=body.get("amount_minor"),
            currency=body.get("currency"),
            transaction_id=body.get("transaction_id"),
            reason=body.get("reason"),
            metadata=body.get("metadata") or {},
        )


class FakeRedis:
    """Subset of the redis.asyncio client used by the service."""

    def __init__(self) -> None:
        self.store: Dict[str, Any] = {}

    async def exists(self, key: str) -> int:
        return int(key in self.store)

    async def setex(self, key: str, ttl: int, value: Any) -> None:
        self.store[key] = value

    async def incr(self, key: str) -> int:
        self.store[key] = int(self.store.get(key, 0)) + 1
        return self.store[key]

    async def expire(self, key: str, ttl: int) -> bool:
        return key in self.store

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


class RecordingNotifier:
    """Keeps every notification for assertions."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def notify(
        self, user_id: str, kind: str, title: str, body: str, link: Optional[str] = None
    ) -> None:
        self.sent.append(
            {"user_id": user_id, "kind": kind, "title": title, "body": body, "link": link}
        )

    def kinds_for(self, user_id: str) -> List[str]:
        return [n["kind"] for n in self.sent if n["user_id"] == user_id]


def webhook_body(**fields: Any) -> bytes:
    """Raw body understood by FakeProvider.parse_webhook."""
    fields.setdefault("id", f"evt_{uuid.uuid4().hex}")
    return json.dumps(fields).encode()


SIGNED_HEADERS = {"x-test-signature": TEST_SIGNATURE}


class Seeder:
    """Writes fixture rows, each in its own committed session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _add(self, row: Any) -> Any:
        async with self.session_factory() as db:
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return row

    async def wallet(
        self,
        user_id: str,
        balance_minor: int = 0,
        pending_payouts_minor: int = 0,
        debt_minor: int = 0,
        frozen: bool = False,
        frozen_reason: Optional[str] = None,
    ) -> Wallet:
        return await self._add(
            Wallet(
                id=uuid.uuid4(),
                user_id=user_id,
                balance_minor=balance_minor,
                pending_payouts_minor=pending_payouts_minor,
                debt_minor=debt_minor,
                currency="USD",
                frozen=frozen,
                frozen_reason=frozen_reason,
                version=0,
            )
        )

    async def kyc(self, user_id: str, status: str = "approved") -> KycVerification:
        return await self._add(KycVerification(id=uuid.uuid4(), user_id=user_id, status=status))

    async def risk_profile(
        self,
        user_id: str,
        risk_score: int = 0,
        monthly_limit_minor: int = 1_000_000,
        daily_limit_minor: int = 100_000,
        blocked: bool = False,
    ) -> RiskProfile:
        return await self._add(
            RiskProfile(
                id=uuid.uuid4(),
                user_id=user_id,
                risk_score=risk_score,
                monthly_limit_minor=monthly_limit_minor,
                daily_limit_minor=daily_limit_minor,
                blocked=blocked,
                flags={},
                last_calculated_at=utcnow(),
            )
        )

    async def creator(self, user_id: str, balance_minor: int = 0) -> Wallet:
        """Creator with approved KYC, a clean risk profile and a funded wallet."""
        await self.kyc(user_id)
        await self.risk_profile(user_id)
        return await self.wallet(user_id, balance_minor=balance_minor)

    async def payment(self, **overrides: Any) -> Payment:
        amount_minor = overrides.pop("amount_minor", 1000)
        fee_percent = overrides.pop("fee_percent", Decimal("10"))
        platform_fee = overrides.pop("platform_fee", amount_minor // 10)
        values: Dict[str, Any] = {
            "id": uuid.uuid4(),
            "user_id": "fan_1",
            "creator_id": "creator_1",
            "provider": "STRIPE",
            "reference": f"ref_{uuid.uuid4().hex}",
            "amount_minor": amount_minor,
            "currency": "USD",
            "status": "pending",
            "type": "tip",
            "fee_percent": fee_percent,
            "platform_fee": platform_fee,
            "creator_earnings": amount_minor - platform_fee,
        }
        values.update(overrides)
        return await self._add(Payment(**values))

    async def subscription(self, **overrides: Any) -> Subscription:
        values: Dict[str, Any] = {
            "id": uuid.uuid4(),
            "fan_id": "fan_1",
            "creator_id": "creator_1",
            "tier_name": "basic",
            "tier_price_minor": 1000,
            "currency": "USD",
            "interval": "month",
            "status": "active",
            "provider": "STRIPE",
            "auto_renew": True,
            "start_date": utcnow() - timedelta(days=30),
            "next_billing_date": utcnow(),
        }
        values.update(overrides)
        return await self._add(Subscription(**values))

    async def get_wallet(self, user_id: str) -> Optional[Wallet]:
        async with self.session_factory() as db:
            return await get_wallet(db, user_id)

    async def get(self, model: Any, row_id: Any) -> Any:
        async with self.session_factory() as db:
            return await db.get(model, row_id)

    async def payout(self, payout_id: uuid.UUID) -> Optional[PayoutRequest]:
        return await self.get(PayoutRequest, payout_id)


@pytest.fixture(autouse=True)
def test_settings(tmp_path: Any, monkeypatch: pytest.MonkeyPatch) -> Settings:
    """Create test settings pointing at a fresh SQLite database."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/15")
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("APP_NAME", "creator-ledger-test")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("ADMIN_USER_IDS", "admin_1")
    monkeypatch.setenv("PLATFORM_FEE_PERCENT", "10")
    monkeypatch.setenv("DUNNING_RETRY_HOURS", "12,24,72,120")
    monkeypatch.setenv("GRACE_PERIOD_DAYS", "7")
    for name in (
        "STRIPE_SECRET_KEY",
        "PAYSTACK_SECRET_KEY",
        "FLUTTERWAVE_SECRET_KEY",
        "NOTIFICATION_SERVICE_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def session_factory(
    test_settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Create tables and hand out the application's session factory."""
    await close_db()
    await init_db()
    yield get_session_factory()
    await close_db()


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def seed(session_factory: async_sessionmaker[AsyncSession]) -> Seeder:
    """Row factory for arranging test data."""
    return Seeder(session_factory)


@pytest.fixture
def stripe_provider() -> FakeProvider:
    return FakeProvider("STRIPE", frozenset({"card"}), SUPPORTED_CURRENCIES)


@pytest.fixture
def paystack_provider() -> FakeProvider:
    return FakeProvider(
        "PAYSTACK",
        frozenset({"card", "mobile_money"}),
        frozenset({"NGN", "GHS", "ZAR", "USD", "KES"}),
        supports_payouts=True,
    )


@pytest.fixture
def flutterwave_provider() -> FakeProvider:
    return FakeProvider(
        "FLUTTERWAVE",
        frozenset({"card", "mobile_money"}),
        frozenset({"NGN", "GHS", "KES", "UGX", "ZAR", "USD", "EUR", "GBP", "TZS"}),
        supports_payouts=True,
    )


@pytest.fixture
def registry(
    stripe_provider: FakeProvider,
    paystack_provider: FakeProvider,
    flutterwave_provider: FakeProvider,
) -> ProviderRegistry:
    return ProviderRegistry([stripe_provider, paystack_provider, flutterwave_provider])


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def services(
    session_factory: async_sessionmaker[AsyncSession],
    registry: ProviderRegistry,
    notifier: RecordingNotifier,
    fake_redis: FakeRedis,
) -> Services:
    """Fully wired services over the fake providers."""
    return Services(registry, notifier, redis_client=fake_redis)


@pytest_asyncio.fixture
async def client(services: Services) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def billing_epoch() -> datetime:
    """Fixed point in time for schedule assertions."""
    return datetime(2026, 1, 1, 9, 0, 0)
