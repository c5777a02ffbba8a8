"""
API routes for payments, webhooks, wallets, payouts and administration.

Service errors (``PaymentError``) propagate to the application's exception
handler, which maps them to ``{error, code}`` with the right status code.
"""
import time
import uuid
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from creator_ledger.config import get_settings
from creator_ledger.core.errors import NotFoundError
from creator_ledger.database.connection import get_db
from creator_ledger.database.models import Chargeback, Payment, PayoutRequest, Subscription
from creator_ledger.database.repositories import get_wallet

from .dependencies import (
    Actor,
    Services,
    get_services,
    rate_limited_actor,
    require_admin,
)
from .schemas import (
    ChargebackResolveRequest,
    ChargebackResponse,
    CheckoutRequest,
    CheckoutResponse,
    DunningRunResponse,
    HealthCheckResponse,
    PaymentStatusResponse,
    PayoutCreateRequest,
    PayoutResponse,
    PayoutRouteResponse,
    PayoutTransitionRequest,
    PlatformFeeRequest,
    PlatformFeeResponse,
    RiskProfileResponse,
    SubscriptionRequest,
    SubscriptionResponse,
    WalletResponse,
    WebhookResponse,
    WithdrawalGuardRequest,
    WithdrawalGuardResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
wallet_router = APIRouter(tags=["wallet"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def _iso(value: Any) -> Any:
    return value.isoformat() if value is not None else None


def _parse_id(raw: str, what: str) -> uuid.UUID:
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise NotFoundError(f"Malformed {what} id {raw}", f"{what.capitalize()} not found")


def _payment_response(payment: Payment) -> Dict[str, Any]:
    return {
        "id": str(payment.id),
        "user_id": payment.user_id,
        "creator_id": payment.creator_id,
        "provider": payment.provider,
        "reference": payment.reference,
        "amount_minor": payment.amount_minor,
        "currency": payment.currency,
        "status": payment.status,
        "type": payment.type,
        "fee_percent": str(payment.fee_percent),
        "platform_fee": payment.platform_fee,
        "creator_earnings": payment.creator_earnings,
        "error_message": payment.error_message,
        "created_at": _iso(payment.created_at),
        "settled_at": _iso(payment.settled_at),
    }


def _subscription_response(subscription: Subscription) -> Dict[str, Any]:
    return {
        "id": str(subscription.id),
        "fan_id": subscription.fan_id,
        "creator_id": subscription.creator_id,
        "tier_name": subscription.tier_name,
        "status": subscription.status,
        "auto_renew": subscription.auto_renew,
        "next_billing_date": _iso(subscription.next_billing_date),
        "cancelled_at": _iso(subscription.cancelled_at),
    }


def _payout_response(payout: PayoutRequest) -> Dict[str, Any]:
    return {
        "id": str(payout.id),
        "user_id": payout.user_id,
        "amount_minor": payout.amount_minor,
        "currency": payout.currency,
        "requested_amount_minor": payout.requested_amount_minor,
        "requested_currency": payout.requested_currency,
        "method": payout.method,
        "status": payout.status,
        "provider": payout.provider,
        "admin_notes": payout.admin_notes,
        "created_at": _iso(payout.created_at),
        "processed_at": _iso(payout.processed_at),
    }


def _chargeback_response(chargeback: Chargeback) -> Dict[str, Any]:
    return {
        "id": str(chargeback.id),
        "creator_id": chargeback.creator_id,
        "payment_id": str(chargeback.payment_id),
        "provider": chargeback.provider,
        "amount_minor": chargeback.amount_minor,
        "currency": chargeback.currency,
        "status": chargeback.status,
        "resolved_by": chargeback.resolved_by,
        "resolved_at": _iso(chargeback.resolved_at),
    }


@payment_router.post(
    "/payments/checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a one-time payment",
    description="Route a tip, pay-per-view or AI upgrade payment and start the provider session",
)
async def create_checkout(
    request: CheckoutRequest,
    actor: Actor = Depends(rate_limited_actor),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Start a one-time payment for the calling user."""
    logger.info(
        "api_checkout_request",
        user_id=actor.user_id,
        payment_type=request.payment_type,
        amount_minor=request.amount_minor,
        currency=request.currency,
    )
    return await services.checkout.start_one_time_payment(
        db,
        user_id=actor.user_id,
        payment_type=request.payment_type,
        amount_minor=request.amount_minor,
        currency=request.currency,
        country=request.country,
        payer_email=request.payer_email,
        creator_id=request.creator_id,
        method=request.method,
        phone_number=request.phone_number,
        preferred_providers=request.preferred_providers,
        metadata=request.metadata,
    )


@payment_router.post(
    "/subscriptions",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a subscription",
    description="Start the first payment of a subscription to a creator",
)
async def create_subscription(
    request: SubscriptionRequest,
    actor: Actor = Depends(rate_limited_actor),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Subscribe the calling fan to a creator."""
    logger.info(
        "api_subscription_request",
        fan_id=actor.user_id,
        creator_id=request.creator_id,
        tier_name=request.tier_name,
    )
    return await services.checkout.start_subscription(
        db,
        fan_id=actor.user_id,
        creator_id=request.creator_id,
        tier_name=request.tier_name,
        tier_price_minor=request.tier_price_minor,
        currency=request.currency,
        country=request.country,
        payer_email=request.payer_email,
        interval=request.interval,
        method=request.method,
        phone_number=request.phone_number,
        preferred_providers=request.preferred_providers,
    )


@payment_router.post(
    "/subscriptions/{subscription_id}/cancel",
    response_model=SubscriptionResponse,
    summary="Cancel a subscription",
    description="Cancel one of the calling fan's subscriptions and stop renewal",
)
async def cancel_subscription(
    subscription_id: str,
    actor: Actor = Depends(rate_limited_actor),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Cancel a subscription owned by the caller."""
    logger.info(
        "api_subscription_cancel_request",
        fan_id=actor.user_id,
        subscription_id=subscription_id,
    )
    subscription = await services.checkout.cancel_subscription(
        db, _parse_id(subscription_id, "subscription"), actor.user_id
    )
    return _subscription_response(subscription)


@payment_router.get(
    "/payments/{payment_id}",
    response_model=PaymentStatusResponse,
    summary="Get payment status",
    description="Retrieve a payment visible to the caller",
)
async def get_payment_status(
    payment_id: str,
    actor: Actor = Depends(rate_limited_actor),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Get payment status by ID (payer, receiving creator or admin only)."""
    payment = await db.get(Payment, _parse_id(payment_id, "payment"))
    if payment is None or not (
        actor.is_admin or actor.user_id in (payment.user_id, payment.creator_id)
    ):
        raise NotFoundError(
            f"Payment {payment_id} not visible to {actor.user_id}", "Payment not found"
        )
    return _payment_response(payment)


@webhook_router.post(
    "/{provider}",
    response_model=WebhookResponse,
    summary="Provider webhook endpoint",
    description="Verify, de-duplicate and process a provider webhook",
)
async def provider_webhook(
    provider: str,
    request: Request,
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Handle a provider webhook.

    Unknown payments are acknowledged so the provider stops redelivering;
    only signature and verification failures return an error.
    """
    body = await request.body()
    return await services.ingestor.ingest(db, provider.upper(), body, request.headers)


@wallet_router.get(
    "/wallet",
    response_model=WalletResponse,
    summary="Get wallet",
    description="Balances of the calling creator's wallet",
)
async def get_my_wallet(
    actor: Actor = Depends(rate_limited_actor),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Wallet of the caller (empty balances if none exists yet)."""
    wallet = await get_wallet(db, actor.user_id)
    if wallet is None:
        return {
            "user_id": actor.user_id,
            "balance_minor": 0,
            "pending_payouts_minor": 0,
            "available_minor": 0,
            "debt_minor": 0,
            "currency": get_settings().settlement_currency,
            "frozen": False,
            "frozen_reason": None,
        }
    return {
        "user_id": wallet.user_id,
        "balance_minor": wallet.balance_minor,
        "pending_payouts_minor": wallet.pending_payouts_minor,
        "available_minor": wallet.available_minor,
        "debt_minor": wallet.debt_minor,
        "currency": wallet.currency,
        "frozen": wallet.frozen,
        "frozen_reason": wallet.frozen_reason,
    }


@wallet_router.post(
    "/payouts",
    response_model=PayoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a payout",
    description="Reserve funds and create a pending payout request",
)
async def create_payout(
    request: PayoutCreateRequest,
    actor: Actor = Depends(rate_limited_actor),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Request a payout for the calling creator."""
    payout = await services.payouts.request_payout(
        db,
        actor.user_id,
        request.amount_minor,
        request.currency,
        request.method,
        request.account_details,
    )
    return _payout_response(payout)


@wallet_router.post(
    "/payouts/guard",
    response_model=WithdrawalGuardResponse,
    summary="Pre-check a withdrawal",
    description="Report whether a withdrawal would be accepted, without reserving funds",
)
async def withdrawal_guard(
    request: WithdrawalGuardRequest,
    actor: Actor = Depends(rate_limited_actor),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Run the payout guard checks for the caller."""
    error = await services.payouts.withdrawal_guard(
        db, actor.user_id, request.amount_minor, request.currency
    )
    return {"allowed": error is None, "error": error}


@admin_router.post(
    "/payouts/{payout_id}/transition",
    response_model=PayoutResponse,
    summary="Transition a payout",
    description="Move a payout request to a new status",
)
async def transition_payout(
    payout_id: str,
    request: PayoutTransitionRequest,
    admin: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Administrative payout transition."""
    payout = await services.payouts.transition(
        db, _parse_id(payout_id, "payout"), request.status, admin.user_id, request.notes
    )
    return _payout_response(payout)


@admin_router.post(
    "/payouts/{payout_id}/route",
    response_model=PayoutRouteResponse,
    summary="Send a payout",
    description="Send a pending payout through a payout-capable provider",
)
async def route_payout(
    payout_id: str,
    admin: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Route a pending payout to a provider."""
    return await services.payouts.route_payout(
        db, _parse_id(payout_id, "payout"), admin.user_id
    )


@admin_router.post(
    "/wallets/{user_id}/unfreeze",
    response_model=WalletResponse,
    summary="Unfreeze a wallet",
)
async def unfreeze_wallet(
    user_id: str,
    admin: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Administrative unfreeze."""
    wallet = await services.ledger.unfreeze(db, user_id)
    await db.commit()
    logger.info("api_wallet_unfrozen", user_id=user_id, admin_id=admin.user_id)
    return {
        "user_id": wallet.user_id,
        "balance_minor": wallet.balance_minor,
        "pending_payouts_minor": wallet.pending_payouts_minor,
        "available_minor": wallet.available_minor,
        "debt_minor": wallet.debt_minor,
        "currency": wallet.currency,
        "frozen": wallet.frozen,
        "frozen_reason": wallet.frozen_reason,
    }


@admin_router.post(
    "/chargebacks/{chargeback_id}/resolve",
    response_model=ChargebackResponse,
    summary="Resolve a chargeback",
)
async def resolve_chargeback(
    chargeback_id: str,
    request: ChargebackResolveRequest,
    admin: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Mark a chargeback won or lost."""
    chargeback = await services.chargebacks.resolve(
        db, _parse_id(chargeback_id, "chargeback"), request.outcome, admin.user_id
    )
    return _chargeback_response(chargeback)


@admin_router.put(
    "/platform-fee",
    response_model=PlatformFeeResponse,
    summary="Update the platform fee",
    description="Applies to payments created after the change only",
)
async def update_platform_fee(
    request: PlatformFeeRequest,
    admin: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Set the platform fee percent."""
    value = await services.fee_resolver.update(db, request.fee_percent, admin.user_id)
    return {"fee_percent": str(value)}


@admin_router.post(
    "/risk/{user_id}/recalculate",
    response_model=RiskProfileResponse,
    summary="Recalculate a risk profile",
)
async def recalculate_risk(
    user_id: str,
    admin: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Recompute and store a user's risk profile."""
    assessment = await services.risk.recalculate(db, user_id)
    await db.commit()
    return {
        "user_id": user_id,
        "risk_score": assessment.score,
        "monthly_limit_minor": assessment.monthly_limit_minor,
        "daily_limit_minor": assessment.daily_limit_minor,
        "blocked": assessment.blocked,
        "flags": assessment.flags,
    }


@admin_router.post(
    "/dunning/run",
    response_model=DunningRunResponse,
    summary="Run a dunning sweep",
)
async def run_dunning(
    admin: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Trigger one dunning sweep immediately."""
    start_time = time.time()
    stats = await services.dunning.run_sweep(db)
    logger.info(
        "api_dunning_run",
        admin_id=admin.user_id,
        duration_seconds=time.time() - start_time,
        **stats,
    )
    return stats


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Liveness check",
    description="Kubernetes liveness endpoint",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Liveness endpoint."""
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness check",
    description="Kubernetes readiness endpoint",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Readiness endpoint."""
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
