"""KYC status lookup (review workflow and documents live elsewhere)."""
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from creator_ledger.database.models import KycVerification

KYC_APPROVED = "approved"
KYC_NONE = "none"


class KycStatusProvider(Protocol):
    """Returns ``approved``, ``pending``, ``rejected`` or ``none`` for a user."""

    async def get_kyc_status(self, db: AsyncSession, user_id: str) -> str:
        ...


class DatabaseKycProvider:
    """Reads KYC outcomes from the ``kyc_verifications`` table."""

    async def get_kyc_status(self, db: AsyncSession, user_id: str) -> str:
        status = await db.scalar(
            select(KycVerification.status).where(KycVerification.user_id == user_id)
        )
        return status or KYC_NONE
