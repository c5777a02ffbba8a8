"""Query helpers shared by the service modules."""
import uuid
from typing import Any, Dict, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from creator_ledger.database.models import Base, Payment, Subscription, Wallet


def _insert_for(db: AsyncSession) -> Any:
    """Dialect-specific ``insert`` construct that supports ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Unsupported database dialect: {dialect}")


async def insert_ignore(
    db: AsyncSession,
    model: type[Base],
    values: Dict[str, Any],
    index_elements: Sequence[str],
) -> bool:
    """
    Insert a row unless one already exists for ``index_elements``.

    Args:
        db: Database session
        model: Mapped class
        values: Column values
        index_elements: Columns of the unique constraint to check

    Returns:
        bool: True if a row was inserted
    """
    insert = _insert_for(db)
    stmt = insert(model).values(**values).on_conflict_do_nothing(
        index_elements=list(index_elements)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def upsert(
    db: AsyncSession,
    model: type[Base],
    values: Dict[str, Any],
    index_elements: Sequence[str],
    update_columns: Sequence[str],
) -> None:
    """Insert a row or update ``update_columns`` of the existing one."""
    insert = _insert_for(db)
    stmt = insert(model).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(index_elements),
        set_={column: getattr(stmt.excluded, column) for column in update_columns},
    )
    await db.execute(stmt)


async def get_payment_by_reference(
    db: AsyncSession, reference: str, for_id: bool = False
) -> Optional[Payment]:
    """
    Find a payment by provider reference, or by id when ``for_id`` is set.

    Disputes may identify the payment either way.
    """
    conditions = [Payment.reference == reference]
    if for_id:
        try:
            conditions.append(Payment.id == uuid.UUID(reference))
        except ValueError:
            pass
    return await db.scalar(select(Payment).where(or_(*conditions)).limit(1))


async def get_wallet(db: AsyncSession, user_id: str, refresh: bool = False) -> Optional[Wallet]:
    """Wallet for ``user_id``; ``refresh`` bypasses the identity map."""
    stmt = select(Wallet).where(Wallet.user_id == user_id)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    return await db.scalar(stmt)


async def get_active_subscription(
    db: AsyncSession, fan_id: str, creator_id: str
) -> Optional[Subscription]:
    """The fan's active subscription to ``creator_id``, if any."""
    return await db.scalar(
        select(Subscription).where(
            Subscription.fan_id == fan_id,
            Subscription.creator_id == creator_id,
            Subscription.status == "active",
        )
    )
