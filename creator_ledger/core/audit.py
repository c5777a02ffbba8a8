"""Payment audit trail."""
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from creator_ledger.database.models import PaymentEvent, utcnow


def record_payment_event(
    db: AsyncSession,
    payment_id: uuid.UUID,
    event_type: str,
    event_data: Dict[str, Any],
    correlation_id: Optional[uuid.UUID] = None,
) -> PaymentEvent:
    """
    Record a payment event for audit trail.

    Added to the session only; it commits with the surrounding unit of work.

    Args:
        db: Database session
        payment_id: Payment ID
        event_type: Event type (e.g. ``payment.created``)
        event_data: Event data
        correlation_id: Correlation ID for tracing
    """
    event = PaymentEvent(
        payment_id=payment_id,
        event_type=event_type,
        event_data=event_data,
        correlation_id=correlation_id or uuid.uuid4(),
        created_at=utcnow(),
    )
    db.add(event)
    return event
