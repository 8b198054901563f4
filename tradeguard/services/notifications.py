"""Notification outbox.

Events are written to the ``notifications`` table inside the transaction
that produced them, so a rolled-back settlement never notifies anyone. A
delivery worker (SMS / push gateway) drains pending rows; it lives outside
this service.
"""

import logging
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tradeguard.models.notification import Notification, NotificationStatus
from tradeguard.models.reserve import Reserve

logger = logging.getLogger(__name__)

# Human-readable titles shown by the mobile client
EVENT_TITLES: dict[str, str] = {
    "reserve.held": "Funds secured in TradeGuard reserve",
    "reserve.released": "Reserve released to seller",
    "reserve.refunded": "Reserve refunded to buyer",
    "reserve.partially_released": "Reserve partially refunded",
    "reserve.expired": "Reserve expired and returned to buyer",
    "proof.submitted": "Delivery proof submitted",
    "proof.verified": "Delivery proof verified",
    "proof.anomaly_detected": "Delivery proof flagged",
    "dispute.raised": "Dispute raised",
    "dispute.resolved": "Dispute resolved",
    "dispute.escalated": "Dispute escalated to admin",
}


def build_payload(event_type: str, reserve: Reserve, details: dict) -> dict:
    """Build the JSON payload for a reserve lifecycle event."""
    return {
        "event": event_type,
        "title": EVENT_TITLES.get(event_type, event_type),
        "timestamp": datetime.now(UTC).isoformat(),
        "reserve_id": str(reserve.reserve_id),
        "reference_type": reserve.reference_type.value,
        "reference_id": reserve.reference_id,
        "status": reserve.status.value,
        **details,
    }


def enqueue(
    db: AsyncSession,
    wallet_ids: Iterable[uuid.UUID],
    event_type: str,
    payload: dict,
) -> list[Notification]:
    """Add one pending notification per recipient. The caller commits."""
    notifications = []
    for wallet_id in sorted(set(wallet_ids)):
        notification = Notification(
            notification_id=uuid.uuid4(),
            wallet_id=wallet_id,
            event_type=event_type,
            payload=payload,
            status=NotificationStatus.PENDING,
        )
        db.add(notification)
        notifications.append(notification)
    logger.info("Notification queued: %s → %d recipient(s)", event_type, len(notifications))
    return notifications


def notify_reserve_event(
    db: AsyncSession,
    reserve: Reserve,
    event_type: str,
    details: dict | None = None,
    exclude: uuid.UUID | None = None,
) -> list[Notification]:
    """Notify every party to a reserve, optionally skipping the actor."""
    recipients = reserve.party_ids()
    if exclude is not None:
        recipients.discard(exclude)
    payload = build_payload(event_type, reserve, details or {})
    return enqueue(db, recipients, event_type, payload)


async def list_notifications(
    db: AsyncSession, wallet_id: uuid.UUID, limit: int = 50, offset: int = 0
) -> list[Notification]:
    result = await db.execute(
        select(Notification)
        .where(Notification.wallet_id == wallet_id)
        .order_by(Notification.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())
