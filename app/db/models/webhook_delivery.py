"""
Webhook Delivery Model - outbound delivery audit trail.

One row per (event, subscriber). Retries update the same row and bump
`attempts`; `delivered_at` is only ever set once, on a 2xx response.
"""
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text

from app.db.compat import utcnow
from app.db.database import Base


def _new_delivery_id() -> str:
    return str(uuid.uuid4())


class WebhookDelivery(Base):
    """Delivery record; its id is also sent as X-Webhook-ID"""

    __tablename__ = "webhook_deliveries"

    id = Column(String(36), primary_key=True, default=_new_delivery_id)
    webhook_id = Column(
        Integer,
        ForeignKey("webhook_registrations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type = Column(String(100), nullable=False, index=True)
    payload = Column(Text, nullable=False)  # verbatim signed body

    status_code = Column(Integer, nullable=True)
    response_excerpt = Column(Text, nullable=True)
    error = Column(String(1000), nullable=True)

    attempts = Column(Integer, nullable=False, default=0)
    delivered_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_attempt_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # retry sweep: undelivered rows inside the recency window
        Index("ix_webhook_deliveries_pending", "delivered_at", "created_at"),
    )

    @property
    def success(self) -> bool:
        return self.delivered_at is not None
