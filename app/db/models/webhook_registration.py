"""
Webhook Registration Model - tenant-owned outbound subscription.
"""
from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String

from app.db.compat import utcnow
from app.db.database import Base

WILDCARD_EVENT = "*"


class WebhookRegistration(Base):
    """Endpoint a tenant wants notified, with optional HMAC secret"""

    __tablename__ = "webhook_registrations"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)

    url = Column(String(2048), nullable=False)
    secret = Column(String(255), nullable=True)
    events = Column(JSON, nullable=False, default=list)  # event types, "*" for all
    custom_headers = Column(JSON, nullable=False, default=dict)

    is_active = Column(Boolean, nullable=False, default=True)
    # Consecutive failures; monitoring only, never disables the registration
    fail_count = Column(Integer, nullable=False, default=0)
    last_triggered_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def subscribes_to(self, event_type: str) -> bool:
        events = self.events or []
        return WILDCARD_EVENT in events or event_type in events
