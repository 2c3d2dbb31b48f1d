"""
Webhook audit log model
"""

from sqlalchemy import Column, String, Boolean, DateTime, Integer, Text, JSON, ForeignKey, UniqueConstraint

from marketplace.models.base import BaseModel


class WebhookEvent(BaseModel):
    """
    One row per received webhook delivery, written before any side effect.
    Redeliveries of the same provider event get increasing delivery_attempt values.
    """
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", "delivery_attempt", name="uq_webhook_event_delivery"),
    )

    provider = Column(String(32), nullable=False)
    event_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)
    delivery_attempt = Column(Integer, default=1, nullable=False)
    processed = Column(Boolean, default=False, nullable=False, index=True)
    processing_error = Column(Text)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True, index=True)
    processed_at = Column(DateTime(timezone=True))

    def __repr__(self):
        return f"<WebhookEvent(provider={self.provider}, event_id={self.event_id}, attempt={self.delivery_attempt}, processed={self.processed})>"
