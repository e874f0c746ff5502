import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text

from payment_service.db.base_class import Base


class WebhookEvent(Base):
    __tablename__ = "payment_webhooks"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # Derived dedup key: event type + inner entity id + event created_at
    gateway_event_id = Column(String(128), nullable=False, unique=True, index=True)

    event = Column(String(64), nullable=False, index=True)
    account_id = Column(String(64), nullable=True)
    entity = Column(String(32), nullable=True)
    # Raw event snapshot for audit and replay
    payload = Column(JSON, nullable=False)

    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payment_webhooks_pending", "processed", "retry_count", "created_at"),
    )
