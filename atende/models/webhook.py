import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from atende.database import Base, JSONType, utcnow


class Webhook(Base):
    __tablename__ = "webhooks"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, ForeignKey("companies.id"), nullable=False)
    name = Column(Text, nullable=False)
    url = Column(Text, nullable=False)
    events = Column(JSONType, nullable=False, default=list)
    secret = Column(Text)
    headers = Column(JSONType, nullable=False, default=dict)
    timeout_ms = Column(Integer, nullable=False, default=10000)
    retry_count = Column(Integer, nullable=False, default=3)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    logs = relationship("WebhookDeliveryLog", back_populates="webhook")


class WebhookDeliveryLog(Base):
    __tablename__ = "webhook_delivery_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    webhook_id = Column(Uuid, ForeignKey("webhooks.id"), nullable=False)
    event = Column(Text, nullable=False)
    payload = Column(JSONType, nullable=False)
    status_code = Column(Integer)
    response = Column(Text)
    success = Column(Boolean, nullable=False, default=False)
    attempts = Column(Integer, nullable=False, default=0)
    error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    webhook = relationship("Webhook", back_populates="logs")
