import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship

from atende.database import Base, utcnow


class ChannelSession(Base):
    """A connected messaging-gateway session (one WhatsApp number)."""

    __tablename__ = "channel_sessions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, ForeignKey("companies.id"), nullable=False)
    session_name = Column(Text, nullable=False, unique=True)
    phone = Column(Text)
    status = Column(Text, nullable=False, default="DISCONNECTED")  # CONNECTED, DISCONNECTED, QR_CODE
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    company = relationship("Company")
