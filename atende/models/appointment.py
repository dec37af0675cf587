import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, Uuid

from atende.database import Base, utcnow


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, ForeignKey("companies.id"), nullable=False)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False)
    title = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, CONFIRMED, COMPLETED, CANCELLED
    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
