import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Text, Uuid

from atende.database import Base, utcnow


class Deal(Base):
    __tablename__ = "deals"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, ForeignKey("companies.id"), nullable=False)
    customer_phone = Column(Text, nullable=False)
    customer_name = Column(Text)
    title = Column(Text, nullable=False)
    value = Column(Float)
    stage = Column(Text, nullable=False, default="LEAD")  # LEAD, INTERESTED, NEGOTIATING, CLOSED_WON, CLOSED_LOST
    notes = Column(Text)
    closed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
