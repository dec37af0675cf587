import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, Uuid

from atende.database import Base, utcnow


class CustomerInterest(Base):
    __tablename__ = "customer_interests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, ForeignKey("companies.id"), nullable=False)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False)
    customer_phone = Column(Text, nullable=False)
    customer_name = Column(Text)
    product_name = Column(Text, nullable=False)
    details = Column(Text)
    status = Column(Text, nullable=False, default="PENDING")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
