import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, Text, Uuid

from atende.database import Base, utcnow


class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, ForeignKey("companies.id"), nullable=False)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"))
    customer_phone = Column(Text, nullable=False)
    customer_name = Column(Text)
    items = Column(Text, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    total_amount = Column(Float, nullable=False, default=0.0)
    # AWAITING_PAYMENT, PROOF_SENT, PAID, SHIPPED, DELIVERED, CANCELLED
    status = Column(Text, nullable=False, default="AWAITING_PAYMENT")
    delivery_type = Column(Text)  # PICKUP, DELIVERY
    payment_proof_url = Column(Text)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
