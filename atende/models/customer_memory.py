import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text, UniqueConstraint, Uuid

from atende.database import Base, JSONType, utcnow


class CustomerMemory(Base):
    __tablename__ = "customer_memories"
    __table_args__ = (UniqueConstraint("company_id", "customer_phone", name="uq_customer_memory"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, ForeignKey("companies.id"), nullable=False)
    customer_phone = Column(Text, nullable=False)
    customer_name = Column(Text)
    summary = Column(Text, nullable=False, default="")
    preferences = Column(JSONType, nullable=False, default=dict)
    last_products = Column(JSONType, nullable=False, default=list)
    tags = Column(JSONType, nullable=False, default=list)
    total_conversations = Column(Integer, nullable=False, default=0)
    total_messages = Column(Integer, nullable=False, default=0)
    last_conversation_id = Column(Uuid)
    last_contact_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
