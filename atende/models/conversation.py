import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, Uuid, text
from sqlalchemy.orm import relationship

from atende.database import Base, utcnow


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        # one non-CLOSED lifecycle per (company, customer)
        Index(
            "uq_conversations_open_customer",
            "company_id",
            "customer_phone",
            unique=True,
            postgresql_where=text("status <> 'CLOSED'"),
            sqlite_where=text("status <> 'CLOSED'"),
        ),
        Index("ix_conversations_status_last_message", "status", "last_message_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, ForeignKey("companies.id"), nullable=False)
    session_id = Column(Uuid, ForeignKey("channel_sessions.id"), nullable=False)
    agent_id = Column(Uuid, ForeignKey("agents.id"))
    customer_phone = Column(Text, nullable=False)
    customer_name = Column(Text)
    customer_whatsapp_id = Column(Text)
    status = Column(Text, nullable=False, default="OPEN")  # OPEN, AI_HANDLING, HUMAN_HANDLING, WAITING_RESPONSE, CLOSED
    last_message_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    unread_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    closed_at = Column(DateTime(timezone=True))

    company = relationship("Company")
    session = relationship("ChannelSession")
    agent = relationship("Agent")
    messages = relationship("Message", back_populates="conversation", order_by="Message.created_at")
