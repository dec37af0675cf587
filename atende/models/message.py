import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Text, Uuid
from sqlalchemy.orm import relationship

from atende.database import Base, utcnow


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (Index("ix_messages_conversation_created", "conversation_id", "created_at"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False)
    sender = Column(Text, nullable=False)  # CUSTOMER, AI, HUMAN
    content = Column(Text, nullable=False)
    type = Column(Text, nullable=False, default="TEXT")
    media_url = Column(Text)
    is_read = Column(Boolean, nullable=False, default=False)
    external_id = Column(Text, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    conversation = relationship("Conversation", back_populates="messages")
