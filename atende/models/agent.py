import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from atende.database import Base, JSONType, utcnow


class Agent(Base):
    __tablename__ = "agents"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, ForeignKey("companies.id"), nullable=False)
    name = Column(Text, nullable=False)
    personality = Column(Text)
    tone = Column(Text)
    instructions = Column(Text)
    trigger_keywords = Column(JSONType, nullable=False, default=list)
    priority = Column(Integer, nullable=False, default=0)
    is_default = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    training_sources = relationship("TrainingSource", back_populates="agent")
