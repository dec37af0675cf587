import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from atende.database import Base, JSONType, utcnow


class TrainingSource(Base):
    __tablename__ = "training_sources"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    agent_id = Column(Uuid, ForeignKey("agents.id"), nullable=False)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False, default="")
    type = Column(Text, nullable=False, default="TEXT")  # TEXT, FAQ, QA, PRODUCT, DOCUMENT
    file_url = Column(Text)
    file_name = Column(Text)
    embedding_status = Column(Text, nullable=False, default="pending")  # pending, processing, completed, error
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    agent = relationship("Agent", back_populates="training_sources")
    chunks = relationship(
        "TrainingChunk",
        back_populates="source",
        cascade="all, delete-orphan",
        order_by="TrainingChunk.chunk_index",
    )


class TrainingChunk(Base):
    __tablename__ = "training_chunks"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    source_id = Column(Uuid, ForeignKey("training_sources.id", ondelete="CASCADE"), nullable=False)
    chunk_index = Column(Integer, nullable=False)
    chunk_text = Column(Text, nullable=False)
    embedding = Column(JSONType, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    source = relationship("TrainingSource", back_populates="chunks")
