import uuid

from sqlalchemy import Column, DateTime, Index, Integer, Text, Uuid

from atende.database import Base, JSONType, utcnow


class InboundJob(Base):
    __tablename__ = "inbound_jobs"
    __table_args__ = (Index("ix_inbound_jobs_status_next", "status", "next_attempt_at"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_name = Column(Text, nullable=False)
    dedupe_key = Column(Text, nullable=False, unique=True)
    payload = Column(JSONType, nullable=False)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, PROCESSING, DONE, FAILED
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime(timezone=True))
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
