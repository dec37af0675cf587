import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, Uuid

from atende.database import Base, JSONType, utcnow


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_logs_entity_action", "entity_id", "action", "created_at"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, ForeignKey("companies.id"), nullable=False)
    action = Column(Text, nullable=False)
    entity = Column(Text, nullable=False)
    entity_id = Column(Uuid, nullable=False)
    changes = Column(JSONType, nullable=False, default=dict)
    actor = Column(Text, nullable=False, default="AI")
    dedupe_key = Column(Text, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
