import uuid

from sqlalchemy import Column, Date, ForeignKey, Integer, UniqueConstraint, Uuid

from atende.database import Base


class TokenUsage(Base):
    """Monthly completion-token totals per company."""

    __tablename__ = "token_usage"
    __table_args__ = (UniqueConstraint("company_id", "month", name="uq_token_usage_month"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, ForeignKey("companies.id"), nullable=False)
    month = Column(Date, nullable=False)
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
