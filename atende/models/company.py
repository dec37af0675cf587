import uuid

from sqlalchemy import Boolean, Column, DateTime, Text, Uuid

from atende.database import Base, utcnow


class Company(Base):
    __tablename__ = "companies"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    description = Column(Text)
    niche = Column(Text)
    ai_enabled = Column(Boolean, nullable=False, default=True)
    pix_key = Column(Text)
    pix_key_type = Column(Text)  # CPF, CNPJ, EMAIL, PHONE, RANDOM
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
