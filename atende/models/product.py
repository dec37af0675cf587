import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, Text, Uuid

from atende.database import Base, JSONType, utcnow


class Product(Base):
    __tablename__ = "products"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, ForeignKey("companies.id"), nullable=False)
    name = Column(Text, nullable=False)
    description = Column(Text)
    category = Column(Text)
    price = Column(Float, nullable=False, default=0.0)
    image_url = Column(Text)
    sizes = Column(JSONType, nullable=False, default=list)
    stock_enabled = Column(Boolean, nullable=False, default=False)
    stock_quantity = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
