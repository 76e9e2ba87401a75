import uuid
from sqlalchemy import Boolean, Column, Float, ForeignKey, Integer, String, TIMESTAMP
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.db import Base


class RewardTemplate(Base):
    __tablename__ = "reward_templates"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id"), nullable=False)

    name = Column(String(100), nullable=False)
    description = Column(String(255))

    threshold = Column(Integer, nullable=False)

    discount_type = Column(String(20), nullable=False, default="NONE")  # NONE / FIXED / PERCENTAGE
    discount_value = Column(Float, nullable=False, default=0)

    # lowest wins
    priority = Column(Integer, nullable=False, default=1)

    expiry_days = Column(Integer, nullable=True)

    active = Column(Boolean, default=True)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())
