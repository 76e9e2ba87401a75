import uuid
from sqlalchemy import Boolean, Column, Float, Integer, String, TIMESTAMP
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.db import Base


class Business(Base):
    __tablename__ = "businesses"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    name = Column(String(150), nullable=False)
    slug = Column(String(100), nullable=False, unique=True)

    # outbound SMS sender for this business
    sms_number = Column(String(20), nullable=True)
    sms_enabled = Column(Boolean, nullable=False, default=True)

    checkin_cooldown_hours = Column(Float, nullable=False, default=24)
    # fallback threshold when no reward template is active
    reward_threshold = Column(Integer, nullable=False, default=10)
    # default expiry for newly created templates only
    reward_expiry_days = Column(Integer, nullable=False, default=30)

    welcome_message = Column(String(500), nullable=True)

    age_gate_enabled = Column(Boolean, nullable=False, default=False)
    age_gate_min_age = Column(Integer, nullable=False, default=18)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())
