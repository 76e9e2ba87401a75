import uuid
from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, TIMESTAMP, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.db import Base


class EngagementRecord(Base):
    __tablename__ = "engagement_records"

    __table_args__ = (
        UniqueConstraint("business_id", "phone", name="uq_engagement_records_business_phone"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id"), nullable=False)
    phone = Column(String(20), nullable=False)
    country_code = Column(String(5), nullable=False, default="+1")

    checkin_count = Column(Integer, nullable=False, default=0)
    first_checkin_at = Column(TIMESTAMP, nullable=True)
    # any source (live or import), used by win-back consumers
    last_checkin_at = Column(TIMESTAMP, nullable=True)
    # live check-ins only, anchors the cooldown window
    last_live_checkin_at = Column(TIMESTAMP, nullable=True)

    subscription_state = Column(String(20), nullable=False, default="ACTIVE")
    # ACTIVE | UNSUBSCRIBED | BLOCKED | INVALID

    marketing_consent = Column(Boolean, nullable=False, default=True)
    consent_given = Column(Boolean, nullable=False, default=False)
    consent_at = Column(TIMESTAMP, nullable=True)
    age_verified = Column(Boolean, nullable=False, default=False)
    age_verified_at = Column(TIMESTAMP, nullable=True)

    name = Column(String(150), nullable=True)
    email = Column(String(255), nullable=True)
    notes = Column(String(1000), nullable=True)

    imported_via_csv = Column(Boolean, nullable=False, default=False)
    welcome_sent_at = Column(TIMESTAMP, nullable=True)

    blocked_at = Column(TIMESTAMP, nullable=True)
    block_reason = Column(String(255), nullable=True)

    deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(TIMESTAMP, nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())
