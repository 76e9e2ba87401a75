import uuid
from sqlalchemy import Column, Float, ForeignKey, Integer, String, TIMESTAMP
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.db import Base


class RewardInstance(Base):
    __tablename__ = "reward_instances"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    template_id = Column(UUID(as_uuid=True), ForeignKey("reward_templates.id"), nullable=False)
    engagement_record_id = Column(UUID(as_uuid=True), ForeignKey("engagement_records.id"), nullable=False)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id"), nullable=False)
    phone = Column(String(20), nullable=False)

    code = Column(String(20), nullable=False, unique=True)

    # terms copied from the template at issuance
    name = Column(String(100), nullable=False)
    description = Column(String(255))
    threshold = Column(Integer, nullable=False)
    discount_type = Column(String(20), nullable=False, default="NONE")
    discount_value = Column(Float, nullable=False, default=0)

    status = Column(String(20), nullable=False, default="ISSUED")
    # ISSUED | REDEEMED | EXPIRED

    issued_at = Column(TIMESTAMP, nullable=False)
    expires_at = Column(TIMESTAMP, nullable=False)
    redeemed_at = Column(TIMESTAMP, nullable=True)

    source_checkin_event_id = Column(
        UUID(as_uuid=True),
        ForeignKey("checkin_events.id"),
        nullable=True,
    )

    created_at = Column(TIMESTAMP, server_default=func.now())

    @property
    def redeemed(self) -> bool:
        return self.status == "REDEEMED"
