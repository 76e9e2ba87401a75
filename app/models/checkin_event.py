import uuid
from sqlalchemy import Boolean, Column, ForeignKey, Integer, JSON, String, TIMESTAMP
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.db import Base


class CheckinEvent(Base):
    __tablename__ = "checkin_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id"), nullable=False)
    engagement_record_id = Column(UUID(as_uuid=True), ForeignKey("engagement_records.id"), nullable=True)
    phone = Column(String(20), nullable=False)

    source = Column(String(20), nullable=False)  # KIOSK / IMPORT / COOLDOWN_BLOCK
    counted_toward_threshold = Column(Boolean, nullable=False, default=False)
    increment = Column(Integer, nullable=False, default=0)

    import_run_id = Column(UUID(as_uuid=True), ForeignKey("import_runs.id"), nullable=True)
    details = Column(JSON, nullable=True)

    occurred_at = Column(TIMESTAMP, nullable=False)
    created_at = Column(TIMESTAMP, server_default=func.now())
