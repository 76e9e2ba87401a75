import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, JSON, String, TIMESTAMP
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from app.db import Base


class ImportRun(Base):
    __tablename__ = "import_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id"), nullable=False)
    filename = Column(String(255), nullable=True)

    status = Column(String(20), nullable=False, default="QUEUED")
    # QUEUED | PROCESSING | COMPLETED | FAILED
    progress = Column(Integer, nullable=False, default=0)

    total_rows = Column(Integer, nullable=False, default=0)
    # rows committed so far; a retried run resumes after them
    processed_rows = Column(Integer, nullable=False, default=0)
    send_welcome = Column(Boolean, nullable=False, default=True)

    # pending rows for queued runs, cleared once the run finishes
    rows = Column(JSON, nullable=True)
    results = Column(JSON, nullable=True)

    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    next_attempt_at = Column(TIMESTAMP, nullable=True)

    locked_at = Column(TIMESTAMP, nullable=True)
    locked_by = Column(String(100), nullable=True)

    last_error = Column(String(2000), nullable=True)

    started_at = Column(TIMESTAMP, nullable=True)
    completed_at = Column(TIMESTAMP, nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())
