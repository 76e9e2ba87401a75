from datetime import datetime
from typing import Any, Dict, Optional

from uuid import UUID

from pydantic import BaseModel


class ImportRunOut(BaseModel):
    id: UUID
    business_id: UUID
    filename: Optional[str] = None
    status: str
    progress: int
    total_rows: int
    processed_rows: int
    send_welcome: bool
    results: Optional[Dict[str, Any]] = None
    attempts: int
    last_error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
