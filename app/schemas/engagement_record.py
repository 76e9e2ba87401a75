from datetime import datetime
from typing import Any, Dict, Literal, Optional

from uuid import UUID

from pydantic import BaseModel


class EngagementRecordOut(BaseModel):
    id: UUID
    business_id: UUID
    phone: str
    country_code: Optional[str] = None
    checkin_count: int
    first_checkin_at: Optional[datetime] = None
    last_checkin_at: Optional[datetime] = None
    last_live_checkin_at: Optional[datetime] = None
    subscription_state: str
    marketing_consent: bool
    consent_given: bool
    age_verified: bool
    name: Optional[str] = None
    email: Optional[str] = None
    notes: Optional[str] = None
    imported_via_csv: bool
    welcome_sent_at: Optional[datetime] = None
    block_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class EngagementRecordUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    notes: Optional[str] = None
    marketing_consent: Optional[bool] = None


class SubscriptionChange(BaseModel):
    state: Literal["ACTIVE", "UNSUBSCRIBED", "BLOCKED", "INVALID"]
    reason: Optional[str] = None


class CheckinEventOut(BaseModel):
    id: UUID
    engagement_record_id: Optional[UUID] = None
    phone: str
    source: str
    counted_toward_threshold: bool
    increment: int
    import_run_id: Optional[UUID] = None
    details: Optional[Dict[str, Any]] = None
    occurred_at: datetime

    class Config:
        from_attributes = True
