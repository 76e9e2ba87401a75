from datetime import datetime
from typing import Optional

from uuid import UUID

from pydantic import BaseModel, Field


class BusinessCreate(BaseModel):
    name: str
    slug: str
    sms_number: Optional[str] = None
    sms_enabled: bool = True
    checkin_cooldown_hours: float = Field(default=24, ge=0.5, le=168)
    reward_threshold: int = Field(default=10, ge=1)
    reward_expiry_days: int = Field(default=30, ge=1)
    welcome_message: Optional[str] = None
    age_gate_enabled: bool = False
    age_gate_min_age: int = Field(default=18, ge=0)


class BusinessUpdate(BaseModel):
    name: Optional[str] = None
    sms_number: Optional[str] = None
    sms_enabled: Optional[bool] = None
    checkin_cooldown_hours: Optional[float] = Field(default=None, ge=0.5, le=168)
    reward_threshold: Optional[int] = Field(default=None, ge=1)
    reward_expiry_days: Optional[int] = Field(default=None, ge=1)
    welcome_message: Optional[str] = None
    age_gate_enabled: Optional[bool] = None
    age_gate_min_age: Optional[int] = Field(default=None, ge=0)


class BusinessOut(BaseModel):
    id: UUID
    name: str
    slug: str
    sms_number: Optional[str] = None
    sms_enabled: bool
    checkin_cooldown_hours: float
    reward_threshold: int
    reward_expiry_days: int
    welcome_message: Optional[str] = None
    age_gate_enabled: bool
    age_gate_min_age: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
