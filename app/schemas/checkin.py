from datetime import date, datetime
from typing import Optional

from uuid import UUID

from pydantic import BaseModel, model_validator

from app.schemas.reward import RewardInstanceOut


class CheckinRequest(BaseModel):
    phone: str
    business_slug: Optional[str] = None
    business_id: Optional[UUID] = None
    date_of_birth: Optional[date] = None

    @model_validator(mode="after")
    def _business_reference(self):
        if not self.business_slug and not self.business_id:
            raise ValueError("business_slug or business_id is required")
        return self


class CooldownOut(BaseModel):
    active: bool = False
    window_seconds: int
    next_checkin_available_at: datetime


class NotificationOut(BaseModel):
    kind: str
    phone: str


class CheckinOut(BaseModel):
    customer_id: str
    phone: str
    business_name: str
    checkin_count: int
    threshold: int
    checkins_until_reward: int
    subscription_state: str
    is_new_customer: bool
    reward: Optional[RewardInstanceOut] = None
    cooldown: CooldownOut
    notifications: list[NotificationOut] = []
