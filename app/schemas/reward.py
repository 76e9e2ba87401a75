from datetime import datetime
from typing import Literal, Optional

from uuid import UUID

from pydantic import BaseModel, Field


DiscountType = Literal["NONE", "FIXED", "PERCENTAGE"]


class RewardTemplateCreate(BaseModel):
    business_id: UUID
    name: str
    description: Optional[str] = None
    threshold: int = Field(gt=0)
    discount_type: DiscountType = "NONE"
    discount_value: float = Field(default=0, ge=0)
    priority: int = 1
    # defaults to the business's reward_expiry_days
    expiry_days: Optional[int] = Field(default=None, ge=1)
    active: bool = True


class RewardTemplateUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    threshold: Optional[int] = Field(default=None, gt=0)
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = Field(default=None, ge=0)
    priority: Optional[int] = None
    expiry_days: Optional[int] = Field(default=None, ge=1)
    active: Optional[bool] = None


class RewardTemplateOut(BaseModel):
    id: UUID
    business_id: UUID
    name: str
    description: Optional[str] = None
    threshold: int
    discount_type: str
    discount_value: float
    priority: int
    expiry_days: Optional[int] = None
    active: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RewardInstanceOut(BaseModel):
    id: UUID
    template_id: Optional[UUID] = None
    engagement_record_id: UUID
    business_id: UUID
    phone: str
    code: str
    name: str
    description: Optional[str] = None
    threshold: int
    discount_type: str
    discount_value: float
    status: str
    redeemed: bool
    issued_at: datetime
    expires_at: datetime
    redeemed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RewardRedeemOut(BaseModel):
    reward: RewardInstanceOut
    checkin_count: int
