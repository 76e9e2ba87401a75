from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.db import get_db
from app.deps.business import get_active_business
from app.errors import NotFound
from app.models.business import Business
from app.models.checkin_event import CheckinEvent
from app.models.engagement_record import EngagementRecord
from app.schemas.engagement_record import (
    CheckinEventOut,
    EngagementRecordOut,
    EngagementRecordUpdate,
    SubscriptionChange,
)
from app.schemas.reward import RewardInstanceOut
from app.services import engagement_store, reward_catalog
from app.services.phone_normalizer import normalize_phone


router = APIRouter(prefix="/customers", tags=["customers"])


@router.get("", response_model=list[EngagementRecordOut])
def list_customers(
    business: Business = Depends(get_active_business),
    subscription_state: str | None = None,
    include_deleted: bool = False,
    limit: int = Query(default=100, le=1000),
    offset: int = 0,
    db: Session = Depends(get_db),
):
    q = db.query(EngagementRecord).filter(EngagementRecord.business_id == business.id)
    if not include_deleted:
        q = q.filter(EngagementRecord.deleted.is_(False))
    if subscription_state:
        q = q.filter(EngagementRecord.subscription_state == subscription_state.upper())
    return q.order_by(EngagementRecord.created_at.desc()).offset(offset).limit(limit).all()


@router.get("/by-phone", response_model=EngagementRecordOut)
def get_customer_by_phone(
    phone: str,
    business: Business = Depends(get_active_business),
    db: Session = Depends(get_db),
):
    record = engagement_store.find(db, business.id, normalize_phone(phone))
    if not record or record.deleted:
        raise NotFound("Customer not found", code="CustomerNotFound")
    return record


@router.get("/win-back", response_model=list[EngagementRecordOut])
def list_win_back_candidates(
    inactive_days: int = Query(default=30, ge=1),
    limit: int = Query(default=500, le=5000),
    business: Business = Depends(get_active_business),
    db: Session = Depends(get_db),
):
    return engagement_store.win_back_candidates(db, business.id, inactive_days, limit=limit)


@router.get("/{customer_id}", response_model=EngagementRecordOut)
def get_customer(customer_id: UUID, db: Session = Depends(get_db)):
    return engagement_store.get(db, customer_id)


@router.patch("/{customer_id}", response_model=EngagementRecordOut)
def update_customer(customer_id: UUID, payload: EngagementRecordUpdate, db: Session = Depends(get_db)):
    fields = payload.model_dump(exclude_unset=True)
    if fields.get("marketing_consent") is None:
        fields.pop("marketing_consent", None)
    record = engagement_store.update_fields(db, customer_id, fields)
    db.commit()
    db.refresh(record)
    return record


@router.post("/{customer_id}/subscription", response_model=EngagementRecordOut)
def change_subscription(customer_id: UUID, payload: SubscriptionChange, db: Session = Depends(get_db)):
    engagement_store.get(db, customer_id)
    record = engagement_store.set_subscription_state(db, customer_id, payload.state, reason=payload.reason)
    db.commit()
    db.refresh(record)
    return record


@router.delete("/{customer_id}")
def delete_customer(customer_id: UUID, db: Session = Depends(get_db)):
    engagement_store.soft_delete(db, customer_id)
    db.commit()
    return {"deleted": True}


@router.get("/{customer_id}/events", response_model=list[CheckinEventOut])
def list_customer_events(
    customer_id: UUID,
    limit: int = Query(default=100, le=1000),
    db: Session = Depends(get_db),
):
    engagement_store.get(db, customer_id)
    return (
        db.query(CheckinEvent)
        .filter(CheckinEvent.engagement_record_id == customer_id)
        .order_by(CheckinEvent.occurred_at.desc())
        .limit(limit)
        .all()
    )


@router.get("/{customer_id}/rewards", response_model=list[RewardInstanceOut])
def list_customer_rewards(customer_id: UUID, db: Session = Depends(get_db)):
    engagement_store.get(db, customer_id)
    return reward_catalog.issued_for(db, customer_id)
