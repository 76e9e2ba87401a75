from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.db import get_db
from app.deps.business import get_active_business, load_business
from app.errors import NotFound
from app.models.business import Business
from app.models.engagement_record import EngagementRecord
from app.models.reward_instance import RewardInstance
from app.models.reward_template import RewardTemplate
from app.schemas.reward import (
    RewardInstanceOut,
    RewardRedeemOut,
    RewardTemplateCreate,
    RewardTemplateOut,
    RewardTemplateUpdate,
)
from app.services import reward_catalog


templates_router = APIRouter(prefix="/reward-templates", tags=["rewards"])
router = APIRouter(prefix="/rewards", tags=["rewards"])


def _get_template(db: Session, template_id: UUID) -> RewardTemplate:
    template = db.query(RewardTemplate).filter(RewardTemplate.id == template_id).first()
    if not template:
        raise NotFound("Reward template not found", code="RewardTemplateNotFound")
    return template


# ============================================================
# TEMPLATES
# ============================================================
@templates_router.get("", response_model=list[RewardTemplateOut])
def list_templates(
    business: Business = Depends(get_active_business),
    active: bool | None = None,
    db: Session = Depends(get_db),
):
    q = db.query(RewardTemplate).filter(RewardTemplate.business_id == business.id)
    if active is not None:
        q = q.filter(RewardTemplate.active.is_(active))
    return q.order_by(RewardTemplate.priority.asc(), RewardTemplate.created_at.asc()).all()


@templates_router.post("", response_model=RewardTemplateOut, status_code=201)
def create_template(payload: RewardTemplateCreate, db: Session = Depends(get_db)):
    business = load_business(db, business_id=payload.business_id)
    discount_type, discount_value = reward_catalog.normalize_discount(payload.discount_type, payload.discount_value)

    template = RewardTemplate(
        business_id=business.id,
        name=payload.name,
        description=payload.description,
        threshold=payload.threshold,
        discount_type=discount_type,
        discount_value=discount_value,
        priority=payload.priority,
        expiry_days=payload.expiry_days or business.reward_expiry_days,
        active=payload.active,
    )
    db.add(template)
    db.commit()
    db.refresh(template)
    return template


@templates_router.get("/{template_id}", response_model=RewardTemplateOut)
def get_template(template_id: UUID, db: Session = Depends(get_db)):
    return _get_template(db, template_id)


@templates_router.patch("/{template_id}", response_model=RewardTemplateOut)
def update_template(template_id: UUID, payload: RewardTemplateUpdate, db: Session = Depends(get_db)):
    template = _get_template(db, template_id)

    data = payload.model_dump(exclude_unset=True)
    for k, v in data.items():
        if v is None and k != "description":
            continue
        setattr(template, k, v)

    template.discount_type, template.discount_value = reward_catalog.normalize_discount(
        template.discount_type, template.discount_value
    )
    db.commit()
    db.refresh(template)
    return template


@templates_router.delete("/{template_id}")
def delete_template(template_id: UUID, db: Session = Depends(get_db)):
    template = _get_template(db, template_id)

    in_use = db.query(RewardInstance.id).filter(RewardInstance.template_id == template.id).first()
    if in_use:
        # issued rewards keep pointing at it
        template.active = False
        db.commit()
        return {"deleted": False, "deactivated": True}

    db.delete(template)
    db.commit()
    return {"deleted": True, "deactivated": False}


# ============================================================
# INSTANCES
# ============================================================
@router.get("/lookup", response_model=RewardInstanceOut)
def lookup_reward(
    code: str = Query(...),
    business: Business = Depends(get_active_business),
    db: Session = Depends(get_db),
):
    return reward_catalog.find_by_code(db, business.id, code)


@router.post("/expire")
def expire_rewards(db: Session = Depends(get_db)):
    expired = reward_catalog.expire_stale(db)
    db.commit()
    return {"expired": expired}


@router.get("/{reward_id}", response_model=RewardInstanceOut)
def get_reward(reward_id: UUID, db: Session = Depends(get_db)):
    instance = db.query(RewardInstance).filter(RewardInstance.id == reward_id).first()
    if not instance:
        raise NotFound("Reward not found", code="RewardNotFound")
    return instance


@router.post("/{reward_id}/redeem", response_model=RewardRedeemOut)
def redeem_reward(reward_id: UUID, db: Session = Depends(get_db)):
    try:
        instance = reward_catalog.redeem(db, reward_id)
        db.commit()
    except Exception:
        db.rollback()
        raise

    record = db.query(EngagementRecord).filter(EngagementRecord.id == instance.engagement_record_id).one()
    return RewardRedeemOut(
        reward=RewardInstanceOut.model_validate(instance),
        checkin_count=record.checkin_count,
    )
