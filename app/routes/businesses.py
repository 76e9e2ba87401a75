from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db import get_db
from app.deps.business import load_business
from app.errors import StateConflict
from app.models.business import Business
from app.schemas.business import BusinessCreate, BusinessOut, BusinessUpdate


router = APIRouter(prefix="/businesses", tags=["businesses"])

NULLABLE_FIELDS = {"sms_number", "welcome_message"}


@router.post("", response_model=BusinessOut, status_code=201)
def create_business(payload: BusinessCreate, db: Session = Depends(get_db)):
    slug = payload.slug.strip().lower()
    if db.query(Business).filter(Business.slug == slug).first():
        raise StateConflict("Business slug already taken", code="SlugTaken", slug=slug)

    data = payload.model_dump()
    data["slug"] = slug
    business = Business(**data)
    db.add(business)
    db.commit()
    db.refresh(business)
    return business


@router.get("/{business_id}", response_model=BusinessOut)
def get_business(business_id: UUID, db: Session = Depends(get_db)):
    return load_business(db, business_id=business_id)


@router.get("/by-slug/{slug}", response_model=BusinessOut)
def get_business_by_slug(slug: str, db: Session = Depends(get_db)):
    return load_business(db, slug=slug)


@router.patch("/{business_id}", response_model=BusinessOut)
def update_business(business_id: UUID, payload: BusinessUpdate, db: Session = Depends(get_db)):
    business = load_business(db, business_id=business_id)
    for k, v in payload.model_dump(exclude_unset=True).items():
        if v is None and k not in NULLABLE_FIELDS:
            continue
        setattr(business, k, v)
    db.commit()
    db.refresh(business)
    return business
