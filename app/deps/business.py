from uuid import UUID

from fastapi import Depends, Header, Query
from sqlalchemy.orm import Session

from app.db import get_db
from app.errors import NotFound, ValidationError
from app.models.business import Business


def load_business(db: Session, *, business_id=None, slug: str | None = None) -> Business:
    q = db.query(Business)
    if business_id:
        try:
            business_id = business_id if isinstance(business_id, UUID) else UUID(str(business_id))
        except ValueError:
            raise NotFound("Business not found", code="BusinessNotFound")
        business = q.filter(Business.id == business_id).first()
    elif slug:
        business = q.filter(Business.slug == slug.strip().lower()).first()
    else:
        raise ValidationError("Missing business context. Provide businessId or business slug.", code="MissingBusiness")

    if not business:
        raise NotFound("Business not found", code="BusinessNotFound")
    return business


def get_active_business(
    business_query: str | None = Query(default=None, alias="businessId"),
    x_business: str | None = Header(default=None, alias="X-Business-Id"),
    db: Session = Depends(get_db),
) -> Business:
    return load_business(db, business_id=x_business or business_query)
