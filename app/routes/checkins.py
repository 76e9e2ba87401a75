from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from app.db import get_db
from app.deps.business import load_business
from app.schemas.checkin import CheckinOut, CheckinRequest, CooldownOut, NotificationOut
from app.schemas.reward import RewardInstanceOut
from app.services.checkin_engine import process_checkin
from app.services.notification_dispatcher import NotificationDispatcher, get_dispatcher


router = APIRouter(prefix="/checkins", tags=["checkins"])


@router.post("", response_model=CheckinOut)
def create_checkin(
    payload: CheckinRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    business = load_business(db, business_id=payload.business_id, slug=payload.business_slug)

    result = process_checkin(
        db,
        phone=payload.phone,
        business=business,
        date_of_birth=payload.date_of_birth,
    )

    # delivery happens after the response and never changes it
    if result.notifications:
        background_tasks.add_task(dispatcher.dispatch_all, result.notifications)

    return CheckinOut(
        customer_id=result.record_id,
        phone=result.phone,
        business_name=result.business_name,
        checkin_count=result.checkin_count,
        threshold=result.threshold,
        checkins_until_reward=result.checkins_until_reward,
        subscription_state=result.subscription_state,
        is_new_customer=result.is_new_customer,
        reward=RewardInstanceOut.model_validate(result.reward) if result.reward else None,
        cooldown=CooldownOut(
            active=False,
            window_seconds=result.cooldown_seconds,
            next_checkin_available_at=result.next_checkin_available_at,
        ),
        notifications=[NotificationOut(kind=n.kind, phone=n.phone) for n in result.notifications],
    )
