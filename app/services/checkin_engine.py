"""
Real-time check-in state machine.

One call is one unit of work against one engagement record:

    normalize -> resolve/create -> subscription gate -> threshold
    -> cooldown -> increment -> threshold crossing -> notification intents

The record row stays locked from resolution until the final commit, so two
concurrent check-ins for the same phone are applied one after the other and
the post-increment counter that drives reward issuance is authoritative.
Notifications are returned as intents and dispatched by the caller after the
response; nothing in here depends on delivery.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from math import ceil

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.errors import (
    AgeRequirementNotMet,
    InCooldown,
    LoyaltyError,
    SubscriptionBlocked,
    SubscriptionUnsubscribed,
    TransientStoreError,
)
from app.models.business import Business
from app.models.reward_instance import RewardInstance
from app.services import engagement_store, reward_catalog
from app.services.notification_dispatcher import NotificationIntent
from app.services.phone_normalizer import normalize_phone
from app.timeutils import utcnow


logger = logging.getLogger(__name__)


@dataclass
class CheckinResult:
    record_id: str
    phone: str
    business_name: str
    checkin_count: int
    threshold: int
    checkins_until_reward: int
    subscription_state: str
    is_new_customer: bool
    cooldown_seconds: int
    next_checkin_available_at: datetime
    reward: RewardInstance | None = None
    notifications: list[NotificationIntent] = field(default_factory=list)


def checkins_until_reward(count: int, threshold: int) -> int:
    # a count sitting exactly on a multiple starts a fresh cycle
    return threshold - (count % threshold)


def is_threshold_crossing(count: int, threshold: int) -> bool:
    return count > 0 and count % threshold == 0


def cooldown_window(business: Business) -> timedelta:
    return timedelta(hours=float(business.checkin_cooldown_hours))


def format_wait(remaining: timedelta) -> str:
    total_minutes = ceil(remaining.total_seconds() / 60)
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours}h {minutes}m"


def _age_on(dob: date, today: date) -> int:
    return today.year - dob.year - ((today.month, today.day) < (dob.month, dob.day))


def _check_age_gate(business: Business, date_of_birth: date | None, now: datetime):
    if not business.age_gate_enabled or date_of_birth is None:
        return
    min_age = business.age_gate_min_age or 18
    if _age_on(date_of_birth, now.date()) < min_age:
        raise AgeRequirementNotMet(f"You must be {min_age}+ to check in", minAge=min_age)


def _live_defaults(now: datetime, date_of_birth: date | None) -> dict:
    # a live check-in at the kiosk is an explicit opt-in by the customer
    return {
        "consent_given": True,
        "consent_at": now,
        "marketing_consent": True,
        "first_checkin_at": now,
        "age_verified": date_of_birth is not None,
        "age_verified_at": now if date_of_birth is not None else None,
    }


def _reject_attempt(db: Session, business: Business, record, now: datetime, reason: str):
    engagement_store.append_event(
        db,
        business_id=business.id,
        record=record,
        phone=record.phone,
        source="KIOSK",
        occurred_at=now,
        counted=False,
        details={"rejected": reason, "subscriptionState": record.subscription_state},
    )
    db.commit()


def _welcome_body(business: Business) -> str:
    if business.welcome_message:
        return business.welcome_message
    return f"Welcome to {business.name}! Thanks for checking in. Reply STOP to unsubscribe or HELP for support."


def _progress_body(business: Business, remaining: int) -> str:
    noun = "check-in" if remaining == 1 else "check-ins"
    return f"{business.name}: Thanks for checking in! {remaining} more {noun} until your next reward."


def _reward_body(business: Business, reward: RewardInstance, count: int) -> str:
    terms = reward_catalog.describe_terms(reward)
    return (
        f"{business.name}: Congrats! After {count} check-ins you've unlocked {reward.name} ({terms}). "
        f"Use code {reward.code}. Valid until {reward.expires_at:%b %d, %Y}."
    )


def process_checkin(
    db: Session,
    *,
    phone: str,
    business: Business,
    date_of_birth: date | None = None,
    now: datetime | None = None,
) -> CheckinResult:
    if now is None:
        now = utcnow()

    normalized = normalize_phone(phone)
    _check_age_gate(business, date_of_birth, now)

    try:
        return _apply_checkin(db, normalized, business, date_of_birth, now)
    except LoyaltyError:
        db.rollback()
        raise
    except OperationalError as e:
        db.rollback()
        logger.exception("store unavailable during check-in", extra={"business_id": str(business.id)})
        raise TransientStoreError("Store temporarily unavailable, please retry") from e
    except Exception:
        db.rollback()
        raise


def _apply_checkin(db: Session, phone: str, business: Business, date_of_birth: date | None, now: datetime) -> CheckinResult:
    record, created = engagement_store.find_or_create(
        db, phone, business.id, defaults=_live_defaults(now, date_of_birth)
    )
    record = engagement_store.lock(db, record.id)

    # ------------------------------------------------------------
    # Effective threshold, resolved before any gate so a rejection
    # can still report progress
    # ------------------------------------------------------------
    template = reward_catalog.active_template_for(db, business.id)
    threshold = template.threshold if template else int(business.reward_threshold)
    window = cooldown_window(business)

    # ------------------------------------------------------------
    # Subscription gate (blocked > unsubscribed > cooldown)
    # ------------------------------------------------------------
    if record.subscription_state == "BLOCKED":
        _reject_attempt(db, business, record, now, "BLOCKED")
        raise SubscriptionBlocked(
            "Your account has been blocked. Please contact the business for assistance.",
            checkinCount=record.checkin_count,
            threshold=threshold,
            checkinsUntilReward=checkins_until_reward(record.checkin_count, threshold),
        )
    if record.subscription_state == "UNSUBSCRIBED":
        _reject_attempt(db, business, record, now, "UNSUBSCRIBED")
        raise SubscriptionUnsubscribed(
            "You have opted out of this service. Reply START to resubscribe first.",
            checkinCount=record.checkin_count,
            threshold=threshold,
            checkinsUntilReward=checkins_until_reward(record.checkin_count, threshold),
        )
    if record.subscription_state == "INVALID":
        # a live check-in proves the number is reachable again
        record.subscription_state = "ACTIVE"

    # ------------------------------------------------------------
    # Cooldown
    # ------------------------------------------------------------
    last_live = record.last_live_checkin_at
    if last_live is not None and now - last_live < window:
        remaining = last_live + window - now
        available_at = last_live + window
        engagement_store.append_event(
            db,
            business_id=business.id,
            record=record,
            phone=phone,
            source="COOLDOWN_BLOCK",
            occurred_at=now,
            counted=False,
            details={
                "remainingSeconds": remaining.total_seconds(),
                "lastLiveCheckinAt": last_live.isoformat(),
            },
        )
        db.commit()

        logger.info(
            "check-in rejected by cooldown",
            extra={"record_id": str(record.id), "remaining_seconds": remaining.total_seconds()},
        )
        raise InCooldown(
            f"You can earn your next point in {format_wait(remaining)}",
            remainingSeconds=remaining.total_seconds(),
            nextCheckinAvailableAt=available_at.isoformat(),
            checkinCount=record.checkin_count,
            threshold=threshold,
            checkinsUntilReward=checkins_until_reward(record.checkin_count, threshold),
        )

    # ------------------------------------------------------------
    # Counted check-in
    # ------------------------------------------------------------
    if date_of_birth is not None and not record.age_verified:
        record.age_verified = True
        record.age_verified_at = now
    if record.first_checkin_at is None:
        record.first_checkin_at = now

    record = engagement_store.atomic_increment(db, record.id, 1, now, live=True)
    count = record.checkin_count

    event = engagement_store.append_event(
        db,
        business_id=business.id,
        record=record,
        phone=phone,
        source="KIOSK",
        occurred_at=now,
        counted=True,
        increment=1,
        details={"dateOfBirthProvided": date_of_birth is not None},
    )

    intents: list[NotificationIntent] = []
    if created:
        intents.append(_intent(business, "WELCOME", phone, _welcome_body(business)))

    reward = None
    if is_threshold_crossing(count, threshold):
        if template is None:
            logger.warning(
                "threshold reached but business has no active reward template",
                extra={"business_id": str(business.id), "record_id": str(record.id), "count": count},
            )
            intents.append(_intent(business, "PROGRESS", phone, _progress_body(business, threshold)))
        else:
            reward = reward_catalog.mint_from_template(
                db, template, record, now=now, source_checkin_event_id=event.id
            )
            intents.append(_intent(business, "REWARD_ISSUED", phone, _reward_body(business, reward, count)))
    else:
        intents.append(
            _intent(business, "PROGRESS", phone, _progress_body(business, checkins_until_reward(count, threshold)))
        )

    db.commit()
    db.refresh(record)

    if not business.sms_enabled:
        logger.info("SMS disabled for business; dropping notifications", extra={"business_id": str(business.id)})
        intents = []

    logger.info(
        "check-in recorded",
        extra={
            "record_id": str(record.id),
            "business_id": str(business.id),
            "count": count,
            "threshold": threshold,
            "reward_id": str(reward.id) if reward else None,
            "new_customer": created,
        },
    )

    return CheckinResult(
        record_id=str(record.id),
        phone=phone,
        business_name=business.name,
        checkin_count=count,
        threshold=threshold,
        checkins_until_reward=checkins_until_reward(count, threshold),
        subscription_state=record.subscription_state,
        is_new_customer=created,
        cooldown_seconds=int(window.total_seconds()),
        next_checkin_available_at=now + window,
        reward=reward,
        notifications=intents,
    )


def _intent(business: Business, kind: str, phone: str, body: str) -> NotificationIntent:
    return NotificationIntent(
        kind=kind,
        phone=phone,
        body=body,
        business_id=str(business.id),
        sender=business.sms_number,
    )
