import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import NotFound, ValidationError
from app.models.checkin_event import CheckinEvent
from app.models.engagement_record import EngagementRecord
from app.services.phone_normalizer import country_code_for
from app.timeutils import utcnow


logger = logging.getLogger(__name__)

SUBSCRIPTION_STATES = {"ACTIVE", "UNSUBSCRIBED", "BLOCKED", "INVALID"}

# columns callers may set through update_fields
MUTABLE_FIELDS = {
    "name",
    "email",
    "notes",
    "marketing_consent",
    "consent_given",
    "consent_at",
    "age_verified",
    "age_verified_at",
    "first_checkin_at",
    "last_checkin_at",
    "subscription_state",
    "imported_via_csv",
    "welcome_sent_at",
}


def get(db: Session, record_id) -> EngagementRecord:
    record = db.query(EngagementRecord).filter(EngagementRecord.id == record_id).first()
    if not record:
        raise NotFound("Customer not found", code="CustomerNotFound")
    return record


def find(db: Session, business_id, phone: str):
    return (
        db.query(EngagementRecord)
        .filter(
            EngagementRecord.business_id == business_id,
            EngagementRecord.phone == phone,
        )
        .first()
    )


def find_or_create(db: Session, phone: str, business_id, defaults: dict | None = None):
    """
    Returns ``(record, created)``.

    The insert runs inside a savepoint so that losing a race against a
    concurrent creator only rolls back the insert; the unique index on
    (business_id, phone) decides the winner and the loser reads its row.
    """
    record = find(db, business_id, phone)
    if record:
        if record.deleted:
            record.deleted = False
            record.deleted_at = None
            logger.info(
                "restored soft-deleted engagement record",
                extra={"record_id": str(record.id), "business_id": str(business_id)},
            )
        return record, False

    record = EngagementRecord(
        business_id=business_id,
        phone=phone,
        country_code=country_code_for(phone),
        checkin_count=0,
        subscription_state="ACTIVE",
    )
    for key, value in (defaults or {}).items():
        setattr(record, key, value)

    try:
        with db.begin_nested():
            db.add(record)
            db.flush()
    except IntegrityError:
        existing = find(db, business_id, phone)
        if existing is None:
            raise
        logger.info(
            "engagement record created concurrently; using existing row",
            extra={"record_id": str(existing.id), "business_id": str(business_id)},
        )
        return existing, False

    return record, True


def lock(db: Session, record_id) -> EngagementRecord:
    return (
        db.query(EngagementRecord)
        .filter(EngagementRecord.id == record_id)
        .with_for_update()
        .populate_existing()
        .one()
    )


def atomic_increment(
    db: Session,
    record_id,
    delta: int,
    new_last_checkin_at: datetime,
    *,
    live: bool = False,
) -> EngagementRecord:
    """
    Increments in SQL so concurrent writers never lose an update, then reads
    the row back inside the same transaction.
    """
    if delta < 0:
        raise ValidationError("increment must be non-negative")

    # pending attribute changes would be discarded by the refresh below
    db.flush()

    values = {
        EngagementRecord.checkin_count: EngagementRecord.checkin_count + delta,
        EngagementRecord.last_checkin_at: new_last_checkin_at,
    }
    if live:
        values[EngagementRecord.last_live_checkin_at] = new_last_checkin_at

    db.query(EngagementRecord).filter(EngagementRecord.id == record_id).update(
        values, synchronize_session=False
    )
    return lock(db, record_id)


def set_counter(db: Session, record_id, value: int) -> EngagementRecord:
    if value < 0:
        raise ValidationError("checkin counter cannot be negative")

    db.flush()
    db.query(EngagementRecord).filter(EngagementRecord.id == record_id).update(
        {EngagementRecord.checkin_count: value}, synchronize_session=False
    )
    return lock(db, record_id)


def update_fields(db: Session, record_id, fields: dict) -> EngagementRecord:
    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise ValidationError(f"fields not updatable: {', '.join(sorted(unknown))}")
    if "subscription_state" in fields and fields["subscription_state"] not in SUBSCRIPTION_STATES:
        raise ValidationError("unknown subscription state")

    record = get(db, record_id)
    for key, value in fields.items():
        setattr(record, key, value)
    db.flush()
    return record


def set_subscription_state(db: Session, record_id, state: str, reason: str | None = None, now: datetime | None = None):
    if state not in SUBSCRIPTION_STATES:
        raise ValidationError("unknown subscription state")
    if now is None:
        now = utcnow()

    record = lock(db, record_id)
    previous = record.subscription_state
    record.subscription_state = state

    if state == "BLOCKED":
        record.blocked_at = now
        record.block_reason = reason or "Blocked by admin"
    elif previous == "BLOCKED":
        record.blocked_at = None
        record.block_reason = None

    db.flush()

    logger.info(
        "subscription state changed",
        extra={"record_id": str(record.id), "from": previous, "to": state},
    )
    return record


def soft_delete(db: Session, record_id, now: datetime | None = None) -> EngagementRecord:
    record = get(db, record_id)
    record.deleted = True
    record.deleted_at = now or utcnow()
    db.flush()
    return record


def append_event(
    db: Session,
    *,
    business_id,
    phone: str,
    source: str,
    occurred_at: datetime,
    record: EngagementRecord | None = None,
    counted: bool = False,
    increment: int = 0,
    import_run_id=None,
    details: dict | None = None,
) -> CheckinEvent:
    event = CheckinEvent(
        business_id=business_id,
        engagement_record_id=record.id if record is not None else None,
        phone=phone,
        source=source,
        counted_toward_threshold=counted,
        increment=increment,
        import_run_id=import_run_id,
        details=details,
        occurred_at=occurred_at,
    )
    db.add(event)
    db.flush()
    return event


def win_back_candidates(db: Session, business_id, inactive_days: int, now: datetime | None = None, limit: int = 500):
    if now is None:
        now = utcnow()
    cutoff = now - timedelta(days=int(inactive_days))

    return (
        db.query(EngagementRecord)
        .filter(EngagementRecord.business_id == business_id)
        .filter(EngagementRecord.subscription_state == "ACTIVE")
        .filter(EngagementRecord.marketing_consent.is_(True))
        .filter(EngagementRecord.deleted.is_(False))
        .filter(EngagementRecord.last_checkin_at.isnot(None))
        .filter(EngagementRecord.last_checkin_at < cutoff)
        .order_by(EngagementRecord.last_checkin_at.asc())
        .limit(limit)
        .all()
    )
