import logging
import secrets
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import AlreadyRedeemed, Expired, NotFound, RewardCodeExhausted
from app.models.engagement_record import EngagementRecord
from app.models.reward_instance import RewardInstance
from app.models.reward_template import RewardTemplate
from app.services import engagement_store
from app.timeutils import utcnow


logger = logging.getLogger(__name__)

# Issued rewards always use this window; Business.reward_expiry_days only
# seeds RewardTemplate.expiry_days when a template is created.
REWARD_INSTANCE_VALIDITY_DAYS = 7

CODE_PREFIX = "RW-"
CODE_LENGTH = 8
# no 0/O or 1/I, codes are read aloud at the counter
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
MAX_CODE_ATTEMPTS = 5


def generate_code() -> str:
    return CODE_PREFIX + "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def describe_terms(reward) -> str:
    if reward.discount_type == "PERCENTAGE":
        return f"{reward.discount_value:g}% off"
    if reward.discount_type == "FIXED":
        return f"${reward.discount_value:.2f} off"
    return "No discount"


# ============================================================
# TEMPLATES
# ============================================================
def active_template_for(db: Session, business_id):
    return (
        db.query(RewardTemplate)
        .filter(
            RewardTemplate.business_id == business_id,
            RewardTemplate.active.is_(True),
        )
        .order_by(RewardTemplate.priority.asc(), RewardTemplate.created_at.asc())
        .first()
    )


def normalize_discount(discount_type: str, discount_value: float) -> tuple[str, float]:
    discount_type = (discount_type or "NONE").upper()
    value = float(discount_value or 0)
    if discount_type == "NONE":
        return discount_type, 0.0
    if discount_type == "PERCENTAGE" and value > 100:
        return discount_type, 100.0
    return discount_type, value


# ============================================================
# MINT (called by the check-in engine on a threshold crossing)
# ============================================================
def mint_from_template(
    db: Session,
    template: RewardTemplate,
    record: EngagementRecord,
    *,
    now: datetime | None = None,
    source_checkin_event_id=None,
) -> RewardInstance:
    if now is None:
        now = utcnow()

    for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
        instance = RewardInstance(
            template_id=template.id,
            engagement_record_id=record.id,
            business_id=record.business_id,
            phone=record.phone,
            code=generate_code(),
            name=template.name,
            description=template.description,
            threshold=template.threshold,
            discount_type=template.discount_type,
            discount_value=template.discount_value,
            status="ISSUED",
            issued_at=now,
            expires_at=now + timedelta(days=REWARD_INSTANCE_VALIDITY_DAYS),
            source_checkin_event_id=source_checkin_event_id,
        )
        try:
            with db.begin_nested():
                db.add(instance)
                db.flush()
        except IntegrityError:
            logger.warning("reward code collision; retrying", extra={"attempt": attempt})
            continue

        logger.info(
            "reward minted",
            extra={
                "reward_id": str(instance.id),
                "template_id": str(template.id),
                "record_id": str(record.id),
                "code": instance.code,
            },
        )
        return instance

    raise RewardCodeExhausted(f"Could not generate a unique reward code after {MAX_CODE_ATTEMPTS} attempts")


# ============================================================
# REDEEM
# ============================================================
def redeem(db: Session, instance_id, *, now: datetime | None = None) -> RewardInstance:
    """
    One-way ISSUED -> REDEEMED. Redemption consumes the whole earned cycle,
    so the owning record's counter goes back to zero in the same transaction.
    """
    if now is None:
        now = utcnow()

    instance = (
        db.query(RewardInstance)
        .filter(RewardInstance.id == instance_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not instance:
        raise NotFound("Reward not found", code="RewardNotFound")

    if instance.status == "REDEEMED":
        raise AlreadyRedeemed("Reward already redeemed", redeemedAt=instance.redeemed_at.isoformat())
    if instance.status == "EXPIRED" or instance.expires_at <= now:
        raise Expired("Reward has expired", expiresAt=instance.expires_at.isoformat())

    instance.status = "REDEEMED"
    instance.redeemed_at = now

    engagement_store.set_counter(db, instance.engagement_record_id, 0)

    db.flush()

    logger.info(
        "reward redeemed",
        extra={"reward_id": str(instance.id), "record_id": str(instance.engagement_record_id)},
    )
    return instance


def find_by_code(db: Session, business_id, code: str) -> RewardInstance:
    instance = (
        db.query(RewardInstance)
        .filter(
            RewardInstance.business_id == business_id,
            RewardInstance.code == (code or "").strip().upper(),
        )
        .first()
    )
    if not instance:
        raise NotFound("Reward not found", code="RewardNotFound")
    return instance


def issued_for(db: Session, record_id):
    return (
        db.query(RewardInstance)
        .filter(RewardInstance.engagement_record_id == record_id)
        .order_by(RewardInstance.issued_at.desc())
        .all()
    )


# ============================================================
# EXPIRE (scheduled sweep)
# ============================================================
def expire_stale(db: Session, now: datetime | None = None) -> int:
    if now is None:
        now = utcnow()

    expired = (
        db.query(RewardInstance)
        .filter(RewardInstance.status == "ISSUED")
        .filter(RewardInstance.expires_at <= now)
        .all()
    )

    for instance in expired:
        instance.status = "EXPIRED"

    db.flush()
    return len(expired)
