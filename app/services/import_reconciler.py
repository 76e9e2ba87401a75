"""
Bulk reconciliation of historical customer rows into the engagement store.

The same pipeline serves inline (small files) and queued (large files)
imports; the caller decides which. Rows add a fixed number of historical
check-ins to the counter but never issue rewards and never touch the live
cooldown anchor, because backfilled history must not produce live-looking
artifacts such as reward codes with expiry dates.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Mapping, Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.errors import InvalidPhone
from app.models.business import Business
from app.models.checkin_event import CheckinEvent
from app.models.engagement_record import EngagementRecord
from app.models.import_run import ImportRun
from app.services import engagement_store
from app.services.column_strategies import ImportedRow, StrategySelector, select_column_strategy
from app.services.notification_dispatcher import DELIVERED, NotificationDispatcher, NotificationIntent
from app.services.phone_normalizer import normalize_phone
from app.timeutils import utcnow


logger = logging.getLogger(__name__)

# one imported row stands for several historical visits
IMPORT_CHECKINS_PER_ROW = 3
BATCH_SIZE = 100

WELCOME_BATCH_SIZE = 50
WELCOME_DELAY_SECONDS = 0.5
WELCOME_ELIGIBLE_PREFIXES = ("+1",)


@dataclass
class ImportResult:
    total_rows: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    welcomes_sent: int = 0
    welcomes_failed: int = 0
    errors: list[dict] = field(default_factory=list)

    def add_error(self, row: int, phone: Optional[str], reason: str, message: str | None = None):
        self.skipped += 1
        self.errors.append(
            {
                "row": row,
                "phone": phone or "N/A",
                "reason": reason,
                "message": message or reason,
            }
        )

    def as_dict(self) -> dict:
        return {
            "totalRows": self.total_rows,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "welcomesSent": self.welcomes_sent,
            "welcomesFailed": self.welcomes_failed,
            "errors": list(self.errors),
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "ImportResult":
        data = data or {}
        return cls(
            total_rows=int(data.get("totalRows") or 0),
            created=int(data.get("created") or 0),
            updated=int(data.get("updated") or 0),
            skipped=int(data.get("skipped") or 0),
            welcomes_sent=int(data.get("welcomesSent") or 0),
            welcomes_failed=int(data.get("welcomesFailed") or 0),
            errors=list(data.get("errors") or []),
        )


def _as_mapping(row) -> Mapping[str, str]:
    if isinstance(row, Mapping):
        return {str(k): ("" if v is None else str(v)) for k, v in row.items()}
    return {str(idx): ("" if v is None else str(v)) for idx, v in enumerate(row)}


# ============================================================
# PIPELINE
# ============================================================
def import_rows(
    db: Session,
    raw_rows,
    business: Business,
    *,
    send_welcome: bool = True,
    import_run: ImportRun | None = None,
    dispatcher: NotificationDispatcher | None = None,
    strategy_selector: StrategySelector = select_column_strategy,
    sleep: Callable[[float], None] = time.sleep,
    now: datetime | None = None,
    resume_from: int = 0,
    result: ImportResult | None = None,
) -> ImportResult:
    """
    Applies ``raw_rows`` batch by batch, committing after every batch.

    ``resume_from`` skips rows a previous attempt already committed; their
    phones still count as seen so in-file dedup stays correct.
    """
    if now is None:
        now = utcnow()

    rows = [_as_mapping(row) for row in raw_rows]
    if result is None:
        result = ImportResult()
    result.total_rows = len(rows)
    if not rows:
        return result

    strategy = strategy_selector(rows)
    # file line of the first data row
    first_line = 2 if strategy.has_header else 1

    seen_phones: set[str] = set()
    welcome_queue: list[tuple] = []

    if resume_from:
        for row in rows[:resume_from]:
            try:
                seen_phones.add(normalize_phone(strategy.extract(row).phone))
            except InvalidPhone:
                continue
        if import_run is not None and send_welcome:
            welcome_queue = _created_in_run(db, import_run)

    for start in range(resume_from, len(rows), BATCH_SIZE):
        batch = rows[start:start + BATCH_SIZE]

        for offset, row in enumerate(batch):
            line = start + offset + first_line
            fields = strategy.extract(row)
            created_record = _process_row(db, business, fields, line, seen_phones, result, import_run, now)
            if created_record is not None and send_welcome and _welcome_eligible(created_record):
                welcome_queue.append((created_record.id, created_record.phone))

        processed = min(start + BATCH_SIZE, len(rows))
        if import_run is not None:
            import_run.processed_rows = processed
            import_run.progress = min(100, round(processed * 100 / len(rows)))
            import_run.results = result.as_dict()
        db.commit()

        logger.info(
            "import batch committed",
            extra={
                "business_id": str(business.id),
                "import_run_id": str(import_run.id) if import_run is not None else None,
                "processed": processed,
                "total": len(rows),
            },
        )

    if welcome_queue:
        if dispatcher is None:
            logger.warning("welcome messages requested but no dispatcher configured")
        else:
            _send_welcomes(db, business, welcome_queue, dispatcher, result, sleep, now)

    return result


def _process_row(
    db: Session,
    business: Business,
    fields: ImportedRow,
    line: int,
    seen_phones: set,
    result: ImportResult,
    import_run: ImportRun | None,
    now: datetime,
) -> EngagementRecord | None:
    """Applies one row; returns the record only when the row created it."""
    try:
        phone = normalize_phone(fields.phone)
    except InvalidPhone as e:
        result.add_error(line, fields.phone, e.reason, e.message)
        return None

    if phone in seen_phones:
        logger.debug("skipping duplicate phone in file", extra={"phone": phone, "line": line})
        result.skipped += 1
        return None
    seen_phones.add(phone)

    try:
        with db.begin_nested():
            record, created = _upsert(db, business, phone, fields, line, import_run, now)
    except OperationalError:
        # store outage is a run-level failure, retried by the worker
        raise
    except Exception as e:
        logger.warning("import row failed", extra={"line": line, "phone": phone, "error": str(e)})
        result.add_error(line, fields.phone, type(e).__name__, str(e))
        return None

    if created:
        result.created += 1
        return record
    result.updated += 1
    return None


def _upsert(
    db: Session,
    business: Business,
    phone: str,
    fields: ImportedRow,
    line: int,
    import_run: ImportRun | None,
    now: datetime,
):
    visited_at = fields.last_checkin_at or now

    # Administrative bulk-import defaults: consent and age verification are
    # assumed on the business's behalf, unlike the live path where the
    # customer opts in at the kiosk.
    defaults = {
        "consent_given": True,
        "consent_at": now,
        "marketing_consent": True,
        "age_verified": True,
        "age_verified_at": now,
        "imported_via_csv": True,
        "first_checkin_at": fields.signup_at or now,
        "subscription_state": fields.subscription_state or "ACTIVE",
        "name": fields.name,
        "email": fields.email,
        "notes": fields.notes,
    }
    record, created = engagement_store.find_or_create(db, phone, business.id, defaults=defaults)

    if not created:
        _merge_metadata(record, fields)
        if fields.subscription_state == "UNSUBSCRIBED" and record.subscription_state == "ACTIVE":
            record.subscription_state = "UNSUBSCRIBED"
        if record.first_checkin_at is None:
            record.first_checkin_at = fields.signup_at or visited_at

    record = engagement_store.atomic_increment(db, record.id, IMPORT_CHECKINS_PER_ROW, visited_at)

    engagement_store.append_event(
        db,
        business_id=business.id,
        record=record,
        phone=phone,
        source="IMPORT",
        occurred_at=visited_at,
        counted=False,
        increment=IMPORT_CHECKINS_PER_ROW,
        import_run_id=import_run.id if import_run is not None else None,
        details={"line": line, "created": created},
    )
    return record, created


def _merge_metadata(record: EngagementRecord, fields: ImportedRow):
    # never clobber values that are already set
    for attr in ("name", "email", "notes"):
        value = getattr(fields, attr)
        if value and not getattr(record, attr):
            setattr(record, attr, value)


def _welcome_eligible(record: EngagementRecord) -> bool:
    if record.subscription_state != "ACTIVE" or record.welcome_sent_at is not None:
        return False
    return record.phone.startswith(WELCOME_ELIGIBLE_PREFIXES)


def _created_in_run(db: Session, import_run: ImportRun) -> list[tuple]:
    """Records an earlier attempt of this run created and still owes a welcome."""
    events = (
        db.query(CheckinEvent)
        .filter(CheckinEvent.import_run_id == import_run.id)
        .filter(CheckinEvent.source == "IMPORT")
        .order_by(CheckinEvent.created_at.asc())
        .all()
    )
    record_ids = [e.engagement_record_id for e in events if (e.details or {}).get("created")]
    if not record_ids:
        return []

    records = db.query(EngagementRecord).filter(EngagementRecord.id.in_(record_ids)).all()
    return [(r.id, r.phone) for r in records if _welcome_eligible(r)]


# ============================================================
# WELCOME FAN-OUT
# ============================================================
def _welcome_body(business: Business) -> str:
    if business.welcome_message:
        return business.welcome_message
    return (
        f"Welcome to {business.name}! You've been added to our loyalty program with "
        f"{IMPORT_CHECKINS_PER_ROW} check-ins. Reply STOP to unsubscribe."
    )


def _send_welcomes(
    db: Session,
    business: Business,
    queue: list[tuple],
    dispatcher: NotificationDispatcher,
    result: ImportResult,
    sleep: Callable[[float], None],
    now: datetime,
):
    if not business.sms_enabled:
        logger.info("SMS disabled for business; skipping import welcomes", extra={"business_id": str(business.id)})
        return

    body = _welcome_body(business)
    delivered_ids = []

    for start in range(0, len(queue), WELCOME_BATCH_SIZE):
        sub_batch = queue[start:start + WELCOME_BATCH_SIZE]
        for record_id, phone in sub_batch:
            intent = NotificationIntent(
                kind="IMPORT_WELCOME",
                phone=phone,
                body=body,
                business_id=str(business.id),
                sender=business.sms_number,
            )
            if dispatcher.dispatch(intent) == DELIVERED:
                result.welcomes_sent += 1
                delivered_ids.append(record_id)
            else:
                result.welcomes_failed += 1

        if start + WELCOME_BATCH_SIZE < len(queue):
            # outbound rate limit
            sleep(WELCOME_DELAY_SECONDS)

    if delivered_ids:
        db.query(EngagementRecord).filter(EngagementRecord.id.in_(delivered_ids)).update(
            {EngagementRecord.welcome_sent_at: now}, synchronize_session=False
        )
        db.commit()

    logger.info(
        "import welcome messages sent",
        extra={"sent": result.welcomes_sent, "failed": result.welcomes_failed, "business_id": str(business.id)},
    )


# ============================================================
# RUN LIFECYCLE (QUEUED -> PROCESSING -> COMPLETED | FAILED)
# ============================================================
def start_run(db: Session, import_run: ImportRun, now: datetime | None = None):
    import_run.status = "PROCESSING"
    import_run.started_at = now or utcnow()
    import_run.attempts = (import_run.attempts or 0) + 1
    db.commit()


def complete_run(db: Session, import_run: ImportRun, result: ImportResult, now: datetime | None = None):
    import_run.status = "COMPLETED"
    import_run.progress = 100
    import_run.results = result.as_dict()
    import_run.rows = None
    import_run.last_error = None
    import_run.completed_at = now or utcnow()
    db.commit()


def fail_run(db: Session, import_run: ImportRun, reason: str, now: datetime | None = None):
    import_run.status = "FAILED"
    import_run.last_error = reason[:2000]
    import_run.completed_at = now or utcnow()
    results = dict(import_run.results or ImportResult(total_rows=import_run.total_rows or 0).as_dict())
    results["errors"] = list(results.get("errors") or []) + [{"row": 0, "phone": "N/A", "reason": reason}]
    import_run.results = results
    import_run.rows = None
    db.commit()


def run_import(
    db: Session,
    import_run: ImportRun,
    business: Business,
    raw_rows,
    *,
    dispatcher: NotificationDispatcher | None = None,
    sleep: Callable[[float], None] = time.sleep,
    now: datetime | None = None,
) -> ImportResult:
    start_run(db, import_run, now)

    resume_from = import_run.processed_rows or 0
    previous = ImportResult.from_dict(import_run.results) if resume_from else None
    if resume_from:
        logger.info(
            "resuming import run",
            extra={"import_run_id": str(import_run.id), "resume_from": resume_from},
        )

    result = import_rows(
        db,
        raw_rows,
        business,
        send_welcome=import_run.send_welcome,
        import_run=import_run,
        dispatcher=dispatcher,
        sleep=sleep,
        now=now,
        resume_from=resume_from,
        result=previous,
    )

    complete_run(db, import_run, result)

    logger.info(
        "import run completed",
        extra={"import_run_id": str(import_run.id), "results": {k: v for k, v in result.as_dict().items() if k != "errors"}},
    )
    return result
