from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable
from zoneinfo import ZoneInfo

from croniter import croniter
from sqlalchemy import and_, or_
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.db import SessionLocal
from app.errors import TransientStoreError
from app.models.business import Business
from app.models.import_run import ImportRun
from app.services import reward_catalog
from app.services.import_reconciler import fail_run, run_import
from app.services.notification_dispatcher import NotificationDispatcher, get_dispatcher
from app.timeutils import as_utc_aware, to_utc_naive, utcnow


logger = logging.getLogger(__name__)

RETRY_BASE_DELAY_SECONDS = 2
DEFAULT_REWARD_EXPIRY_CRON = "0 * * * *"

TRANSIENT_ERRORS = (OperationalError, TransientStoreError)


@dataclass
class WorkerPassStats:
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0


def retry_delay(attempt: int) -> timedelta:
    """Exponential backoff: 2s, 4s, 8s, ..."""
    return timedelta(seconds=RETRY_BASE_DELAY_SECONDS * (2 ** max(0, attempt - 1)))


def compute_next_run_at(*, base_utc: datetime, cron_expr: str, tz_name: str = "UTC") -> datetime:
    tz = ZoneInfo(tz_name)
    base_local = as_utc_aware(base_utc).astimezone(tz)
    it = croniter(cron_expr, base_local)
    next_local: datetime = it.get_next(datetime)
    return to_utc_naive(next_local)


# ============================================================
# CLAIM
# ============================================================
def _due_filter(q, now: datetime, lock_ttl_seconds: int):
    lock_expired_before = now - timedelta(seconds=int(lock_ttl_seconds))
    queued = and_(
        ImportRun.status == "QUEUED",
        or_(ImportRun.next_attempt_at.is_(None), ImportRun.next_attempt_at <= now),
        or_(ImportRun.locked_at.is_(None), ImportRun.locked_at < lock_expired_before),
    )
    # a worker died or lost the store mid-run; inline imports never hold a lock
    abandoned = and_(
        ImportRun.status == "PROCESSING",
        ImportRun.locked_at.isnot(None),
        ImportRun.locked_at < lock_expired_before,
    )
    return q.filter(or_(queued, abandoned))


def claim_due_runs(
    db: Session,
    *,
    now: datetime,
    worker_id: str,
    batch_size: int,
    lock_ttl_seconds: int,
) -> list[ImportRun]:
    q = _due_filter(db.query(ImportRun), now, lock_ttl_seconds)
    runs = (
        q.order_by(ImportRun.created_at.asc())
        .with_for_update(skip_locked=True)
        .limit(batch_size)
        .all()
    )

    for run in runs:
        run.locked_at = now
        run.locked_by = worker_id

    return runs


# ============================================================
# EXECUTE
# ============================================================
def execute_run(
    db: Session,
    run: ImportRun,
    *,
    dispatcher: NotificationDispatcher | None = None,
    sleep: Callable[[float], None] = time.sleep,
    now: datetime | None = None,
) -> str:
    """
    Runs one claimed import and returns the resulting status.

    Transient store failures put the run back in the queue with a backoff
    until ``max_attempts`` is used up; anything else fails it for good.
    """
    if now is None:
        now = utcnow()

    business = db.query(Business).filter(Business.id == run.business_id).first()
    if not business:
        fail_run(db, run, "Business not found", now)
        return run.status

    if run.status == "PROCESSING" and (run.attempts or 0) >= (run.max_attempts or 1):
        logger.error(
            "abandoned import run has no attempts left",
            extra={"import_run_id": str(run.id), "attempts": run.attempts},
        )
        fail_run(db, run, "Retries exhausted: worker lock expired", now)
        return run.status

    try:
        run_import(db, run, business, run.rows or [], dispatcher=dispatcher, sleep=sleep, now=now)

    except TRANSIENT_ERRORS as e:
        db.rollback()
        # the rollback expired the run; re-read it before bookkeeping
        db.refresh(run)
        attempts = run.attempts or 0

        if attempts >= (run.max_attempts or 1):
            logger.error(
                "import run failed after retries",
                extra={"import_run_id": str(run.id), "attempts": attempts, "error": str(e)},
            )
            fail_run(db, run, f"Retries exhausted: {e}", now)
            return run.status

        run.status = "QUEUED"
        run.last_error = str(e)[:2000]
        run.next_attempt_at = now + retry_delay(attempts)
        db.commit()

        logger.warning(
            "import run requeued after transient error",
            extra={
                "import_run_id": str(run.id),
                "attempts": attempts,
                "next_attempt_at": run.next_attempt_at.isoformat(),
            },
        )
        return run.status

    except Exception as e:
        db.rollback()
        db.refresh(run)
        logger.exception("import run failed", extra={"import_run_id": str(run.id)})
        fail_run(db, run, str(e), now)
        return run.status

    return run.status


def process_due_runs(
    db: Session,
    *,
    worker_id: str,
    batch_size: int = 1,
    lock_ttl_seconds: int = 1800,
    dispatcher: NotificationDispatcher | None = None,
    sleep: Callable[[float], None] = time.sleep,
    now: datetime | None = None,
) -> WorkerPassStats:
    if now is None:
        now = utcnow()

    stats = WorkerPassStats()
    runs = claim_due_runs(
        db,
        now=now,
        worker_id=worker_id,
        batch_size=batch_size,
        lock_ttl_seconds=lock_ttl_seconds,
    )
    db.commit()
    stats.claimed = len(runs)

    for run in runs:
        logger.info(
            "running import",
            extra={"import_run_id": str(run.id), "business_id": str(run.business_id), "attempt": (run.attempts or 0) + 1},
        )
        try:
            status = execute_run(db, run, dispatcher=dispatcher, sleep=sleep, now=now)
        finally:
            run.locked_at = None
            run.locked_by = None
            db.commit()

        if status == "COMPLETED":
            stats.completed += 1
        elif status == "QUEUED":
            stats.retried += 1
        else:
            stats.failed += 1

    return stats


def sweep_expired_rewards(db: Session, now: datetime | None = None) -> int:
    expired = reward_catalog.expire_stale(db, now=now)
    db.commit()
    if expired:
        logger.info("expired stale rewards", extra={"expired": expired})
    return expired


# ============================================================
# LOOP
# ============================================================
def run_worker_loop(
    *,
    worker_id: str | None = None,
    batch_size: int = 1,
    lock_ttl_seconds: int = 1800,
    idle_sleep_seconds: int = 5,
    reward_expiry_cron: str = DEFAULT_REWARD_EXPIRY_CRON,
):
    if worker_id is None:
        worker_id = os.getenv("IMPORT_WORKER_ID") or os.getenv("HOSTNAME") or "worker"

    logger.info(
        "import worker started",
        extra={
            "worker_id": worker_id,
            "batch_size": batch_size,
            "lock_ttl_seconds": lock_ttl_seconds,
            "idle_sleep_seconds": idle_sleep_seconds,
            "reward_expiry_cron": reward_expiry_cron,
        },
    )

    dispatcher = get_dispatcher()
    next_sweep_at = utcnow()

    while True:
        now = utcnow()

        db = SessionLocal()
        try:
            if now >= next_sweep_at:
                try:
                    sweep_expired_rewards(db, now=now)
                except Exception:
                    db.rollback()
                    logger.exception("reward expiry sweep failed")
                # keep moving forward even on failure to avoid a tight retry loop
                next_sweep_at = compute_next_run_at(base_utc=now, cron_expr=reward_expiry_cron)

            stats = process_due_runs(
                db,
                worker_id=worker_id,
                batch_size=batch_size,
                lock_ttl_seconds=lock_ttl_seconds,
                dispatcher=dispatcher,
                now=now,
            )
        except OperationalError:
            # store unreachable; claimed runs are picked up again once their lock expires
            logger.exception("import worker pass aborted")
            stats = WorkerPassStats()
        finally:
            db.close()

        if stats.claimed:
            logger.info(
                "import worker pass finished",
                extra={
                    "claimed": stats.claimed,
                    "completed": stats.completed,
                    "retried": stats.retried,
                    "failed": stats.failed,
                },
            )
            continue

        logger.debug("no queued imports; sleeping", extra={"sleep_for_seconds": idle_sleep_seconds})
        time.sleep(idle_sleep_seconds)


def main():
    batch_size = int(os.getenv("IMPORT_WORKER_BATCH_SIZE") or "1")
    lock_ttl_seconds = int(os.getenv("IMPORT_WORKER_LOCK_TTL_SECONDS") or "1800")
    idle_sleep_seconds = int(os.getenv("IMPORT_WORKER_IDLE_SLEEP_SECONDS") or "5")
    reward_expiry_cron = os.getenv("REWARD_EXPIRY_CRON") or DEFAULT_REWARD_EXPIRY_CRON

    logging.basicConfig(level=os.getenv("LOG_LEVEL") or "INFO")

    run_worker_loop(
        batch_size=batch_size,
        lock_ttl_seconds=lock_ttl_seconds,
        idle_sleep_seconds=idle_sleep_seconds,
        reward_expiry_cron=reward_expiry_cron,
    )


if __name__ == "__main__":
    main()
