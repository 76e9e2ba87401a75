import uuid
from datetime import datetime, timedelta

from sqlalchemy.exc import OperationalError

from app.models.engagement_record import EngagementRecord
from app.models.import_run import ImportRun
from app.services import engagement_store, import_reconciler, reward_catalog
from app.services.import_worker import compute_next_run_at, process_due_runs, retry_delay, sweep_expired_rewards

from tests.conftest import NOW


def _no_sleep(seconds):
    return None


def _queued_run(db, business_id, rows, **kwargs):
    run = ImportRun(business_id=business_id, status="QUEUED", total_rows=len(rows), rows=rows, **kwargs)
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def test_retry_delay_is_exponential():
    assert retry_delay(1) == timedelta(seconds=2)
    assert retry_delay(2) == timedelta(seconds=4)
    assert retry_delay(3) == timedelta(seconds=8)


def test_compute_next_run_at_from_cron():
    assert compute_next_run_at(base_utc=NOW, cron_expr="0 * * * *") == datetime(2024, 3, 1, 13, 0, 0)
    assert compute_next_run_at(base_utc=NOW, cron_expr="30 2 * * *") == datetime(2024, 3, 2, 2, 30, 0)


def test_worker_completes_queued_run(db_session, business, dispatcher, sms_sender):
    run = _queued_run(db_session, business.id, [["5551234567", "Jane"], ["5551234568", "Bob"]])

    stats = process_due_runs(db_session, worker_id="w1", dispatcher=dispatcher, sleep=_no_sleep, now=NOW)

    assert stats.claimed == 1
    assert stats.completed == 1
    db_session.refresh(run)
    assert run.status == "COMPLETED"
    assert run.locked_at is None
    assert run.locked_by is None
    assert run.results["created"] == 2
    assert run.results["welcomesSent"] == 2
    assert db_session.query(EngagementRecord).count() == 2
    assert len(sms_sender.sent) == 2


def test_worker_skips_runs_locked_by_another_worker(db_session, business):
    run = _queued_run(db_session, business.id, [["5551234567"]], locked_at=NOW, locked_by="other")

    stats = process_due_runs(db_session, worker_id="w1", lock_ttl_seconds=600, sleep=_no_sleep, now=NOW)
    assert stats.claimed == 0

    stats = process_due_runs(
        db_session, worker_id="w1", lock_ttl_seconds=600, sleep=_no_sleep, now=NOW + timedelta(minutes=11)
    )
    assert stats.claimed == 1
    db_session.refresh(run)
    assert run.status == "COMPLETED"


def test_transient_errors_are_retried_with_backoff_then_fail(db_session, business, monkeypatch):
    def _store_down(*args, **kwargs):
        raise OperationalError("UPDATE engagement_records", {}, Exception("connection refused"))

    monkeypatch.setattr(import_reconciler, "import_rows", _store_down)
    run = _queued_run(db_session, business.id, [["5551234567"]])

    stats = process_due_runs(db_session, worker_id="w1", sleep=_no_sleep, now=NOW)
    assert stats.retried == 1
    db_session.refresh(run)
    assert run.status == "QUEUED"
    assert run.attempts == 1
    assert run.next_attempt_at == NOW + timedelta(seconds=2)
    assert "connection refused" in run.last_error

    # not due yet
    assert process_due_runs(db_session, worker_id="w1", sleep=_no_sleep, now=NOW + timedelta(seconds=1)).claimed == 0

    second = NOW + timedelta(seconds=2)
    assert process_due_runs(db_session, worker_id="w1", sleep=_no_sleep, now=second).retried == 1
    db_session.refresh(run)
    assert run.attempts == 2
    assert run.next_attempt_at == second + timedelta(seconds=4)

    third = second + timedelta(seconds=4)
    assert process_due_runs(db_session, worker_id="w1", sleep=_no_sleep, now=third).failed == 1
    db_session.refresh(run)
    assert run.status == "FAILED"
    assert run.attempts == 3
    assert run.last_error.startswith("Retries exhausted")
    assert run.completed_at == third


def test_non_transient_error_fails_immediately(db_session, business, monkeypatch):
    def _broken(*args, **kwargs):
        raise ValueError("unexpected row payload")

    monkeypatch.setattr(import_reconciler, "import_rows", _broken)
    run = _queued_run(db_session, business.id, [["5551234567"]])

    stats = process_due_runs(db_session, worker_id="w1", sleep=_no_sleep, now=NOW)

    assert stats.failed == 1
    db_session.refresh(run)
    assert run.status == "FAILED"
    assert run.last_error == "unexpected row payload"
    assert run.results["errors"][-1]["reason"] == "unexpected row payload"
    assert run.rows is None


def test_run_for_missing_business_fails(db_session):
    run = _queued_run(db_session, uuid.uuid4(), [["5551234567"]])

    stats = process_due_runs(db_session, worker_id="w1", sleep=_no_sleep, now=NOW)

    assert stats.failed == 1
    db_session.refresh(run)
    assert run.status == "FAILED"
    assert run.last_error == "Business not found"


def test_sweep_expired_rewards(db_session, business, make_template):

    record, _ = engagement_store.find_or_create(db_session, "+15551234567", business.id)
    template = make_template(threshold=1)
    reward = reward_catalog.mint_from_template(db_session, template, record, now=NOW)
    db_session.commit()

    assert sweep_expired_rewards(db_session, now=NOW + timedelta(days=30)) == 1
    db_session.refresh(reward)
    assert reward.status == "EXPIRED"


def _processing_run(db, business_id, rows, **kwargs):
    run = ImportRun(business_id=business_id, status="PROCESSING", total_rows=len(rows), rows=rows, **kwargs)
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def test_abandoned_processing_run_is_reclaimed_after_lock_ttl(db_session, business):
    stale = _processing_run(
        db_session, business.id, [["5551234567"], ["5551234568"]],
        attempts=1, locked_at=NOW - timedelta(hours=5), locked_by="dead-worker",
    )
    busy = _processing_run(
        db_session, business.id, [["5551234569"]],
        attempts=1, locked_at=NOW - timedelta(minutes=1), locked_by="busy-worker",
    )
    inline = _processing_run(db_session, business.id, [["5551234570"]], attempts=1)

    stats = process_due_runs(db_session, worker_id="w1", lock_ttl_seconds=1800, sleep=_no_sleep, now=NOW)

    assert stats.claimed == 1
    assert stats.completed == 1
    db_session.refresh(stale)
    assert stale.status == "COMPLETED"
    assert stale.attempts == 2
    assert stale.results["created"] == 2
    db_session.refresh(busy)
    db_session.refresh(inline)
    assert busy.status == "PROCESSING"
    assert busy.locked_by == "busy-worker"
    assert inline.status == "PROCESSING"


def test_abandoned_run_without_attempts_left_fails(db_session, business):
    run = _processing_run(
        db_session, business.id, [["5551234567"]],
        attempts=3, locked_at=NOW - timedelta(hours=5), locked_by="dead-worker",
    )

    stats = process_due_runs(db_session, worker_id="w1", lock_ttl_seconds=1800, sleep=_no_sleep, now=NOW)

    assert stats.failed == 1
    db_session.refresh(run)
    assert run.status == "FAILED"
    assert run.last_error == "Retries exhausted: worker lock expired"
    assert run.rows is None
    assert run.locked_at is None
    assert db_session.query(EngagementRecord).count() == 0
