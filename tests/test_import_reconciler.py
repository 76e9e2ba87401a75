from datetime import datetime, timedelta

from app.models.checkin_event import CheckinEvent
from app.models.engagement_record import EngagementRecord
from app.models.import_run import ImportRun
from app.models.reward_instance import RewardInstance
from app.services import engagement_store
from app.services.checkin_engine import process_checkin
from app.services.import_reconciler import (
    IMPORT_CHECKINS_PER_ROW,
    WELCOME_DELAY_SECONDS,
    ImportResult,
    import_rows,
    run_import,
)

from tests.conftest import NOW


class RecordingSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


def _record(db, phone):
    return db.query(EngagementRecord).filter(EngagementRecord.phone == phone).one()


def _phones(count, start=0):
    return [f"555{i:07d}" for i in range(start, start + count)]


def _queued_run(db, business, rows, **kwargs):
    run = ImportRun(business_id=business.id, status="QUEUED", total_rows=len(rows), rows=rows, **kwargs)
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def test_scenario_b_headerless_rows_are_deduplicated(db_session, business, make_template, dispatcher, sms_sender):
    make_template(threshold=IMPORT_CHECKINS_PER_ROW)
    rows = [
        ["+15551234567", "Jane"],
        ["5551234568", "Bob Smith"],
        ["+15551234567", "Jane Duplicate"],
    ]

    result = import_rows(db_session, rows, business, dispatcher=dispatcher, sleep=RecordingSleep(), now=NOW)

    assert result.total_rows == 3
    assert result.created == 2
    assert result.updated == 0
    assert result.skipped == 1
    assert result.errors == []

    jane = _record(db_session, "+15551234567")
    assert jane.name == "Jane"
    assert jane.checkin_count == IMPORT_CHECKINS_PER_ROW
    assert _record(db_session, "+15551234568").name == "Bob Smith"

    # reaching the threshold through an import never mints a reward
    assert db_session.query(RewardInstance).count() == 0

    events = db_session.query(CheckinEvent).all()
    assert len(events) == 2
    assert all(e.source == "IMPORT" and not e.counted_toward_threshold for e in events)
    assert all(e.increment == IMPORT_CHECKINS_PER_ROW for e in events)


def test_scenario_c_invalid_phone_is_reported_and_run_completes(db_session, business, dispatcher):
    run = _queued_run(db_session, business, [["123"]])

    result = run_import(db_session, run, business, run.rows, dispatcher=dispatcher, sleep=RecordingSleep(), now=NOW)

    assert result.skipped == 1
    assert result.created == 0
    assert result.errors == [
        {
            "row": 1,
            "phone": "123",
            "reason": "InvalidFormat",
            "message": "Invalid format (must be 10 digits or 1 followed by 10 digits)",
        }
    ]
    assert db_session.query(EngagementRecord).count() == 0

    db_session.refresh(run)
    assert run.status == "COMPLETED"
    assert run.progress == 100
    assert run.attempts == 1
    assert run.rows is None
    assert run.results["skipped"] == 1


def test_headered_rows_use_dates_and_import_defaults(db_session, business):
    rows = [
        {"Phone": "555-123-4567", "Name": "Jane", "Last Visit": "2024-01-15", "Signup Date": "2023-06-01", "Notes": "VIP"},
        {"Phone": "", "Name": "Nobody", "Last Visit": "", "Signup Date": "", "Notes": ""},
    ]

    result = import_rows(db_session, rows, business, send_welcome=False, now=NOW)

    assert result.created == 1
    assert result.errors[0]["row"] == 3
    assert result.errors[0]["reason"] == "MissingPhone"
    assert result.errors[0]["phone"] == "N/A"

    record = _record(db_session, "+15551234567")
    assert record.last_checkin_at == datetime(2024, 1, 15)
    assert record.first_checkin_at == datetime(2023, 6, 1)
    assert record.last_live_checkin_at is None
    assert record.notes == "VIP"
    assert record.imported_via_csv is True
    assert record.consent_given is True
    assert record.age_verified is True
    assert record.marketing_consent is True
    assert record.subscription_state == "ACTIVE"


def test_import_into_existing_record_merges_without_clobbering(db_session, business):
    process_checkin(db_session, phone="5551234567", business=business, now=NOW)
    record = _record(db_session, "+15551234567")
    engagement_store.update_fields(db_session, record.id, {"email": "kept@example.com"})
    db_session.commit()

    rows = [{"phone": "5551234567", "name": "Jane", "email": "new@example.com", "subscribed": "yes"}]
    result = import_rows(db_session, rows, business, send_welcome=False, now=NOW + timedelta(hours=1))

    assert result.created == 0
    assert result.updated == 1

    db_session.refresh(record)
    assert record.checkin_count == 1 + IMPORT_CHECKINS_PER_ROW
    assert record.name == "Jane"
    assert record.email == "kept@example.com"
    assert record.last_live_checkin_at == NOW
    assert record.last_checkin_at == NOW + timedelta(hours=1)


def test_import_never_touches_live_cooldown(db_session, business):
    import_rows(db_session, [["5551234567", "Jane"]], business, send_welcome=False, now=NOW)

    result = process_checkin(db_session, phone="5551234567", business=business, now=NOW)

    assert result.checkin_count == IMPORT_CHECKINS_PER_ROW + 1
    assert result.is_new_customer is False


def test_import_downgrades_active_but_never_blocked(db_session, business):
    import_rows(db_session, [["5551234567"], ["5551234568"]], business, send_welcome=False, now=NOW)
    blocked = _record(db_session, "+15551234568")
    engagement_store.set_subscription_state(db_session, blocked.id, "BLOCKED")
    db_session.commit()

    rows = [
        {"phone": "5551234567", "status": "unsubscribed"},
        {"phone": "5551234568", "status": "unsubscribed"},
    ]
    import_rows(db_session, rows, business, send_welcome=False, now=NOW)

    assert _record(db_session, "+15551234567").subscription_state == "UNSUBSCRIBED"
    assert _record(db_session, "+15551234568").subscription_state == "BLOCKED"


def test_import_restores_soft_deleted_record(db_session, business):
    import_rows(db_session, [["5551234567"]], business, send_welcome=False, now=NOW)
    record = _record(db_session, "+15551234567")
    engagement_store.soft_delete(db_session, record.id)
    db_session.commit()

    result = import_rows(db_session, [["5551234567"]], business, send_welcome=False, now=NOW)

    assert result.updated == 1
    db_session.refresh(record)
    assert record.deleted is False
    assert record.checkin_count == 2 * IMPORT_CHECKINS_PER_ROW


def test_welcome_fan_out_is_batched_and_rate_limited(db_session, business, dispatcher, sms_sender):
    rows = [[phone] for phone in _phones(120)]
    sleep = RecordingSleep()

    result = import_rows(db_session, rows, business, dispatcher=dispatcher, sleep=sleep, now=NOW)

    assert result.created == 120
    assert result.welcomes_sent == 120
    assert result.welcomes_failed == 0
    assert len(sms_sender.sent) == 120
    assert sleep.calls == [WELCOME_DELAY_SECONDS, WELCOME_DELAY_SECONDS]
    assert all(sender == business.sms_number for _, _, sender in sms_sender.sent)
    assert db_session.query(EngagementRecord).filter(EngagementRecord.welcome_sent_at.is_(None)).count() == 0


def test_welcome_only_for_eligible_new_active_records(db_session, business, dispatcher, sms_sender):
    process_checkin(db_session, phone="5551111111", business=business, now=NOW)
    sms_sender.outcomes["+15552222222"] = "unsubscribed"

    rows = [
        {"phone": "5551111111", "subscribed": "yes"},
        {"phone": "5552222222", "subscribed": "yes"},
        {"phone": "5553333333", "subscribed": "no"},
        {"phone": "+442079460958", "subscribed": "yes"},
        {"phone": "5554444444", "subscribed": "yes"},
    ]
    result = import_rows(db_session, rows, business, dispatcher=dispatcher, sleep=RecordingSleep(), now=NOW)

    assert result.created == 4
    assert result.updated == 1
    assert sorted(to for to, _, _ in sms_sender.sent) == ["+15552222222", "+15554444444"]
    assert result.welcomes_sent == 1
    assert result.welcomes_failed == 1
    assert _record(db_session, "+15554444444").welcome_sent_at == NOW
    assert _record(db_session, "+15552222222").welcome_sent_at is None


def test_send_welcome_disabled(db_session, business, dispatcher, sms_sender):
    result = import_rows(db_session, [["5551234567"]], business, send_welcome=False, dispatcher=dispatcher, now=NOW)

    assert result.created == 1
    assert sms_sender.sent == []


def test_progress_is_committed_per_batch(db_session, business):
    rows = [[phone] for phone in _phones(250)]
    run = _queued_run(db_session, business, rows)

    result = run_import(db_session, run, business, rows, now=NOW)

    assert result.created == 250
    db_session.refresh(run)
    assert run.processed_rows == 250
    assert run.progress == 100
    assert run.results["created"] == 250


def test_resumed_run_skips_committed_rows_and_keeps_dedup(db_session, business):
    phones = _phones(150)
    rows = [[phone] for phone in phones]
    rows[120] = [phones[5]]
    run = _queued_run(db_session, business, rows)
    run.processed_rows = 100
    run.results = ImportResult(total_rows=150, created=100).as_dict()
    db_session.commit()

    result = run_import(db_session, run, business, rows, now=NOW)

    assert db_session.query(EngagementRecord).count() == 49
    assert result.created == 149
    assert result.skipped == 1


def test_empty_rows(db_session, business):
    result = import_rows(db_session, [], business, now=NOW)
    assert result.as_dict() == {
        "totalRows": 0,
        "created": 0,
        "updated": 0,
        "skipped": 0,
        "welcomesSent": 0,
        "welcomesFailed": 0,
        "errors": [],
    }


def test_win_back_candidates_only_lapsed_active_customers(db_session, business):
    rows = [
        {"phone": "5551111111", "last visit": "2024-01-01", "status": ""},
        {"phone": "5552222222", "last visit": "2024-02-28", "status": ""},
        {"phone": "5553333333", "last visit": "2024-01-01", "status": "unsubscribed"},
    ]
    import_rows(db_session, rows, business, send_welcome=False, now=NOW)

    lapsed = engagement_store.win_back_candidates(db_session, business.id, 30, now=NOW)

    assert [r.phone for r in lapsed] == ["+15551111111"]
