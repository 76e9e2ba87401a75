from app.models.engagement_record import EngagementRecord
from app.services import engagement_store


def test_find_or_create_reads_the_row_a_concurrent_creator_inserted(db_session, business, monkeypatch):
    existing, created = engagement_store.find_or_create(db_session, "+15551234567", business.id)
    db_session.commit()
    assert created is True

    real_find = engagement_store.find
    calls = []

    def find_missing_the_other_insert(db, business_id, phone):
        # the first lookup runs before the other transaction's insert is visible
        calls.append(phone)
        if len(calls) == 1:
            return None
        return real_find(db, business_id, phone)

    monkeypatch.setattr(engagement_store, "find", find_missing_the_other_insert)

    record, created = engagement_store.find_or_create(
        db_session, "+15551234567", business.id, defaults={"name": "Late Writer"}
    )
    db_session.commit()

    assert created is False
    assert record.id == existing.id
    assert record.name is None
    assert len(calls) == 2
    assert db_session.query(EngagementRecord).count() == 1


def test_find_or_create_restores_soft_deleted_record(db_session, business):
    record, _ = engagement_store.find_or_create(db_session, "+15551234567", business.id)
    engagement_store.soft_delete(db_session, record.id)
    db_session.commit()

    again, created = engagement_store.find_or_create(db_session, "+15551234567", business.id)

    assert created is False
    assert again.id == record.id
    assert again.deleted is False
