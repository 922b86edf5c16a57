import sqlite3
from datetime import datetime, timezone

import pytest

from bookystore.filings import FilingQueries
from bookystore.migrations import apply_schema
from bookystore.records import NotFoundError, ObjectSnapshot, StripeWebhookEvent
from bookystore.webhooks import WebhookQueries


@pytest.fixture
def connection():
    conn = sqlite3.connect(":memory:")
    apply_schema(conn)
    yield conn
    conn.close()


@pytest.fixture
def queries(connection):
    return WebhookQueries(connection)


def make_event(**overrides):
    values = dict(
        id="evt_123",
        event_type="charge.succeeded",
        livemode=False,
        api_version="2025-01-27.acacia",
        stripe_created_at=datetime(2026, 4, 2, 10, 0, tzinfo=timezone.utc),
        payload=b'{"id":"evt_123","type":"charge.succeeded"}',
    )
    values.update(overrides)
    return StripeWebhookEvent(**values)


def test_webhook_lifecycle(queries):
    event = make_event()
    assert queries.insert_webhook_event(event) is True
    assert queries.insert_webhook_event(event) is False

    queries.mark_webhook_failed(event.id, "boom")
    stored = queries.get_webhook_event(event.id)
    assert stored.processing_error == "boom"

    event.api_version = "2026-01-01"
    event.payload = b'{"id":"evt_123","retry":true}'
    queries.reset_webhook_for_retry(event)
    stored = queries.get_webhook_event(event.id)
    assert stored.api_version == "2026-01-01"
    assert stored.processed_at is None
    assert stored.processing_error is None
    assert stored.payload == b'{"id":"evt_123","retry":true}'

    queries.mark_webhook_processed(event.id)
    stored = queries.get_webhook_event(event.id)
    assert stored.processed_at is not None
    assert stored.processed_at.tzinfo is not None


def test_get_webhook_event_fields(queries):
    event = make_event(livemode=True)
    queries.insert_webhook_event(event)
    stored = queries.get_webhook_event("evt_123")
    assert stored.event_type == "charge.succeeded"
    assert stored.livemode is True
    assert stored.stripe_created_at == datetime(2026, 4, 2, 10, 0, tzinfo=timezone.utc)
    assert stored.received_at is not None


def test_empty_api_version_reads_back_empty(queries, connection):
    queries.insert_webhook_event(make_event(api_version=""))
    (raw,) = connection.execute(
        "SELECT api_version FROM stripe_webhook_events WHERE stripe_event_id = 'evt_123'"
    ).fetchone()
    assert raw is None
    assert queries.get_webhook_event("evt_123").api_version == ""


def test_get_missing_webhook_event_raises(queries):
    with pytest.raises(NotFoundError):
        queries.get_webhook_event("evt_missing")


def test_mark_processed_clears_error(queries):
    queries.insert_webhook_event(make_event())
    queries.mark_webhook_failed("evt_123", "boom")
    queries.mark_webhook_processed("evt_123")
    stored = queries.get_webhook_event("evt_123")
    assert stored.processing_error is None
    assert stored.processed_at is not None


def test_upsert_object_snapshot_overwrites_payload(queries, connection):
    snapshot = ObjectSnapshot(
        object_type="charge", object_id="ch_123", livemode=False, payload=b'{"id":"ch_123","version":1}'
    )
    queries.upsert_object_snapshot(snapshot)
    snapshot.payload = b'{"id":"ch_123","version":2}'
    snapshot.livemode = True
    queries.upsert_object_snapshot(snapshot)

    filings = FilingQueries(connection)
    stored = filings.get_object_snapshot("charge", "ch_123")
    assert b'"version":2' in stored.payload
    assert stored.livemode is True
    (count,) = connection.execute("SELECT COUNT(*) FROM stripe_object_snapshots").fetchone()
    assert count == 1

    with pytest.raises(NotFoundError):
        filings.get_object_snapshot("charge", "missing")