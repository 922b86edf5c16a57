import sqlite3
from datetime import date, datetime, timezone
from uuid import uuid4

import pytest

from bookystore.records import (
    AccountingFact,
    Direction,
    FactStatus,
    LockBusyError,
    NotFoundError,
    StripeWebhookEvent,
)
from bookystore.repository import Repository

COMPANY_ID = uuid4()
POSTING_DATE = date(2026, 4, 2)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "store.db"


@pytest.fixture
def repo(db_path):
    repository = Repository(db_path)
    yield repository
    repository.close()


def sample_fact(source_group_id, fact_type, account, direction, amount):
    return AccountingFact(
        id=uuid4(),
        bokio_company_id=COMPANY_ID,
        stripe_account_id="acct_123",
        source_group_id=source_group_id,
        source_object_type="charge",
        source_object_id="obj_123",
        fact_type=fact_type,
        posting_date=POSTING_DATE,
        source_currency="SEK",
        source_amount_minor=amount,
        amount_sek_ore=amount,
        bokio_account=account,
        direction=direction,
        status=FactStatus.PENDING,
        payload=b'{"fact":"sample"}',
    )


def sample_event():
    return StripeWebhookEvent(
        id="evt_123",
        event_type="charge.succeeded",
        stripe_created_at=datetime(2026, 4, 2, 10, 0, tzinfo=timezone.utc),
        api_version="2025-01-27.acacia",
        payload=b'{"id":"evt_123","type":"charge.succeeded"}',
    )


def test_advisory_lock_busy_then_reacquired(repo):
    lock = repo.acquire_advisory_lock(2026, 92)
    with pytest.raises(LockBusyError):
        repo.acquire_advisory_lock(2026, 92)
    lock.release()
    again = repo.acquire_advisory_lock(2026, 92)
    assert (again.key1, again.key2) == (2026, 92)
    again.release()


def test_advisory_lock_is_seen_by_other_connection(db_path, repo):
    lock = repo.acquire_advisory_lock(1, 2)
    other = Repository(db_path, create_schema=False)
    try:
        with pytest.raises(LockBusyError):
            other.acquire_advisory_lock(1, 2)
        lock.release()
        with other.acquire_advisory_lock(1, 2) as held:
            assert held.key2 == 2
    finally:
        other.close()


def test_advisory_lock_release_twice_fails(repo):
    lock = repo.acquire_advisory_lock(5, 6)
    lock.release()
    with pytest.raises(RuntimeError, match="not held"):
        lock.release()


def test_different_keys_do_not_conflict(repo):
    first = repo.acquire_advisory_lock(7, 1)
    second = repo.acquire_advisory_lock(7, 2)
    assert (first.key2, second.key2) == (1, 2)
    first.release()
    second.release()


@pytest.mark.parametrize("key", [2**31, -(2**31) - 1])
def test_advisory_lock_key_out_of_range(repo, key):
    with pytest.raises(ValueError):
        repo.acquire_advisory_lock(key, 0)


def test_transaction_commits(repo):
    with repo.transaction() as q:
        assert q.insert_webhook_event(sample_event()) is True
    stored = repo.queries().get_webhook_event("evt_123")
    assert stored.event_type == "charge.succeeded"


def test_transaction_rolls_back_on_error(repo):
    with pytest.raises(KeyError):
        with repo.transaction() as q:
            q.insert_webhook_event(sample_event())
            raise KeyError("boom")
    with pytest.raises(NotFoundError):
        repo.queries().get_webhook_event("evt_123")


def test_queries_accounting_lifecycle(repo):
    q = repo.queries()
    facts = [
        sample_fact("charge:ch_123:sale", "sale_receivable", 1580, Direction.DEBIT, 11900),
        sample_fact("charge:ch_123:sale", "sale_revenue", 3001, Direction.CREDIT, 11900),
    ]
    q.upsert_accounting_facts(facts)
    assert len(q.list_pending_accounting_facts(COMPANY_ID, POSTING_DATE)) == 2

    q.mark_facts_status([f.id for f in facts], FactStatus.POSTED)
    assert q.list_pending_accounting_facts(COMPANY_ID, POSTING_DATE) == []

    replacement = [sample_fact("charge:ch_123:sale", "sale_receivable", 1580, Direction.DEBIT, 11900)]
    with pytest.raises(ValueError):
        q.upsert_accounting_facts(replacement)


def test_ping_after_close_raises(db_path):
    repository = Repository(db_path)
    repository.ping()
    repository.close()
    with pytest.raises(sqlite3.ProgrammingError):
        repository.ping()


def test_context_manager_closes(db_path):
    with Repository(db_path) as repository:
        repository.ping()
    with pytest.raises(sqlite3.ProgrammingError):
        repository.ping()


def test_run_migrations_applies_each_file_once(db_path, repo, tmp_path):
    migrations = tmp_path / "migrations"
    migrations.mkdir()
    (migrations / "001_widgets.sql").write_text(
        "CREATE TABLE widgets (name TEXT PRIMARY KEY);", encoding="utf-8"
    )
    (migrations / "002_seed.sql").write_text(
        "INSERT INTO widgets (name) VALUES ('first');\n"
        "INSERT INTO stripe_webhook_events "
        "(stripe_event_id, event_type, livemode, stripe_created_at, received_at, payload) "
        "VALUES ('evt_migrated', 'charge.refunded', 0, "
        "'2026-04-02T10:00:00.000000+00:00', '2026-04-02T10:00:00.000000+00:00', '{}');",
        encoding="utf-8",
    )
    (migrations / "notes.txt").write_text("not sql", encoding="utf-8")

    repo.run_migrations(migrations)
    repo.run_migrations(migrations)

    stored = repo.queries().get_webhook_event("evt_migrated")
    assert stored.event_type == "charge.refunded"
    assert stored.stripe_created_at == datetime(2026, 4, 2, 10, 0, tzinfo=timezone.utc)

    reader = sqlite3.connect(db_path)
    try:
        rows = reader.execute("SELECT name FROM widgets").fetchall()
    finally:
        reader.close()
    assert rows == [("first",)]