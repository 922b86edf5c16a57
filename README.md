# bookystore

`bookystore` is the storage layer of a bookkeeping service. The service turns
Stripe activity into daily journal entries for Bokio and prepares Swedish VAT
filings. This package keeps the service's records in an SQLite database, using
the standard library `sqlite3` module, and reads them back as dataclasses. It
has no third-party dependencies.

## Record types

The record types, status enums and errors live in `bookystore.records`:

- `AccountingFact` is one debit or credit line for a Bokio account. It is
  derived from a Stripe source group such as `charge:ch_123:sale`. Status
  values are in `FactStatus`, and directions are in `Direction`.
- `BalanceTransaction` is a Stripe balance transaction, with amounts in the
  source currency and in SEK öre.
- `PostingRun` is a daily close run, typed by `PostingRunType` and
  `PostingRunStatus`. `BokioJournal` is the journal entry that a run produced.
- `OSSUnionEntry`, `PeriodicSummaryEntry`, `FilingPeriod` and `FilingExport`
  cover entries, deadlines and versioned exports for the EU OSS union scheme
  and the periodic summary. Their vocabularies are `FilingKind`,
  `FilingReviewState` and `FilingPeriodStatus`.
- `TaxCase` is the tax classification of a sale. `TaxCaseObject` is a Stripe
  object linked to a tax case. `ManualTaxEvidence` is evidence that a reviewer
  added. `ReportabilityState` holds the reportability values.
- `StripeWebhookEvent` is a received webhook event. `ObjectSnapshot` is the
  latest stored payload of a Stripe object.
- `NotFoundError` is a `LookupError`, and `LockBusyError` is a `RuntimeError`.

The enums subclass `str`, so you can pass a member or its plain string value.
Identifiers are `uuid.UUID`, and payloads are `bytes` of JSON. A naive datetime
is treated as UTC when stored, and datetimes read back are timezone-aware UTC.

`checksum_json(value)` returns the hex SHA-1 digest of the compact JSON
encoding of `value`. The encoding follows these rules:

- Mapping keys are sorted.
- Dataclass fields keep their declared order.
- UUIDs, dates and datetimes become strings.
- Bytes are base64 encoded.
- `<`, `>`, `&`, U+2028 and U+2029 are escaped.

## Repository

`bookystore.repository.Repository(database=":memory:", create_schema=True)`
opens an SQLite database, either a file path or an in-memory database. Unless
`create_schema=False`, it also creates every table the queries need.
`Repository` is a context manager that closes the connection on exit.

- `queries()` returns a `Queries` object. `Queries` combines the methods of
  `AccountingQueries`, `FilingQueries`, `TaxQueries` and `WebhookQueries`.
  Statements issued through it take effect immediately.
- `transaction()` is a context manager that yields a `Queries`. The transaction
  commits when the block ends normally and rolls back if the block raises.
- `acquire_advisory_lock(key1, key2)` takes a lock named by two signed 32-bit
  integers, without waiting.
  - It returns an `AdvisoryLock`. Call `release()` on it, or use it as a
    context manager.
  - It raises `LockBusyError` if the key pair is already held.
  - `release()` raises `RuntimeError` if the lock was not held.
  - A key of the wrong type raises `TypeError`. A key outside the 32-bit range
    raises `ValueError`.
  - The lock is a row in the database, so closing the connection does not
    release it.
- `run_migrations(directory)` applies the `.sql` files in `directory` in name
  order. Files already recorded in `schema_migrations` are skipped. Each file
  runs in its own transaction, together with the record of its version.
- `ping()` runs a trivial query. `close()` closes the connection.

The module-level functions `bookystore.migrations.apply_schema(connection)` and
`bookystore.migrations.run_migrations(connection, directory)` work on any
`sqlite3.Connection`. The latter returns the names of the files it applied.

```python
from datetime import date
from bookystore.repository import Repository
from bookystore.records import PostingRunType

with Repository("books.db") as repo:
    with repo.transaction() as q:
        q.upsert_accounting_facts(facts)
        pending = q.list_pending_accounting_facts(company_id, date(2026, 4, 2))

    with repo.acquire_advisory_lock(2026, 92):
        run = repo.queries().get_posting_run_by_date(
            company_id, date(2026, 4, 2), PostingRunType.DAILY_CLOSE
        )
```

## Behaviour worth knowing

- **Replacing accounting facts.** `upsert_accounting_facts` replaces the
  pending, needs-review and failed facts of each source group it receives. If
  any fact in a group is already batched, posted or reversed, it raises
  `ValueError`, because that group needs a correction flow.
- **Pending facts.** `list_pending_accounting_facts` returns the facts of one
  day that are pending, needs-review or batched.
- **Not found.** Single-record lookups raise `NotFoundError` when nothing
  matches. This covers posting runs, journals, filing periods, the latest
  filing export, tax cases, webhook events and object snapshots.
- **Posting run timestamps.** `update_posting_run` keeps the stored summary if
  the new one is empty. Moving to `started` restarts the run's start time.
  Moving to `completed` or `failed` stamps the finish time.
- **Webhook events.** `insert_webhook_event` returns `True` only on the first
  insert of an event id. Later inserts of the same id are ignored and return
  `False`.
- **Tax case ids.** `upsert_tax_case` returns the stored id. If a case already
  exists for the same company and root object, its existing id is kept.
  `replace_tax_case_objects` links every given object to the tax case id passed
  in.
- **Filing facts by date.** `list_filing_relevant_facts_by_date_range` returns
  only facts whose source group matches `charge:*:sale` or `refund:*`, within
  an inclusive date range.
- **Due filing periods.** `list_due_filing_periods` returns unsubmitted periods
  whose first send time has been reached. `mark_filing_period_submitted` sets
  the status to `submitted`.
- **Entry periods.** `list_entry_periods` returns the distinct filing periods,
  sorted, for the OSS union or periodic summary kind. Any other kind raises
  `ValueError`.

## What it does not do

The package only stores and loads records. It does not talk to Stripe or
Bokio. It does not receive webhooks, compute VAT, build filing files or send
e-mail. It has no command-line program. It works only with SQLite, not with a
database server.