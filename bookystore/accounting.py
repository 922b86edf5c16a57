"""Queries for accounting facts, balance transactions and posting runs."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import Any
from uuid import UUID

from bookystore.records import (
    _NOW_SQL,
    AccountingFact,
    BalanceTransaction,
    BokioJournal,
    FactStatus,
    NotFoundError,
    PostingRun,
    _db_value,
    _record_from_row,
)

_NOW = f"({_NOW_SQL})"

_FACT_COLUMNS = (
    "id",
    "bokio_company_id",
    "stripe_account_id",
    "tax_case_id",
    "source_group_id",
    "source_object_type",
    "source_object_id",
    "stripe_balance_transaction_id",
    "stripe_event_id",
    "fact_type",
    "posting_date",
    "market_code",
    "vat_treatment",
    "source_currency",
    "source_amount_minor",
    "amount_sek_ore",
    "bokio_account",
    "direction",
    "status",
    "review_reason",
    "payload",
)

_FACT_READ_COLUMNS = _FACT_COLUMNS + ("created_at", "updated_at")

_LOCKED_STATUSES = frozenset(
    {FactStatus.BATCHED.value, FactStatus.POSTED.value, FactStatus.REVERSED.value}
)

_FACT_ORDER = "source_group_id, fact_type, bokio_account, direction"


def _fact_select(prefix: str = "") -> str:
    return ", ".join(f"{prefix}{name} AS {name}" for name in _FACT_READ_COLUMNS)


def _as_date(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.date()
    return value


def _nullable_json(value: bytes | None) -> bytes | None:
    if not value:
        return None
    return bytes(value)


def _params(values: Iterable[Any]) -> tuple[Any, ...]:
    return tuple(_db_value(value) for value in values)


class AccountingQueries:
    """Accounting, balance and posting queries over one database connection.

    Statements run on the connection as given; committing is left to the
    caller that owns the connection.
    """

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection

    def _fetch(self, sql: str, params: Iterable[Any] | Mapping[str, Any] = ()) -> list[dict[str, Any]]:
        cursor = self._connection.execute(sql, params)
        names = [column[0] for column in cursor.description]
        return [dict(zip(names, row)) for row in cursor.fetchall()]

    def _facts(self, sql: str, params: Iterable[Any]) -> list[AccountingFact]:
        return [_record_from_row(AccountingFact, row) for row in self._fetch(sql, params)]

    def upsert_accounting_facts(self, facts: Iterable[AccountingFact]) -> None:
        """Replace the unlocked facts of each source group with ``facts``.

        Raises ValueError when a source group already has batched, posted
        or reversed facts.
        """
        facts = list(facts)
        source_groups = dict.fromkeys(fact.source_group_id for fact in facts)

        for source_group_id in source_groups:
            statuses = {
                status
                for (status,) in self._connection.execute(
                    "SELECT status FROM accounting_facts WHERE source_group_id = ?",
                    (source_group_id,),
                )
            }
            if statuses & _LOCKED_STATUSES:
                raise ValueError(
                    f"accounting facts for source group {source_group_id} are already "
                    "locked or posted; correction flow is required"
                )
            self._connection.execute(
                "DELETE FROM accounting_facts WHERE source_group_id = ? "
                "AND status IN ('pending', 'needs_review', 'failed')",
                (source_group_id,),
            )

        placeholders = ", ".join("?" for _ in _FACT_COLUMNS)
        insert = (
            f"INSERT INTO accounting_facts ({', '.join(_FACT_COLUMNS)}) "
            f"VALUES ({placeholders})"
        )
        for fact in facts:
            values = [getattr(fact, name) for name in _FACT_COLUMNS]
            values[_FACT_COLUMNS.index("posting_date")] = _as_date(fact.posting_date)
            self._connection.execute(insert, _params(values))

    def list_pending_accounting_facts(self, company_id: UUID, posting_date: date) -> list[AccountingFact]:
        """Facts of a company and day that are pending, in review or batched."""
        return self._facts(
            f"SELECT {_fact_select()} FROM accounting_facts "
            "WHERE bokio_company_id = ? AND posting_date = ? "
            "AND status IN ('pending', 'needs_review', 'batched') "
            f"ORDER BY {_FACT_ORDER}",
            _params([company_id, _as_date(posting_date)]),
        )

    def list_facts_by_tax_case_ids(self, ids: Iterable[UUID]) -> list[AccountingFact]:
        """Facts belonging to any of the given tax cases."""
        ids = list(ids)
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        return self._facts(
            f"SELECT {_fact_select()} FROM accounting_facts "
            f"WHERE tax_case_id IN ({placeholders}) ORDER BY {_FACT_ORDER}",
            _params(ids),
        )

    def upsert_balance_transaction(self, transaction: BalanceTransaction) -> None:
        """Insert or update a balance transaction; empty strings are stored as NULL."""
        bt = transaction
        self._connection.execute(
            f"""
            INSERT INTO stripe_balance_transactions (
                stripe_balance_transaction_id, stripe_account_id, source_object_type, source_object_id,
                type, reporting_category, status, currency, currency_exponent, amount_minor, fee_minor,
                net_minor, exchange_rate, amount_sek_ore, fee_sek_ore, net_sek_ore, occurred_at,
                available_on, payout_id, source_event_id, payload
            ) VALUES (
                ?, ?, NULLIF(?, ''), NULLIF(?, ''), ?, NULLIF(?, ''), NULLIF(?, ''), ?, ?,
                ?, ?, ?, ?, ?, ?, ?, ?, ?, NULLIF(?, ''), NULLIF(?, ''), ?
            )
            ON CONFLICT (stripe_balance_transaction_id) DO UPDATE SET
                stripe_account_id = excluded.stripe_account_id,
                source_object_type = excluded.source_object_type,
                source_object_id = excluded.source_object_id,
                type = excluded.type,
                reporting_category = excluded.reporting_category,
                status = excluded.status,
                currency = excluded.currency,
                currency_exponent = excluded.currency_exponent,
                amount_minor = excluded.amount_minor,
                fee_minor = excluded.fee_minor,
                net_minor = excluded.net_minor,
                exchange_rate = excluded.exchange_rate,
                amount_sek_ore = excluded.amount_sek_ore,
                fee_sek_ore = excluded.fee_sek_ore,
                net_sek_ore = excluded.net_sek_ore,
                occurred_at = excluded.occurred_at,
                available_on = excluded.available_on,
                payout_id = excluded.payout_id,
                source_event_id = excluded.source_event_id,
                payload = excluded.payload,
                updated_at = {_NOW}
            """,
            _params(
                [
                    bt.id,
                    bt.stripe_account_id,
                    bt.source_object_type,
                    bt.source_object_id,
                    bt.type,
                    bt.reporting_category,
                    bt.status,
                    bt.currency,
                    bt.currency_exponent,
                    bt.amount_minor,
                    bt.fee_minor,
                    bt.net_minor,
                    bt.exchange_rate,
                    bt.amount_sek_ore,
                    bt.fee_sek_ore,
                    bt.net_sek_ore,
                    bt.occurred_at,
                    bt.available_on,
                    bt.payout_id,
                    bt.source_event_id,
                    bytes(bt.payload),
                ]
            ),
        )

    def create_posting_run(self, run: PostingRun) -> None:
        """Insert a new posting run."""
        self._connection.execute(
            """
            INSERT INTO posting_runs (
                id, bokio_company_id, posting_date, timezone, run_type, sequence_no, status,
                config_snapshot, summary
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            _params(
                [
                    run.id,
                    run.bokio_company_id,
                    _as_date(run.posting_date),
                    run.timezone,
                    run.run_type,
                    run.sequence_no,
                    run.status,
                    bytes(run.config_snapshot),
                    bytes(run.summary),
                ]
            ),
        )

    def update_posting_run(
        self,
        run_id: UUID,
        status: str,
        summary: bytes | None = None,
        error_message: str | None = None,
    ) -> None:
        """Set a run's status; an empty summary keeps the stored one.

        Moving to ``started`` restarts the clock; ``completed`` and ``failed``
        stamp the finish time.
        """
        self._connection.execute(
            f"""
            UPDATE posting_runs
            SET status = :status,
                summary = COALESCE(:summary, summary),
                error_message = :error_message,
                started_at = CASE WHEN :status = 'started' THEN {_NOW} ELSE started_at END,
                finished_at = CASE
                    WHEN :status IN ('completed', 'failed') THEN {_NOW}
                    WHEN :status = 'started' THEN NULL
                    ELSE finished_at
                END
            WHERE id = :id
            """,
            {
                "id": _db_value(run_id),
                "status": _db_value(status),
                "summary": _nullable_json(summary),
                "error_message": error_message,
            },
        )

    def reset_posting_run(self, run_id: UUID, config_snapshot: bytes, summary: bytes | None) -> None:
        """Restart a run with a fresh configuration snapshot and summary."""
        self._connection.execute(
            f"""
            UPDATE posting_runs
            SET status = 'started',
                config_snapshot = ?,
                summary = COALESCE(?, '{{}}'),
                error_message = NULL,
                started_at = {_NOW},
                finished_at = NULL
            WHERE id = ?
            """,
            (_nullable_json(config_snapshot), _nullable_json(summary), _db_value(run_id)),
        )

    def get_posting_run_by_date(self, company_id: UUID, posting_date: date, run_type: str) -> PostingRun:
        """The run with the highest sequence number for a company, day and type."""
        rows = self._fetch(
            """
            SELECT id, bokio_company_id, posting_date, timezone, run_type, sequence_no, status,
                config_snapshot, summary, started_at, finished_at, error_message
            FROM posting_runs
            WHERE bokio_company_id = ? AND posting_date = ? AND run_type = ?
            ORDER BY sequence_no DESC
            LIMIT 1
            """,
            _params([company_id, _as_date(posting_date), run_type]),
        )
        if not rows:
            raise NotFoundError()
        return _record_from_row(PostingRun, rows[0])

    def attach_facts_to_run(self, run_id: UUID, fact_ids: Iterable[UUID]) -> None:
        """Link facts to a run; links that already exist are left alone."""
        for fact_id in fact_ids:
            self._connection.execute(
                "INSERT INTO posting_run_facts (posting_run_id, accounting_fact_id) "
                "VALUES (?, ?) ON CONFLICT DO NOTHING",
                _params([run_id, fact_id]),
            )

    def mark_facts_status(self, fact_ids: Iterable[UUID], status: str) -> None:
        """Set the status of each given fact."""
        for fact_id in fact_ids:
            self._connection.execute(
                f"UPDATE accounting_facts SET status = ?, updated_at = {_NOW} WHERE id = ?",
                _params([status, fact_id]),
            )

    def upsert_bokio_journal(self, journal: BokioJournal) -> None:
        """Insert or update the journal entry recorded for a posting run."""
        self._connection.execute(
            """
            INSERT INTO bokio_journals (
                posting_run_id, bokio_company_id, bokio_journal_entry_id, bokio_journal_entry_number,
                bokio_upload_id, bokio_journal_title, posting_date, attachment_checksum,
                reversed_at, reversed_by_journal_entry_id
            ) VALUES (?, ?, ?, NULLIF(?, ''), ?, ?, ?, ?, ?, ?)
            ON CONFLICT (posting_run_id) DO UPDATE SET
                bokio_journal_entry_id = excluded.bokio_journal_entry_id,
                bokio_journal_entry_number = excluded.bokio_journal_entry_number,
                bokio_upload_id = excluded.bokio_upload_id,
                bokio_journal_title = excluded.bokio_journal_title,
                posting_date = excluded.posting_date,
                attachment_checksum = excluded.attachment_checksum,
                reversed_at = excluded.reversed_at,
                reversed_by_journal_entry_id = excluded.reversed_by_journal_entry_id
            """,
            _params(
                [
                    journal.posting_run_id,
                    journal.bokio_company_id,
                    journal.bokio_journal_entry_id,
                    journal.bokio_journal_entry_number,
                    journal.bokio_upload_id,
                    journal.bokio_journal_title,
                    _as_date(journal.posting_date),
                    journal.attachment_checksum,
                    journal.reversed_at,
                    journal.reversed_by_journal_entry_id,
                ]
            ),
        )

    def get_bokio_journal_by_run_id(self, run_id: UUID) -> BokioJournal:
        """The journal recorded for a posting run."""
        rows = self._fetch(
            """
            SELECT posting_run_id, bokio_company_id, bokio_journal_entry_id, bokio_journal_entry_number,
                bokio_upload_id, bokio_journal_title, posting_date, attachment_checksum,
                created_at, reversed_at, reversed_by_journal_entry_id
            FROM bokio_journals
            WHERE posting_run_id = ?
            """,
            _params([run_id]),
        )
        if not rows:
            raise NotFoundError()
        return _record_from_row(BokioJournal, rows[0])

    def list_facts_by_run(self, run_id: UUID) -> list[AccountingFact]:
        """Facts attached to a posting run."""
        return self._facts(
            f"SELECT {_fact_select('f.')} FROM accounting_facts f "
            "JOIN posting_run_facts prf ON prf.accounting_fact_id = f.id "
            "WHERE prf.posting_run_id = ? "
            "ORDER BY f.source_group_id, f.fact_type, f.bokio_account, f.direction",
            _params([run_id]),
        )