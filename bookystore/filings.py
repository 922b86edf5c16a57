"""Queries for OSS and periodic summary filings, exports and filing periods."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import Any
from uuid import UUID

from bookystore.accounting import _as_date, _fact_select, _nullable_json, _params
from bookystore.records import (
    _NOW_SQL,
    AccountingFact,
    FilingExport,
    FilingKind,
    FilingPeriod,
    NotFoundError,
    ObjectSnapshot,
    OSSUnionEntry,
    PeriodicSummaryEntry,
    _db_value,
    _record_from_row,
)

_NOW = f"({_NOW_SQL})"

_OSS_COLUMNS = (
    "id",
    "bokio_company_id",
    "tax_case_id",
    "source_group_id",
    "source_object_type",
    "source_object_id",
    "stripe_event_id",
    "original_supply_period",
    "filing_period",
    "correction_target_period",
    "consumption_country",
    "origin_country",
    "origin_identifier",
    "sale_type",
    "vat_rate_basis_points",
    "taxable_amount_eur_cents",
    "vat_amount_eur_cents",
    "review_state",
    "review_reason",
    "payload",
)

_PS_COLUMNS = (
    "id",
    "bokio_company_id",
    "tax_case_id",
    "source_group_id",
    "source_object_type",
    "source_object_id",
    "stripe_event_id",
    "filing_period",
    "buyer_vat_number",
    "row_type",
    "amount_sek_ore",
    "exported_amount_sek",
    "review_state",
    "review_reason",
    "payload",
)

_EXPORT_COLUMNS = (
    "id, kind, period, bokio_company_id, version, checksum, filename, content, "
    "summary, emailed_at, superseded_by, created_at, updated_at"
)

_PERIOD_COLUMNS = (
    "kind, period, bokio_company_id, deadline_date, first_send_at, last_evaluated_at, "
    "last_evaluation_status, zero_reminder_sent_at, submitted_at, created_at, updated_at"
)

_ENTRY_TABLES = {
    FilingKind.OSS_UNION.value: "oss_union_entries",
    FilingKind.PERIODIC_SUMMARY.value: "periodic_summary_entries",
}


def _upsert_sql(table: str, columns: tuple[str, ...]) -> str:
    placeholders = ", ".join("?" for _ in columns)
    updates = ",\n".join(
        f"{name} = excluded.{name}" for name in columns if name not in ("id", "source_group_id")
    )
    return (
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})\n"
        f"ON CONFLICT (source_group_id) DO UPDATE SET\n{updates},\nupdated_at = {_NOW}"
    )


def _entry_values(entry: Any, columns: tuple[str, ...]) -> tuple[Any, ...]:
    values = [getattr(entry, name) for name in columns]
    values[columns.index("payload")] = bytes(entry.payload)
    return _params(values)


class FilingQueries:
    """Filing entry, export and period queries over one database connection.

    Statements run on the connection as given; committing is left to the
    caller that owns the connection.
    """

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection

    def _fetch(self, sql: str, params: Iterable[Any] | Mapping[str, Any] = ()) -> list[dict[str, Any]]:
        cursor = self._connection.execute(sql, params)
        names = [column[0] for column in cursor.description]
        return [dict(zip(names, row)) for row in cursor.fetchall()]

    def upsert_oss_union_entries(self, entries: Iterable[OSSUnionEntry]) -> None:
        """Insert or update OSS entries keyed by their source group."""
        sql = _upsert_sql("oss_union_entries", _OSS_COLUMNS)
        for entry in entries:
            self._connection.execute(sql, _entry_values(entry, _OSS_COLUMNS))

    def delete_oss_union_entries_by_source_groups(self, source_group_ids: Iterable[str]) -> None:
        """Remove the OSS entries of the given source groups."""
        for source_group_id in source_group_ids:
            self._connection.execute(
                "DELETE FROM oss_union_entries WHERE source_group_id = ?", (source_group_id,)
            )

    def upsert_periodic_summary_entries(self, entries: Iterable[PeriodicSummaryEntry]) -> None:
        """Insert or update periodic summary entries keyed by their source group."""
        sql = _upsert_sql("periodic_summary_entries", _PS_COLUMNS)
        for entry in entries:
            self._connection.execute(sql, _entry_values(entry, _PS_COLUMNS))

    def delete_periodic_summary_entries_by_source_groups(self, source_group_ids: Iterable[str]) -> None:
        """Remove the periodic summary entries of the given source groups."""
        for source_group_id in source_group_ids:
            self._connection.execute(
                "DELETE FROM periodic_summary_entries WHERE source_group_id = ?", (source_group_id,)
            )

    def list_oss_union_entries_by_period(self, company_id: UUID, period: str) -> list[OSSUnionEntry]:
        """OSS entries filed in a period, ordered by source group."""
        rows = self._fetch(
            f"SELECT {', '.join(_OSS_COLUMNS)}, created_at, updated_at FROM oss_union_entries "
            "WHERE bokio_company_id = ? AND filing_period = ? ORDER BY source_group_id",
            _params([company_id, period]),
        )
        return [_record_from_row(OSSUnionEntry, row) for row in rows]

    def list_periodic_summary_entries_by_period(
        self, company_id: UUID, period: str
    ) -> list[PeriodicSummaryEntry]:
        """Periodic summary entries filed in a period."""
        rows = self._fetch(
            f"SELECT {', '.join(_PS_COLUMNS)}, created_at, updated_at FROM periodic_summary_entries "
            "WHERE bokio_company_id = ? AND filing_period = ? "
            "ORDER BY buyer_vat_number, row_type, source_group_id",
            _params([company_id, period]),
        )
        return [_record_from_row(PeriodicSummaryEntry, row) for row in rows]

    def create_filing_export(self, export: FilingExport) -> None:
        """Insert a new filing export version; an empty summary is stored as NULL."""
        self._connection.execute(
            """
            INSERT INTO filing_exports (
                id, kind, period, bokio_company_id, version, checksum, filename, content,
                summary, emailed_at, superseded_by
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                *_params(
                    [
                        export.id,
                        export.kind,
                        export.period,
                        export.bokio_company_id,
                        export.version,
                        export.checksum,
                        export.filename,
                        bytes(export.content),
                    ]
                ),
                _nullable_json(export.summary),
                *_params([export.emailed_at, export.superseded_by]),
            ),
        )

    def get_latest_filing_export(self, company_id: UUID, kind: str, period: str) -> FilingExport:
        """The export with the highest version for a kind and period."""
        rows = self._fetch(
            f"SELECT {_EXPORT_COLUMNS} FROM filing_exports "
            "WHERE bokio_company_id = ? AND kind = ? AND period = ? "
            "ORDER BY version DESC LIMIT 1",
            _params([company_id, kind, period]),
        )
        if not rows:
            raise NotFoundError()
        return _record_from_row(FilingExport, rows[0])

    def list_filing_exports(self, company_id: UUID, kind: str, period: str) -> list[FilingExport]:
        """All exports for a kind and period, newest version first."""
        rows = self._fetch(
            f"SELECT {_EXPORT_COLUMNS} FROM filing_exports "
            "WHERE bokio_company_id = ? AND kind = ? AND period = ? ORDER BY version DESC",
            _params([company_id, kind, period]),
        )
        return [_record_from_row(FilingExport, row) for row in rows]

    def mark_filing_export_superseded(self, export_id: UUID, superseded_by: UUID) -> None:
        """Record that an export was replaced by another."""
        self._connection.execute(
            f"UPDATE filing_exports SET superseded_by = ?, updated_at = {_NOW} WHERE id = ?",
            _params([superseded_by, export_id]),
        )

    def list_filing_relevant_facts_by_date_range(
        self, company_id: UUID, from_date: date, to_date: date
    ) -> list[AccountingFact]:
        """Sale and refund facts posted within the inclusive date range."""
        rows = self._fetch(
            f"SELECT {_fact_select()} FROM accounting_facts "
            "WHERE bokio_company_id = ? AND posting_date >= ? AND posting_date <= ? "
            "AND (source_group_id GLOB 'charge:*:sale' OR source_group_id GLOB 'refund:*') "
            "ORDER BY source_group_id, fact_type, created_at",
            _params([company_id, _as_date(from_date), _as_date(to_date)]),
        )
        return [_record_from_row(AccountingFact, row) for row in rows]

    def get_object_snapshot(self, object_type: str, object_id: str) -> ObjectSnapshot:
        """The stored snapshot of a remote object."""
        rows = self._fetch(
            "SELECT object_type, stripe_object_id AS object_id, livemode, payload, "
            "first_seen_at, last_synced_at FROM stripe_object_snapshots "
            "WHERE object_type = ? AND stripe_object_id = ?",
            (object_type, object_id),
        )
        if not rows:
            raise NotFoundError()
        return _record_from_row(ObjectSnapshot, rows[0])

    def upsert_filing_periods(self, periods: Iterable[FilingPeriod]) -> None:
        """Insert filing periods, or update their deadline and first send time."""
        for period in periods:
            self._connection.execute(
                f"""
                INSERT INTO filing_periods (
                    kind, period, bokio_company_id, deadline_date, first_send_at, last_evaluation_status
                ) VALUES (?, ?, ?, ?, ?, COALESCE(NULLIF(?, ''), 'pending'))
                ON CONFLICT (kind, period, bokio_company_id) DO UPDATE SET
                    deadline_date = excluded.deadline_date,
                    first_send_at = excluded.first_send_at,
                    updated_at = {_NOW}
                """,
                _params(
                    [
                        period.kind,
                        period.period,
                        period.bokio_company_id,
                        _as_date(period.deadline_date),
                        period.first_send_at,
                        period.last_evaluation_status,
                    ]
                ),
            )

    def get_filing_period(self, company_id: UUID, kind: str, period: str) -> FilingPeriod:
        """One filing period of a company."""
        rows = self._fetch(
            f"SELECT {_PERIOD_COLUMNS} FROM filing_periods "
            "WHERE bokio_company_id = ? AND kind = ? AND period = ?",
            _params([company_id, kind, period]),
        )
        if not rows:
            raise NotFoundError()
        return _record_from_row(FilingPeriod, rows[0])

    def list_due_filing_periods(self, company_id: UUID, as_of: datetime) -> list[FilingPeriod]:
        """Unsubmitted periods whose first send time has been reached."""
        rows = self._fetch(
            f"SELECT {_PERIOD_COLUMNS} FROM filing_periods "
            "WHERE bokio_company_id = ? AND first_send_at <= ? AND submitted_at IS NULL "
            "ORDER BY deadline_date, kind, period",
            _params([company_id, as_of]),
        )
        return [_record_from_row(FilingPeriod, row) for row in rows]

    def update_filing_period_evaluation(
        self,
        company_id: UUID,
        kind: str,
        period: str,
        status: str,
        evaluated_at: datetime,
        zero_reminder_sent_at: datetime | None = None,
    ) -> None:
        """Record an evaluation; a missing reminder time keeps the stored one."""
        self._connection.execute(
            f"""
            UPDATE filing_periods
            SET last_evaluated_at = ?,
                last_evaluation_status = ?,
                zero_reminder_sent_at = COALESCE(?, zero_reminder_sent_at),
                updated_at = {_NOW}
            WHERE bokio_company_id = ? AND kind = ? AND period = ?
            """,
            _params([evaluated_at, status, zero_reminder_sent_at, company_id, kind, period]),
        )

    def mark_filing_period_submitted(
        self, company_id: UUID, kind: str, period: str, submitted_at: datetime
    ) -> None:
        """Mark a filing period as submitted."""
        self._connection.execute(
            f"""
            UPDATE filing_periods
            SET submitted_at = ?,
                last_evaluation_status = 'submitted',
                updated_at = {_NOW}
            WHERE bokio_company_id = ? AND kind = ? AND period = ?
            """,
            _params([submitted_at, company_id, kind, period]),
        )

    def list_entry_periods(self, company_id: UUID, kind: str) -> list[str]:
        """The distinct filing periods that have entries of the given kind.

        Raises ValueError for an unsupported filing kind.
        """
        table = _ENTRY_TABLES.get(_db_value(kind))
        if table is None:
            raise ValueError(f"unsupported filing kind {_db_value(kind)!r}")
        cursor = self._connection.execute(
            f"SELECT DISTINCT filing_period FROM {table} WHERE bokio_company_id = ? "
            "ORDER BY filing_period",
            _params([company_id]),
        )
        return [period for (period,) in cursor]