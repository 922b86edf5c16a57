"""Queries for tax cases, their linked objects and manual tax evidence."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from typing import Any
from uuid import UUID

from bookystore.accounting import _params
from bookystore.records import (
    _NOW_SQL,
    ManualTaxEvidence,
    NotFoundError,
    TaxCase,
    TaxCaseObject,
    _record_from_row,
)

_NOW = f"({_NOW_SQL})"

_TAX_CASE_COLUMNS = (
    "id",
    "bokio_company_id",
    "root_object_type",
    "root_object_id",
    "livemode",
    "source_currency",
    "source_amount_minor",
    "sale_type",
    "country",
    "country_source",
    "buyer_vat_number",
    "buyer_vat_verified",
    "buyer_is_business",
    "tax_status",
    "reportability_state",
    "review_reason",
    "automatic_tax_enabled",
    "automatic_tax_status",
    "stripe_tax_amount_known",
    "stripe_tax_amount_minor",
    "stripe_tax_reverse_charge",
    "stripe_tax_zero_rated",
    "invoice_pdf_url",
    "dossier",
)

_TAX_CASE_KEY = ("id", "bokio_company_id", "root_object_type", "root_object_id")

_TAX_CASE_READ_COLUMNS = _TAX_CASE_COLUMNS + ("created_at", "updated_at")

_EVIDENCE_COLUMNS = (
    "id",
    "tax_case_id",
    "country",
    "country_source",
    "buyer_vat_number",
    "buyer_vat_verified",
    "buyer_is_business",
    "sale_type",
    "note",
    "payload",
)


def _tax_case_select(prefix: str = "") -> str:
    return ", ".join(f"{prefix}{name} AS {name}" for name in _TAX_CASE_READ_COLUMNS)


def _upsert_tax_case_sql() -> str:
    placeholders = ", ".join("?" for _ in _TAX_CASE_COLUMNS)
    updates = ",\n".join(
        f"{name} = excluded.{name}" for name in _TAX_CASE_COLUMNS if name not in _TAX_CASE_KEY
    )
    return (
        f"INSERT INTO tax_cases ({', '.join(_TAX_CASE_COLUMNS)}) VALUES ({placeholders})\n"
        "ON CONFLICT (bokio_company_id, root_object_type, root_object_id) DO UPDATE SET\n"
        f"{updates},\nupdated_at = {_NOW}"
    )


def _upsert_evidence_sql() -> str:
    placeholders = ", ".join("?" for _ in _EVIDENCE_COLUMNS)
    updates = ",\n".join(
        f"{name} = excluded.{name}"
        for name in _EVIDENCE_COLUMNS
        if name not in ("id", "tax_case_id")
    )
    return (
        f"INSERT INTO manual_tax_evidence ({', '.join(_EVIDENCE_COLUMNS)}) "
        f"VALUES ({placeholders})\n"
        f"ON CONFLICT (id) DO UPDATE SET\n{updates},\nupdated_at = {_NOW}"
    )


class TaxQueries:
    """Tax case queries over one database connection.

    Statements run on the connection as given; committing is left to the
    caller that owns the connection.
    """

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection

    def _fetch(self, sql: str, params: Iterable[Any] = ()) -> list[dict[str, Any]]:
        cursor = self._connection.execute(sql, tuple(params))
        names = [column[0] for column in cursor.description]
        return [dict(zip(names, row)) for row in cursor.fetchall()]

    def _tax_cases(self, sql: str, params: Iterable[Any]) -> list[TaxCase]:
        return [_record_from_row(TaxCase, row) for row in self._fetch(sql, params)]

    def upsert_tax_case(self, tax_case: TaxCase) -> UUID:
        """Insert or update a tax case by its root object; returns the stored id.

        On conflict the id already stored is kept and returned.
        """
        values = [getattr(tax_case, name) for name in _TAX_CASE_COLUMNS]
        values[_TAX_CASE_COLUMNS.index("dossier")] = bytes(tax_case.dossier)
        self._connection.execute(_upsert_tax_case_sql(), _params(values))
        row = self._connection.execute(
            "SELECT id FROM tax_cases "
            "WHERE bokio_company_id = ? AND root_object_type = ? AND root_object_id = ?",
            _params(
                [tax_case.bokio_company_id, tax_case.root_object_type, tax_case.root_object_id]
            ),
        ).fetchone()
        if row is None:
            raise RuntimeError(
                f"upsert tax case {tax_case.root_object_type}:{tax_case.root_object_id}: "
                "row missing after write"
            )
        return UUID(str(row[0]))

    def get_tax_case(self, tax_case_id: UUID) -> TaxCase:
        """The tax case with the given id."""
        cases = self._tax_cases(
            f"SELECT {_tax_case_select()} FROM tax_cases WHERE id = ?",
            _params([tax_case_id]),
        )
        if not cases:
            raise NotFoundError()
        return cases[0]

    def get_tax_case_by_root(self, company_id: UUID, root_type: str, root_id: str) -> TaxCase:
        """The tax case of a company rooted at the given object."""
        cases = self._tax_cases(
            f"SELECT {_tax_case_select()} FROM tax_cases "
            "WHERE bokio_company_id = ? AND root_object_type = ? AND root_object_id = ?",
            _params([company_id, root_type, root_id]),
        )
        if not cases:
            raise NotFoundError()
        return cases[0]

    def list_tax_cases_by_ids(self, ids: Iterable[UUID]) -> list[TaxCase]:
        """Tax cases with any of the given ids, ordered by root object."""
        ids = list(ids)
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        return self._tax_cases(
            f"SELECT {_tax_case_select()} FROM tax_cases WHERE id IN ({placeholders}) "
            "ORDER BY root_object_type, root_object_id",
            _params(ids),
        )

    def list_tax_cases_by_object(self, object_type: str, object_id: str) -> list[TaxCase]:
        """Tax cases that have the given object linked to them."""
        return self._tax_cases(
            f"SELECT {_tax_case_select('c.')} FROM tax_cases c "
            "JOIN tax_case_objects o ON o.tax_case_id = c.id "
            "WHERE o.object_type = ? AND o.object_id = ? "
            "ORDER BY c.root_object_type, c.root_object_id",
            (object_type, object_id),
        )

    def replace_tax_case_objects(self, tax_case_id: UUID, objects: Iterable[TaxCaseObject]) -> None:
        """Replace every object linked to a tax case with ``objects``.

        The objects are linked to ``tax_case_id`` whatever case they name.
        """
        self._connection.execute(
            "DELETE FROM tax_case_objects WHERE tax_case_id = ?", _params([tax_case_id])
        )
        for item in objects:
            self._connection.execute(
                "INSERT INTO tax_case_objects (tax_case_id, object_type, object_id, object_role) "
                "VALUES (?, ?, ?, ?)",
                _params([tax_case_id, item.object_type, item.object_id, item.object_role]),
            )

    def list_tax_case_objects(self, tax_case_id: UUID) -> list[TaxCaseObject]:
        """Objects linked to a tax case, ordered by role, type and id."""
        rows = self._fetch(
            "SELECT tax_case_id, object_type, object_id, object_role, created_at "
            "FROM tax_case_objects WHERE tax_case_id = ? "
            "ORDER BY object_role, object_type, object_id",
            _params([tax_case_id]),
        )
        return [_record_from_row(TaxCaseObject, row) for row in rows]

    def upsert_manual_tax_evidence(self, evidence: ManualTaxEvidence) -> None:
        """Insert or update a piece of manual tax evidence by its id."""
        values = [getattr(evidence, name) for name in _EVIDENCE_COLUMNS]
        values[_EVIDENCE_COLUMNS.index("payload")] = bytes(evidence.payload)
        self._connection.execute(_upsert_evidence_sql(), _params(values))

    def list_manual_tax_evidence(self, tax_case_id: UUID) -> list[ManualTaxEvidence]:
        """Manual evidence recorded for a tax case, oldest first."""
        rows = self._fetch(
            f"SELECT {', '.join(_EVIDENCE_COLUMNS)}, created_at, updated_at "
            "FROM manual_tax_evidence WHERE tax_case_id = ? ORDER BY created_at",
            _params([tax_case_id]),
        )
        return [_record_from_row(ManualTaxEvidence, row) for row in rows]