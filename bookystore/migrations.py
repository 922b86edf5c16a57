"""Database schema creation and SQL migration runner."""

from __future__ import annotations

import os
import sqlite3
from pathlib import Path

from bookystore.records import _NOW_SQL

_NOW = f"({_NOW_SQL})"

_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS stripe_webhook_events (
    stripe_event_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    livemode INTEGER NOT NULL DEFAULT 0,
    api_version TEXT,
    stripe_created_at TEXT NOT NULL,
    received_at TEXT NOT NULL DEFAULT {_NOW},
    payload BLOB NOT NULL DEFAULT '{{}}',
    processed_at TEXT,
    processing_error TEXT
);

CREATE TABLE IF NOT EXISTS stripe_object_snapshots (
    object_type TEXT NOT NULL,
    stripe_object_id TEXT NOT NULL,
    livemode INTEGER NOT NULL DEFAULT 0,
    payload BLOB NOT NULL DEFAULT '{{}}',
    first_seen_at TEXT NOT NULL DEFAULT {_NOW},
    last_synced_at TEXT NOT NULL DEFAULT {_NOW},
    PRIMARY KEY (object_type, stripe_object_id)
);

CREATE TABLE IF NOT EXISTS stripe_balance_transactions (
    stripe_balance_transaction_id TEXT PRIMARY KEY,
    stripe_account_id TEXT NOT NULL,
    source_object_type TEXT,
    source_object_id TEXT,
    type TEXT NOT NULL,
    reporting_category TEXT,
    status TEXT,
    currency TEXT NOT NULL,
    currency_exponent INTEGER NOT NULL,
    amount_minor INTEGER NOT NULL,
    fee_minor INTEGER NOT NULL,
    net_minor INTEGER NOT NULL,
    exchange_rate REAL,
    amount_sek_ore INTEGER NOT NULL,
    fee_sek_ore INTEGER NOT NULL,
    net_sek_ore INTEGER NOT NULL,
    occurred_at TEXT NOT NULL,
    available_on TEXT,
    payout_id TEXT,
    source_event_id TEXT,
    payload BLOB NOT NULL DEFAULT '{{}}',
    created_at TEXT NOT NULL DEFAULT {_NOW},
    updated_at TEXT NOT NULL DEFAULT {_NOW}
);

CREATE TABLE IF NOT EXISTS tax_cases (
    id TEXT PRIMARY KEY,
    bokio_company_id TEXT NOT NULL,
    root_object_type TEXT NOT NULL,
    root_object_id TEXT NOT NULL,
    livemode INTEGER NOT NULL DEFAULT 0,
    source_currency TEXT,
    source_amount_minor INTEGER,
    sale_type TEXT,
    country TEXT,
    country_source TEXT,
    buyer_vat_number TEXT,
    buyer_vat_verified INTEGER NOT NULL DEFAULT 0,
    buyer_is_business INTEGER NOT NULL DEFAULT 0,
    tax_status TEXT,
    reportability_state TEXT NOT NULL,
    review_reason TEXT,
    automatic_tax_enabled INTEGER NOT NULL DEFAULT 0,
    automatic_tax_status TEXT,
    stripe_tax_amount_known INTEGER NOT NULL DEFAULT 0,
    stripe_tax_amount_minor INTEGER,
    stripe_tax_reverse_charge INTEGER NOT NULL DEFAULT 0,
    stripe_tax_zero_rated INTEGER NOT NULL DEFAULT 0,
    invoice_pdf_url TEXT,
    dossier BLOB NOT NULL DEFAULT '{{}}',
    created_at TEXT NOT NULL DEFAULT {_NOW},
    updated_at TEXT NOT NULL DEFAULT {_NOW},
    UNIQUE (bokio_company_id, root_object_type, root_object_id)
);

CREATE TABLE IF NOT EXISTS tax_case_objects (
    tax_case_id TEXT NOT NULL,
    object_type TEXT NOT NULL,
    object_id TEXT NOT NULL,
    object_role TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT {_NOW},
    PRIMARY KEY (tax_case_id, object_type, object_id, object_role)
);
CREATE INDEX IF NOT EXISTS tax_case_objects_object_idx
    ON tax_case_objects (object_type, object_id);

CREATE TABLE IF NOT EXISTS manual_tax_evidence (
    id TEXT PRIMARY KEY,
    tax_case_id TEXT NOT NULL,
    country TEXT,
    country_source TEXT,
    buyer_vat_number TEXT,
    buyer_vat_verified INTEGER,
    buyer_is_business INTEGER,
    sale_type TEXT,
    note TEXT,
    payload BLOB NOT NULL DEFAULT '{{}}',
    created_at TEXT NOT NULL DEFAULT {_NOW},
    updated_at TEXT NOT NULL DEFAULT {_NOW}
);

CREATE TABLE IF NOT EXISTS accounting_facts (
    id TEXT PRIMARY KEY,
    bokio_company_id TEXT NOT NULL,
    stripe_account_id TEXT NOT NULL,
    tax_case_id TEXT,
    source_group_id TEXT NOT NULL,
    source_object_type TEXT NOT NULL,
    source_object_id TEXT NOT NULL,
    stripe_balance_transaction_id TEXT,
    stripe_event_id TEXT,
    fact_type TEXT NOT NULL,
    posting_date TEXT NOT NULL,
    market_code TEXT,
    vat_treatment TEXT,
    source_currency TEXT,
    source_amount_minor INTEGER,
    amount_sek_ore INTEGER NOT NULL,
    bokio_account INTEGER NOT NULL,
    direction TEXT NOT NULL,
    status TEXT NOT NULL,
    review_reason TEXT,
    payload BLOB NOT NULL DEFAULT '{{}}',
    created_at TEXT NOT NULL DEFAULT {_NOW},
    updated_at TEXT NOT NULL DEFAULT {_NOW}
);
CREATE INDEX IF NOT EXISTS accounting_facts_source_group_idx
    ON accounting_facts (source_group_id);
CREATE INDEX IF NOT EXISTS accounting_facts_company_date_idx
    ON accounting_facts (bokio_company_id, posting_date);

CREATE TABLE IF NOT EXISTS posting_runs (
    id TEXT PRIMARY KEY,
    bokio_company_id TEXT NOT NULL,
    posting_date TEXT NOT NULL,
    timezone TEXT NOT NULL,
    run_type TEXT NOT NULL,
    sequence_no INTEGER NOT NULL,
    status TEXT NOT NULL,
    config_snapshot BLOB NOT NULL DEFAULT '{{}}',
    summary BLOB NOT NULL DEFAULT '{{}}',
    started_at TEXT NOT NULL DEFAULT {_NOW},
    finished_at TEXT,
    error_message TEXT,
    UNIQUE (bokio_company_id, posting_date, run_type, sequence_no)
);

CREATE TABLE IF NOT EXISTS posting_run_facts (
    posting_run_id TEXT NOT NULL,
    accounting_fact_id TEXT NOT NULL,
    PRIMARY KEY (posting_run_id, accounting_fact_id)
);

CREATE TABLE IF NOT EXISTS bokio_journals (
    posting_run_id TEXT PRIMARY KEY,
    bokio_company_id TEXT NOT NULL,
    bokio_journal_entry_id TEXT NOT NULL,
    bokio_journal_entry_number TEXT,
    bokio_upload_id TEXT,
    bokio_journal_title TEXT NOT NULL,
    posting_date TEXT NOT NULL,
    attachment_checksum TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT {_NOW},
    reversed_at TEXT,
    reversed_by_journal_entry_id TEXT
);

CREATE TABLE IF NOT EXISTS oss_union_entries (
    id TEXT PRIMARY KEY,
    bokio_company_id TEXT NOT NULL,
    tax_case_id TEXT,
    source_group_id TEXT NOT NULL UNIQUE,
    source_object_type TEXT NOT NULL,
    source_object_id TEXT NOT NULL,
    stripe_event_id TEXT,
    original_supply_period TEXT NOT NULL,
    filing_period TEXT NOT NULL,
    correction_target_period TEXT,
    consumption_country TEXT NOT NULL,
    origin_country TEXT NOT NULL,
    origin_identifier TEXT NOT NULL,
    sale_type TEXT NOT NULL,
    vat_rate_basis_points INTEGER NOT NULL,
    taxable_amount_eur_cents INTEGER NOT NULL,
    vat_amount_eur_cents INTEGER NOT NULL,
    review_state TEXT NOT NULL,
    review_reason TEXT,
    payload BLOB NOT NULL DEFAULT '{{}}',
    created_at TEXT NOT NULL DEFAULT {_NOW},
    updated_at TEXT NOT NULL DEFAULT {_NOW}
);

CREATE TABLE IF NOT EXISTS periodic_summary_entries (
    id TEXT PRIMARY KEY,
    bokio_company_id TEXT NOT NULL,
    tax_case_id TEXT,
    source_group_id TEXT NOT NULL UNIQUE,
    source_object_type TEXT NOT NULL,
    source_object_id TEXT NOT NULL,
    stripe_event_id TEXT,
    filing_period TEXT NOT NULL,
    buyer_vat_number TEXT NOT NULL,
    row_type TEXT NOT NULL,
    amount_sek_ore INTEGER NOT NULL,
    exported_amount_sek INTEGER NOT NULL,
    review_state TEXT NOT NULL,
    review_reason TEXT,
    payload BLOB NOT NULL DEFAULT '{{}}',
    created_at TEXT NOT NULL DEFAULT {_NOW},
    updated_at TEXT NOT NULL DEFAULT {_NOW}
);

CREATE TABLE IF NOT EXISTS filing_periods (
    kind TEXT NOT NULL,
    period TEXT NOT NULL,
    bokio_company_id TEXT NOT NULL,
    deadline_date TEXT NOT NULL,
    first_send_at TEXT NOT NULL,
    last_evaluated_at TEXT,
    last_evaluation_status TEXT NOT NULL DEFAULT 'pending',
    zero_reminder_sent_at TEXT,
    submitted_at TEXT,
    created_at TEXT NOT NULL DEFAULT {_NOW},
    updated_at TEXT NOT NULL DEFAULT {_NOW},
    PRIMARY KEY (kind, period, bokio_company_id)
);

CREATE TABLE IF NOT EXISTS filing_exports (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    period TEXT NOT NULL,
    bokio_company_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    checksum TEXT NOT NULL,
    filename TEXT,
    content BLOB NOT NULL,
    summary BLOB,
    emailed_at TEXT,
    superseded_by TEXT,
    created_at TEXT NOT NULL DEFAULT {_NOW},
    updated_at TEXT NOT NULL DEFAULT {_NOW},
    UNIQUE (bokio_company_id, kind, period, version)
);

CREATE TABLE IF NOT EXISTS advisory_locks (
    key1 INTEGER NOT NULL,
    key2 INTEGER NOT NULL,
    holder TEXT NOT NULL,
    acquired_at TEXT NOT NULL DEFAULT {_NOW},
    PRIMARY KEY (key1, key2)
);
"""

_MIGRATIONS_TABLE = f"""
CREATE TABLE IF NOT EXISTS schema_migrations (
    version TEXT PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT {_NOW}
)
"""


def _run_script_atomically(connection: sqlite3.Connection, script: str) -> None:
    connection.commit()
    try:
        connection.executescript(f"BEGIN;\n{script}\nCOMMIT;")
    except BaseException:
        if connection.in_transaction:
            connection.rollback()
        raise


def apply_schema(connection: sqlite3.Connection) -> None:
    """Create every table the store uses; safe to call more than once."""
    _run_script_atomically(connection, _SCHEMA)


def run_migrations(connection: sqlite3.Connection, directory: str | os.PathLike[str]) -> list[str]:
    """Apply the ``.sql`` files in ``directory`` that have not run yet.

    Files run in name order, each in its own transaction together with the
    record of its version. Returns the names of the files applied.
    """
    path = Path(directory)
    names = sorted(
        entry.name for entry in path.iterdir() if not entry.is_dir() and entry.suffix == ".sql"
    )

    connection.execute(_MIGRATIONS_TABLE)
    connection.commit()

    applied: list[str] = []
    for name in names:
        (exists,) = connection.execute(
            "SELECT EXISTS(SELECT 1 FROM schema_migrations WHERE version = ?)", (name,)
        ).fetchone()
        if exists:
            continue
        sql_text = (path / name).read_text(encoding="utf-8")
        quoted = name.replace("'", "''")
        _run_script_atomically(
            connection,
            f"{sql_text}\n;\nINSERT INTO schema_migrations (version) VALUES ('{quoted}');",
        )
        applied.append(name)
    return applied