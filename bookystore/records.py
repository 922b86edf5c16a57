"""Record types, status vocabularies and row conversion for the booking store."""

import base64
import dataclasses
import enum
import hashlib
import json
import typing
from dataclasses import dataclass
from datetime import date, datetime, timezone
from functools import lru_cache
from typing import Any
from uuid import UUID

# SQL expression producing the current UTC time in the same text form that
# ``_db_value`` writes for Python datetimes, so stored values compare correctly.
_NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%f000+00:00', 'now')"


class NotFoundError(LookupError):
    """The requested row does not exist."""

    def __init__(self, message: str = "not found") -> None:
        super().__init__(message)


class LockBusyError(RuntimeError):
    """An advisory lock is already held by someone else."""

    def __init__(self, message: str = "lock busy") -> None:
        super().__init__(message)


class FactStatus(str, enum.Enum):
    PENDING = "pending"
    NEEDS_REVIEW = "needs_review"
    FAILED = "failed"
    BATCHED = "batched"
    POSTED = "posted"
    REVERSED = "reversed"


class Direction(str, enum.Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class PostingRunType(str, enum.Enum):
    DAILY_CLOSE = "daily_close"


class PostingRunStatus(str, enum.Enum):
    STARTED = "started"
    JOURNAL_CREATED = "journal_created"
    COMPLETED = "completed"
    FAILED = "failed"


class FilingKind(str, enum.Enum):
    OSS_UNION = "oss_union"
    PERIODIC_SUMMARY = "periodic_summary"


class FilingReviewState(str, enum.Enum):
    READY = "ready"
    REVIEW = "review"


class FilingPeriodStatus(str, enum.Enum):
    PENDING = "pending"
    EXPORTED = "exported"
    SUBMITTED = "submitted"


class ReportabilityState(str, enum.Enum):
    NEEDS_REVIEW = "needs_review"


@dataclass(kw_only=True)
class AccountingFact:
    id: UUID
    bokio_company_id: UUID
    stripe_account_id: str
    source_group_id: str
    source_object_type: str
    source_object_id: str
    fact_type: str
    posting_date: date
    amount_sek_ore: int
    bokio_account: int
    direction: str
    status: str
    tax_case_id: UUID | None = None
    stripe_balance_transaction_id: str | None = None
    stripe_event_id: str | None = None
    market_code: str | None = None
    vat_treatment: str | None = None
    source_currency: str | None = None
    source_amount_minor: int | None = None
    review_reason: str | None = None
    payload: bytes = b"{}"
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(kw_only=True)
class BalanceTransaction:
    id: str
    stripe_account_id: str
    type: str
    currency: str
    currency_exponent: int
    amount_minor: int
    fee_minor: int
    net_minor: int
    amount_sek_ore: int
    fee_sek_ore: int
    net_sek_ore: int
    occurred_at: datetime
    source_object_type: str = ""
    source_object_id: str = ""
    reporting_category: str = ""
    status: str = ""
    exchange_rate: float | None = None
    available_on: datetime | None = None
    payout_id: str = ""
    source_event_id: str = ""
    payload: bytes = b"{}"
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(kw_only=True)
class PostingRun:
    id: UUID
    bokio_company_id: UUID
    posting_date: date
    timezone: str
    run_type: str
    sequence_no: int
    status: str
    config_snapshot: bytes = b"{}"
    summary: bytes = b"{}"
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_message: str | None = None


@dataclass(kw_only=True)
class BokioJournal:
    posting_run_id: UUID
    bokio_company_id: UUID
    bokio_journal_entry_id: UUID
    bokio_journal_title: str
    posting_date: date
    attachment_checksum: str
    bokio_journal_entry_number: str = ""
    bokio_upload_id: UUID | None = None
    created_at: datetime | None = None
    reversed_at: datetime | None = None
    reversed_by_journal_entry_id: UUID | None = None


@dataclass(kw_only=True)
class OSSUnionEntry:
    id: UUID
    bokio_company_id: UUID
    source_group_id: str
    source_object_type: str
    source_object_id: str
    original_supply_period: str
    filing_period: str
    consumption_country: str
    origin_country: str
    origin_identifier: str
    sale_type: str
    vat_rate_basis_points: int
    taxable_amount_eur_cents: int
    vat_amount_eur_cents: int
    review_state: str
    tax_case_id: UUID | None = None
    stripe_event_id: str | None = None
    correction_target_period: str | None = None
    review_reason: str | None = None
    payload: bytes = b"{}"
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(kw_only=True)
class PeriodicSummaryEntry:
    id: UUID
    bokio_company_id: UUID
    source_group_id: str
    source_object_type: str
    source_object_id: str
    filing_period: str
    buyer_vat_number: str
    row_type: str
    amount_sek_ore: int
    exported_amount_sek: int
    review_state: str
    tax_case_id: UUID | None = None
    stripe_event_id: str | None = None
    review_reason: str | None = None
    payload: bytes = b"{}"
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(kw_only=True)
class FilingPeriod:
    kind: str
    period: str
    bokio_company_id: UUID
    deadline_date: date
    first_send_at: datetime
    last_evaluation_status: str = ""
    last_evaluated_at: datetime | None = None
    zero_reminder_sent_at: datetime | None = None
    submitted_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(kw_only=True)
class FilingExport:
    id: UUID
    kind: str
    period: str
    bokio_company_id: UUID
    version: int
    checksum: str
    content: bytes = b""
    filename: str | None = None
    summary: bytes = b""
    emailed_at: datetime | None = None
    superseded_by: UUID | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(kw_only=True)
class ObjectSnapshot:
    object_type: str
    object_id: str
    livemode: bool = False
    payload: bytes = b"{}"
    first_seen_at: datetime | None = None
    last_synced_at: datetime | None = None


@dataclass(kw_only=True)
class StripeWebhookEvent:
    id: str
    event_type: str
    stripe_created_at: datetime
    livemode: bool = False
    api_version: str = ""
    payload: bytes = b"{}"
    received_at: datetime | None = None
    processed_at: datetime | None = None
    processing_error: str | None = None


@dataclass(kw_only=True)
class TaxCase:
    id: UUID
    bokio_company_id: UUID
    root_object_type: str
    root_object_id: str
    reportability_state: str
    livemode: bool = False
    source_currency: str | None = None
    source_amount_minor: int | None = None
    sale_type: str | None = None
    country: str | None = None
    country_source: str | None = None
    buyer_vat_number: str | None = None
    buyer_vat_verified: bool = False
    buyer_is_business: bool = False
    tax_status: str | None = None
    review_reason: str | None = None
    automatic_tax_enabled: bool = False
    automatic_tax_status: str | None = None
    stripe_tax_amount_known: bool = False
    stripe_tax_amount_minor: int | None = None
    stripe_tax_reverse_charge: bool = False
    stripe_tax_zero_rated: bool = False
    invoice_pdf_url: str | None = None
    dossier: bytes = b"{}"
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(kw_only=True)
class TaxCaseObject:
    tax_case_id: UUID
    object_type: str
    object_id: str
    object_role: str
    created_at: datetime | None = None


@dataclass(kw_only=True)
class ManualTaxEvidence:
    id: UUID
    tax_case_id: UUID
    country: str | None = None
    country_source: str | None = None
    buyer_vat_number: str | None = None
    buyer_vat_verified: bool | None = None
    buyer_is_business: bool | None = None
    sale_type: str | None = None
    note: str | None = None
    payload: bytes = b"{}"
    created_at: datetime | None = None
    updated_at: datetime | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _db_value(value: Any) -> Any:
    """Convert a Python value into the form stored in the database."""
    if value is None:
        return None
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return _as_utc(value).isoformat(timespec="microseconds")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    return value


def _decode(kind: Any, value: Any) -> Any:
    if kind is UUID:
        if isinstance(value, UUID):
            return value
        if isinstance(value, (bytes, bytearray, memoryview)):
            return UUID(bytes=bytes(value))
        return UUID(str(value))
    if kind is datetime:
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        return _as_utc(value)
    if kind is date:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        return date.fromisoformat(str(value)[:10])
    if kind is bool:
        return bool(value)
    if kind is int:
        return int(value)
    if kind is float:
        return float(value)
    if kind is bytes:
        if isinstance(value, str):
            return value.encode("utf-8")
        return bytes(value)
    if kind is str:
        return value if isinstance(value, str) else str(value)
    return value


@lru_cache(maxsize=None)
def _field_specs(cls: type) -> dict[str, tuple[Any, bool]]:
    specs: dict[str, tuple[Any, bool]] = {}
    for item in dataclasses.fields(cls):
        hint = item.type
        args = typing.get_args(hint)
        optional = type(None) in args
        base = next((a for a in args if a is not type(None)), hint) if optional else hint
        specs[item.name] = (base, optional)
    return specs


def _record_from_row(cls: type, row: Any) -> Any:
    """Build a record from a mapping of field names to stored values.

    NULL in a field that is not optional falls back to the field's default;
    a missing required value raises TypeError.
    """
    data = dict(row)
    values: dict[str, Any] = {}
    for name, (base, optional) in _field_specs(cls).items():
        if name not in data:
            continue
        raw = data[name]
        if raw is None:
            if optional:
                values[name] = None
            continue
        values[name] = _decode(base, raw)
    return cls(**values)


_HTML_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def _jsonable(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return _jsonable(value.value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {str(k): _jsonable(value[k]) for k in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    raise TypeError(f"cannot encode {type(value).__name__} as JSON")


def checksum_json(value: Any) -> str:
    """Return the hex SHA-1 of the compact JSON encoding of ``value``.

    Mapping keys are sorted, record fields keep their declared order, byte
    strings are base64 encoded and HTML-sensitive characters are escaped.
    """
    text = json.dumps(
        _jsonable(value), separators=(",", ":"), ensure_ascii=False, allow_nan=False
    )
    for char, escaped in _HTML_ESCAPES.items():
        text = text.replace(char, escaped)
    return hashlib.sha1(text.encode("utf-8")).hexdigest()