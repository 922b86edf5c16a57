import sqlite3
import uuid

import pytest

from bookystore.migrations import apply_schema
from bookystore.records import (
    ManualTaxEvidence,
    NotFoundError,
    ReportabilityState,
    TaxCase,
    TaxCaseObject,
)
from bookystore.tax import TaxQueries

COMPANY_ID = uuid.UUID("11111111-2222-3333-4444-555555555555")


@pytest.fixture
def queries():
    connection = sqlite3.connect(":memory:")
    apply_schema(connection)
    yield TaxQueries(connection)
    connection.close()


def make_case(root_id="ch_123", **overrides):
    values = dict(
        id=uuid.uuid4(),
        bokio_company_id=COMPANY_ID,
        root_object_type="charge",
        root_object_id=root_id,
        livemode=False,
        reportability_state=ReportabilityState.NEEDS_REVIEW.value,
        dossier=b'{"version":1}',
    )
    values.update(overrides)
    return TaxCase(**values)


def test_upsert_tax_case_returns_persisted_id_on_conflict(queries):
    first = make_case()
    first_id = queries.upsert_tax_case(first)
    assert first_id == first.id

    second = make_case(id=uuid.uuid4(), dossier=b'{"version":2}')
    persisted_id = queries.upsert_tax_case(second)
    assert persisted_id == first.id

    stored = queries.get_tax_case_by_root(COMPANY_ID, "charge", "ch_123")
    assert stored.id == first.id
    assert stored.dossier == b'{"version":2}'

    objects = [
        TaxCaseObject(
            tax_case_id=second.id, object_type="charge", object_id="ch_123", object_role="root"
        )
    ]
    queries.replace_tax_case_objects(persisted_id, objects)
    stored_objects = queries.list_tax_case_objects(first.id)
    assert len(stored_objects) == 1
    assert stored_objects[0].tax_case_id == first.id
    assert stored_objects[0].object_role == "root"


def test_get_tax_case_round_trips_optional_fields(queries):
    case = make_case(
        source_currency="EUR",
        source_amount_minor=1234,
        sale_type="SERVICES",
        country="DE",
        country_source="billing_address",
        buyer_vat_number="DE123456789",
        buyer_vat_verified=True,
        buyer_is_business=True,
        tax_status="taxed",
        automatic_tax_enabled=True,
        automatic_tax_status="complete",
        stripe_tax_amount_known=True,
        stripe_tax_amount_minor=234,
        invoice_pdf_url="https://invoices.example.com/in_1.pdf",
    )
    queries.upsert_tax_case(case)
    stored = queries.get_tax_case(case.id)
    assert stored.source_currency == "EUR"
    assert stored.source_amount_minor == 1234
    assert stored.country == "DE"
    assert stored.buyer_vat_verified is True
    assert stored.buyer_is_business is True
    assert stored.automatic_tax_enabled is True
    assert stored.stripe_tax_amount_minor == 234
    assert stored.stripe_tax_reverse_charge is False
    assert stored.review_reason is None
    assert stored.created_at is not None and stored.created_at.tzinfo is not None


def test_get_tax_case_missing_raises_not_found(queries):
    with pytest.raises(NotFoundError):
        queries.get_tax_case(uuid.uuid4())
    with pytest.raises(NotFoundError):
        queries.get_tax_case_by_root(COMPANY_ID, "charge", "missing")


def test_list_tax_cases_by_ids(queries):
    assert queries.list_tax_cases_by_ids([]) == []
    b = make_case(root_id="ch_b")
    a = make_case(root_id="ch_a")
    c = make_case(root_id="ch_c")
    for case in (b, a, c):
        queries.upsert_tax_case(case)
    listed = queries.list_tax_cases_by_ids([b.id, a.id])
    assert [case.root_object_id for case in listed] == ["ch_a", "ch_b"]


def test_list_tax_cases_by_object(queries):
    first = make_case(root_id="ch_1")
    second = make_case(root_id="ch_2")
    queries.upsert_tax_case(first)
    queries.upsert_tax_case(second)
    shared = TaxCaseObject(
        tax_case_id=first.id, object_type="invoice", object_id="in_1", object_role="invoice"
    )
    queries.replace_tax_case_objects(first.id, [shared])
    queries.replace_tax_case_objects(second.id, [shared])
    listed = queries.list_tax_cases_by_object("invoice", "in_1")
    assert [case.id for case in listed] == [first.id, second.id]
    assert queries.list_tax_cases_by_object("invoice", "in_2") == []


def test_replace_tax_case_objects_removes_old_links(queries):
    case = make_case()
    queries.upsert_tax_case(case)
    queries.replace_tax_case_objects(
        case.id,
        [
            TaxCaseObject(tax_case_id=case.id, object_type="charge", object_id="ch_123", object_role="root"),
            TaxCaseObject(tax_case_id=case.id, object_type="invoice", object_id="in_9", object_role="invoice"),
        ],
    )
    queries.replace_tax_case_objects(
        case.id,
        [TaxCaseObject(tax_case_id=case.id, object_type="refund", object_id="re_1", object_role="refund")],
    )
    stored = queries.list_tax_case_objects(case.id)
    assert [(o.object_type, o.object_id) for o in stored] == [("refund", "re_1")]


def test_list_tax_case_objects_ordering(queries):
    case = make_case()
    queries.upsert_tax_case(case)
    queries.replace_tax_case_objects(
        case.id,
        [
            TaxCaseObject(tax_case_id=case.id, object_type="refund", object_id="re_2", object_role="refund"),
            TaxCaseObject(tax_case_id=case.id, object_type="charge", object_id="ch_123", object_role="root"),
            TaxCaseObject(tax_case_id=case.id, object_type="invoice", object_id="in_1", object_role="invoice"),
        ],
    )
    roles = [o.object_role for o in queries.list_tax_case_objects(case.id)]
    assert roles == ["invoice", "refund", "root"]


def test_manual_tax_evidence_round_trip_and_update(queries):
    case = make_case()
    queries.upsert_tax_case(case)
    evidence = ManualTaxEvidence(
        id=uuid.uuid4(),
        tax_case_id=case.id,
        country="FR",
        buyer_vat_verified=True,
        note="checked by hand",
        payload=b'{"source":"manual"}',
    )
    queries.upsert_manual_tax_evidence(evidence)
    stored = queries.list_manual_tax_evidence(case.id)
    assert len(stored) == 1
    assert stored[0].country == "FR"
    assert stored[0].buyer_vat_verified is True
    assert stored[0].buyer_is_business is None
    assert stored[0].sale_type is None
    assert stored[0].payload == b'{"source":"manual"}'

    evidence.country = "IT"
    evidence.buyer_is_business = False
    queries.upsert_manual_tax_evidence(evidence)
    stored = queries.list_manual_tax_evidence(case.id)
    assert len(stored) == 1
    assert stored[0].country == "IT"
    assert stored[0].buyer_is_business is False


def test_manual_tax_evidence_empty_for_unknown_case(queries):
    assert queries.list_manual_tax_evidence(uuid.uuid4()) == []