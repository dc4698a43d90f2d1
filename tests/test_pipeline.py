from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest

from absetzbar.duplicates import DedupOptions
from absetzbar.models import (
    Allocation,
    ExpenseRecord,
    IncomeSource,
    ManualReview,
    Situation,
    TaxConfig,
    UpstreamSuggestion,
)
from absetzbar.pipeline import ClassificationPipeline, summarize_results
from absetzbar.rules.loader import KnowledgeBase
from absetzbar.situations import NoActiveSituationError
from absetzbar.storage import RecordStore

ACCOUNT = "office@example.at"
DEV = IncomeSource(id="dev", name="Dev", category="selbstaendige_arbeit", valid_from=date(2024, 1, 1))
CONFIG = TaxConfig(
    jurisdiction="AT",
    situations=[
        Situation.model_validate(
            {
                "id": 1,
                "from": "2024-01-01",
                "jurisdiction": "AT",
                "vat_status": "regelbesteuert",
                "has_company_car": True,
                "company_car_type": "ice",
                "car_business_percent": 80,
            }
        )
    ],
    income_sources=[DEV],
)


@pytest.fixture(scope="module")
def kb() -> KnowledgeBase:
    return KnowledgeBase.load_from_dir(Path(__file__).resolve().parents[1] / "data" / "rules")


@pytest.fixture()
def store(tmp_path: Path) -> RecordStore:
    store = RecordStore(tmp_path / "absetzbar.db")
    store.init_db()
    return store


def _record(record_id: str = "msg-1", **overrides: object) -> ExpenseRecord:
    data: dict = {
        "id": record_id,
        "account": ACCOUNT,
        "vendor_domain": "billing@hetzner.com",
        "subject": "Hetzner Online invoice",
        "invoice_number": "R-0042",
        "invoice_date": date(2024, 5, 3),
        "amount_cents": 49_90,
    }
    data.update(overrides)
    return ExpenseRecord(**data)


def test_business_vendor_runs_through_every_stage(kb: KnowledgeBase) -> None:
    pipeline = ClassificationPipeline(CONFIG, kb)

    result = pipeline.classify(_record(), UpstreamSuggestion(category="full", vendor_name="Hetzner"))

    assert result.classification is not None
    assert result.classification.stage == "final"
    assert result.classification.income_tax_percent == 100
    assert result.classification.vat_recoverable is True
    assert result.cross_validation is not None and result.cross_validation.match == "agree"
    assert result.allocation is not None and result.allocation.tier == "heuristic_single_source"
    assert result.situation_id == 1
    assert result.confidence == "high"
    assert not result.needs_review


def test_vehicle_vat_is_corrected_in_austria(kb: KnowledgeBase) -> None:
    pipeline = ClassificationPipeline(CONFIG, kb)
    record = _record(vendor_domain="omv.at", subject="OMV Tankstelle Beleg", invoice_number=None, amount_cents=72_40)

    result = pipeline.classify(
        record, UpstreamSuggestion(category="vehicle", vat_recoverable=True, income_tax_percent=60)
    )

    assert result.classification is not None
    assert result.classification.vat_recoverable is False
    assert "vat_recoverable" in {v.field for v in result.classification.violations}


def test_personal_service_is_forced_to_none(kb: KnowledgeBase) -> None:
    pipeline = ClassificationPipeline(CONFIG, kb)
    record = _record(vendor_domain="info@netflix.com", subject="Your Netflix receipt", amount_cents=15_99)

    result = pipeline.classify(record, UpstreamSuggestion(category="full", reason="Streaming subscription"))

    assert result.force_override is not None
    assert result.classification is not None
    assert result.classification.category == "none"
    assert result.classification.income_tax_percent == 0
    assert result.classification.vat_recoverable is False
    assert "[Forced:" in result.classification.reason


def test_unclear_category_needs_review(kb: KnowledgeBase) -> None:
    pipeline = ClassificationPipeline(CONFIG, kb)

    result = pipeline.classify(_record(vendor_domain="example.org", subject="Rechnung"), UpstreamSuggestion())

    assert result.classification is not None
    assert result.classification.category == "unclear"
    assert "Category could not be determined" in result.review_reasons
    assert result.confidence == "low"
    assert result.needs_review


def test_uncovered_date_is_never_defaulted(kb: KnowledgeBase) -> None:
    pipeline = ClassificationPipeline(CONFIG, kb)

    with pytest.raises(NoActiveSituationError):
        pipeline.classify(_record(invoice_date=date(2023, 12, 31)), UpstreamSuggestion(category="full"))
    with pytest.raises(NoActiveSituationError):
        pipeline.prompt_context(_record(invoice_date=None))


def test_prompt_context_lists_active_sources(kb: KnowledgeBase) -> None:
    context = ClassificationPipeline(CONFIG, kb).prompt_context(_record())

    assert context.jurisdiction == "AT"
    assert context.active_source_ids == ["dev"]
    assert context.has_company_car
    assert context.instructions


def test_repeated_invoice_number_is_marked_duplicate(kb: KnowledgeBase, store: RecordStore) -> None:
    pipeline = ClassificationPipeline(CONFIG, kb, store)
    store.save_classified(pipeline.classify(_record("msg-1"), UpstreamSuggestion(category="full")))

    result = pipeline.classify(_record("msg-2"), UpstreamSuggestion(category="full"))

    assert result.duplicate is not None
    assert result.duplicate.original_id == "msg-1"
    assert result.allocation is None
    assert result.assignment_status == "duplicate"
    assert not result.needs_review


def test_fuzzy_candidate_adds_review_reason(kb: KnowledgeBase, store: RecordStore) -> None:
    pipeline = ClassificationPipeline(CONFIG, kb, store)
    store.save_classified(pipeline.classify(_record("msg-1", invoice_number=None), UpstreamSuggestion(category="full")))

    second = _record("msg-2", invoice_number=None, invoice_date=date(2024, 5, 6))
    flagged = pipeline.classify(second, UpstreamSuggestion(category="full"))
    applied = pipeline.classify(second, UpstreamSuggestion(category="full"), dedup=DedupOptions(auto_dedup=True))

    assert flagged.duplicate is None
    assert "Possible duplicate of msg-1" in flagged.review_reasons
    assert applied.duplicate is not None and applied.duplicate.strategy == "fuzzy"


def test_manual_review_is_authoritative(kb: KnowledgeBase, store: RecordStore) -> None:
    pipeline = ClassificationPipeline(CONFIG, kb, store)
    record = _record(vendor_domain="example.org", subject="Beratung")
    store.save_manual_review(
        record.id,
        ACCOUNT,
        ManualReview(
            category="full",
            income_tax_percent=100,
            vat_recoverable=True,
            reason="Consulting for client project",
            allocations=[Allocation(source_id="dev", percent=100)],
        ),
    )

    result = pipeline.classify(record, UpstreamSuggestion(category="none"))

    assert result.classification is not None
    assert result.classification.category == "full"
    assert result.allocation is not None and result.allocation.tier == "manual_override"
    assert result.assignment_status == "confirmed"
    assert result.review_reasons == []
    assert result.confidence == "high"


def test_summarize_results(kb: KnowledgeBase) -> None:
    pipeline = ClassificationPipeline(CONFIG, kb)
    results = [
        pipeline.classify(_record("msg-1"), UpstreamSuggestion(category="full")),
        pipeline.classify(_record("msg-2", vendor_domain="example.org"), UpstreamSuggestion()),
    ]

    summary = summarize_results(results)

    assert summary["total"] == 2
    assert summary["needs_review"] == 1
    assert summary["by_category"] == {"full": 1, "unclear": 1}
    assert summary["anomalies"]["total_review_required"] == 0


def test_manual_review_without_allocations_stays_unassigned(kb: KnowledgeBase, store: RecordStore) -> None:
    pipeline = ClassificationPipeline(CONFIG, kb, store)
    record = _record()
    store.save_manual_review(
        record.id,
        ACCOUNT,
        ManualReview(category="none", income_tax_percent=0, vat_recoverable=False, reason="Private purchase"),
    )

    result = pipeline.classify(record, UpstreamSuggestion(category="full", suggested_source_id="dev"))

    assert result.allocation is not None
    assert result.allocation.tier == "manual_override"
    assert result.allocation.allocations == []
    assert result.income_source_id is None
    assert result.assignment_status == "confirmed"
    assert not result.needs_review


def test_fuzzy_match_uses_amount_from_suggestion(kb: KnowledgeBase, store: RecordStore) -> None:
    pipeline = ClassificationPipeline(CONFIG, kb, store)
    first = _record("msg-1", invoice_number=None, amount_cents=None)
    store.save_classified(pipeline.classify(first, UpstreamSuggestion(category="full", amount_cents=49_90)))

    second = _record("msg-2", invoice_number=None, amount_cents=None, invoice_date=date(2024, 5, 6))
    result = pipeline.classify(second, UpstreamSuggestion(category="full", amount_cents=49_90))

    assert result.duplicate_candidate is not None
    assert result.duplicate_candidate.original_id == "msg-1"
    assert "Possible duplicate of msg-1" in result.review_reasons


def test_vendor_type_picks_matching_income_source(kb: KnowledgeBase) -> None:
    rental = IncomeSource(id="rental", name="Vermietung", category="vermietung", valid_from=date(2024, 1, 1))
    config = CONFIG.model_copy(update={"income_sources": [DEV, rental]})
    pipeline = ClassificationPipeline(config, kb)
    record = _record(vendor_domain="office@muster-immo.at", subject="Hausverwaltung Muster: Betriebskosten Mai")

    result = pipeline.classify(record, UpstreamSuggestion(category="full"))

    assert result.allocation is not None
    assert result.allocation.tier == "heuristic_vendor_type"
    assert result.income_source_id == "rental"
