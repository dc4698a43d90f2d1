from __future__ import annotations

from datetime import date, datetime, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from absetzbar.allocation import LOGIC_VERSION
from absetzbar.models import (
    Allocation,
    AllocationResult,
    Classification,
    ClassifiedRecord,
    DuplicateRecord,
    ExpenseRecord,
    IncomeSource,
    ManualReview,
    Situation,
    TaxConfig,
)
from absetzbar.situations import context_hash
from absetzbar.storage import RecordStore, StaleRecord

ACCOUNT = "office@example.at"
DEV = IncomeSource(id="dev", name="Dev", category="selbstaendige_arbeit", valid_from=date(2024, 1, 1))
SITUATION = Situation.model_validate(
    {"id": 1, "from": "2024-01-01", "jurisdiction": "AT", "vat_status": "regelbesteuert"}
)
CONFIG = TaxConfig(jurisdiction="AT", situations=[SITUATION], income_sources=[DEV])


def _store(tmp_path: Path) -> RecordStore:
    store = RecordStore(tmp_path / "data" / "absetzbar.db")
    store.init_db()
    return store


def _record(record_id: str, day: date = date(2024, 5, 3), **overrides: object) -> ExpenseRecord:
    data: dict = {
        "id": record_id,
        "account": ACCOUNT,
        "vendor_domain": "hetzner.com",
        "invoice_date": day,
        "amount_cents": 49_90,
    }
    data.update(overrides)
    return ExpenseRecord(**data)


def _classified(
    record_id: str,
    *,
    day: date = date(2024, 5, 3),
    category: str = "full",
    source: str = "dev",
    situation: Situation = SITUATION,
    review_reasons: list[str] | None = None,
) -> ClassifiedRecord:
    return ClassifiedRecord(
        record=_record(record_id, day),
        situation_id=situation.id,
        context_hash=context_hash(situation, [DEV]),
        classification=Classification(
            category=category, income_tax_percent=100, vat_recoverable=True, amount_cents=49_90, stage="final"
        ),
        allocation=AllocationResult(
            allocations=[Allocation(source_id=source, percent=100)],
            tier="allocation_rule",
            rule_id="hosting",
            confidence=1.0,
            reason="Matched allocation rule 'hosting'",
            logic_version=LOGIC_VERSION,
            decided_at=datetime(2024, 5, 4, tzinfo=timezone.utc),
        ),
        review_reasons=review_reasons or [],
        confidence="high",
    )


def test_init_db_creates_parent_directory(tmp_path: Path) -> None:
    store = _store(tmp_path)

    assert store.db_path.exists()
    assert not store.has_record("missing", ACCOUNT)


def test_save_and_load_classified_result(tmp_path: Path) -> None:
    store = _store(tmp_path)
    result = _classified("msg-1")

    store.save_classified(result)
    store.save_classified(result)

    loaded = store.get_result("msg-1", ACCOUNT)
    assert loaded is not None
    assert loaded.assignment_status == "rule_match"
    assert loaded.income_source_id == "dev"
    assert loaded.allocation is not None and loaded.allocation.rule_id == "hosting"
    assert store.get_record("msg-1", ACCOUNT) == result.record
    assert store.pending_records(ACCOUNT) == []


def test_pending_records_until_classified(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_pending(_record("msg-1"))

    assert [r.id for r in store.pending_records(ACCOUNT)] == ["msg-1"]
    assert store.get_result("msg-1", ACCOUNT) is None

    store.save_classified(_classified("msg-1"))
    assert store.pending_records(ACCOUNT) == []


def test_vendor_history_and_recent_allocations(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save_classified(_classified("msg-1", day=date(2024, 3, 1), category="full"))
    store.save_classified(_classified("msg-2", day=date(2024, 4, 1), category="telecom", source="dev"))
    duplicate = _classified("msg-3", day=date(2024, 4, 2)).marked_duplicate(
        DuplicateRecord(record_id="msg-3", original_id="msg-2", confidence="exact", strategy="invoice_number")
    )
    store.save_classified(duplicate)

    history = store.vendor_history(ACCOUNT, "billing@hetzner.com", exclude_id="msg-9")
    assert history.invoice_count == 2
    assert history.last_category == "telecom"
    assert history.total_amount_cents == 2 * 49_90

    recent = store.recent_allocations(ACCOUNT, "hetzner.com", limit=3)
    assert recent == [[Allocation(source_id="dev", percent=100)]] * 2
    assert store.vendor_history(ACCOUNT, None).invoice_count == 0


def test_manual_review_round_trip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    review = ManualReview(
        category="partial",
        income_tax_percent=40,
        vat_recoverable=True,
        reason="Laptop, mostly private",
        allocations=[Allocation(source_id="dev", percent=100)],
    )

    store.save_manual_review("msg-1", ACCOUNT, review)

    assert store.get_manual_review("msg-1", ACCOUNT) == review
    assert store.get_manual_review("msg-1", "other@example.at") is None


def test_records_needing_review(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save_classified(_classified("msg-1"))
    store.save_classified(_classified("msg-2", review_reasons=["Category could not be determined"]))

    assert [r.record.id for r in store.records_needing_review(ACCOUNT)] == ["msg-2"]


def test_find_stale_records(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save_classified(_classified("fresh"))
    store.save_classified(
        _classified("changed", situation=SITUATION.model_copy(update={"vat_status": "kleinunternehmer"}))
    )
    store.save_classified(_classified("uncovered", day=date(2023, 6, 1)))
    store.insert_pending(_record("waiting", date(2024, 5, 4)))

    stale = store.find_stale(CONFIG, ACCOUNT)

    assert set(stale) == {
        StaleRecord("changed", "situation_changed"),
        StaleRecord("uncovered", "no_situation_coverage"),
        StaleRecord("waiting", "never_classified"),
    }


def test_interrupted_runs_are_flagged_on_start(tmp_path: Path) -> None:
    store = _store(tmp_path)
    crashed = store.start_run("classify", ACCOUNT)

    restarted = RecordStore(store.db_path)
    assert restarted.mark_interrupted_runs() == 1
    assert restarted.mark_interrupted_runs() == 0

    finished = restarted.start_run("classify", ACCOUNT)
    restarted.finish_run(finished, "completed", stats={"processed": 3})

    runs = {r.id: r for r in restarted.recent_runs()}
    assert runs[crashed].status == "interrupted"
    assert runs[finished].status == "completed"
    assert runs[finished].stats == {"processed": 3}
    assert runs[finished].finished_at is not None


@pytest.mark.parametrize("percent", [-10, 101])
def test_manual_review_rejects_impossible_percent(percent: int) -> None:
    with pytest.raises(ValidationError):
        ManualReview(category="partial", income_tax_percent=percent, vat_recoverable=True)
