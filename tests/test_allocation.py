from __future__ import annotations

from datetime import date

import pytest

from absetzbar.allocation import (
    LOGIC_VERSION,
    AllocationEngine,
    AllocationRequest,
    format_allocations,
    is_split,
    normalize_allocations,
    parse_allocations,
    primary_source_id,
    rule_matches,
    serialize_allocations,
)
from absetzbar.jurisdictions.registry import get_rules
from absetzbar.models import Allocation, AllocationRule, IncomeSource, TaxConfig

DEV = IncomeSource(id="dev", name="Softwareentwicklung", category="selbstaendige_arbeit", valid_from=date(2024, 1, 1))
RENTAL = IncomeSource(id="rental", name="Vermietung", category="vermietung", valid_from=date(2024, 1, 1))
OLD = IncomeSource(
    id="old",
    name="Alte Firma",
    category="gewerbebetrieb",
    valid_from=date(2020, 1, 1),
    valid_to=date(2023, 1, 1),
)


def _engine(**config: object) -> AllocationEngine:
    tax_config = TaxConfig(jurisdiction="AT", income_sources=[DEV, RENTAL, OLD], **config)
    return AllocationEngine(tax_config, get_rules("AT"))


def _request(**overrides: object) -> AllocationRequest:
    data: dict = {
        "invoice_date": date(2024, 5, 1),
        "category": "full",
        "active_sources": [DEV, RENTAL],
        "vendor_domain": "hetzner.com",
        "subject": "Invoice",
    }
    data.update(overrides)
    return AllocationRequest(**data)


def _split_rule() -> AllocationRule:
    return AllocationRule(
        id="hetzner",
        vendor_domain="hetzner.com",
        strategy="split_fixed",
        allocations=[Allocation(source_id="dev", percent=70), Allocation(source_id="rental", percent=30)],
    )


@pytest.mark.parametrize("suggested", [None, "dev", "rental"])
def test_manual_override_dominates_every_other_tier(suggested: str | None) -> None:
    engine = _engine(allocation_rules=[_split_rule()], category_defaults={"full": "dev"})
    manual = [Allocation(source_id="rental", percent=100)]

    result = engine.allocate(
        _request(
            manual_allocations=manual,
            suggested_source_id=suggested,
            vendor_history=[[Allocation(source_id="dev", percent=100)]] * 3,
        )
    )

    assert result.tier == "manual_override"
    assert result.allocations == manual
    assert result.confidence == 1.0
    assert result.rule_id is None
    assert result.notes == []


def test_empty_manual_allocation_is_a_decision() -> None:
    engine = _engine(allocation_rules=[_split_rule()], category_defaults={"full": "dev"})

    result = engine.allocate(_request(manual_allocations=[], active_sources=[DEV], suggested_source_id="dev"))

    assert result.tier == "manual_override"
    assert result.allocations == []
    assert result.confidence == 1.0


def test_allocation_rule_fires_before_suggestion() -> None:
    engine = _engine(allocation_rules=[_split_rule()])

    result = engine.allocate(_request(suggested_source_id="dev"))

    assert result.tier == "allocation_rule"
    assert result.rule_id == "hetzner"
    assert [(a.source_id, a.percent) for a in result.allocations] == [("dev", 70), ("rental", 30)]
    assert result.logic_version == LOGIC_VERSION


def test_rule_pointing_at_inactive_source_is_skipped() -> None:
    rule = AllocationRule(id="legacy", vendor_domain="hetzner", allocations=[Allocation(source_id="old", percent=100)])
    engine = _engine(allocation_rules=[rule])

    result = engine.allocate(_request(suggested_source_id="rental"))

    assert result.tier == "ai_suggestion"
    assert result.allocations == [Allocation(source_id="rental", percent=100)]
    assert any("legacy" in note for note in result.notes)


def test_rule_breaking_ten_percent_rule_is_skipped() -> None:
    rule = AllocationRule(
        id="tiny",
        vendor_pattern="hetzner",
        allocations=[Allocation(source_id="dev", percent=95), Allocation(source_id="rental", percent=5)],
    )
    engine = _engine(allocation_rules=[rule])

    result = engine.allocate(_request())

    assert result.tier == "review_needed"
    assert "tiny" in result.notes[0]


def test_hallucinated_suggestion_is_ignored() -> None:
    engine = _engine(category_defaults={"full": "dev"})

    result = engine.allocate(_request(suggested_source_id="old"))

    assert result.tier == "category_default"
    assert result.allocations == [Allocation(source_id="dev", percent=100)]
    assert result.alternatives_considered == ["dev", "rental"]
    assert result.notes and "old" in result.notes[0]


def test_single_active_source_heuristic() -> None:
    result = _engine().allocate(_request(active_sources=[DEV]))

    assert result.tier == "heuristic_single_source"
    assert result.confidence == 0.9


def test_vendor_history_needs_three_unanimous_entries() -> None:
    engine = _engine()
    dev = [Allocation(source_id="dev", percent=100)]
    rental = [Allocation(source_id="rental", percent=100)]

    unanimous = engine.allocate(_request(vendor_history=[dev, dev, dev, rental]))
    mixed = engine.allocate(_request(vendor_history=[dev, rental, dev]))
    short = engine.allocate(_request(vendor_history=[dev, dev]))

    assert unanimous.tier == "heuristic_vendor_history"
    assert unanimous.confidence == 0.6
    assert unanimous.allocations == dev
    assert mixed.tier == "review_needed"
    assert short.tier == "review_needed"


def test_vendor_type_selects_only_matching_source() -> None:
    engine = _engine()
    dev = [Allocation(source_id="dev", percent=100)]

    typed = engine.allocate(_request(vendor_income_category="vermietung"))
    history_first = engine.allocate(_request(vendor_income_category="vermietung", vendor_history=[dev, dev, dev]))
    no_match = engine.allocate(_request(vendor_income_category="land_forstwirtschaft"))

    assert typed.tier == "heuristic_vendor_type"
    assert typed.allocations == [Allocation(source_id="rental", percent=100)]
    assert typed.confidence == 0.5
    assert history_first.tier == "heuristic_vendor_history"
    assert no_match.tier == "review_needed"


def test_no_active_source_needs_review() -> None:
    result = _engine().allocate(_request(active_sources=[]))

    assert result.tier == "review_needed"
    assert result.allocations == []
    assert result.confidence == 0.0


def test_rule_matching_criteria() -> None:
    request = _request(category="telecom", amount_cents=50_00, sender="A1 <rechnung@a1.net>")

    assert rule_matches(AllocationRule(id="a", vendor_pattern="a1\\.net"), request)
    assert rule_matches(AllocationRule(id="b", deductible_category="telecom", min_amount_cents=40_00), request)
    assert not rule_matches(AllocationRule(id="c", deductible_category="telecom", min_amount_cents=60_00), request)
    assert not rule_matches(AllocationRule(id="d"), request)


def test_allocation_helpers() -> None:
    allocations = [
        Allocation(source_id="rental", percent=30),
        Allocation(source_id="old", percent=0),
        Allocation(source_id="dev", percent=70),
    ]

    assert [a.source_id for a in normalize_allocations(allocations)] == ["dev", "rental"]
    assert primary_source_id(allocations) == "dev"
    assert is_split(allocations)
    assert not is_split([Allocation(source_id="dev", percent=100)])
    assert format_allocations(allocations, [DEV, RENTAL]) == "Softwareentwicklung (70%) / Vermietung (30%)"
    assert format_allocations([], [DEV]) == "Unassigned"
    assert parse_allocations(serialize_allocations(allocations)) == allocations
    assert parse_allocations(None) == []
