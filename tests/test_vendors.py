from __future__ import annotations

from pathlib import Path

import pytest

from absetzbar.rules.loader import KnowledgeBase, VendorRule, VendorRules
from absetzbar.rules.vendors import find_vendor


def _write_rules(rules_dir: Path) -> None:
    rules_dir.mkdir(parents=True, exist_ok=True)

    (rules_dir / "vendors.yml").write_text(
        "\n".join(
            [
                "version: 1",
                "rules:",
                "  - id: telecom_providers",
                "    priority: 30",
                "    when:",
                "      any:",
                "        - {domain: a1.net, name: A1}",
                "    then:",
                "      deductible_category: telecom",
                "      label: Telecom",
                "  - id: meals_restaurant",
                "    priority: 50",
                "    when:",
                "      any:",
                "        - contains_any: [gasthaus, business lunch]",
                "    then:",
                "      deductible_category: meals",
                "      label: Business Meal",
                "  - id: none_groceries",
                "    priority: 20",
                "    when:",
                "      any:",
                "        - regex: \"\\\\b(billa|spar)\\\\b\"",
                "    then:",
                "      deductible_category: none",
            ]
        )
        + "\n",
        encoding="utf-8",
    )

    (rules_dir / "services.yml").write_text(
        "\n".join(
            [
                "version: 1",
                "personal_domains: [Netflix.com]",
                "business_domains: [github.com]",
                "personal_subject_patterns: [\"netflix\"]",
                "grocery_patterns: [\"\\\\bbilla\\\\b\"]",
            ]
        )
        + "\n",
        encoding="utf-8",
    )

    (rules_dir / "anomalies.yml").write_text(
        "\n".join(
            [
                "version: 1",
                "thresholds:",
                "  high_amount_personal_cents: 15000",
                "no_vat_patterns: [\"versicherung\"]",
            ]
        )
        + "\n",
        encoding="utf-8",
    )


def test_load_knowledge_base_sorts_by_priority(tmp_path: Path) -> None:
    _write_rules(tmp_path / "rules")

    kb = KnowledgeBase.load_from_dir(tmp_path / "rules")

    assert [r.id for r in kb.vendors.rules] == ["meals_restaurant", "telecom_providers", "none_groceries"]
    assert kb.services.personal_domains == ["netflix.com"]
    assert kb.services.personal_subject_patterns[0].search("Your NETFLIX invoice")
    assert kb.anomalies.high_amount_personal_cents == 15000
    assert kb.anomalies.first_time_high_cents == 500_00
    assert kb.anomalies.no_vat_patterns[0].search("KFZ-Versicherung")


def test_load_knowledge_base_requires_every_file(tmp_path: Path) -> None:
    _write_rules(tmp_path / "rules")
    (tmp_path / "rules" / "anomalies.yml").unlink()

    with pytest.raises(FileNotFoundError):
        KnowledgeBase.load_from_dir(tmp_path / "rules")


def test_load_knowledge_base_rejects_non_mapping(tmp_path: Path) -> None:
    _write_rules(tmp_path / "rules")
    (tmp_path / "rules" / "services.yml").write_text("- netflix.com\n", encoding="utf-8")

    with pytest.raises(ValueError):
        KnowledgeBase.load_from_dir(tmp_path / "rules")


def test_find_vendor_by_domain_regex_and_keywords(tmp_path: Path) -> None:
    _write_rules(tmp_path / "rules")
    rules = KnowledgeBase.load_from_dir(tmp_path / "rules").vendors

    a1 = find_vendor("Rechnung <billing@rechnung.a1.net>", "Ihre Rechnung", rules)
    assert a1 is not None
    assert (a1.rule_id, a1.name, a1.deductible_category) == ("telecom_providers", "A1", "telecom")

    lunch = find_vendor(None, "Business Lunch im Gasthaus Zur Post", rules)
    assert lunch is not None
    assert lunch.deductible_category == "meals"
    assert lunch.name == "Business Meal"

    billa = find_vendor("billa.at", "Kassenbon", rules)
    assert billa is not None
    assert billa.deductible_category == "none"
    assert billa.label == "none"

    assert find_vendor("example.org", "Consulting", rules) is None


def test_vendor_rule_without_category_is_unclear() -> None:
    rules = VendorRules(
        rules=[VendorRule(id="mixed", priority=1, when_any=[{"contains_any": ["amazon"]}], then={})]
    )

    match = find_vendor("amazon.de", "", rules)

    assert match is not None
    assert match.deductible_category == "unclear"


def test_shipped_vendor_rules_load() -> None:
    rules_dir = Path(__file__).resolve().parents[1] / "data" / "rules"

    kb = KnowledgeBase.load_from_dir(rules_dir)

    hetzner = find_vendor("hetzner.com", "Invoice", kb.vendors)
    assert hetzner is not None and hetzner.deductible_category == "full"
    fuel = find_vendor(None, "OMV Tankstelle Wien", kb.vendors)
    assert fuel is not None and fuel.deductible_category == "vehicle"
    property_manager = find_vendor("muster-immo.at", "Hausverwaltung Muster", kb.vendors)
    assert property_manager is not None and property_manager.label == "Property Management"
    farm = find_vendor("lagerhaus.at", "Rechnung", kb.vendors)
    assert farm is not None and farm.name == "Lagerhaus"
