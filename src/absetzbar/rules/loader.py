from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass(frozen=True, slots=True)
class VendorRule:
    id: str
    priority: int
    when_any: list[dict]
    then: dict

    @property
    def deductible_category(self) -> str:
        return str(self.then.get("deductible_category") or "unclear")


@dataclass(frozen=True, slots=True)
class VendorRules:
    rules: list[VendorRule]


@dataclass(frozen=True, slots=True)
class ServiceLists:
    personal_domains: list[str]
    business_domains: list[str]
    personal_subject_patterns: list[re.Pattern[str]]
    grocery_patterns: list[re.Pattern[str]]


@dataclass(frozen=True, slots=True)
class AnomalySettings:
    high_amount_personal_cents: int = 200_00
    first_time_high_cents: int = 500_00
    very_high_amount_cents: int = 2000_00
    round_amount_step_cents: int = 100_00
    min_invoices_for_pattern: int = 1
    no_vat_patterns: list[re.Pattern[str]] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class KnowledgeBase:
    vendors: VendorRules
    services: ServiceLists
    anomalies: AnomalySettings

    @classmethod
    def load_from_dir(cls, rules_dir: Path) -> "KnowledgeBase":
        vendors = _load_yaml(rules_dir / "vendors.yml")
        services = _load_yaml(rules_dir / "services.yml")
        anomalies = _load_yaml(rules_dir / "anomalies.yml")

        vendor_rules = []
        for rule in ((vendors or {}).get("rules") or []):
            vendor_rules.append(
                VendorRule(
                    id=str(rule["id"]),
                    priority=int(rule.get("priority") or 0),
                    when_any=list(((rule.get("when") or {}).get("any") or [])),
                    then=dict(rule.get("then") or {}),
                )
            )
        vendor_rules.sort(key=lambda r: r.priority, reverse=True)

        services = services or {}
        service_lists = ServiceLists(
            personal_domains=[str(d).lower() for d in (services.get("personal_domains") or [])],
            business_domains=[str(d).lower() for d in (services.get("business_domains") or [])],
            personal_subject_patterns=_compile_all(services.get("personal_subject_patterns")),
            grocery_patterns=_compile_all(services.get("grocery_patterns")),
        )

        anomalies = anomalies or {}
        thresholds = dict(anomalies.get("thresholds") or {})
        defaults = AnomalySettings()
        anomaly_settings = AnomalySettings(
            high_amount_personal_cents=int(thresholds.get("high_amount_personal_cents", defaults.high_amount_personal_cents)),
            first_time_high_cents=int(thresholds.get("first_time_high_cents", defaults.first_time_high_cents)),
            very_high_amount_cents=int(thresholds.get("very_high_amount_cents", defaults.very_high_amount_cents)),
            round_amount_step_cents=int(thresholds.get("round_amount_step_cents", defaults.round_amount_step_cents)),
            min_invoices_for_pattern=int(thresholds.get("min_invoices_for_pattern", defaults.min_invoices_for_pattern)),
            no_vat_patterns=_compile_all(anomalies.get("no_vat_patterns")),
        )

        return cls(
            vendors=VendorRules(rules=vendor_rules),
            services=service_lists,
            anomalies=anomaly_settings,
        )


def _compile_all(patterns: list | None) -> list[re.Pattern[str]]:
    return [re.compile(str(p), re.IGNORECASE) for p in (patterns or [])]


def _load_yaml(path: Path) -> dict | None:
    if not path.exists():
        raise FileNotFoundError(str(path))
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping at {path}, got {type(data).__name__}.")
    return data
