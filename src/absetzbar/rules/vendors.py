from __future__ import annotations

import re
from dataclasses import dataclass

from .loader import VendorRule, VendorRules
from .normalization import clean_text, domain_matches, normalize_domain, tokenize


@dataclass(frozen=True, slots=True)
class VendorMatch:
    rule_id: str
    name: str
    label: str
    deductible_category: str
    percent: int | None = None


def find_vendor(vendor_domain: str | None, text: str, rules: VendorRules) -> VendorMatch | None:
    domain = normalize_domain(vendor_domain)
    haystack = clean_text(f"{domain or ''} {text}")
    tokens = tokenize(haystack)
    for rule in rules.rules:
        condition = _matching_condition(rule, domain, haystack, tokens)
        if condition is None:
            continue
        label = str(rule.then.get("label") or rule.deductible_category)
        name = str(condition.get("name") or rule.then.get("name") or label)
        percent = rule.then.get("percent")
        return VendorMatch(
            rule_id=rule.id,
            name=name,
            label=label,
            deductible_category=rule.deductible_category,
            percent=int(percent) if percent is not None else None,
        )
    return None


def _matching_condition(rule: VendorRule, domain: str | None, haystack: str, tokens: list[str]) -> dict | None:
    for condition in rule.when_any:
        if "domain" in condition and domain_matches(domain, str(condition["domain"])):
            return condition
        if "regex" in condition and re.search(str(condition["regex"]), haystack) is not None:
            return condition
        if "contains_any" in condition and _matches_contains_any(list(condition["contains_any"]), haystack, tokens):
            return condition
    return None


def _matches_contains_any(values: list[str], haystack: str, tokens: list[str]) -> bool:
    token_set = set(tokens)
    for value in values:
        v = clean_text(str(value))
        if v in token_set:
            return True
        if v and " " in v and v in haystack:
            return True
    return False
