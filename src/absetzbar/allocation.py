"""Income source allocation.

Assigns a validated expense to one or more income sources. Tiers are tried in a fixed
order and the first one that produces an assignment wins:

    manual override -> allocation rule -> upstream suggestion
        -> category default -> heuristics -> review needed

Every result carries the tier that fired, a confidence and the sources that were
considered, so a reviewer can see why a source was chosen.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from .jurisdictions.base import TaxRules
from .models import Allocation, AllocationResult, AllocationRule, IncomeSource, TaxConfig

logger = logging.getLogger(__name__)

LOGIC_VERSION = "2.0.0"
VENDOR_HISTORY_DEPTH = 3

CONFIDENCE = {
    "manual_override": 1.0,
    "allocation_rule": 1.0,
    "ai_suggestion": 0.8,
    "category_default": 0.7,
    "heuristic_single_source": 0.9,
    "heuristic_vendor_history": 0.6,
    "heuristic_vendor_type": 0.5,
    "review_needed": 0.0,
}


@dataclass(frozen=True, slots=True)
class AllocationRequest:
    """Everything the allocation tiers look at for one expense."""

    invoice_date: date
    category: str
    active_sources: Sequence[IncomeSource]
    vendor_domain: str | None = None
    subject: str | None = None
    sender: str | None = None
    amount_cents: int | None = None
    suggested_source_id: str | None = None
    manual_allocations: Sequence[Allocation] | None = None
    vendor_history: Sequence[Sequence[Allocation]] = field(default_factory=tuple)
    # income category the recognised vendor usually serves, e.g. vermietung for property management
    vendor_income_category: str | None = None


def rule_matches(rule: AllocationRule, request: AllocationRequest) -> bool:
    """All configured criteria must hold; a rule without criteria never matches."""
    has_criteria = False

    if rule.vendor_domain:
        has_criteria = True
        if not request.vendor_domain or rule.vendor_domain.lower() not in request.vendor_domain.lower():
            return False

    if rule.vendor_pattern:
        has_criteria = True
        text = " ".join(p for p in (request.vendor_domain, request.subject, request.sender) if p)
        if re.search(rule.vendor_pattern, text, re.IGNORECASE) is None:
            return False

    if rule.deductible_category:
        has_criteria = True
        if request.category != rule.deductible_category:
            return False

    if rule.min_amount_cents is not None:
        has_criteria = True
        if not request.amount_cents or request.amount_cents < rule.min_amount_cents:
            return False

    return has_criteria


def find_matching_rule(rules: Sequence[AllocationRule], request: AllocationRequest) -> AllocationRule | None:
    for rule in rules:
        if rule_matches(rule, request):
            return rule
    return None


def normalize_allocations(allocations: Sequence[Allocation]) -> list[Allocation]:
    """Drop zero shares and sort by share, largest first."""
    return sorted((a for a in allocations if a.percent > 0), key=lambda a: a.percent, reverse=True)


def primary_source_id(allocations: Sequence[Allocation]) -> str | None:
    normalized = normalize_allocations(allocations)
    return normalized[0].source_id if normalized else None


def is_split(allocations: Sequence[Allocation]) -> bool:
    return len(normalize_allocations(allocations)) > 1


def format_allocations(allocations: Sequence[Allocation], sources: Sequence[IncomeSource]) -> str:
    normalized = normalize_allocations(allocations)
    if not normalized:
        return "Unassigned"
    names = {s.id: s.name for s in sources}
    parts = []
    for allocation in normalized:
        name = names.get(allocation.source_id, allocation.source_id)
        parts.append(name if allocation.percent == 100 else f"{name} ({allocation.percent}%)")
    return " / ".join(parts)


def serialize_allocations(allocations: Sequence[Allocation]) -> str:
    return json.dumps([{"source_id": a.source_id, "percent": a.percent} for a in allocations])


def parse_allocations(raw: str | None) -> list[Allocation]:
    """Inverse of ``serialize_allocations``; empty or missing input yields no allocations."""
    if not raw:
        return []
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError(f"Expected a JSON list of allocations, got {type(data).__name__}")
    return [Allocation.model_validate(item) for item in data]


class AllocationEngine:
    def __init__(self, config: TaxConfig, rules: TaxRules) -> None:
        self.config = config
        self.rules = rules

    def allocate(self, request: AllocationRequest) -> AllocationResult:
        active_ids = [s.id for s in request.active_sources]
        notes: list[str] = []

        if request.manual_allocations is not None:
            # an empty manual allocation is a decision too: no income source
            return self._result(
                "manual_override",
                list(request.manual_allocations),
                "Manual decision by reviewer" if request.manual_allocations else "Reviewer assigned no income source",
            )

        for rule in self.config.allocation_rules:
            if not rule_matches(rule, request):
                continue
            problem = self._rule_problem(rule, active_ids)
            if problem is None:
                return self._result(
                    "allocation_rule",
                    list(rule.allocations),
                    f"Matched allocation rule '{rule.id}'",
                    rule_id=rule.id,
                    notes=notes,
                )
            logger.warning("allocation rule %s skipped: %s", rule.id, problem)
            notes.append(f"Rule '{rule.id}' skipped: {problem}")

        suggested = request.suggested_source_id
        if suggested:
            if suggested in active_ids:
                return self._result(
                    "ai_suggestion",
                    [Allocation(source_id=suggested, percent=100)],
                    f"Suggested source '{suggested}' is active on {request.invoice_date.isoformat()}",
                    alternatives=active_ids,
                    notes=notes,
                )
            notes.append(f"Suggested source '{suggested}' is not active on {request.invoice_date.isoformat()}")

        default_id = self.config.category_defaults.get(request.category)
        if default_id:
            if default_id in active_ids:
                return self._result(
                    "category_default",
                    [Allocation(source_id=default_id, percent=100)],
                    f"Default source for category '{request.category}'",
                    alternatives=active_ids,
                    notes=notes,
                )
            notes.append(f"Default source '{default_id}' for '{request.category}' is not active")

        if len(active_ids) == 1:
            return self._result(
                "heuristic_single_source",
                [Allocation(source_id=active_ids[0], percent=100)],
                "Only one income source active on the invoice date",
                notes=notes,
            )

        history_source = self._unanimous_history_source(request.vendor_history, active_ids)
        if history_source is not None:
            return self._result(
                "heuristic_vendor_history",
                [Allocation(source_id=history_source, percent=100)],
                f"Last {VENDOR_HISTORY_DEPTH} invoices from this vendor went to '{history_source}'",
                alternatives=active_ids,
                notes=notes,
            )

        typed = [s.id for s in request.active_sources if s.category == request.vendor_income_category]
        if request.vendor_income_category and len(typed) == 1:
            return self._result(
                "heuristic_vendor_type",
                [Allocation(source_id=typed[0], percent=100)],
                f"Only active source of type '{request.vendor_income_category}' for this vendor",
                alternatives=active_ids,
                notes=notes,
            )

        reason = "No income source active on the invoice date" if not active_ids else "Multiple income sources active"
        return self._result("review_needed", [], reason, alternatives=active_ids, notes=notes)

    def _rule_problem(self, rule: AllocationRule, active_ids: list[str]) -> str | None:
        if not rule.allocations:
            return "rule has no allocations"
        errors = self.rules.validate_allocations(rule.allocations)
        if errors:
            return "; ".join(e.message for e in errors)
        inactive = [a.source_id for a in rule.allocations if a.percent > 0 and a.source_id not in active_ids]
        if inactive:
            return f"income source(s) not active on the invoice date: {', '.join(inactive)}"
        return None

    def _unanimous_history_source(
        self, history: Sequence[Sequence[Allocation]], active_ids: list[str]
    ) -> str | None:
        recent = list(history)[:VENDOR_HISTORY_DEPTH]
        if len(recent) < VENDOR_HISTORY_DEPTH:
            return None
        primaries = {primary_source_id(allocations) for allocations in recent}
        if len(primaries) != 1:
            return None
        source_id = primaries.pop()
        if source_id is None or source_id not in active_ids:
            return None
        return source_id

    def _result(
        self,
        tier: str,
        allocations: list[Allocation],
        reason: str,
        *,
        rule_id: str | None = None,
        alternatives: list[str] | None = None,
        notes: list[str] | None = None,
    ) -> AllocationResult:
        return AllocationResult(
            allocations=allocations,
            tier=tier,
            rule_id=rule_id,
            confidence=CONFIDENCE[tier],
            reason=reason,
            alternatives_considered=list(alternatives or []),
            notes=list(notes or []),
            logic_version=LOGIC_VERSION,
            decided_at=datetime.now(timezone.utc),
        )
