from __future__ import annotations

import hashlib
import json
import logging
from bisect import bisect_right
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, timedelta

from pydantic import BaseModel, Field

from .jurisdictions.registry import UnsupportedJurisdictionError, get_rules
from .models import IncomeSource, Situation, TaxConfig, ValidationIssue

logger = logging.getLogger(__name__)

CONTEXT_HASH_LENGTH = 16


class NoActiveSituationError(LookupError):
    def __init__(self, day: date | None) -> None:
        if day is None:
            message = "Invoice has no date; a tax situation cannot be resolved."
        else:
            message = (
                f"No tax situation covers {day.isoformat()}. "
                "Add a situation or extend an existing one to cover this date."
            )
        super().__init__(message)
        self.day = day


class ConfigValidationResult(BaseModel):
    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)


@dataclass(frozen=True, slots=True)
class DateGap:
    """Uncovered dates ``[start, end)``."""

    start: date
    end: date

    @property
    def last_day(self) -> date:
        return self.end - timedelta(days=1)


@dataclass(frozen=True, slots=True)
class InvoiceContext:
    invoice_date: date
    situation: Situation | None
    active_sources: tuple[IncomeSource, ...]

    @property
    def has_gap(self) -> bool:
        return self.situation is None

    @property
    def active_source_ids(self) -> list[str]:
        return [s.id for s in self.active_sources]


def _ordered(situations: Sequence[Situation]) -> list[Situation]:
    return sorted(situations, key=lambda s: s.valid_from)


def resolve_situation(situations: Sequence[Situation], day: date) -> Situation | None:
    ordered = _ordered(situations)
    index = bisect_right([s.valid_from for s in ordered], day) - 1
    if index < 0:
        return None
    candidate = ordered[index]
    return candidate if candidate.covers(day) else None


def require_situation(situations: Sequence[Situation], day: date | None) -> Situation:
    if day is None:
        raise NoActiveSituationError(None)
    situation = resolve_situation(situations, day)
    if situation is None:
        raise NoActiveSituationError(day)
    return situation


def active_income_sources(sources: Sequence[IncomeSource], day: date) -> list[IncomeSource]:
    return [s for s in sources if s.covers(day)]


def build_invoice_context(config: TaxConfig, day: date) -> InvoiceContext:
    situation = resolve_situation(config.situations, day)
    if situation is None:
        logger.warning("no tax situation covers %s", day.isoformat())
    return InvoiceContext(
        invoice_date=day,
        situation=situation,
        active_sources=tuple(active_income_sources(config.income_sources, day)),
    )


def find_overlaps(situations: Sequence[Situation]) -> list[tuple[Situation, Situation]]:
    ordered = _ordered(situations)
    overlaps = []
    for current, following in zip(ordered, ordered[1:]):
        if current.valid_to is None or following.valid_from < current.valid_to:
            overlaps.append((current, following))
    return overlaps


def find_gaps(situations: Sequence[Situation]) -> list[DateGap]:
    ordered = _ordered(situations)
    gaps = []
    for current, following in zip(ordered, ordered[1:]):
        if current.valid_to is not None and current.valid_to < following.valid_from:
            gaps.append(DateGap(current.valid_to, following.valid_from))
    return gaps


def effective_telecom_percent(situation: Situation, source: IncomeSource | None = None) -> int:
    if source is not None and source.telecom_percent_override is not None:
        return source.telecom_percent_override
    return situation.telecom_business_percent


def effective_internet_percent(situation: Situation, source: IncomeSource | None = None) -> int:
    if source is not None and source.internet_percent_override is not None:
        return source.internet_percent_override
    return situation.internet_business_percent


def effective_vehicle_percent(situation: Situation, source: IncomeSource | None = None) -> int:
    if source is not None and source.vehicle_percent_override is not None:
        return source.vehicle_percent_override
    return situation.car_business_percent


def close_situation(situation: Situation, end: date) -> Situation:
    """End an ongoing situation; ``end`` is the first day no longer covered."""
    if situation.valid_to is not None:
        raise ValueError(f"Situation {situation.id} already ends on {situation.valid_to.isoformat()}")
    if end <= situation.valid_from:
        raise ValueError(f"Situation {situation.id} cannot end before it starts")
    return situation.model_copy(update={"valid_to": end})


def context_hash(situation: Situation, sources: Sequence[IncomeSource]) -> str:
    """Fingerprint of everything that influenced a classification."""
    payload = {
        "situation": situation.model_dump(mode="json", exclude={"id", "company_car_name"}),
        "sources": sorted(s.id for s in sources),
    }
    digest = hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()
    return digest[:CONTEXT_HASH_LENGTH]


def validate_config(config: TaxConfig) -> ConfigValidationResult:
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []

    try:
        rules = get_rules(config.jurisdiction)
    except UnsupportedJurisdictionError as exc:
        errors.append(ValidationIssue(field="jurisdiction", message=str(exc), code="INVALID_JURISDICTION"))
        return ConfigValidationResult(valid=False, errors=errors, warnings=warnings)

    ids = [s.id for s in config.situations]
    if len(ids) != len(set(ids)):
        errors.append(ValidationIssue(field="situations", message="Situation ids must be unique", code="DUPLICATE_ID"))

    for situation in config.situations:
        prefix = f"situations[{situation.id}]"
        if situation.jurisdiction.upper() != rules.code:
            errors.append(
                ValidationIssue(
                    field=f"{prefix}.jurisdiction",
                    message=f"Situation uses {situation.jurisdiction}, config is {rules.code}",
                    code="JURISDICTION_MISMATCH",
                )
            )
        for issue in rules.validate_situation(situation):
            errors.append(issue.model_copy(update={"field": f"{prefix}.{issue.field}"}))

    for first, second in find_overlaps(config.situations):
        errors.append(
            ValidationIssue(
                field="situations",
                message=f"Situations {first.id} and {second.id} overlap",
                code="SITUATION_OVERLAP",
            )
        )
    for gap in find_gaps(config.situations):
        warnings.append(
            ValidationIssue(
                field="situations",
                message=(
                    f"No situation covers {gap.start.isoformat()} to {gap.last_day.isoformat()}; "
                    "invoices in this range will be blocked"
                ),
                code="SITUATION_GAP",
            )
        )
    if not config.situations:
        warnings.append(
            ValidationIssue(field="situations", message="No tax situation configured", code="NO_SITUATIONS")
        )

    source_ids = [s.id for s in config.income_sources]
    if len(source_ids) != len(set(source_ids)):
        errors.append(
            ValidationIssue(field="income_sources", message="Income source ids must be unique", code="DUPLICATE_ID")
        )
    for source in config.income_sources:
        for issue in rules.validate_income_source(source):
            errors.append(issue.model_copy(update={"field": f"income_sources[{source.id}].{issue.field}"}))

    known = set(source_ids)
    for rule in config.allocation_rules:
        prefix = f"allocation_rules[{rule.id}]"
        if not (rule.vendor_domain or rule.vendor_pattern or rule.deductible_category or rule.min_amount_cents):
            errors.append(
                ValidationIssue(
                    field=prefix,
                    message="Allocation rule needs at least one match criterion",
                    code="MISSING_CRITERIA",
                )
            )
        for allocation in rule.allocations:
            if allocation.source_id not in known:
                errors.append(
                    ValidationIssue(
                        field=f"{prefix}.allocations",
                        message=f"Unknown income source '{allocation.source_id}'",
                        code="INVALID_SOURCE_ID",
                    )
                )
        for issue in rules.validate_allocations(rule.allocations):
            errors.append(issue.model_copy(update={"field": f"{prefix}.{issue.field}"}))

    for category, source_id in config.category_defaults.items():
        if source_id not in known:
            errors.append(
                ValidationIssue(
                    field=f"category_defaults.{category}",
                    message=f"Unknown income source '{source_id}'",
                    code="INVALID_SOURCE_ID",
                )
            )

    return ConfigValidationResult(valid=not errors, errors=errors, warnings=warnings)
