"""Legal constraint enforcement.

The upstream classifier is never trusted with tax law. Every classification passes through
``enforce`` before it is persisted: fields that contradict the law of the resolved situation
are overwritten and each correction is recorded as a structured ``Violation``.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from .jurisdictions.base import INCOME_TAX_FIELD, VAT_FIELD, TaxContext, TaxRules
from .jurisdictions.registry import get_rules
from .models import Classification, IncomeSource, Situation, Violation
from .situations import effective_telecom_percent

logger = logging.getLogger(__name__)

PERCENT_RANGE_RULE = "Income-tax percentage must lie between 0 and 100"


class EnforcementError(RuntimeError):
    """The constraint rules of a jurisdiction contradict each other."""


@dataclass(frozen=True, slots=True)
class EnforcementResult:
    classification: Classification
    violations: tuple[Violation, ...]

    @property
    def was_modified(self) -> bool:
        return bool(self.violations)

    @property
    def errors(self) -> tuple[Violation, ...]:
        return tuple(v for v in self.violations if v.severity == "error")

    @property
    def warnings(self) -> tuple[Violation, ...]:
        return tuple(v for v in self.violations if v.severity == "warning")


def enforce(
    classification: Classification,
    situation: Situation,
    sources: Sequence[IncomeSource] = (),
) -> EnforcementResult:
    """``sources`` are the income sources active on the invoice date; a single one may override shares."""
    rules = get_rules(situation.jurisdiction)
    telecom_percent = effective_telecom_percent(situation, sources[0]) if len(sources) == 1 else None
    context = TaxContext(amount_cents=classification.amount_cents, telecom_percent=telecom_percent)
    category = classification.category

    values: dict[str, object] = {
        INCOME_TAX_FIELD: classification.income_tax_percent,
        VAT_FIELD: classification.vat_recoverable,
    }
    violations: list[Violation] = []
    notes: list[str] = []

    for rule in rules.constraint_rules():
        expected = rule.check(category, situation, context)
        if expected is None:
            continue
        current = values[rule.field]
        if current == expected.value:
            continue
        values[rule.field] = expected.value
        if current is None:
            notes.append(f"{rule.field} set: {expected.rule}")
            continue
        violation = Violation(
            field=rule.field,
            submitted_value=current,
            corrected_value=expected.value,
            rule=expected.rule,
            severity=expected.severity,
            legal_reference=expected.legal_reference,
        )
        violations.append(violation)
        logger.info(
            "corrected %s from %r to %r (%s)",
            rule.field,
            current,
            expected.value,
            rule.id,
            extra={"jurisdiction": rules.code, "category": category, "severity": expected.severity},
        )

    percent = values[INCOME_TAX_FIELD]
    if isinstance(percent, int) and not 0 <= percent <= 100:
        values[INCOME_TAX_FIELD] = None
        violation = Violation(
            field=INCOME_TAX_FIELD,
            submitted_value=percent,
            corrected_value=None,
            rule=PERCENT_RANGE_RULE,
            severity="error",
        )
        violations.append(violation)
        logger.info(
            "discarded %s=%r outside 0..100",
            INCOME_TAX_FIELD,
            percent,
            extra={"jurisdiction": rules.code, "category": category, "severity": "error"},
        )

    if category != "unclear":
        if values[INCOME_TAX_FIELD] is None:
            derived = rules.calculate_income_tax_percent(category, situation, context)
            if derived.percent is not None:
                values[INCOME_TAX_FIELD] = derived.percent
                notes.append(f"{INCOME_TAX_FIELD} derived: {derived.reason}")
        if values[VAT_FIELD] is None:
            recovery = rules.calculate_vat_recovery(category, situation, context)
            values[VAT_FIELD] = recovery.recoverable
            notes.append(f"{VAT_FIELD} derived: {recovery.reason}")

    _verify(rules, category, situation, context, values)

    reason = classification.reason
    if violations or notes:
        parts = [_describe(v) for v in violations] + notes
        reason = " ".join(p for p in [reason, *(f"[{p}]" for p in parts)] if p)

    corrected = classification.model_copy(
        update={
            "income_tax_percent": values[INCOME_TAX_FIELD],
            "vat_recoverable": values[VAT_FIELD],
            "vat_percent": _vat_percent(rules, category, situation, context, values[VAT_FIELD]),
            "reason": reason,
            "violations": classification.violations + tuple(violations),
        }
    ).advance("legally_corrected")
    return EnforcementResult(classification=corrected, violations=tuple(violations))


def _verify(
    rules: TaxRules,
    category: str,
    situation: Situation,
    context: TaxContext,
    values: dict[str, object],
) -> None:
    for rule in rules.constraint_rules():
        expected = rule.check(category, situation, context)
        if expected is not None and values[rule.field] != expected.value:
            raise EnforcementError(
                f"{rules.code} rule '{rule.id}' expects {rule.field}={expected.value!r} "
                f"but the result holds {values[rule.field]!r}"
            )


def _vat_percent(
    rules: TaxRules,
    category: str,
    situation: Situation,
    context: TaxContext,
    recoverable: object,
) -> int | None:
    if recoverable is None:
        return None
    if not recoverable:
        return 0
    recovery = rules.calculate_vat_recovery(category, situation, context)
    return recovery.percent if recovery.recoverable else 100


def _describe(violation: Violation) -> str:
    text = f"Corrected {violation.field}: {violation.rule}"
    if violation.legal_reference:
        text += f" ({violation.legal_reference})"
    return text
