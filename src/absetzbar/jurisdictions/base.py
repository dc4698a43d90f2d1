from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date

from ..models import Allocation, IncomeSource, Situation, ValidationIssue
from ..rules.vendors import VendorMatch

VAT_FIELD = "vat_recoverable"
INCOME_TAX_FIELD = "income_tax_percent"

SOURCE_ID_PATTERN = re.compile(r"^[a-z0-9_]+$")
SOFTWARE_VENDOR_LABELS = frozenset({"Software", "Dev Tools", "Cloud", "AI Services", "Hosting"})


@dataclass(frozen=True, slots=True)
class TaxContext:
    amount_cents: int | None = None
    invoice_date: date | None = None
    # business share of the single active income source, when it overrides the situation
    telecom_percent: int | None = None


@dataclass(frozen=True, slots=True)
class VatRecoveryResult:
    recoverable: bool
    percent: int
    reason: str
    legal_reference: str | None = None


@dataclass(frozen=True, slots=True)
class IncomeTaxResult:
    percent: int | None
    reason: str
    legal_reference: str | None = None


@dataclass(frozen=True, slots=True)
class ImputedIncomeResult:
    monthly_amount_cents: int
    reason: str


@dataclass(frozen=True, slots=True)
class Expectation:
    """The value a field must hold for a given category and situation."""

    value: object
    rule: str
    severity: str
    legal_reference: str | None = None


@dataclass(frozen=True, slots=True)
class ConstraintRule:
    id: str
    field: str
    check: Callable[[str, Situation, TaxContext], Expectation | None]


@dataclass(frozen=True, slots=True)
class JurisdictionInfo:
    code: str
    name: str
    min_allocation_percent: int
    meals_income_tax_percent: int
    gift_threshold_cents: int
    no_vat_regime_threshold_cents: int
    home_office_modes: tuple[str, ...]


def _is_standard(situation: Situation) -> bool:
    return situation.vat_status == "regelbesteuert"


class TaxRules(ABC):
    """Tax law of one jurisdiction.

    Providers are stateless. All rates and thresholds live on the class so that the
    constraint checks, the calculations and the validators read from one place.
    """

    code: str
    name: str
    min_allocation_percent: int = 0
    meals_income_tax_percent: int
    gift_threshold_cents: int
    no_vat_regime_threshold_cents: int
    home_office_modes: frozenset[str]

    no_vat_regime_reference: str
    meals_income_tax_reference: str
    meals_vat_reference: str | None = None
    gifts_income_tax_reference: str
    gifts_vat_reference: str

    # validation

    def validate_allocations(self, allocations: Sequence[Allocation]) -> list[ValidationIssue]:
        errors: list[ValidationIssue] = []
        total = 0
        for index, allocation in enumerate(allocations):
            field = f"allocations[{index}].percent"
            errors.extend(self._check_percent(field, allocation.percent))
            total += allocation.percent
        if total > 100:
            errors.append(
                ValidationIssue(
                    field="allocations",
                    message=f"Allocations add up to {total}%, at most 100% allowed",
                    code="ALLOCATION_EXCEEDS_100",
                )
            )
        return errors

    def validate_situation(self, situation: Situation) -> list[ValidationIssue]:
        errors: list[ValidationIssue] = []
        if situation.valid_to is not None and situation.valid_to <= situation.valid_from:
            errors.append(
                ValidationIssue(
                    field="to",
                    message="End date must be after start date",
                    code="INVALID_DATE_RANGE",
                )
            )
        if situation.has_company_car and situation.company_car_type is None:
            errors.append(
                ValidationIssue(
                    field="company_car_type",
                    message="Car type is required when a company car is configured",
                    code="MISSING_CAR_TYPE",
                )
            )
        if not situation.has_company_car and situation.car_business_percent:
            errors.append(
                ValidationIssue(
                    field="car_business_percent",
                    message="Car business percentage requires a company car",
                    code="INVALID_CAR_CONFIG",
                )
            )
        if situation.car_list_price_cents is not None and situation.car_list_price_cents < 0:
            errors.append(
                ValidationIssue(
                    field="car_list_price_cents",
                    message="Car list price cannot be negative",
                    code="INVALID_AMOUNT",
                )
            )
        errors.extend(self._check_percent("car_business_percent", situation.car_business_percent))
        errors.extend(self._check_percent("telecom_business_percent", situation.telecom_business_percent))
        errors.extend(self._check_percent("internet_business_percent", situation.internet_business_percent))
        if situation.home_office not in self.home_office_modes:
            errors.append(
                ValidationIssue(
                    field="home_office",
                    message=f"Home office mode '{situation.home_office}' is not available in {self.code}",
                    code="INVALID_HOME_OFFICE_TYPE",
                )
            )
        return errors

    def validate_income_source(self, source: IncomeSource) -> list[ValidationIssue]:
        errors: list[ValidationIssue] = []
        if not SOURCE_ID_PATTERN.match(source.id):
            errors.append(
                ValidationIssue(
                    field="id",
                    message="Income source id may only contain lowercase letters, digits and underscores",
                    code="INVALID_ID_FORMAT",
                )
            )
        if not source.name.strip():
            errors.append(ValidationIssue(field="name", message="Name is required", code="MISSING_NAME"))
        if source.valid_to is not None and source.valid_to <= source.valid_from:
            errors.append(
                ValidationIssue(
                    field="valid_to",
                    message="End date must be after start date",
                    code="INVALID_DATE_RANGE",
                )
            )
        for field in ("telecom_percent_override", "internet_percent_override", "vehicle_percent_override"):
            value = getattr(source, field)
            if value is not None:
                errors.extend(self._check_percent(field, value))
        return errors

    def _check_percent(self, field: str, value: int) -> list[ValidationIssue]:
        if value < 0 or value > 100:
            return [ValidationIssue(field=field, message="Percentage must be between 0 and 100", code="INVALID_PERCENT")]
        if self.min_allocation_percent and 0 < value < self.min_allocation_percent:
            return [
                ValidationIssue(
                    field=field,
                    message=(
                        f"{self.code}: a share must be 0% or at least {self.min_allocation_percent}% "
                        f"(got {value}%)"
                    ),
                    code=f"{self.code}_{self.min_allocation_percent}_PERCENT_RULE",
                )
            ]
        return []

    # calculations

    @abstractmethod
    def calculate_vat_recovery(
        self, category: str, situation: Situation, context: TaxContext | None = None
    ) -> VatRecoveryResult:
        raise NotImplementedError

    @abstractmethod
    def calculate_income_tax_percent(
        self, category: str, situation: Situation, context: TaxContext | None = None
    ) -> IncomeTaxResult:
        raise NotImplementedError

    @abstractmethod
    def calculate_imputed_income(self, situation: Situation) -> ImputedIncomeResult:
        raise NotImplementedError

    @abstractmethod
    def home_office_deduction(self, mode: str, *, days: int = 0) -> int | None:
        """Yearly deduction in cents for a flat-rate mode, ``None`` when it depends on actual costs."""
        raise NotImplementedError

    def fixed_percentages(self) -> dict[str, int | None]:
        """Income-tax percentage per category when it does not depend on the situation."""
        return {
            "full": 100,
            "vehicle": 100,
            "meals": self.meals_income_tax_percent,
            "telecom": None,
            "gifts": None,
            "partial": None,
            "none": 0,
            "unclear": None,
        }

    def default_income_category(self, vendor: VendorMatch) -> str | None:
        """Income category a recognised vendor usually serves, ``None`` when it depends on the taxpayer."""
        if vendor.label in SOFTWARE_VENDOR_LABELS:
            return "selbstaendige_arbeit"
        return None

    def telecom_share(self, situation: Situation, context: TaxContext) -> int:
        if context.telecom_percent is not None:
            return context.telecom_percent
        return situation.telecom_business_percent

    def no_vat_regime_threshold(self) -> int:
        """Yearly turnover limit in cents for the small-business VAT exemption."""
        return self.no_vat_regime_threshold_cents

    # labels and prompt

    @abstractmethod
    def income_category_labels(self) -> dict[str, str]:
        raise NotImplementedError

    def vat_status_labels(self) -> dict[str, str]:
        return {"kleinunternehmer": "Kleinunternehmer", "regelbesteuert": "Regelbesteuert"}

    @abstractmethod
    def home_office_labels(self) -> dict[str, str]:
        raise NotImplementedError

    @abstractmethod
    def prompt_instructions(self, situation: Situation) -> str:
        """Rules for the upstream classifier, worded for the taxpayer's situation."""
        raise NotImplementedError

    def info(self) -> JurisdictionInfo:
        return JurisdictionInfo(
            code=self.code,
            name=self.name,
            min_allocation_percent=self.min_allocation_percent,
            meals_income_tax_percent=self.meals_income_tax_percent,
            gift_threshold_cents=self.gift_threshold_cents,
            no_vat_regime_threshold_cents=self.no_vat_regime_threshold_cents,
            home_office_modes=tuple(sorted(self.home_office_modes)),
        )

    # legal constraints

    def constraint_rules(self) -> tuple[ConstraintRule, ...]:
        """Ordered rules the enforcer applies. Rules for the same field never disagree."""
        return (
            ConstraintRule("no_vat_regime", VAT_FIELD, self._no_vat_regime),
            ConstraintRule("vehicle_vat", VAT_FIELD, self._vehicle_vat),
            ConstraintRule("vehicle_income_tax", INCOME_TAX_FIELD, self._vehicle_income_tax),
            ConstraintRule("meals_income_tax", INCOME_TAX_FIELD, self._meals_income_tax),
            ConstraintRule("meals_vat", VAT_FIELD, self._meals_vat),
            ConstraintRule("gifts_income_tax", INCOME_TAX_FIELD, self._gifts_income_tax),
            ConstraintRule("gifts_vat", VAT_FIELD, self._gifts_vat),
            ConstraintRule("none_income_tax", INCOME_TAX_FIELD, self._none_income_tax),
            ConstraintRule("none_vat", VAT_FIELD, self._none_vat),
            ConstraintRule("full_income_tax", INCOME_TAX_FIELD, self._full_income_tax),
            ConstraintRule("full_vat", VAT_FIELD, self._full_vat),
            ConstraintRule("telecom_income_tax", INCOME_TAX_FIELD, self._telecom_income_tax),
            ConstraintRule("telecom_vat", VAT_FIELD, self._telecom_vat),
        )

    def _no_vat_regime(self, category: str, situation: Situation, context: TaxContext) -> Expectation | None:
        if _is_standard(situation):
            return None
        return Expectation(
            False,
            "Kleinunternehmer cannot recover input VAT",
            "error",
            self.no_vat_regime_reference,
        )

    @abstractmethod
    def _vehicle_vat(self, category: str, situation: Situation, context: TaxContext) -> Expectation | None:
        raise NotImplementedError

    @abstractmethod
    def _vehicle_income_tax(self, category: str, situation: Situation, context: TaxContext) -> Expectation | None:
        raise NotImplementedError

    def _meals_income_tax(self, category: str, situation: Situation, context: TaxContext) -> Expectation | None:
        if category != "meals":
            return None
        return Expectation(
            self.meals_income_tax_percent,
            f"Business meals: {self.meals_income_tax_percent}% income tax deductible",
            "error",
            self.meals_income_tax_reference,
        )

    def _meals_vat(self, category: str, situation: Situation, context: TaxContext) -> Expectation | None:
        if category != "meals" or not _is_standard(situation):
            return None
        return Expectation(
            True,
            f"Business meals: 100% input VAT recoverable despite {self.meals_income_tax_percent}% income tax",
            "warning",
            self.meals_vat_reference,
        )

    def _gift_over_threshold(self, context: TaxContext) -> bool | None:
        if context.amount_cents is None:
            return None
        return context.amount_cents > self.gift_threshold_cents

    def _gifts_income_tax(self, category: str, situation: Situation, context: TaxContext) -> Expectation | None:
        if category != "gifts":
            return None
        over = self._gift_over_threshold(context)
        if over is None:
            return None
        limit = _euros(self.gift_threshold_cents)
        if over:
            return Expectation(0, f"Gifts over {limit} are not deductible", "error", self.gifts_income_tax_reference)
        return Expectation(100, f"Gifts up to {limit} are fully deductible", "warning", self.gifts_income_tax_reference)

    def _gifts_vat(self, category: str, situation: Situation, context: TaxContext) -> Expectation | None:
        if category != "gifts":
            return None
        over = self._gift_over_threshold(context)
        if over is None:
            return None
        limit = _euros(self.gift_threshold_cents)
        if over:
            return Expectation(False, f"No input VAT on gifts over {limit}", "error", self.gifts_vat_reference)
        if not _is_standard(situation):
            return None
        return Expectation(True, f"Input VAT recoverable on gifts up to {limit}", "warning", self.gifts_vat_reference)

    def _none_income_tax(self, category: str, situation: Situation, context: TaxContext) -> Expectation | None:
        if category != "none":
            return None
        return Expectation(0, "Private expenses are not deductible", "warning")

    def _none_vat(self, category: str, situation: Situation, context: TaxContext) -> Expectation | None:
        if category != "none":
            return None
        return Expectation(False, "No input VAT on private expenses", "warning")

    def _full_income_tax(self, category: str, situation: Situation, context: TaxContext) -> Expectation | None:
        if category != "full":
            return None
        return Expectation(100, "Business expenses are fully deductible", "warning")

    def _full_vat(self, category: str, situation: Situation, context: TaxContext) -> Expectation | None:
        if category != "full" or not _is_standard(situation):
            return None
        return Expectation(True, "Input VAT recoverable on business expenses", "warning")

    def _telecom_income_tax(self, category: str, situation: Situation, context: TaxContext) -> Expectation | None:
        if category != "telecom":
            return None
        percent = self.telecom_share(situation, context)
        return Expectation(percent, f"Telecom: {percent}% business use per tax situation", "warning")

    def _telecom_vat(self, category: str, situation: Situation, context: TaxContext) -> Expectation | None:
        if category != "telecom" or not _is_standard(situation):
            return None
        percent = self.telecom_share(situation, context)
        recoverable = percent > 0
        rule = (
            f"Telecom: input VAT recoverable on the {percent}% business share"
            if recoverable
            else "Telecom without business use: no input VAT"
        )
        return Expectation(recoverable, rule, "warning")


def _euros(cents: int) -> str:
    euros, rest = divmod(cents, 100)
    if rest:
        return f"€{euros},{rest:02d}"
    return f"€{euros}"
