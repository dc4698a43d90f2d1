from __future__ import annotations

from ..models import IncomeSource, Situation, ValidationIssue
from .base import (
    Expectation,
    ImputedIncomeResult,
    IncomeTaxResult,
    TaxContext,
    TaxRules,
    VatRecoveryResult,
)

DAILY_RATE_CENTS = 6_00
MAX_DAILY_RATE_DAYS = 210
IMPUTED_INCOME_RATE = 0.01
INPUT_VAT_REFERENCE = "§15 Abs 1 UStG"


class GermanTaxRules(TaxRules):
    code = "DE"
    name = "Deutschland"
    meals_income_tax_percent = 70
    gift_threshold_cents = 35_00
    no_vat_regime_threshold_cents = 100_000_00
    home_office_modes = frozenset({"daily_rate", "actual", "none"})

    no_vat_regime_reference = "§19 UStG"
    meals_income_tax_reference = "§4 Abs 5 Satz 1 Nr 2 EStG"
    meals_vat_reference = INPUT_VAT_REFERENCE
    gifts_income_tax_reference = "§4 Abs 5 Satz 1 Nr 1 EStG"
    gifts_vat_reference = "§15 Abs 1a UStG"

    def validate_income_source(self, source: IncomeSource) -> list[ValidationIssue]:
        errors = super().validate_income_source(source)
        if source.category == "nichtselbstaendige":
            errors.append(
                ValidationIssue(
                    field="category",
                    message="Employment income is not supported for DE",
                    code="DE_EMPLOYMENT_NOT_SUPPORTED",
                )
            )
        return errors

    def calculate_vat_recovery(
        self, category: str, situation: Situation, context: TaxContext | None = None
    ) -> VatRecoveryResult:
        context = context or TaxContext()
        if situation.vat_status == "kleinunternehmer":
            return VatRecoveryResult(False, 0, "Kleinunternehmer: no input VAT deduction", self.no_vat_regime_reference)
        if category == "vehicle":
            if situation.has_company_car:
                return VatRecoveryResult(True, 100, "Company car: input VAT deductible", INPUT_VAT_REFERENCE)
            return VatRecoveryResult(False, 0, "Private car: mileage allowance, no input VAT")
        if category == "gifts":
            over = self._gift_over_threshold(context)
            if over is None:
                return VatRecoveryResult(False, 0, "Gift amount unknown, input VAT not confirmed")
            if over:
                return VatRecoveryResult(False, 0, "Gift over €35: no input VAT", self.gifts_vat_reference)
            return VatRecoveryResult(True, 100, "Gift up to €35: input VAT deductible", self.gifts_vat_reference)
        if category == "telecom":
            percent = self.telecom_share(situation, context)
            return VatRecoveryResult(percent > 0, percent, f"Telecom: {percent}% business share")
        if category == "meals":
            return VatRecoveryResult(True, 100, "Business meals: full input VAT deduction", self.meals_vat_reference)
        if category in ("full", "partial"):
            return VatRecoveryResult(True, 100, "Business expense: input VAT deductible")
        if category == "none":
            return VatRecoveryResult(False, 0, "Private expense")
        return VatRecoveryResult(False, 0, "Category unclear, needs review")

    def calculate_income_tax_percent(
        self, category: str, situation: Situation, context: TaxContext | None = None
    ) -> IncomeTaxResult:
        context = context or TaxContext()
        if category == "full":
            return IncomeTaxResult(100, "Business expense: fully deductible")
        if category == "vehicle":
            if situation.has_company_car:
                return IncomeTaxResult(100, "Company car: costs fully deductible, private use taxed via 1% rule")
            return IncomeTaxResult(0, "Private car: mileage allowance instead of actual costs")
        if category == "meals":
            return IncomeTaxResult(70, "Business meals: 70% deductible", self.meals_income_tax_reference)
        if category == "telecom":
            percent = self.telecom_share(situation, context)
            return IncomeTaxResult(percent, f"Telecom: {percent}% business share")
        if category == "gifts":
            over = self._gift_over_threshold(context)
            if over is None:
                return IncomeTaxResult(None, "Gift amount unknown")
            if over:
                return IncomeTaxResult(0, "Gift over €35: not deductible", self.gifts_income_tax_reference)
            return IncomeTaxResult(100, "Gift up to €35: deductible", self.gifts_income_tax_reference)
        if category == "none":
            return IncomeTaxResult(0, "Private expense")
        if category == "partial":
            return IncomeTaxResult(None, "Mixed use: business share must be determined")
        return IncomeTaxResult(None, "Category unclear, needs review")

    def calculate_imputed_income(self, situation: Situation) -> ImputedIncomeResult:
        if not situation.has_company_car or not situation.car_list_price_cents:
            return ImputedIncomeResult(0, "No company car with list price configured")
        monthly = round(situation.car_list_price_cents * IMPUTED_INCOME_RATE)
        return ImputedIncomeResult(monthly, "1% rule: 1% of the gross list price per month")

    def home_office_deduction(self, mode: str, *, days: int = 0) -> int | None:
        if mode == "actual":
            return None
        if mode == "none":
            return 0
        if mode != "daily_rate":
            raise ValueError(f"Home office mode '{mode}' is not available in DE")
        return DAILY_RATE_CENTS * max(0, min(days, MAX_DAILY_RATE_DAYS))

    def income_category_labels(self) -> dict[str, str]:
        return {
            "selbstaendige_arbeit": "Einkünfte aus selbständiger Arbeit (§18 EStG)",
            "gewerbebetrieb": "Einkünfte aus Gewerbebetrieb (§15 EStG)",
            "vermietung": "Einkünfte aus Vermietung und Verpachtung (§21 EStG)",
            "land_forstwirtschaft": "Einkünfte aus Land- und Forstwirtschaft (§13 EStG)",
        }

    def home_office_labels(self) -> dict[str, str]:
        return {
            "daily_rate": "Tagespauschale (€6/Tag, max. 210 Tage)",
            "actual": "Tatsächliche Kosten (häusliches Arbeitszimmer)",
            "none": "Kein Homeoffice",
        }

    def prompt_instructions(self, situation: Situation) -> str:
        small_business = situation.vat_status == "kleinunternehmer"
        lines = ["German tax rules (DE):"]
        if small_business:
            lines.append("- Kleinunternehmer (§19 UStG): NO input VAT recovery on any expense.")
        else:
            lines.append("- Regelbesteuert: input VAT recoverable on business expenses unless a rule below excludes it.")
        if situation.has_company_car:
            car_vat = "no input VAT" if small_business else "input VAT recoverable"
            lines.append(f"- Company car ({situation.car_business_percent}% business use): {car_vat}, private use taxed via the 1% rule.")
        else:
            lines.append("- Private car only: mileage allowance, vehicle costs are not deductible and carry no input VAT.")
        meals_vat = "no input VAT" if small_business else "100% input VAT recoverable"
        lines.append(f"- Business meals: 70% income tax deductible, {meals_vat}.")
        lines.append("- Gifts: deductible with input VAT only up to €35 per recipient and year.")
        lines.append(f"- Telecom: {situation.telecom_business_percent}% business use, internet: {situation.internet_business_percent}%.")
        return "\n".join(lines)

    def _vehicle_vat(self, category: str, situation: Situation, context: TaxContext) -> Expectation | None:
        if category != "vehicle" or situation.vat_status != "regelbesteuert":
            return None
        if situation.has_company_car:
            return Expectation(True, "Company car: input VAT deductible", "warning", INPUT_VAT_REFERENCE)
        return Expectation(False, "Private car: mileage allowance, no input VAT", "error")

    def _vehicle_income_tax(self, category: str, situation: Situation, context: TaxContext) -> Expectation | None:
        if category != "vehicle":
            return None
        if situation.has_company_car:
            return Expectation(100, "Company car: costs fully deductible", "warning")
        return Expectation(0, "Private car: mileage allowance instead of actual costs", "warning")
