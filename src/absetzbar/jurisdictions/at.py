from __future__ import annotations

from ..models import Situation
from ..rules.vendors import VendorMatch
from .base import (
    Expectation,
    ImputedIncomeResult,
    IncomeTaxResult,
    TaxContext,
    TaxRules,
    VatRecoveryResult,
)

HOME_OFFICE_DEDUCTION_CENTS = {
    "pauschale_gross": 1_200_00,
    "pauschale_klein": 300_00,
    "none": 0,
}

VEHICLE_VAT_REFERENCE = "§12 Abs 2 Z 2 lit b UStG"


class AustrianTaxRules(TaxRules):
    code = "AT"
    name = "Österreich"
    min_allocation_percent = 10
    meals_income_tax_percent = 50
    gift_threshold_cents = 40_00
    no_vat_regime_threshold_cents = 55_000_00
    home_office_modes = frozenset({"pauschale_gross", "pauschale_klein", "actual", "none"})

    no_vat_regime_reference = "§6 Abs 1 Z 27 UStG"
    meals_income_tax_reference = "§20 Abs 1 Z 3 EStG"
    meals_vat_reference = "§12 Abs 2 Z 2 UStG"
    gifts_income_tax_reference = "§20 Abs 1 Z 3 EStG"
    gifts_vat_reference = "§12 Abs 2 Z 2 lit a UStG"

    def calculate_vat_recovery(
        self, category: str, situation: Situation, context: TaxContext | None = None
    ) -> VatRecoveryResult:
        context = context or TaxContext()
        if situation.vat_status == "kleinunternehmer":
            return VatRecoveryResult(False, 0, "Kleinunternehmer: no input VAT deduction", self.no_vat_regime_reference)
        if category == "vehicle":
            if situation.has_company_car and situation.company_car_type == "electric":
                return VatRecoveryResult(True, 100, "Electric vehicle: input VAT deductible", VEHICLE_VAT_REFERENCE)
            return VatRecoveryResult(False, 0, "Passenger cars: no input VAT deduction", VEHICLE_VAT_REFERENCE)
        if category == "gifts":
            over = self._gift_over_threshold(context)
            if over is None:
                return VatRecoveryResult(False, 0, "Gift amount unknown, input VAT not confirmed")
            if over:
                return VatRecoveryResult(False, 0, "Gift over €40: no input VAT", self.gifts_vat_reference)
            return VatRecoveryResult(True, 100, "Gift up to €40: input VAT deductible", self.gifts_vat_reference)
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
        if category in ("full", "vehicle"):
            return IncomeTaxResult(100, "Business expense: fully deductible")
        if category == "meals":
            return IncomeTaxResult(50, "Business meals: 50% deductible", self.meals_income_tax_reference)
        if category == "telecom":
            percent = self.telecom_share(situation, context)
            return IncomeTaxResult(percent, f"Telecom: {percent}% business share")
        if category == "gifts":
            over = self._gift_over_threshold(context)
            if over is None:
                return IncomeTaxResult(None, "Gift amount unknown")
            if over:
                return IncomeTaxResult(0, "Gift over €40: not deductible", self.gifts_income_tax_reference)
            return IncomeTaxResult(100, "Gift up to €40: deductible", self.gifts_income_tax_reference)
        if category == "none":
            return IncomeTaxResult(0, "Private expense")
        if category == "partial":
            return IncomeTaxResult(None, "Mixed use: business share must be determined")
        return IncomeTaxResult(None, "Category unclear, needs review")

    def calculate_imputed_income(self, situation: Situation) -> ImputedIncomeResult:
        return ImputedIncomeResult(0, "AT: benefit in kind for company cars is handled through payroll")

    def home_office_deduction(self, mode: str, *, days: int = 0) -> int | None:
        if mode == "actual":
            return None
        if mode not in HOME_OFFICE_DEDUCTION_CENTS:
            raise ValueError(f"Home office mode '{mode}' is not available in AT")
        return HOME_OFFICE_DEDUCTION_CENTS[mode]

    def income_category_labels(self) -> dict[str, str]:
        return {
            "selbstaendige_arbeit": "Einkünfte aus selbständiger Arbeit",
            "gewerbebetrieb": "Einkünfte aus Gewerbebetrieb",
            "nichtselbstaendige": "Einkünfte aus nichtselbständiger Arbeit",
            "vermietung": "Einkünfte aus Vermietung und Verpachtung",
            "land_forstwirtschaft": "Einkünfte aus Land- und Forstwirtschaft",
        }

    def home_office_labels(self) -> dict[str, str]:
        return {
            "pauschale_gross": "Homeoffice-Pauschale groß (€1.200/Jahr)",
            "pauschale_klein": "Homeoffice-Pauschale klein (€300/Jahr)",
            "actual": "Tatsächliche Kosten",
            "none": "Kein Homeoffice",
        }

    def default_income_category(self, vendor: VendorMatch) -> str | None:
        label = vendor.label
        if "Property" in label or "Building" in label:
            return "vermietung"
        if "Agriculture" in label or "Farming" in label:
            return "land_forstwirtschaft"
        return super().default_income_category(vendor)

    def prompt_instructions(self, situation: Situation) -> str:
        small_business = situation.vat_status == "kleinunternehmer"
        lines = ["Austrian tax rules (AT):"]
        if small_business:
            lines.append("- Kleinunternehmer (turnover up to €55,000): NO input VAT recovery on any expense.")
        else:
            lines.append("- Regelbesteuert: input VAT recoverable on business expenses unless a rule below excludes it.")
        if not situation.has_company_car:
            lines.append("- No company car: fuel, tolls and car service are private unless stated otherwise.")
        else:
            car = f"- Company car ({situation.company_car_type or 'unspecified'}, {situation.car_business_percent}% business use): "
            if situation.company_car_type == "electric" and not small_business:
                lines.append(car + "fully electric, input VAT recoverable.")
            else:
                lines.append(car + "no input VAT on vehicle costs.")
        meals_vat = "no input VAT" if small_business else "100% input VAT recoverable"
        lines.append(f"- Business meals: 50% income tax deductible, {meals_vat}.")
        lines.append("- Gifts: deductible with input VAT only up to €40 per gift.")
        lines.append(f"- Telecom: {situation.telecom_business_percent}% business use, internet: {situation.internet_business_percent}%.")
        lines.append("- Allocations to income sources must be 0% or at least 10%.")
        return "\n".join(lines)

    def _vehicle_vat(self, category: str, situation: Situation, context: TaxContext) -> Expectation | None:
        if category != "vehicle":
            return None
        if situation.vat_status != "regelbesteuert":
            return None
        if situation.has_company_car and situation.company_car_type == "electric":
            return Expectation(True, "Electric vehicles: input VAT deductible", "warning", VEHICLE_VAT_REFERENCE)
        return Expectation(
            False,
            "Passenger cars (non-electric): no input VAT deduction",
            "error",
            VEHICLE_VAT_REFERENCE,
        )

    def _vehicle_income_tax(self, category: str, situation: Situation, context: TaxContext) -> Expectation | None:
        if category != "vehicle":
            return None
        return Expectation(100, "Vehicle costs: business portion fully deductible", "warning")
