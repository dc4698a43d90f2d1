from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field

DeductibleCategory = Literal["full", "vehicle", "meals", "telecom", "gifts", "partial", "none", "unclear"]
VatStatus = Literal["kleinunternehmer", "regelbesteuert"]
CompanyCarType = Literal["ice", "electric", "hybrid_plugin", "hybrid"]
HomeOfficeType = Literal["pauschale_gross", "pauschale_klein", "daily_rate", "actual", "none"]
IncomeCategory = Literal[
    "selbstaendige_arbeit",
    "gewerbebetrieb",
    "nichtselbstaendige",
    "vermietung",
    "land_forstwirtschaft",
]
AllocationStrategy = Literal["exclusive", "split_fixed", "manual"]
Severity = Literal["error", "warning"]
Confidence = Literal["high", "medium", "low"]
DuplicateConfidence = Literal["exact", "high", "medium", "low"]
DuplicateStrategy = Literal["identity", "invoice_number", "content_hash", "fuzzy"]
AllocationTier = Literal[
    "manual_override",
    "allocation_rule",
    "ai_suggestion",
    "category_default",
    "heuristic_single_source",
    "heuristic_vendor_history",
    "heuristic_vendor_type",
    "review_needed",
]
ClassificationStage = Literal["provisional", "legally_corrected", "cross_validated", "anomaly_checked", "final"]

CATEGORIES: tuple[str, ...] = ("full", "vehicle", "meals", "telecom", "gifts", "partial", "none", "unclear")
STAGES: tuple[str, ...] = ("provisional", "legally_corrected", "cross_validated", "anomaly_checked", "final")


class ValidationIssue(BaseModel):
    field: str
    message: str
    code: str


class Situation(BaseModel):
    """Tax status snapshot valid over ``[from, to)``; ``to=None`` means ongoing."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int
    valid_from: date = Field(alias="from")
    valid_to: date | None = Field(default=None, alias="to")
    jurisdiction: str
    vat_status: VatStatus
    has_company_car: bool = False
    company_car_type: CompanyCarType | None = None
    company_car_name: str | None = None
    car_business_percent: int = 0
    car_list_price_cents: int | None = None
    telecom_business_percent: int = 50
    internet_business_percent: int = 50
    home_office: HomeOfficeType = "none"

    def covers(self, day: date) -> bool:
        return self.valid_from <= day and (self.valid_to is None or day < self.valid_to)

    @property
    def is_ongoing(self) -> bool:
        return self.valid_to is None


class IncomeSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    category: IncomeCategory
    valid_from: date
    valid_to: date | None = None
    telecom_percent_override: int | None = None
    internet_percent_override: int | None = None
    vehicle_percent_override: int | None = None
    notes: str | None = None

    def covers(self, day: date) -> bool:
        return self.valid_from <= day and (self.valid_to is None or day < self.valid_to)


class Allocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_id: str
    percent: int


class AllocationRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    vendor_domain: str | None = None
    vendor_pattern: str | None = None
    deductible_category: DeductibleCategory | None = None
    min_amount_cents: int | None = None
    strategy: AllocationStrategy = "exclusive"
    allocations: list[Allocation] = Field(default_factory=list)


class TaxConfig(BaseModel):
    version: int = 2
    jurisdiction: str
    situations: list[Situation] = Field(default_factory=list)
    income_sources: list[IncomeSource] = Field(default_factory=list)
    allocation_rules: list[AllocationRule] = Field(default_factory=list)
    category_defaults: dict[str, str] = Field(default_factory=dict)

    def income_source(self, source_id: str) -> IncomeSource | None:
        for source in self.income_sources:
            if source.id == source_id:
                return source
        return None


class ExpenseRecord(BaseModel):
    """An incoming expense as handed over by the mail/extraction layer."""

    id: str
    account: str
    vendor_domain: str | None = None
    sender: str | None = None
    subject: str | None = None
    invoice_number: str | None = None
    invoice_date: date | None = None
    amount_cents: int | None = None
    attachment_hash: str | None = None


class UpstreamSuggestion(BaseModel):
    """Untrusted output of the AI classifier or vendor lookup. ``None`` means no information."""

    category: DeductibleCategory | None = None
    income_tax_percent: int | None = Field(default=None, ge=0, le=100)
    vat_recoverable: bool | None = None
    amount_cents: int | None = None
    vendor_name: str | None = None
    reason: str | None = None
    suggested_source_id: str | None = None


class PromptContext(BaseModel):
    jurisdiction: str
    invoice_date: date
    vat_status: VatStatus
    has_company_car: bool
    company_car_type: CompanyCarType | None = None
    car_business_percent: int
    telecom_business_percent: int
    internet_business_percent: int
    home_office: HomeOfficeType
    active_source_ids: list[str]
    instructions: str


class Violation(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    submitted_value: Any = None
    corrected_value: Any = None
    rule: str
    severity: Severity
    legal_reference: str | None = None


class Classification(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: DeductibleCategory
    income_tax_percent: int | None = None
    vat_recoverable: bool | None = None
    vat_percent: int | None = None
    amount_cents: int | None = None
    vendor_name: str | None = None
    reason: str = ""
    violations: tuple[Violation, ...] = ()
    stage: ClassificationStage = "provisional"

    @classmethod
    def from_suggestion(cls, suggestion: UpstreamSuggestion, *, amount_cents: int | None = None) -> "Classification":
        return cls(
            category=suggestion.category or "unclear",
            income_tax_percent=suggestion.income_tax_percent,
            vat_recoverable=suggestion.vat_recoverable,
            amount_cents=suggestion.amount_cents if suggestion.amount_cents is not None else amount_cents,
            vendor_name=suggestion.vendor_name,
            reason=suggestion.reason or "",
        )

    def advance(self, stage: ClassificationStage) -> "Classification":
        if STAGES.index(stage) <= STAGES.index(self.stage):
            return self
        return self.model_copy(update={"stage": stage})


class CrossValidationResult(BaseModel):
    match: Literal["agree", "disagree", "unknown_vendor"]
    submitted_category: DeductibleCategory
    vendor_category: DeductibleCategory | None = None
    vendor_name: str | None = None
    confidence: Confidence
    suggested_action: str | None = None

    @property
    def requires_review(self) -> bool:
        return self.match == "disagree" and self.confidence == "low"


class ForceOverride(BaseModel):
    category: DeductibleCategory
    reason: str


class AnomalyFlag(BaseModel):
    type: Literal[
        "high_amount_personal",
        "new_vendor_suspicious",
        "category_change",
        "unusual_vat",
        "round_amount_high_value",
    ]
    severity: Literal["warning", "review_required"]
    message: str
    context: dict[str, Any] = Field(default_factory=dict)


class AllocationResult(BaseModel):
    allocations: list[Allocation] = Field(default_factory=list)
    tier: AllocationTier
    rule_id: str | None = None
    confidence: float
    reason: str
    alternatives_considered: list[str] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    logic_version: str
    decided_at: datetime


class DuplicateRecord(BaseModel):
    record_id: str
    original_id: str
    confidence: DuplicateConfidence
    strategy: DuplicateStrategy
    auto_applied: bool = True


class ManualReview(BaseModel):
    category: DeductibleCategory
    income_tax_percent: int = Field(ge=0, le=100)
    vat_recoverable: bool
    reason: str | None = None
    allocations: list[Allocation] = Field(default_factory=list)


class ClassifiedRecord(BaseModel):
    record: ExpenseRecord
    situation_id: int | None = None
    context_hash: str | None = None
    upstream: UpstreamSuggestion | None = None
    classification: Classification | None = None
    force_override: ForceOverride | None = None
    cross_validation: CrossValidationResult | None = None
    anomalies: list[AnomalyFlag] = Field(default_factory=list)
    duplicate: DuplicateRecord | None = None
    duplicate_candidate: DuplicateRecord | None = None
    allocation: AllocationResult | None = None
    review_reasons: list[str] = Field(default_factory=list)
    confidence: Confidence = "low"
    blocked_reason: str | None = None

    @computed_field
    @property
    def needs_review(self) -> bool:
        if self.blocked_reason is not None:
            return True
        if self.duplicate is not None:
            return False
        if self.review_reasons:
            return True
        return self.allocation is None or self.allocation.tier == "review_needed"

    @computed_field
    @property
    def assignment_status(self) -> str:
        if self.blocked_reason is not None:
            return "blocked"
        if self.duplicate is not None:
            return "duplicate"
        if self.allocation is None:
            return "manual_review"
        tier = self.allocation.tier
        if tier == "manual_override":
            return "confirmed"
        if self.review_reasons or tier == "review_needed":
            return "manual_review"
        if tier == "allocation_rule":
            return "rule_match"
        if tier == "ai_suggestion":
            return "ai_suggested"
        if tier == "category_default":
            return "category_default"
        return "heuristic"

    @property
    def income_source_id(self) -> str | None:
        if self.allocation is None or not self.allocation.allocations:
            return None
        return max(self.allocation.allocations, key=lambda a: a.percent).source_id

    def marked_duplicate(self, duplicate: DuplicateRecord) -> "ClassifiedRecord":
        return self.model_copy(update={"duplicate": duplicate, "allocation": None})
