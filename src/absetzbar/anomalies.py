from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass

from .models import AnomalyFlag, Classification
from .rules.loader import AnomalySettings


@dataclass(frozen=True, slots=True)
class VendorHistory:
    invoice_count: int = 0
    last_category: str | None = None
    total_amount_cents: int = 0

    @property
    def average_amount_cents(self) -> int:
        if not self.invoice_count:
            return 0
        return round(self.total_amount_cents / self.invoice_count)


@dataclass(frozen=True, slots=True)
class AnomalyCheckResult:
    flags: list[AnomalyFlag]

    @property
    def requires_review(self) -> bool:
        return any(f.severity == "review_required" for f in self.flags)


def _euros(cents: int) -> str:
    return f"€{cents / 100:.2f}"


def check_anomalies(
    classification: Classification,
    vendor_domain: str | None,
    history: VendorHistory,
    settings: AnomalySettings,
) -> AnomalyCheckResult:
    flags: list[AnomalyFlag] = []
    amount = classification.amount_cents or 0
    category = classification.category

    if category == "none" and amount > settings.high_amount_personal_cents:
        flags.append(
            AnomalyFlag(
                type="high_amount_personal",
                severity="review_required",
                message=f"High-value item ({_euros(amount)}) classified as personal. Verify this is correct.",
                context={
                    "amount_cents": amount,
                    "vendor": classification.vendor_name,
                    "threshold_cents": settings.high_amount_personal_cents,
                },
            )
        )

    if history.invoice_count == 0 and category == "full" and amount > settings.first_time_high_cents:
        flags.append(
            AnomalyFlag(
                type="new_vendor_suspicious",
                severity="warning",
                message=f"First invoice from this vendor with high value ({_euros(amount)}). Verify business purpose.",
                context={
                    "vendor": vendor_domain,
                    "amount_cents": amount,
                    "threshold_cents": settings.first_time_high_cents,
                },
            )
        )

    if (
        history.invoice_count >= settings.min_invoices_for_pattern
        and history.last_category is not None
        and history.last_category not in (category, "unclear")
        and category != "unclear"
    ):
        flags.append(
            AnomalyFlag(
                type="category_change",
                severity="warning",
                message=f'Category changed from "{history.last_category}" to "{category}" for this vendor.',
                context={
                    "previous_category": history.last_category,
                    "new_category": category,
                    "invoice_count": history.invoice_count,
                },
            )
        )

    vendor_text = f"{vendor_domain or ''} {classification.vendor_name or ''}"
    if classification.vat_recoverable is True:
        for pattern in settings.no_vat_patterns:
            if pattern.search(vendor_text):
                flags.append(
                    AnomalyFlag(
                        type="unusual_vat",
                        severity="review_required",
                        message=(
                            "VAT recovery claimed for a vendor that typically charges no VAT "
                            "(insurance, rent, medical, bank fees)"
                        ),
                        context={"vendor": vendor_text.strip(), "matched_pattern": pattern.pattern},
                    )
                )
                break

    if amount > settings.very_high_amount_cents and amount % settings.round_amount_step_cents == 0:
        flags.append(
            AnomalyFlag(
                type="round_amount_high_value",
                severity="warning",
                message=f"Very high round amount (€{amount // 100}). Verify invoice authenticity.",
                context={"amount_cents": amount},
            )
        )

    return AnomalyCheckResult(flags=flags)


def summarize_anomalies(flags: Iterable[AnomalyFlag]) -> dict:
    by_type: Counter[str] = Counter()
    warnings = 0
    review_required = 0
    for flag in flags:
        by_type[flag.type] += 1
        if flag.severity == "warning":
            warnings += 1
        else:
            review_required += 1
    return {"by_type": dict(by_type), "total_warnings": warnings, "total_review_required": review_required}
