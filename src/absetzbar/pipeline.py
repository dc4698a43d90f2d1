from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable

from .allocation import VENDOR_HISTORY_DEPTH, AllocationEngine, AllocationRequest
from .anomalies import VendorHistory, check_anomalies, summarize_anomalies
from .classifier_client import build_prompt_context
from .cross_validation import cross_validate, detect_force_override
from .duplicates import DedupOptions, DuplicateCheck, DuplicateDetector
from .enforcement import enforce
from .jurisdictions.registry import get_rules
from .models import (
    AllocationResult,
    Classification,
    ClassifiedRecord,
    Confidence,
    CrossValidationResult,
    ExpenseRecord,
    ManualReview,
    PromptContext,
    TaxConfig,
    UpstreamSuggestion,
)
from .rules.loader import KnowledgeBase
from .rules.vendors import find_vendor
from .situations import (
    NoActiveSituationError,
    active_income_sources,
    build_invoice_context,
    context_hash,
    require_situation,
)
from .storage import RecordStore

logger = logging.getLogger(__name__)


def blocked_record(record: ExpenseRecord, error: NoActiveSituationError, *, upstream: UpstreamSuggestion | None = None) -> ClassifiedRecord:
    """Result for a record whose date no situation covers. Never defaulted to another situation."""
    return ClassifiedRecord(record=record, upstream=upstream, blocked_reason=str(error))


def _overall_confidence(
    cross_validation: CrossValidationResult,
    review_reasons: list[str],
    anomaly_count: int,
    allocation: AllocationResult | None,
) -> Confidence:
    if review_reasons or cross_validation.confidence == "low":
        return "low"
    if allocation is not None and allocation.tier == "review_needed":
        return "low"
    if cross_validation.match == "agree" and anomaly_count == 0:
        if allocation is None or allocation.confidence >= 0.9:
            return "high"
    return "medium"


class ClassificationPipeline:
    """Runs one record through enforcement, validation, dedup and allocation.

    ``store`` is optional; without it there is no vendor history, no duplicate detection and
    no manual review lookup.
    """

    def __init__(self, config: TaxConfig, kb: KnowledgeBase, store: RecordStore | None = None) -> None:
        self.config = config
        self.kb = kb
        self.store = store
        self.allocator = AllocationEngine(config, get_rules(config.jurisdiction))
        self.detector = DuplicateDetector(store) if store is not None else None

    def prompt_context(self, record: ExpenseRecord) -> PromptContext:
        situation = require_situation(self.config.situations, record.invoice_date)
        context = build_invoice_context(self.config, record.invoice_date)
        return build_prompt_context(context, get_rules(situation.jurisdiction))

    def classify(
        self,
        record: ExpenseRecord,
        suggestion: UpstreamSuggestion,
        *,
        dedup: DedupOptions = DedupOptions(),
    ) -> ClassifiedRecord:
        situation = require_situation(self.config.situations, record.invoice_date)
        invoice_date = record.invoice_date
        sources = active_income_sources(self.config.income_sources, invoice_date)

        manual = self._manual_review(record)
        override = None
        if manual is not None:
            provisional = Classification(
                category=manual.category,
                income_tax_percent=manual.income_tax_percent,
                vat_recoverable=manual.vat_recoverable,
                amount_cents=suggestion.amount_cents if suggestion.amount_cents is not None else record.amount_cents,
                vendor_name=suggestion.vendor_name,
                reason=manual.reason or "Manual review",
            )
        else:
            provisional = Classification.from_suggestion(suggestion, amount_cents=record.amount_cents)
            override = detect_force_override(record.vendor_domain, record.subject, self.kb)
            if override is not None and override.category != provisional.category:
                logger.info("forcing category %s for %s: %s", override.category, record.id, override.reason)
                provisional = provisional.model_copy(
                    update={
                        "category": override.category,
                        "reason": " ".join(p for p in [provisional.reason, f"[Forced: {override.reason}]"] if p),
                    }
                )

        classification = enforce(provisional, situation, sources).classification

        text = " ".join(p for p in (record.sender, record.subject, classification.vendor_name) if p)
        cross_validation = cross_validate(classification.category, record.vendor_domain, text, self.kb)
        classification = classification.advance("cross_validated")

        history = VendorHistory()
        if self.store is not None:
            history = self.store.vendor_history(record.account, record.vendor_domain, exclude_id=record.id)
        anomalies = check_anomalies(classification, record.vendor_domain, history, self.kb.anomalies).flags
        classification = classification.advance("anomaly_checked")

        review_reasons = [] if manual is not None else self._review_reasons(classification, cross_validation, anomalies)

        check = DuplicateCheck()
        if self.detector is not None:
            check = self.detector.check(record, dedup, amount_cents=classification.amount_cents)
        if check.candidate is not None and manual is None:
            review_reasons.append(f"Possible duplicate of {check.candidate.original_id}")

        result = ClassifiedRecord(
            record=record,
            situation_id=situation.id,
            context_hash=context_hash(situation, sources),
            upstream=suggestion,
            classification=classification.advance("final"),
            force_override=override,
            cross_validation=cross_validation,
            anomalies=anomalies,
            duplicate_candidate=check.candidate,
            review_reasons=review_reasons,
        )

        if check.duplicate is not None:
            return result.marked_duplicate(check.duplicate).model_copy(
                update={"confidence": _overall_confidence(cross_validation, review_reasons, len(anomalies), None)}
            )

        vendor_history = []
        if self.store is not None:
            vendor_history = self.store.recent_allocations(
                record.account, record.vendor_domain, limit=VENDOR_HISTORY_DEPTH, exclude_id=record.id
            )
        allocation = self.allocator.allocate(
            AllocationRequest(
                invoice_date=invoice_date,
                category=classification.category,
                active_sources=sources,
                vendor_domain=record.vendor_domain,
                subject=record.subject,
                sender=record.sender,
                amount_cents=classification.amount_cents,
                suggested_source_id=suggestion.suggested_source_id,
                manual_allocations=manual.allocations if manual is not None else None,
                vendor_history=vendor_history,
                vendor_income_category=self._vendor_income_category(record, text, situation.jurisdiction),
            )
        )
        confidence = "high" if manual is not None else _overall_confidence(
            cross_validation, review_reasons, len(anomalies), allocation
        )
        return result.model_copy(update={"allocation": allocation, "confidence": confidence})

    def _vendor_income_category(self, record: ExpenseRecord, text: str, jurisdiction: str) -> str | None:
        vendor = find_vendor(record.vendor_domain, text, self.kb.vendors)
        if vendor is None:
            return None
        return get_rules(jurisdiction).default_income_category(vendor)

    def _manual_review(self, record: ExpenseRecord) -> ManualReview | None:
        if self.store is None:
            return None
        return self.store.get_manual_review(record.id, record.account)

    def _review_reasons(
        self,
        classification: Classification,
        cross_validation: CrossValidationResult,
        anomalies: list,
    ) -> list[str]:
        reasons: list[str] = []
        if classification.category == "unclear":
            reasons.append("Category could not be determined")
        elif classification.income_tax_percent is None:
            reasons.append(f"Income-tax percentage for '{classification.category}' needs a manual decision")
        if classification.category == "gifts" and classification.amount_cents is None:
            reasons.append("Gift amount unknown; the gift threshold cannot be checked")
        if cross_validation.requires_review and cross_validation.suggested_action:
            reasons.append(cross_validation.suggested_action)
        for flag in anomalies:
            if flag.severity == "review_required":
                logger.info("review required: %s", flag.message, extra={"anomaly": flag.type})
                reasons.append(flag.message)
        return reasons


def summarize_results(results: Iterable[ClassifiedRecord]) -> dict:
    results = list(results)
    by_status: Counter[str] = Counter()
    by_category: Counter[str] = Counter()
    by_confidence: Counter[str] = Counter()
    violations = 0
    flags = []
    for result in results:
        by_status[result.assignment_status] += 1
        by_confidence[result.confidence] += 1
        if result.classification is not None:
            by_category[result.classification.category] += 1
            violations += len(result.classification.violations)
        flags.extend(result.anomalies)
    return {
        "total": len(results),
        "needs_review": sum(1 for r in results if r.needs_review),
        "by_status": dict(by_status),
        "by_category": dict(by_category),
        "by_confidence": dict(by_confidence),
        "violations": violations,
        "anomalies": summarize_anomalies(flags),
    }
