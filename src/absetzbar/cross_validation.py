from __future__ import annotations

import logging

from .models import CrossValidationResult, ForceOverride
from .rules.loader import KnowledgeBase, ServiceLists
from .rules.normalization import domain_matches, normalize_domain
from .rules.vendors import find_vendor

logger = logging.getLogger(__name__)

_NEUTRAL = {"none", "unclear"}


def _is_personal_business_conflict(submitted: str, known: str) -> bool:
    return (submitted == "none" and known not in _NEUTRAL) or (known == "none" and submitted not in _NEUTRAL)


def _service_kind(domain: str | None, services: ServiceLists) -> str | None:
    if any(domain_matches(domain, d) for d in services.personal_domains):
        return "personal"
    if any(domain_matches(domain, d) for d in services.business_domains):
        return "business"
    return None


def cross_validate(
    category: str,
    vendor_domain: str | None,
    text: str,
    kb: KnowledgeBase,
) -> CrossValidationResult:
    """Compare a submitted category with the vendor knowledge base.

    Disagreements never change the classification. A personal/business conflict comes back
    with low confidence so the caller can send the record to review; any other disagreement
    is medium confidence.
    """
    domain = normalize_domain(vendor_domain)
    match = find_vendor(domain, text, kb.vendors)

    if match is None:
        kind = _service_kind(domain, kb.services)
        if kind == "personal" and category != "none":
            return CrossValidationResult(
                match="disagree",
                submitted_category=category,
                vendor_category="none",
                vendor_name=domain,
                confidence="low",
                suggested_action=f'Personal service detected: submitted "{category}", expected "none"',
            )
        if kind == "business" and category == "none":
            return CrossValidationResult(
                match="disagree",
                submitted_category=category,
                vendor_category="full",
                vendor_name=domain,
                confidence="low",
                suggested_action='Business service detected: submitted "none", expected "full"',
            )
        return CrossValidationResult(match="unknown_vendor", submitted_category=category, confidence="low")

    if match.deductible_category == category:
        return CrossValidationResult(
            match="agree",
            submitted_category=category,
            vendor_category=match.deductible_category,
            vendor_name=match.name,
            confidence="high",
        )

    conflict = _is_personal_business_conflict(category, match.deductible_category)
    if conflict:
        action = f'Personal/business conflict: submitted "{category}", vendor list says "{match.deductible_category}"'
    else:
        action = f'Minor disagreement: submitted "{category}", vendor list says "{match.deductible_category}"'
    logger.info("vendor cross-check disagrees for %s: %s", domain or match.name, action)
    return CrossValidationResult(
        match="disagree",
        submitted_category=category,
        vendor_category=match.deductible_category,
        vendor_name=match.name,
        confidence="low" if conflict else "medium",
        suggested_action=action,
    )


def detect_force_override(vendor_domain: str | None, subject: str | None, kb: KnowledgeBase) -> ForceOverride | None:
    """Categories that are fixed regardless of what the classifier suggested."""
    domain = normalize_domain(vendor_domain)
    if domain is None:
        return None
    subject = subject or ""

    if any(domain_matches(domain, d) for d in kb.services.personal_domains):
        return ForceOverride(category="none", reason=f"Known personal service: {domain}")
    for pattern in kb.services.personal_subject_patterns:
        if pattern.search(subject):
            return ForceOverride(category="none", reason="Streaming or entertainment service in subject")
    for pattern in kb.services.grocery_patterns:
        if pattern.search(subject) or pattern.search(domain):
            return ForceOverride(category="none", reason="Supermarket or grocery purchase")
    return None
