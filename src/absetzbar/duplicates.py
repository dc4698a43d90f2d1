from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import date
from typing import Protocol

from .models import DuplicateRecord, ExpenseRecord
from .rules.normalization import normalize_domain

logger = logging.getLogger(__name__)

FUZZY_WINDOW_DAYS = 7


class DuplicateLookup(Protocol):
    def has_record(self, record_id: str, account: str) -> bool: ...

    def find_by_invoice_number(
        self, invoice_number: str, vendor_domain: str, *, account: str, exclude_id: str
    ) -> str | None: ...

    def find_by_content_hash(self, content_hash: str, *, account: str, exclude_id: str) -> str | None: ...

    def find_fuzzy(
        self,
        vendor_domain: str,
        amount_cents: int,
        invoice_date: date,
        *,
        account: str,
        exclude_id: str,
        window_days: int,
    ) -> str | None: ...


@dataclass(frozen=True, slots=True)
class DedupOptions:
    auto_dedup: bool = False
    strict: bool = False

    @property
    def auto_apply_fuzzy(self) -> bool:
        return self.auto_dedup or self.strict


@dataclass(frozen=True, slots=True)
class DuplicateCheck:
    duplicate: DuplicateRecord | None = None
    candidate: DuplicateRecord | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate is not None


def hash_content(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


class DuplicateDetector:
    """Matches a record against already persisted records of the same account.

    Identity is checked at ingestion, invoice number and fuzzy matching when the record is
    classified, and the content hash once an artifact has been fetched.
    """

    def __init__(self, lookup: DuplicateLookup, *, window_days: int = FUZZY_WINDOW_DAYS) -> None:
        self.lookup = lookup
        self.window_days = window_days

    def is_known(self, record: ExpenseRecord) -> bool:
        return self.lookup.has_record(record.id, record.account)

    def check(
        self,
        record: ExpenseRecord,
        options: DedupOptions = DedupOptions(),
        *,
        amount_cents: int | None = None,
    ) -> DuplicateCheck:
        """``amount_cents`` is the amount that gets persisted; it defaults to the record's own."""
        domain = normalize_domain(record.vendor_domain)
        amount = amount_cents if amount_cents is not None else record.amount_cents

        if record.invoice_number and domain:
            original = self.lookup.find_by_invoice_number(
                record.invoice_number.strip(), domain, account=record.account, exclude_id=record.id
            )
            if original is not None:
                logger.info("record %s duplicates %s by invoice number", record.id, original)
                return DuplicateCheck(
                    duplicate=DuplicateRecord(
                        record_id=record.id,
                        original_id=original,
                        confidence="exact",
                        strategy="invoice_number",
                    )
                )

        if domain and amount is not None and record.invoice_date is not None:
            original = self.lookup.find_fuzzy(
                domain,
                amount,
                record.invoice_date,
                account=record.account,
                exclude_id=record.id,
                window_days=self.window_days,
            )
            if original is not None:
                match = DuplicateRecord(
                    record_id=record.id,
                    original_id=original,
                    confidence="high" if options.strict else "medium",
                    strategy="fuzzy",
                    auto_applied=options.auto_apply_fuzzy,
                )
                if options.auto_apply_fuzzy:
                    logger.info("record %s duplicates %s by fuzzy match", record.id, original)
                    return DuplicateCheck(duplicate=match)
                return DuplicateCheck(candidate=match)

        return DuplicateCheck()

    def check_content(self, record: ExpenseRecord, content_hash: str) -> DuplicateCheck:
        original = self.lookup.find_by_content_hash(content_hash, account=record.account, exclude_id=record.id)
        if original is None:
            return DuplicateCheck()
        logger.info("record %s duplicates %s by content hash", record.id, original)
        return DuplicateCheck(
            duplicate=DuplicateRecord(
                record_id=record.id,
                original_id=original,
                confidence="exact",
                strategy="content_hash",
            )
        )
