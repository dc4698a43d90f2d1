from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path

from .allocation import parse_allocations, serialize_allocations
from .anomalies import VendorHistory
from .models import Allocation, ClassifiedRecord, ExpenseRecord, ManualReview, TaxConfig
from .rules.normalization import normalize_domain
from .situations import active_income_sources, context_hash, resolve_situation

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS expenses (
      id TEXT NOT NULL,
      account TEXT NOT NULL,
      vendor_domain TEXT,
      invoice_number TEXT,
      invoice_date TEXT,
      amount_cents INTEGER,
      attachment_hash TEXT,
      status TEXT NOT NULL,
      category TEXT,
      income_tax_percent INTEGER,
      vat_recoverable INTEGER,
      situation_id INTEGER,
      income_source_id TEXT,
      allocation_json TEXT,
      context_hash TEXT,
      duplicate_of TEXT,
      duplicate_confidence TEXT,
      record_json TEXT NOT NULL,
      result_json TEXT,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL,
      PRIMARY KEY (id, account)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_expenses_vendor ON expenses(account, vendor_domain, invoice_date);",
    "CREATE INDEX IF NOT EXISTS idx_expenses_invoice ON expenses(account, invoice_number);",
    "CREATE INDEX IF NOT EXISTS idx_expenses_hash ON expenses(account, attachment_hash);",
    """
    CREATE TABLE IF NOT EXISTS manual_reviews (
      record_id TEXT NOT NULL,
      account TEXT NOT NULL,
      review_json TEXT NOT NULL,
      reviewed_at TEXT NOT NULL,
      PRIMARY KEY (record_id, account)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS runs (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      action TEXT NOT NULL,
      account TEXT,
      status TEXT NOT NULL,
      started_at TEXT NOT NULL,
      finished_at TEXT,
      stats_json TEXT,
      error TEXT
    );
    """,
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True, slots=True)
class StaleRecord:
    record_id: str
    reason: str


@dataclass(frozen=True, slots=True)
class RunEntry:
    id: int
    action: str
    account: str | None
    status: str
    started_at: str
    finished_at: str | None
    stats: dict
    error: str | None


class RecordStore:
    """SQLite persistence for classified expenses, manual reviews and the run log.

    Single writer: every public method opens its own connection and commits on exit.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(self.db_path)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA journal_mode=WAL;")
        try:
            yield con
            con.commit()
        finally:
            con.close()

    def init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._conn() as con:
            for statement in _SCHEMA:
                con.execute(statement)

    # records

    def has_record(self, record_id: str, account: str) -> bool:
        with self._conn() as con:
            cur = con.execute("SELECT 1 FROM expenses WHERE id=? AND account=?", (record_id, account))
            return cur.fetchone() is not None

    def insert_pending(self, record: ExpenseRecord) -> bool:
        """Register a new record. Returns ``False`` when the id is already known."""
        now = _now()
        with self._conn() as con:
            cur = con.execute(
                """
                INSERT OR IGNORE INTO expenses(
                  id, account, vendor_domain, invoice_number, invoice_date, amount_cents,
                  attachment_hash, status, record_json, created_at, updated_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    record.id,
                    record.account,
                    normalize_domain(record.vendor_domain),
                    _invoice_number(record.invoice_number),
                    record.invoice_date.isoformat() if record.invoice_date else None,
                    record.amount_cents,
                    record.attachment_hash,
                    "pending",
                    record.model_dump_json(),
                    now,
                    now,
                ),
            )
            return cur.rowcount == 1

    def save_classified(self, result: ClassifiedRecord) -> None:
        record = result.record
        classification = result.classification
        if result.blocked_reason is not None:
            status = "blocked"
        elif result.duplicate is not None:
            status = "duplicate"
        else:
            status = "classified"
        allocations = result.allocation.allocations if result.allocation else None
        now = _now()
        with self._conn() as con:
            con.execute(
                """
                INSERT INTO expenses(
                  id, account, vendor_domain, invoice_number, invoice_date, amount_cents,
                  attachment_hash, status, category, income_tax_percent, vat_recoverable,
                  situation_id, income_source_id, allocation_json, context_hash,
                  duplicate_of, duplicate_confidence, record_json, result_json, created_at, updated_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                ON CONFLICT(id, account) DO UPDATE SET
                  vendor_domain=excluded.vendor_domain,
                  invoice_number=excluded.invoice_number,
                  invoice_date=excluded.invoice_date,
                  amount_cents=excluded.amount_cents,
                  attachment_hash=excluded.attachment_hash,
                  status=excluded.status,
                  category=excluded.category,
                  income_tax_percent=excluded.income_tax_percent,
                  vat_recoverable=excluded.vat_recoverable,
                  situation_id=excluded.situation_id,
                  income_source_id=excluded.income_source_id,
                  allocation_json=excluded.allocation_json,
                  context_hash=excluded.context_hash,
                  duplicate_of=excluded.duplicate_of,
                  duplicate_confidence=excluded.duplicate_confidence,
                  record_json=excluded.record_json,
                  result_json=excluded.result_json,
                  updated_at=excluded.updated_at
                """,
                (
                    record.id,
                    record.account,
                    normalize_domain(record.vendor_domain),
                    _invoice_number(record.invoice_number),
                    record.invoice_date.isoformat() if record.invoice_date else None,
                    classification.amount_cents if classification else record.amount_cents,
                    record.attachment_hash,
                    status,
                    classification.category if classification else None,
                    classification.income_tax_percent if classification else None,
                    _bool_to_int(classification.vat_recoverable) if classification else None,
                    result.situation_id,
                    result.income_source_id,
                    serialize_allocations(allocations) if allocations is not None else None,
                    result.context_hash,
                    result.duplicate.original_id if result.duplicate else None,
                    result.duplicate.confidence if result.duplicate else None,
                    record.model_dump_json(),
                    result.model_dump_json(),
                    now,
                    now,
                ),
            )

    def get_record(self, record_id: str, account: str) -> ExpenseRecord | None:
        with self._conn() as con:
            row = con.execute(
                "SELECT record_json FROM expenses WHERE id=? AND account=?", (record_id, account)
            ).fetchone()
        if row is None:
            return None
        return ExpenseRecord.model_validate_json(row["record_json"])

    def get_result(self, record_id: str, account: str) -> ClassifiedRecord | None:
        with self._conn() as con:
            row = con.execute(
                "SELECT result_json FROM expenses WHERE id=? AND account=?", (record_id, account)
            ).fetchone()
        if row is None or row["result_json"] is None:
            return None
        return ClassifiedRecord.model_validate_json(row["result_json"])

    def pending_records(self, account: str) -> list[ExpenseRecord]:
        with self._conn() as con:
            rows = con.execute(
                "SELECT record_json FROM expenses WHERE account=? AND status='pending' ORDER BY created_at",
                (account,),
            ).fetchall()
        return [ExpenseRecord.model_validate_json(r["record_json"]) for r in rows]

    def records_needing_review(self, account: str) -> list[ClassifiedRecord]:
        with self._conn() as con:
            rows = con.execute(
                """
                SELECT result_json FROM expenses
                WHERE account=? AND result_json IS NOT NULL AND status != 'duplicate'
                ORDER BY invoice_date
                """,
                (account,),
            ).fetchall()
        results = [ClassifiedRecord.model_validate_json(r["result_json"]) for r in rows]
        return [r for r in results if r.needs_review]

    # duplicate lookups

    def find_by_invoice_number(
        self, invoice_number: str, vendor_domain: str, *, account: str, exclude_id: str
    ) -> str | None:
        with self._conn() as con:
            row = con.execute(
                """
                SELECT id FROM expenses
                WHERE account=? AND invoice_number=? AND vendor_domain=? AND id != ? AND status != 'duplicate'
                ORDER BY created_at LIMIT 1
                """,
                (account, _invoice_number(invoice_number), vendor_domain, exclude_id),
            ).fetchone()
        return row["id"] if row else None

    def find_by_content_hash(self, content_hash: str, *, account: str, exclude_id: str) -> str | None:
        with self._conn() as con:
            row = con.execute(
                """
                SELECT id FROM expenses
                WHERE account=? AND attachment_hash=? AND id != ? AND status != 'duplicate'
                ORDER BY created_at LIMIT 1
                """,
                (account, content_hash, exclude_id),
            ).fetchone()
        return row["id"] if row else None

    def find_fuzzy(
        self,
        vendor_domain: str,
        amount_cents: int,
        invoice_date: date,
        *,
        account: str,
        exclude_id: str,
        window_days: int,
    ) -> str | None:
        with self._conn() as con:
            row = con.execute(
                """
                SELECT id FROM expenses
                WHERE account=? AND vendor_domain=? AND amount_cents=? AND id != ?
                  AND status != 'duplicate' AND invoice_date IS NOT NULL
                  AND ABS(julianday(invoice_date) - julianday(?)) <= ?
                ORDER BY created_at LIMIT 1
                """,
                (account, vendor_domain, amount_cents, exclude_id, invoice_date.isoformat(), window_days),
            ).fetchone()
        return row["id"] if row else None

    # vendor history

    def vendor_history(self, account: str, vendor_domain: str | None, *, exclude_id: str | None = None) -> VendorHistory:
        domain = normalize_domain(vendor_domain)
        if domain is None:
            return VendorHistory()
        where = "account=? AND vendor_domain=? AND status='classified' AND category IS NOT NULL AND id != ?"
        params = (account, domain, exclude_id or "")
        with self._conn() as con:
            totals = con.execute(
                f"SELECT COUNT(*) AS n, COALESCE(SUM(amount_cents), 0) AS total FROM expenses WHERE {where}",
                params,
            ).fetchone()
            last = con.execute(
                f"SELECT category FROM expenses WHERE {where} ORDER BY invoice_date DESC, updated_at DESC LIMIT 1",
                params,
            ).fetchone()
        return VendorHistory(
            invoice_count=int(totals["n"]),
            last_category=last["category"] if last else None,
            total_amount_cents=int(totals["total"]),
        )

    def recent_allocations(
        self, account: str, vendor_domain: str | None, *, limit: int, exclude_id: str | None = None
    ) -> list[list[Allocation]]:
        domain = normalize_domain(vendor_domain)
        if domain is None:
            return []
        with self._conn() as con:
            rows = con.execute(
                """
                SELECT allocation_json FROM expenses
                WHERE account=? AND vendor_domain=? AND status='classified' AND id != ?
                  AND allocation_json IS NOT NULL AND allocation_json != '[]'
                ORDER BY invoice_date DESC, updated_at DESC LIMIT ?
                """,
                (account, domain, exclude_id or "", limit),
            ).fetchall()
        return [parse_allocations(r["allocation_json"]) for r in rows]

    # manual review

    def save_manual_review(self, record_id: str, account: str, review: ManualReview) -> None:
        with self._conn() as con:
            con.execute(
                "INSERT OR REPLACE INTO manual_reviews(record_id, account, review_json, reviewed_at) VALUES (?,?,?,?)",
                (record_id, account, review.model_dump_json(), _now()),
            )

    def get_manual_review(self, record_id: str, account: str) -> ManualReview | None:
        with self._conn() as con:
            row = con.execute(
                "SELECT review_json FROM manual_reviews WHERE record_id=? AND account=?", (record_id, account)
            ).fetchone()
        if row is None:
            return None
        return ManualReview.model_validate_json(row["review_json"])

    # reclassification

    def find_stale(self, config: TaxConfig, account: str) -> list[StaleRecord]:
        """Records whose stored classification no longer matches the current configuration."""
        with self._conn() as con:
            rows = con.execute(
                """
                SELECT id, status, invoice_date, context_hash FROM expenses
                WHERE account=? AND status != 'duplicate'
                ORDER BY invoice_date
                """,
                (account,),
            ).fetchall()

        stale: list[StaleRecord] = []
        for row in rows:
            if row["invoice_date"] is None:
                continue
            day = date.fromisoformat(row["invoice_date"])
            situation = resolve_situation(config.situations, day)
            if situation is None:
                if row["status"] != "blocked":
                    stale.append(StaleRecord(row["id"], "no_situation_coverage"))
                continue
            if row["status"] in ("pending", "blocked") or row["context_hash"] is None:
                stale.append(StaleRecord(row["id"], "never_classified"))
                continue
            current = context_hash(situation, active_income_sources(config.income_sources, day))
            if current != row["context_hash"]:
                stale.append(StaleRecord(row["id"], "situation_changed"))
        return stale

    # run log

    def start_run(self, action: str, account: str | None = None) -> int:
        with self._conn() as con:
            cur = con.execute(
                "INSERT INTO runs(action, account, status, started_at) VALUES (?,?,?,?)",
                (action, account, "running", _now()),
            )
            return int(cur.lastrowid)

    def finish_run(self, run_id: int, status: str, *, stats: dict | None = None, error: str | None = None) -> None:
        with self._conn() as con:
            con.execute(
                "UPDATE runs SET status=?, finished_at=?, stats_json=?, error=? WHERE id=?",
                (status, _now(), json.dumps(stats or {}), error, run_id),
            )

    def mark_interrupted_runs(self) -> int:
        """Flag runs a previous process left in ``running``."""
        with self._conn() as con:
            cur = con.execute(
                "UPDATE runs SET status='interrupted', finished_at=? WHERE status='running'",
                (_now(),),
            )
            count = cur.rowcount
        if count:
            logger.warning("marked %d unfinished run(s) as interrupted", count)
        return count

    def recent_runs(self, limit: int = 20) -> list[RunEntry]:
        with self._conn() as con:
            rows = con.execute("SELECT * FROM runs ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [
            RunEntry(
                id=r["id"],
                action=r["action"],
                account=r["account"],
                status=r["status"],
                started_at=r["started_at"],
                finished_at=r["finished_at"],
                stats=json.loads(r["stats_json"] or "{}"),
                error=r["error"],
            )
            for r in rows
        ]


def _invoice_number(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _bool_to_int(value: bool | None) -> int | None:
    if value is None:
        return None
    return int(value)
