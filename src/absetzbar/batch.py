from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from typing import Protocol

from .classifier_client import CollaboratorError
from .duplicates import DedupOptions, hash_content
from .logging_config import LogContext
from .models import ClassifiedRecord, ExpenseRecord, PromptContext, UpstreamSuggestion
from .pipeline import ClassificationPipeline, blocked_record
from .situations import NoActiveSituationError
from .storage import RecordStore

logger = logging.getLogger(__name__)


class SuggestionSource(Protocol):
    def suggest(self, record: ExpenseRecord, context: PromptContext) -> UpstreamSuggestion: ...


class ArtifactSource(Protocol):
    def fetch(self, record: ExpenseRecord) -> bytes | None: ...


@dataclass(slots=True)
class BatchStats:
    processed: int = 0
    classified: int = 0
    needs_review: int = 0
    blocked: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False
    failures: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


class BatchRunner:
    """Processes records one at a time; cancellation is honoured between records only."""

    def __init__(
        self,
        pipeline: ClassificationPipeline,
        store: RecordStore,
        classifier: SuggestionSource,
        *,
        artifacts: ArtifactSource | None = None,
        dedup: DedupOptions = DedupOptions(),
    ) -> None:
        self.pipeline = pipeline
        self.store = store
        self.classifier = classifier
        self.artifacts = artifacts
        self.dedup = dedup

    async def run(
        self,
        records: Sequence[ExpenseRecord],
        *,
        account: str,
        cancel: asyncio.Event | None = None,
    ) -> BatchStats:
        return await self._run("classify", records, account=account, cancel=cancel, ingest=True)

    async def run_pending(self, *, account: str, cancel: asyncio.Event | None = None) -> BatchStats:
        """Finish records that an earlier run registered but never classified."""
        records = self.store.pending_records(account)
        return await self._run("resume", records, account=account, cancel=cancel, ingest=False)

    async def _run(
        self,
        action: str,
        records: Sequence[ExpenseRecord],
        *,
        account: str,
        cancel: asyncio.Event | None,
        ingest: bool,
    ) -> BatchStats:
        self.store.mark_interrupted_runs()
        run_id = self.store.start_run(action, account)
        stats = BatchStats()

        with LogContext.bind(run_id=str(run_id), account=account):
            logger.info("batch started", extra={"action": action, "records": len(records)})
            try:
                for record in records:
                    if cancel is not None and cancel.is_set():
                        stats.cancelled = True
                        logger.info("batch cancelled", extra={"processed": stats.processed})
                        break
                    with LogContext.bind(record_id=record.id):
                        await self._process(record, stats, ingest=ingest)
            except Exception as exc:
                self.store.finish_run(run_id, "failed", stats=stats.as_dict(), error=str(exc))
                raise

            status = "cancelled" if stats.cancelled else "completed"
            self.store.finish_run(run_id, status, stats=stats.as_dict())
            logger.info("batch finished", extra={"status": status, **stats.as_dict()})
        return stats

    async def _process(self, record: ExpenseRecord, stats: BatchStats, *, ingest: bool) -> None:
        if ingest and not self.store.insert_pending(record):
            stats.skipped += 1
            return
        stats.processed += 1

        try:
            context = self.pipeline.prompt_context(record)
        except NoActiveSituationError as exc:
            logger.warning("record blocked: %s", exc)
            self._save(blocked_record(record, exc), stats)
            return

        try:
            suggestion = await asyncio.to_thread(self.classifier.suggest, record, context)
        except CollaboratorError as exc:
            self._fail(record, exc, stats)
            return

        result = self.pipeline.classify(record, suggestion, dedup=self.dedup)

        # an exact content match outranks a fuzzy one
        fuzzy = result.duplicate is not None and result.duplicate.strategy == "fuzzy"
        if (result.duplicate is None or fuzzy) and self.artifacts is not None:
            try:
                content = await asyncio.to_thread(self.artifacts.fetch, record)
            except CollaboratorError as exc:
                self._fail(record, exc, stats)
                return
            if content:
                result = self._with_content_hash(result, hash_content(content))

        self._save(result, stats)

    def _with_content_hash(self, result: ClassifiedRecord, digest: str) -> ClassifiedRecord:
        record = result.record.model_copy(update={"attachment_hash": digest})
        result = result.model_copy(update={"record": record})
        if self.pipeline.detector is None:
            return result
        check = self.pipeline.detector.check_content(record, digest)
        if check.duplicate is not None:
            return result.marked_duplicate(check.duplicate)
        return result

    def _fail(self, record: ExpenseRecord, exc: CollaboratorError, stats: BatchStats) -> None:
        logger.warning("collaborator failed for %s: %s", record.id, exc, extra={"retryable": exc.retryable})
        stats.failed += 1
        stats.failures.append(f"{record.id}: {exc}")

    def _save(self, result: ClassifiedRecord, stats: BatchStats) -> None:
        self.store.save_classified(result)
        if result.blocked_reason is not None:
            stats.blocked += 1
        elif result.duplicate is not None:
            stats.duplicates += 1
        else:
            stats.classified += 1
        if result.needs_review:
            stats.needs_review += 1
