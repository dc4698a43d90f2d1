from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import date
from functools import lru_cache

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel

from ...config import load_config
from ...duplicates import DedupOptions
from ...jurisdictions.registry import jurisdiction_info
from ...logging_config import configure_logging
from ...models import ClassifiedRecord, ExpenseRecord, IncomeSource, Situation, TaxConfig, UpstreamSuggestion
from ...pipeline import ClassificationPipeline
from ...project_paths import ProjectPaths
from ...rules.loader import KnowledgeBase
from ...situations import ConfigValidationResult, NoActiveSituationError, build_invoice_context, validate_config
from ...storage import RecordStore


class ClassifyRequest(BaseModel):
    record: ExpenseRecord
    suggestion: UpstreamSuggestion
    auto_dedup: bool = False
    strict: bool = False


class ResolveResponse(BaseModel):
    day: date
    situation: Situation | None
    active_income_sources: list[IncomeSource]
    has_gap: bool


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    configure_logging()
    yield


app = FastAPI(title="Absetzbar Classification Service", version="0.1.0", lifespan=lifespan)


@lru_cache(maxsize=1)
def get_paths() -> ProjectPaths:
    paths = ProjectPaths.detect()
    paths.ensure_dirs()
    return paths


def get_config() -> TaxConfig:
    return load_config(get_paths().config_path)


@lru_cache(maxsize=1)
def get_knowledge_base() -> KnowledgeBase:
    return KnowledgeBase.load_from_dir(get_paths().rules_dir)


@lru_cache(maxsize=1)
def get_store() -> RecordStore:
    store = RecordStore(get_paths().db_path)
    store.init_db()
    return store


def get_pipeline(
    config: TaxConfig = Depends(get_config),
    kb: KnowledgeBase = Depends(get_knowledge_base),
    store: RecordStore = Depends(get_store),
) -> ClassificationPipeline:
    return ClassificationPipeline(config, kb, store)


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


@app.post("/classify", response_model=ClassifiedRecord)
def classify(req: ClassifyRequest, pipeline: ClassificationPipeline = Depends(get_pipeline)) -> ClassifiedRecord:
    try:
        return pipeline.classify(req.record, req.suggestion, dedup=DedupOptions(auto_dedup=req.auto_dedup, strict=req.strict))
    except NoActiveSituationError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.post("/config/validate", response_model=ConfigValidationResult)
def config_validate(config: TaxConfig) -> ConfigValidationResult:
    return validate_config(config)


@app.get("/situations/resolve", response_model=ResolveResponse)
def resolve(day: date = Query(...), config: TaxConfig = Depends(get_config)) -> ResolveResponse:
    context = build_invoice_context(config, day)
    return ResolveResponse(
        day=day,
        situation=context.situation,
        active_income_sources=list(context.active_sources),
        has_gap=context.has_gap,
    )


@app.get("/jurisdictions")
def jurisdictions() -> list[dict]:
    return [asdict(info) for info in jurisdiction_info()]


@app.get("/reviews", response_model=list[ClassifiedRecord])
def reviews(account: str = Query(...), store: RecordStore = Depends(get_store)) -> list[ClassifiedRecord]:
    return store.records_needing_review(account)
