from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from dataclasses import dataclass

from pydantic import ValidationError

from .jurisdictions.base import TaxRules
from .models import ExpenseRecord, PromptContext, UpstreamSuggestion
from .situations import InvoiceContext, NoActiveSituationError

logger = logging.getLogger(__name__)

DEFAULT_CLASSIFIER_URL = "http://127.0.0.1:8002"


class CollaboratorError(RuntimeError):
    """A classifier or artefact collaborator could not deliver a usable answer."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


def post_json(url: str, payload: dict, *, timeout_s: float = 5.0) -> dict:
    data = json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json", "Accept": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            body = resp.read().decode("utf-8", errors="replace")
            return json.loads(body) if body else {}
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
        raise CollaboratorError(f"HTTP {exc.code} from {url}: {body}", retryable=exc.code >= 500) from exc
    except urllib.error.URLError as exc:
        raise CollaboratorError(f"Request to {url} failed: {exc.reason}") from exc
    except json.JSONDecodeError as exc:
        raise CollaboratorError(f"Response from {url} is not JSON: {exc}", retryable=False) from exc


def build_prompt_context(context: InvoiceContext, rules: TaxRules) -> PromptContext:
    """Situation summary handed to the classifier together with the record."""
    situation = context.situation
    if situation is None:
        raise NoActiveSituationError(context.invoice_date)
    return PromptContext(
        jurisdiction=rules.code,
        invoice_date=context.invoice_date,
        vat_status=situation.vat_status,
        has_company_car=situation.has_company_car,
        company_car_type=situation.company_car_type,
        car_business_percent=situation.car_business_percent,
        telecom_business_percent=situation.telecom_business_percent,
        internet_business_percent=situation.internet_business_percent,
        home_office=situation.home_office,
        active_source_ids=context.active_source_ids,
        instructions=rules.prompt_instructions(situation),
    )


@dataclass(frozen=True, slots=True)
class HttpClassifier:
    url: str
    timeout_s: float = 10.0

    @classmethod
    def from_env(cls) -> "HttpClassifier":
        url = os.getenv("ABSETZBAR_CLASSIFIER_URL", DEFAULT_CLASSIFIER_URL).rstrip("/")
        timeout_s = float(os.getenv("ABSETZBAR_CLASSIFIER_TIMEOUT_S", "10"))
        return cls(url=url, timeout_s=timeout_s)

    def suggest(self, record: ExpenseRecord, context: PromptContext) -> UpstreamSuggestion:
        result = post_json(
            f"{self.url}/classify",
            {"record": record.model_dump(mode="json"), "context": context.model_dump(mode="json")},
            timeout_s=self.timeout_s,
        )
        try:
            return UpstreamSuggestion.model_validate(result.get("suggestion") or result)
        except ValidationError as exc:
            logger.warning("classifier returned an unusable suggestion for %s", record.id)
            raise CollaboratorError(f"Unusable classifier response: {exc}", retryable=False) from exc
