from __future__ import annotations

import logging

from .at import AustrianTaxRules
from .base import JurisdictionInfo, TaxRules
from .de import GermanTaxRules

logger = logging.getLogger(__name__)

_REGISTRY: dict[str, TaxRules] = {
    "AT": AustrianTaxRules(),
    "DE": GermanTaxRules(),
}


class UnsupportedJurisdictionError(LookupError):
    def __init__(self, code: str, supported: list[str]) -> None:
        super().__init__(f"Unsupported jurisdiction '{code}'. Supported: {', '.join(supported)}")
        self.code = code
        self.supported = supported


def _normalize(code: str) -> str:
    return code.strip().upper()


def get_rules(code: str) -> TaxRules:
    rules = _REGISTRY.get(_normalize(code))
    if rules is None:
        raise UnsupportedJurisdictionError(code, supported_jurisdictions())
    return rules


def is_supported(code: str) -> bool:
    return _normalize(code) in _REGISTRY


def supported_jurisdictions() -> list[str]:
    return sorted(_REGISTRY)


def register_jurisdiction(rules: TaxRules) -> None:
    code = _normalize(rules.code)
    if code in _REGISTRY:
        logger.warning("replacing tax rules for jurisdiction %s", code)
    _REGISTRY[code] = rules


def unregister_jurisdiction(code: str) -> None:
    _REGISTRY.pop(_normalize(code), None)


def jurisdiction_info() -> list[JurisdictionInfo]:
    return [_REGISTRY[code].info() for code in supported_jurisdictions()]
