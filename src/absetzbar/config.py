from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from pydantic import ValidationError

from .models import AllocationRule, IncomeSource, Situation, TaxConfig, ValidationIssue
from .situations import close_situation, validate_config

logger = logging.getLogger(__name__)

SUPPORTED_VERSIONS = frozenset({2})


class ConfigError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class ConfigUpdate:
    config: TaxConfig
    errors: list[ValidationIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def load_config(path: Path) -> TaxConfig:
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping at {path}, got {type(data).__name__}.")

    version = data.get("version", 2)
    if version not in SUPPORTED_VERSIONS:
        raise ConfigError(f"Unsupported configuration version {version!r} in {path}")

    try:
        return TaxConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc


def dump_config(config: TaxConfig) -> str:
    payload = config.model_dump(mode="json", by_alias=True, exclude_none=True)
    return yaml.safe_dump(payload, sort_keys=False, allow_unicode=True)


def save_config(config: TaxConfig, path: Path) -> list[ValidationIssue]:
    """Write ``config`` unless it fails validation; returns the blocking errors."""
    result = validate_config(config)
    if not result.valid:
        logger.warning("refusing to save invalid configuration", extra={"errors": len(result.errors)})
        return result.errors
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_config(config), encoding="utf-8")
    return []


def _checked(original: TaxConfig, candidate: TaxConfig) -> ConfigUpdate:
    result = validate_config(candidate)
    if not result.valid:
        return ConfigUpdate(config=original, errors=result.errors)
    return ConfigUpdate(config=candidate)


def add_situation(config: TaxConfig, situation: Situation) -> ConfigUpdate:
    """Append ``situation``; an ongoing situation that started earlier is closed at its start."""
    if any(s.id == situation.id for s in config.situations):
        return ConfigUpdate(
            config=config,
            errors=[ValidationIssue(field="id", message=f"Situation {situation.id} already exists", code="DUPLICATE_ID")],
        )

    situations: list[Situation] = []
    for existing in config.situations:
        if existing.is_ongoing and existing.valid_from < situation.valid_from:
            existing = close_situation(existing, situation.valid_from)
        situations.append(existing)
    situations.append(situation)
    situations.sort(key=lambda s: s.valid_from)

    return _checked(config, config.model_copy(update={"situations": situations}))


def remove_situation(config: TaxConfig, situation_id: int) -> ConfigUpdate:
    remaining = [s for s in config.situations if s.id != situation_id]
    if len(remaining) == len(config.situations):
        return ConfigUpdate(
            config=config,
            errors=[ValidationIssue(field="id", message=f"Situation {situation_id} not found", code="NOT_FOUND")],
        )
    return _checked(config, config.model_copy(update={"situations": remaining}))


def add_income_source(config: TaxConfig, source: IncomeSource) -> ConfigUpdate:
    if config.income_source(source.id) is not None:
        return ConfigUpdate(
            config=config,
            errors=[ValidationIssue(field="id", message=f"Income source {source.id} already exists", code="DUPLICATE_ID")],
        )
    return _checked(config, config.model_copy(update={"income_sources": [*config.income_sources, source]}))


def add_allocation_rule(config: TaxConfig, rule: AllocationRule) -> ConfigUpdate:
    if any(r.id == rule.id for r in config.allocation_rules):
        return ConfigUpdate(
            config=config,
            errors=[ValidationIssue(field="id", message=f"Allocation rule {rule.id} already exists", code="DUPLICATE_ID")],
        )
    return _checked(config, config.model_copy(update={"allocation_rules": [*config.allocation_rules, rule]}))
