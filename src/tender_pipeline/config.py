"""Configuration Module

Holds the immutable filter criteria snapshot used for one run and the
load/save helpers for the JSON config file.

The config file may either be flat or nest the criteria under a ``filters``
key, and accepts both snake_case and camelCase names:

    {"filters": {"windowDays": 7, "minBudgetLocal": 50000}}

Environment variables:
  TENDER_DATA_DIR: Directory for history/results/usage files (default: data)
"""

import logging
import os
from pathlib import Path
from typing import FrozenSet, List

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from . import constants
from .storage import read_json, write_json_atomic

logger = logging.getLogger(__name__)

DATA_DIR = Path(os.getenv("TENDER_DATA_DIR", "data"))


def _alias(snake: str, camel: str) -> AliasChoices:
    return AliasChoices(snake, camel)


class FilterCriteria(BaseModel):
    """Criteria snapshot. Frozen so a run cannot change it midway."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    window_days: int = Field(
        default=constants.WINDOW_DAYS, ge=0,
        validation_alias=_alias("window_days", "windowDays"),
    )
    min_budget_local: float = Field(
        default=constants.MIN_BUDGET_LOCAL, ge=0,
        validation_alias=_alias("min_budget_local", "minBudgetLocal"),
    )
    min_budget_national: float = Field(
        default=constants.MIN_BUDGET_NATIONAL, ge=0,
        validation_alias=_alias("min_budget_national", "minBudgetNational"),
    )
    local_regions: List[str] = Field(
        default_factory=lambda: list(constants.LOCAL_REGIONS),
        validation_alias=_alias("local_regions", "localProvinces"),
    )
    local_postal_patterns: List[str] = Field(
        default_factory=lambda: list(constants.LOCAL_POSTAL_PATTERNS),
        validation_alias=_alias("local_postal_patterns", "localPostalPatterns"),
    )
    cpv_codes: FrozenSet[str] = Field(
        default=constants.ALLOWED_CPV_CODES,
        validation_alias=_alias("cpv_codes", "cpvCodes"),
    )
    interesting_authorities: List[str] = Field(
        default_factory=lambda: list(constants.INTERESTING_AUTHORITIES),
        validation_alias=_alias("interesting_authorities", "interestingAuthorities"),
    )
    special_keywords: List[str] = Field(
        default_factory=lambda: list(constants.SPECIAL_KEYWORDS),
        validation_alias=_alias("special_keywords", "specialKeywords"),
    )
    api_pause_seconds: float = Field(
        default=constants.API_PAUSE_SECONDS, ge=0,
        validation_alias=_alias("api_pause_seconds", "apiPauseSeconds"),
    )
    daily_call_limit: int = Field(
        default=constants.DAILY_CALL_LIMIT, ge=0,
        validation_alias=_alias("daily_call_limit", "dailyCallLimit"),
    )

    @field_validator("local_regions", "interesting_authorities", "special_keywords", mode="after")
    @classmethod
    def _strip_terms(cls, value: List[str]) -> List[str]:
        return [t.strip() for t in value if t and t.strip()]

    @field_validator("interesting_authorities", mode="after")
    @classmethod
    def _default_authorities(cls, value: List[str]) -> List[str]:
        return value or list(constants.INTERESTING_AUTHORITIES)

    @field_validator("special_keywords", mode="after")
    @classmethod
    def _default_keywords(cls, value: List[str]) -> List[str]:
        return value or list(constants.SPECIAL_KEYWORDS)

    @field_validator("cpv_codes", mode="after")
    @classmethod
    def _default_codes(cls, value: FrozenSet[str]) -> FrozenSet[str]:
        cleaned = frozenset(c.strip() for c in value if c and c.strip())
        return cleaned or constants.ALLOWED_CPV_CODES


def load_criteria(path: str | Path | None) -> FilterCriteria:
    """Load criteria from a JSON config file.

    A missing, unreadable or invalid file yields the default criteria.
    """
    if path is None:
        return FilterCriteria()

    data = read_json(path)
    if not isinstance(data, dict):
        logger.info("No usable config at %s; using default criteria", path)
        return FilterCriteria()

    filters = data.get("filters", data)
    try:
        criteria = FilterCriteria.model_validate(filters)
    except ValidationError:
        logger.warning("Invalid filter criteria in %s; using defaults", path, exc_info=True)
        return FilterCriteria()

    logger.debug("Loaded filter criteria from %s: %s", path, criteria)
    return criteria


def save_criteria(criteria: FilterCriteria, path: str | Path) -> None:
    """Write criteria under a ``filters`` key, preserving other keys in the file."""
    existing = read_json(path)
    data = existing if isinstance(existing, dict) else {}
    data["filters"] = criteria.model_dump(mode="json")
    data["filters"]["cpv_codes"] = sorted(criteria.cpv_codes)
    write_json_atomic(path, data)
