"""Data Models Module

Defines Pydantic models for records at each stage of the pipeline: unpacked
feed documents, extracted record fragments, enriched tenders, and the shapes
of the persisted history, usage and results files.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RawDocument(BaseModel):
    """Text content of one unpacked archive member."""
    name: str
    text: str


class RecordFragment(BaseModel):
    """Raw text span of one feed entry plus its stable identifier.

    ``id_source`` records which extractor produced the id
    ("expediente", "id" or "generated").
    """
    unique_id: str
    text: str
    id_source: str = "id"


class ExclusionReason(str, Enum):
    STATUS = "status"
    WINDOW = "window"
    HISTORY = "history"
    RELEVANCE = "relevance"


class FilterCounters(BaseModel):
    by_status: int = 0
    by_window: int = 0
    by_history: int = 0
    by_relevance: int = 0
    relevant: int = 0

    def record(self, reason: ExclusionReason) -> None:
        field = f"by_{reason.value}"
        setattr(self, field, getattr(self, field) + 1)


class FilterResult(BaseModel):
    """Relevant entries keyed by unique id, in encounter order."""
    entries: Dict[str, RecordFragment] = {}
    counters: FilterCounters = Field(default_factory=FilterCounters)


class EnrichedTender(BaseModel):
    """Structured tender returned by the enrichment call.

    Aliases match the camelCase keys requested from the model. Any field the
    call could not fill stays empty; validation never rejects a tender for a
    missing or oddly typed optional field.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    title: Optional[str] = None
    summary: Optional[str] = None
    publication_date: Optional[str] = Field(default=None, alias="publicationDate")
    contracting_authority: Optional[str] = Field(default=None, alias="contractingAuthority")
    province: Optional[str] = None
    budget: Optional[float] = None
    currency: Optional[str] = None
    deadline: Optional[str] = None
    link: Optional[str] = None
    cpv_codes: List[str] = Field(default_factory=list, alias="cpvCodes")
    status: Optional[str] = None
    execution_period: Optional[str] = Field(default=None, alias="executionPeriod")
    procedure: Optional[str] = None
    award_criteria: Optional[str] = Field(default=None, alias="awardCriteria")
    provisional_guarantee: Optional[str] = Field(default=None, alias="provisionalGuarantee")
    solvency: Optional[str] = None

    @field_validator("budget", mode="before")
    @classmethod
    def _lenient_budget(cls, value: Any) -> Optional[float]:
        if value is None or value == "":
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @field_validator("cpv_codes", mode="before")
    @classmethod
    def _lenient_codes(cls, value: Any) -> List[str]:
        if not value:
            return []
        if isinstance(value, str):
            return [c.strip() for c in value.split(",") if c.strip()]
        return [str(c).strip() for c in value if str(c).strip()]

    @field_validator(
        "title", "summary", "publication_date", "contracting_authority",
        "province", "currency", "deadline", "link", "status",
        "execution_period", "procedure", "award_criteria",
        "provisional_guarantee", "solvency",
        mode="before",
    )
    @classmethod
    def _stringify(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        s = str(value).strip()
        return s or None


# --- persisted shapes ---------------------------------------------------------


class DayUsage(BaseModel):
    calls: int = 0
    first_call: Optional[str] = Field(default=None, alias="firstCall")
    last_call: Optional[str] = Field(default=None, alias="lastCall")

    model_config = ConfigDict(populate_by_name=True)


class QuotaState(BaseModel):
    """Per-day call counters keyed by ``YYYY-MM-DD``."""
    days: Dict[str, DayUsage] = {}


class UsageStats(BaseModel):
    today: int
    limit: int
    percentage: int
    remaining: int
    avg_last7: int
    history: List[Dict[str, Any]]


class HistoryFile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")
    total_ids: int = Field(default=0, alias="totalIds")
    processed_ids: List[str] = Field(default_factory=list, alias="processedIds")


class ResultsExecution(BaseModel):
    date: str
    timestamp: str
    count: int
    tenders: List[EnrichedTender] = []


class ResultsArchive(BaseModel):
    executions: List[ResultsExecution] = []


# --- run reporting ------------------------------------------------------------


class ProgressEvent(BaseModel):
    """One structured progress notification emitted by a run.

    kind is "step", "progress", "tender" or "log".
    """
    kind: str
    step: Optional[int] = None
    total: Optional[int] = None
    current: Optional[int] = None
    label: Optional[str] = None
    tender: Optional[EnrichedTender] = None


class RunStatus(str, Enum):
    COMPLETED = "completed"
    EMPTY = "empty"
    CANCELLED = "cancelled"


class RunResult(BaseModel):
    status: RunStatus
    date_str: str
    started_at: datetime
    elapsed: float
    test_mode: bool = False
    total_entries: int = 0
    counters: FilterCounters = Field(default_factory=FilterCounters)
    tenders: List[EnrichedTender] = []
    failed_ids: List[str] = []
