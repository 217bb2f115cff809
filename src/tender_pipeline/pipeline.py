"""
Tender Monitoring Pipeline

Runs one pass over a monthly bulk archive of public procurement notices:
unpack, extract entries, filter to the relevant ones, enrich them one by one
under the daily API quota, and order the results for delivery.

Features:
- Layered relevance filtering with per-reason counters
- Sequential enrichment with pacing between calls and cooperative stop
- Structured progress events instead of shared run state
- History/results persisted only on real (non-test) runs
- Timestamped output files for auditing
"""

from pathlib import Path
import json
from typing import Callable, Dict, Any, List, Optional, Tuple
import logging
import time
from datetime import date, datetime, timezone

from .archive import unpack
from .config import FilterCriteria
from .enrichment import EnrichmentState, TenderEnricher
from .errors import NoTendersEnrichedError
from .extractors import extract_fragments
from .filters import filter_relevant_entries
from .history import HistoryStore
from .models import (
    EnrichedTender,
    ProgressEvent,
    RecordFragment,
    RunResult,
    RunStatus,
)
from .results import ResultsStore


logger = logging.getLogger(__name__)

STEP_TOTAL = 5

EventCallback = Callable[[ProgressEvent], None]


class RunState:
    """
    Caller-owned view of a run in progress.

    Pass ``state.handle`` as ``on_event`` and ``state.stop_requested`` as
    ``should_stop``; call ``request_stop`` from elsewhere to end the run after
    the entry currently being enriched.
    """

    def __init__(self) -> None:
        self.running = False
        self.step: Optional[ProgressEvent] = None
        self.progress: Tuple[int, int] = (0, 0)
        self.tenders: List[EnrichedTender] = []
        self.logs: List[str] = []
        self._stop = False

    def handle(self, event: ProgressEvent) -> None:
        self.running = True
        if event.kind == "step":
            self.step = event
        elif event.kind == "progress":
            self.progress = (event.current or 0, event.total or 0)
        elif event.kind == "tender" and event.tender is not None:
            self.tenders.append(event.tender)
        elif event.kind == "log" and event.label:
            self.logs.append(event.label)

    def request_stop(self) -> None:
        self._stop = True

    def stop_requested(self) -> bool:
        return self._stop


def _emitter(on_event: Optional[EventCallback]) -> EventCallback:
    def emit(event: ProgressEvent) -> None:
        if on_event is not None:
            on_event(event)
    return emit


def aggregate_tenders(tenders: List[EnrichedTender]) -> List[EnrichedTender]:
    """Order tenders by budget, highest first. Missing budgets count as zero;
    ties keep their original order."""
    return sorted(tenders, key=lambda t: t.budget or 0, reverse=True)


def enrich_entries(
    entries: Dict[str, RecordFragment],
    enricher: TenderEnricher,
    pause_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
    on_event: Optional[EventCallback] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> Tuple[List[EnrichedTender], List[str], bool]:
    """
    Enrich relevant entries strictly one after another.

    Waits ``pause_seconds`` between entries (not after the last one) and
    checks ``should_stop`` before starting each entry.

    Returns:
        Tuple of (enriched tenders in encounter order, ids that failed,
        whether the run was stopped early)
    """
    emit = _emitter(on_event)
    tenders: List[EnrichedTender] = []
    failed: List[str] = []
    total = len(entries)

    for idx, (unique_id, fragment) in enumerate(entries.items(), start=1):
        if should_stop is not None and should_stop():
            logger.warning("Stop requested; %d/%d entries left unprocessed", total - idx + 1, total)
            return tenders, failed, True

        emit(ProgressEvent(kind="progress", current=idx, total=total))
        logger.info("Analysing %d/%d: %s", idx, total, unique_id[:30])

        tender = enricher.enrich(fragment)
        if tender is not None:
            tenders.append(tender)
            emit(ProgressEvent(kind="tender", tender=tender))
            logger.info("✓ %s", tender.title or tender.id)
        else:
            failed.append(unique_id)
            emit(ProgressEvent(kind="log", label=f"Failed: {unique_id}"))
            logger.warning("✗ Could not enrich %s", unique_id)

        if idx < total and enricher.last_state is not EnrichmentState.QUOTA_EXHAUSTED:
            sleep(pause_seconds)

    return tenders, failed, False


def run_pipeline(
    payload: bytes,
    *,
    criteria: FilterCriteria,
    history_store: HistoryStore,
    results_store: ResultsStore,
    enricher: TenderEnricher,
    date_str: str,
    test_mode: bool = False,
    on_event: Optional[EventCallback] = None,
    should_stop: Optional[Callable[[], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
    today: Optional[date] = None,
    limit: Optional[int] = None,
) -> RunResult:
    """
    Run the complete tender pipeline over one archive payload.

    Pipeline Steps:
    1. Unpack the archive into feed documents
    2. Extract entries and their unique ids
    3. Filter entries against criteria and history
    4. Enrich relevant entries (sequential, paced, quota-aware)
    5. Order results and, on real runs, persist history and results

    Args:
        payload: Raw bytes of the bulk ZIP archive
        criteria: Filter criteria snapshot for this run
        history_store: Store of ids processed by earlier runs
        results_store: Store of tenders sent by earlier runs
        enricher: Enrichment orchestrator (owns the quota tracker)
        date_str: Label of the data period (e.g. "10/2026")
        test_mode: If True, nothing is persisted
        on_event: Receives ProgressEvent notifications
        should_stop: Polled between entries; True ends the run early
        sleep: Sleep function used for pacing (injected in tests)
        today: Reference date for the window check
        limit: Maximum relevant entries to enrich (None = all)

    Returns:
        RunResult. Status EMPTY when nothing relevant was found.

    Raises:
        ArchiveError: If the archive cannot be read
        NoTendersEnrichedError: If relevant entries existed but none could
            be enriched
    """
    emit = _emitter(on_event)
    started_at = datetime.now(timezone.utc)
    job_start = time.time()

    def step(idx: int, label: str) -> None:
        logger.info("STEP %d/%d: %s", idx, STEP_TOTAL, label)
        emit(ProgressEvent(kind="step", step=idx, total=STEP_TOTAL, label=label))

    # ========== STEP 1: UNPACK ARCHIVE ==========
    t0 = time.time()
    step(1, "Unpacking archive")
    documents = unpack(payload)
    logger.info("✓ Unpacked %d documents in %.2fs", len(documents), time.time() - t0)

    # ========== STEP 2: EXTRACT ENTRIES ==========
    step(2, "Extracting entries")
    fragments = extract_fragments(documents)

    # ========== STEP 3: FILTER ==========
    t2 = time.time()
    step(3, "Filtering relevant tenders")
    history = history_store.load() | results_store.all_ids()
    logger.debug("History holds %d known ids", len(history))
    filtered = filter_relevant_entries(fragments, history, criteria, today=today)
    logger.info("✓ Filter step completed in %.2fs", time.time() - t2)

    entries = filtered.entries
    if limit is not None and len(entries) > limit:
        logger.info("Applying limit: %d of %d relevant entries", limit, len(entries))
        entries = dict(list(entries.items())[:limit])

    def result(status: RunStatus, tenders: List[EnrichedTender], failed: List[str]) -> RunResult:
        return RunResult(
            status=status,
            date_str=date_str,
            started_at=started_at,
            elapsed=round(time.time() - job_start, 1),
            test_mode=test_mode,
            total_entries=len(fragments),
            counters=filtered.counters,
            tenders=tenders,
            failed_ids=failed,
        )

    if not entries:
        logger.info("No new tenders today.")
        emit(ProgressEvent(kind="log", label="No new tenders today."))
        return result(RunStatus.EMPTY, [], [])

    # ========== STEP 4: ENRICH ==========
    t3 = time.time()
    step(4, f"Analysing {len(entries)} tenders")
    tenders, failed, stopped = enrich_entries(
        entries,
        enricher,
        pause_seconds=criteria.api_pause_seconds,
        sleep=sleep,
        on_event=on_event,
        should_stop=should_stop,
    )
    logger.info(
        "✓ Enrichment completed in %.2fs (success=%d, failed=%d)",
        time.time() - t3,
        len(tenders),
        len(failed),
    )

    if not tenders and not stopped:
        raise NoTendersEnrichedError(len(entries))

    # ========== STEP 5: AGGREGATE & PERSIST ==========
    step(5, "Ordering and saving results")
    ordered = aggregate_tenders(tenders)

    if test_mode:
        logger.info("[TEST] Test mode: history and results are not saved.")
    elif ordered:
        history_store.save(t.id for t in ordered)
        results_store.save_results(ordered, date_str)

    status = RunStatus.CANCELLED if stopped else RunStatus.COMPLETED
    logger.debug(
        "Pipeline completed: %d entries → %d relevant → %d enriched (%s)",
        len(fragments),
        len(entries),
        len(ordered),
        status.value,
    )
    return result(status, ordered, failed)


def write_run_outputs(
    result: RunResult,
    output_dir: Path | str,
    keep_history: bool = True,
) -> Dict[str, Path]:
    """
    Write the ordered tenders and run metadata as JSON.

    Output Strategy:
    - keep_history=True: tenders_20261019_080000.json + run_metadata_<ts>.json
    - keep_history=False: tenders.json + run_metadata.json (overwritten)

    Returns:
        Dict with "tenders" and "metadata" paths
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    run_timestamp = result.started_at.strftime("%Y%m%d_%H%M%S")
    suffix = f"_{run_timestamp}" if keep_history else ""

    tenders_path = output_dir / f"tenders{suffix}.json"
    with tenders_path.open("w", encoding="utf-8") as f:
        json.dump(
            [t.model_dump(mode="json", by_alias=True) for t in result.tenders],
            f,
            ensure_ascii=False,
            indent=2,
        )
    logger.info("✓ Wrote %d tenders to %s", len(result.tenders), tenders_path.name)

    output_paths = {"tenders": tenders_path}
    meta_path = output_dir / f"run_metadata{suffix}.json"
    metadata: Dict[str, Any] = {
        "timestamp": run_timestamp,
        **result.model_dump(mode="json", exclude={"tenders"}),
        "outputs": {k: str(v) for k, v in output_paths.items()},
    }
    try:
        with meta_path.open("w", encoding="utf-8") as f:
            json.dump(metadata, f, ensure_ascii=False, indent=2)
        output_paths["metadata"] = meta_path
        logger.info("✓ Saved: %s", meta_path.name)
    except OSError:
        logger.warning("Failed to save metadata (non-fatal)", exc_info=True)

    return output_paths
