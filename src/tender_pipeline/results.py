"""Stored results of past runs.

Every non-test run appends an execution (newest first) with the tenders it
sent. The ids stored here also count as history for the filter.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Set

from pydantic import ValidationError

from .models import EnrichedTender, ResultsArchive, ResultsExecution
from .storage import read_json, write_json_atomic

logger = logging.getLogger(__name__)

MAX_EXECUTIONS = 90
DEFAULT_CURRENCY = "EUR"


class ResultsStore:
    def __init__(self, path: str | Path, max_executions: int = MAX_EXECUTIONS):
        self.path = Path(path)
        self.max_executions = max_executions

    def load_all(self) -> ResultsArchive:
        data = read_json(self.path)
        if data is None:
            return ResultsArchive()
        try:
            return ResultsArchive.model_validate(data)
        except ValidationError:
            logger.warning("Results file %s has an unexpected shape; ignoring it", self.path)
            return ResultsArchive()

    def _write(self, archive: ResultsArchive) -> None:
        write_json_atomic(self.path, archive.model_dump(mode="json", by_alias=True))

    def save_results(self, tenders: List[EnrichedTender], date_str: str) -> ResultsExecution:
        archive = self.load_all()
        execution = ResultsExecution(
            date=date_str,
            timestamp=datetime.now(timezone.utc).isoformat(),
            count=len(tenders),
            tenders=[
                t.model_copy(update={"currency": t.currency or DEFAULT_CURRENCY})
                for t in tenders
            ],
        )
        archive.executions.insert(0, execution)
        del archive.executions[self.max_executions:]
        self._write(archive)
        logger.info("Saved %d tenders to %s", len(tenders), self.path)
        return execution

    def all_ids(self) -> Set[str]:
        return {t.id for ex in self.load_all().executions for t in ex.tenders}

    def search(
        self,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        tender_id: Optional[str] = None,
    ) -> List[EnrichedTender]:
        """Stored tenders matching the filters, newest copy per id, budget first.

        Dates are ``YYYY-MM-DD`` strings compared against the publication date
        (or the day the execution was saved when the tender has none).
        """
        seen: Dict[str, EnrichedTender] = {}
        for ex in self.load_all().executions:
            for t in ex.tenders:
                if tender_id and tender_id.lower() not in t.id.lower():
                    continue
                when = t.publication_date or ex.timestamp[:10]
                if date_from and when < date_from:
                    continue
                if date_to and when > date_to:
                    continue
                seen.setdefault(t.id, t)
        return sorted(seen.values(), key=lambda t: t.budget or 0, reverse=True)

    def remove(self, tender_id: str) -> bool:
        archive = self.load_all()
        removed = False
        for ex in archive.executions:
            before = len(ex.tenders)
            ex.tenders = [t for t in ex.tenders if t.id != tender_id]
            if len(ex.tenders) != before:
                removed = True
                ex.count = len(ex.tenders)
        if removed:
            archive.executions = [ex for ex in archive.executions if ex.tenders]
            self._write(archive)
            logger.info("Removed %s from stored results", tender_id)
        return removed
