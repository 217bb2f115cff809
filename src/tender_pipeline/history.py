"""Processed-id history.

Keeps the ids of tenders already sent so later runs skip them. The set only
grows, except through ``remove``/``clear``; the oldest ids are dropped once it
exceeds ``max_ids``.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Set

from pydantic import ValidationError

from .models import HistoryFile
from .storage import read_json, write_json_atomic

logger = logging.getLogger(__name__)

MAX_IDS = 50000


class HistoryStore:
    def __init__(self, path: str | Path, max_ids: int = MAX_IDS):
        self.path = Path(path)
        self.max_ids = max_ids

    def _load_ids(self) -> List[str]:
        data = read_json(self.path)
        if data is None:
            return []
        try:
            return HistoryFile.model_validate(data).processed_ids
        except ValidationError:
            logger.warning("History file %s has an unexpected shape; ignoring it", self.path)
            return []

    def load(self) -> Set[str]:
        """Ids processed so far. Empty if the file is missing or corrupt."""
        return set(self._load_ids())

    def _write(self, ids: List[str]) -> None:
        data = HistoryFile(
            last_updated=datetime.now(timezone.utc).isoformat(),
            total_ids=len(ids),
            processed_ids=ids,
        )
        write_json_atomic(self.path, data.model_dump(by_alias=True))

    def save(self, new_ids: Iterable[str]) -> int:
        """Add ids to the history and return the stored total."""
        ordered = dict.fromkeys(self._load_ids())
        ordered.update(dict.fromkeys(new_ids))
        ids = list(ordered)
        if len(ids) > self.max_ids:
            ids = ids[-self.max_ids:]
        self._write(ids)
        logger.info("History saved: %d ids in total", len(ids))
        return len(ids)

    def remove(self, tender_id: str) -> bool:
        ids = self._load_ids()
        if tender_id not in ids:
            return False
        self._write([i for i in ids if i != tender_id])
        logger.info("Removed %s from history", tender_id)
        return True

    def clear(self) -> None:
        self._write([])
        logger.info("History cleared")
