"""JSON file helpers shared by the history, usage and results stores.

Reads never raise: a missing or corrupt file yields ``None`` and the store
falls back to its empty state. Writes replace the whole file atomically.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


def read_json(path: str | Path) -> Optional[Any]:
    """Return the parsed JSON content of ``path``, or None if absent/corrupt."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError):
        logger.warning("Could not read %s; starting from an empty state", path, exc_info=True)
        return None


def write_json_atomic(path: str | Path, data: Any) -> None:
    """Serialize ``data`` to ``path`` via a temp file and ``os.replace``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
