"""Archive Loader Module

Thin adapters that get the monthly bulk archive as bytes, either from a local
file or from the procurement platform's syndication endpoint.
"""

import logging
from datetime import date
from pathlib import Path

import requests

from .errors import ArchiveError

logger = logging.getLogger(__name__)

FEED_URL_TEMPLATE = (
    "https://contrataciondelsectorpublico.gob.es/sindicacion/sindicacion_643/"
    "licitacionesPerfilesContratanteCompleto3_{year}{month:02d}.zip"
)


def feed_url(year: int, month: int) -> str:
    """URL of the monthly archive for the given period."""
    return FEED_URL_TEMPLATE.format(year=year, month=month)


def period_label(when: date) -> str:
    """Human label of a data period, e.g. "10/2026"."""
    return f"{when.month:02d}/{when.year}"


def load_archive(path: str | Path) -> bytes:
    """Read an archive from disk.

    Raises:
        FileNotFoundError: If file does not exist
    """
    path = Path(path)
    data = path.read_bytes()
    logger.info("Loaded archive %s (%.1f MB)", path, len(data) / 1024 / 1024)
    return data


def download_archive(url: str, timeout: float = 300) -> bytes:
    """Download an archive.

    Raises:
        ArchiveError: On network errors or a non-2xx response
    """
    logger.info("Downloading archive: %s", url)
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise ArchiveError(f"Error downloading archive: {e}", {"url": url}) from e

    logger.info("Downloaded %.1f MB", len(resp.content) / 1024 / 1024)
    return resp.content
