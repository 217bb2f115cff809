"""Archive Unpacker Module

Reads the monthly bulk ZIP and yields the text of every Atom feed document
inside it. Non-feed members (readmes, other syndication files) are ignored.
"""

import io
import logging
import zipfile
import zlib
from typing import Iterator, List

from .errors import ArchiveError, ExtractionSkip
from .models import RawDocument

logger = logging.getLogger(__name__)

FEED_SUFFIX = ".atom"
FEED_NAME_MARKERS = ("licitaciones", "completo")


def is_feed_member(name: str) -> bool:
    """True if the member name is a tender feed document we should read."""
    if not name or name.endswith("/"):
        return False
    name = name.lower()
    return name.endswith(FEED_SUFFIX) and any(m in name for m in FEED_NAME_MARKERS)


def _read_member(zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> RawDocument:
    try:
        data = zf.read(info)
        text = data.decode("utf-8")
    except (UnicodeDecodeError, zipfile.BadZipFile, zlib.error, OSError) as e:
        raise ExtractionSkip(f"Cannot read member {info.filename}: {e}") from e
    return RawDocument(name=info.filename, text=text)


def iter_documents(payload: bytes) -> Iterator[RawDocument]:
    """Yield feed documents in archive order.

    Raises:
        ArchiveError: If the payload is not a readable ZIP or contains no
            feed members.
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(payload))
    except (zipfile.BadZipFile, ValueError) as e:
        raise ArchiveError("Payload is not a readable ZIP archive", {"size": len(payload)}) from e

    with zf:
        members = [info for info in zf.infolist() if is_feed_member(info.filename)]
        if not members:
            raise ArchiveError(
                "No feed documents (.atom) found in the archive",
                {"members": len(zf.infolist())},
            )

        logger.info("Found %d feed documents in archive", len(members))
        for info in members:
            try:
                doc = _read_member(zf, info)
            except ExtractionSkip as e:
                logger.warning("Skipping archive member: %s", e)
                continue
            logger.debug("Read %s (%d chars)", info.filename, len(doc.text))
            yield doc


def unpack(payload: bytes) -> List[RawDocument]:
    """Return every readable feed document in the archive.

    Raises:
        ArchiveError: If nothing could be read.
    """
    documents = list(iter_documents(payload))
    if not documents:
        raise ArchiveError("None of the feed documents in the archive could be read")
    return documents
