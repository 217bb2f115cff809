"""Record Extraction Module

Splits feed documents into ``<entry>`` fragments and pulls the handful of
fields the pipeline needs out of each fragment with small structural
extractors. The feed is never parsed as a whole: every extractor works on the
raw text of one entry and returns an empty value on malformed input instead of
raising.

Key responsibilities:
  - Entry splitting and stable unique id extraction (with fallbacks)
  - Field extractors used by the relevance filter (status, dates, budget,
    CPV codes, authority, execution location, title/summary)
  - Text cleaning for keyword matching
"""

import html
import logging
import re
from datetime import date
from typing import Iterable, List, Optional, Tuple
from uuid import uuid4

from .models import RawDocument, RecordFragment

logger = logging.getLogger(__name__)

# Regex patterns (define at module level for performance)
ENTRY_RE = re.compile(r"<entry[\s>][\s\S]*?</entry>")
TITLE_RE = re.compile(r"<title[^>]*>([\s\S]*?)</title>", re.IGNORECASE)
SUMMARY_RE = re.compile(r"<summary[^>]*>([\s\S]*?)</summary>", re.IGNORECASE)
ID_RE = re.compile(r"<id>(.*?)</id>")
EXPEDIENTE_RE = re.compile(r"Expediente:\s*([^\s<,]+)", re.IGNORECASE)
STATUS_RE = re.compile(r"Estado:\s*Publicada|>\s*PUB\s*<", re.IGNORECASE)
ISSUE_DATE_RE = re.compile(r"<cbc:IssueDate>\s*(\d{4}-\d{2}-\d{2})\s*</cbc:IssueDate>", re.IGNORECASE)
FEED_DATE_RE = re.compile(r"<(?:updated|published)>\s*(\d{4}-\d{2}-\d{2})", re.IGNORECASE)
BUDGET_RES = (
    re.compile(r"<cbc:TaxExclusiveAmount[^>]*>\s*([\d.]+)\s*</cbc:TaxExclusiveAmount>"),
    re.compile(r"<cbc:EstimatedOverallContractAmount[^>]*>\s*([\d.]+)\s*</cbc:EstimatedOverallContractAmount>"),
)
CPV_RE = re.compile(r"<cbc:ItemClassificationCode[^>]*>\s*(\d+)\s*<", re.IGNORECASE)
AUTHORITY_RE = re.compile(
    r"<cac-place-ext:ContractingAuthorityName[^>]*>([\s\S]*?)</cac-place-ext:ContractingAuthorityName>",
    re.IGNORECASE,
)
LOCATION_RE = re.compile(r"<cac:RealizedLocation[\s\S]*?</cac:RealizedLocation>", re.IGNORECASE)
NOTICE_RE = re.compile(r"<cac-place-ext:ValidNoticeInfo>[\s\S]*?</cac-place-ext:ValidNoticeInfo>")
CONTRACT_NOTICE_RE = re.compile(r"<cac-place-ext:NoticeTypeCode[^>]*>DOC_CN</cac-place-ext:NoticeTypeCode>")
TAG_RE = re.compile(r"<[^>]+>")
WHITESPACE_RE = re.compile(r"\s+")


def split_entries(text: str) -> List[str]:
    """Return the raw ``<entry>`` spans of one feed document, in order."""
    if not text:
        return []
    return ENTRY_RE.findall(text)


def _first_group(pattern: re.Pattern, text: str) -> Optional[str]:
    match = pattern.search(text)
    return match.group(1) if match else None


def extract_title(xml: str) -> str:
    return _first_group(TITLE_RE, xml) or ""


def extract_summary(xml: str) -> str:
    return _first_group(SUMMARY_RE, xml) or ""


def extract_authority(xml: str) -> str:
    """Contracting authority name, entity-decoded."""
    raw = _first_group(AUTHORITY_RE, xml)
    return clean_text(raw) if raw else ""


def extract_location(xml: str) -> str:
    """The execution location block, or the whole entry when it is missing."""
    match = LOCATION_RE.search(xml)
    return match.group(0) if match else xml


def _id_with_source(xml: str) -> Tuple[str, str]:
    expediente = EXPEDIENTE_RE.search(extract_title(xml))
    if expediente:
        return expediente.group(1).strip(), "expediente"

    raw_id = _first_group(ID_RE, xml)
    if raw_id and raw_id.strip():
        raw_id = raw_id.strip()
        return raw_id.split("/")[-1] or raw_id, "id"

    return f"gen-{uuid4().hex}", "generated"


def extract_unique_id(xml: str) -> str:
    """Stable identifier of an entry.

    Priority:
      1. "Expediente: <number>" inside the title
      2. Trailing path segment of the <id> URI
      3. A generated "gen-<uuid>" (unique per call, logged)
    """
    unique_id, source = _id_with_source(xml)
    if source == "generated":
        logger.warning("Entry has no expediente or <id>; generated id %s", unique_id)
    return unique_id


def is_published(xml: str) -> bool:
    """True if the entry carries a published/active status marker."""
    return bool(STATUS_RE.search(xml))


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def extract_issue_date(xml: str) -> Optional[date]:
    """First IssueDate of the entry, falling back to <updated>/<published>."""
    value = _first_group(ISSUE_DATE_RE, xml) or _first_group(FEED_DATE_RE, xml)
    return _parse_date(value)


def extract_notice_date(xml: str) -> Optional[str]:
    """Latest issue date among the contract notice (DOC_CN) publications."""
    latest = ""
    for block in NOTICE_RE.findall(xml):
        if not CONTRACT_NOTICE_RE.search(block):
            continue
        value = _first_group(ISSUE_DATE_RE, block)
        if value and _parse_date(value) and value > latest:
            latest = value
    return latest or None


def extract_budget(xml: str) -> Optional[float]:
    """Budget without taxes, or the estimated overall amount."""
    for pattern in BUDGET_RES:
        value = _first_group(pattern, xml)
        if value is None:
            continue
        try:
            return float(value)
        except ValueError:
            logger.debug("Unparseable budget amount %r", value)
            return None
    return None


def extract_cpv_codes(xml: str) -> List[str]:
    codes: List[str] = []
    for code in CPV_RE.findall(xml):
        if code not in codes:
            codes.append(code)
    return codes


def clean_text(text: str) -> str:
    """
    Normalize a text fragment for keyword matching.

    Steps:
    1. Unescape HTML entities (&amp; -> &, &lt;p&gt; -> <p>)
    2. Replace HTML tags with spaces
    3. Collapse whitespace
    """
    if not text:
        return ""
    text = html.unescape(text)
    text = TAG_RE.sub(" ", text)
    text = WHITESPACE_RE.sub(" ", text)
    return text.strip()


def extract_fragments(documents: Iterable[RawDocument]) -> List[RecordFragment]:
    """Split every document into fragments with their unique ids.

    A document with no entries is logged and skipped.
    """
    fragments: List[RecordFragment] = []
    generated = 0

    for doc in documents:
        spans = split_entries(doc.text)
        if not spans:
            logger.warning("Document %s contains no <entry> elements; skipping", doc.name)
            continue

        for span in spans:
            unique_id, source = _id_with_source(span)
            if source == "generated":
                generated += 1
                logger.warning(
                    "Entry in %s has no expediente or <id>; generated id %s",
                    doc.name,
                    unique_id,
                )
            fragments.append(RecordFragment(unique_id=unique_id, text=span, id_source=source))

        logger.debug("Document %s: %d entries", doc.name, len(spans))

    logger.info(
        "Extracted %d entries (%d with generated ids)",
        len(fragments),
        generated,
    )
    return fragments
