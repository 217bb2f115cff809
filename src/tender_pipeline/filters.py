"""Relevance Filter Module

Reduces the thousands of entries in a monthly feed to the few worth
enriching. Each entry goes through four checks, in order, and is dropped at
the first one it fails:

  1. status     - must be published
  2. window     - issue date within the last ``window_days`` days
  3. history    - id not processed in a previous run
  4. relevance  - rule A (CPV code + budget tier) or
                  rule B (interesting authority + keyword)

Authority and keyword matching ignores case and accents and only matches
whole words.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import AbstractSet, Iterable, List, Optional, Pattern

from .config import FilterCriteria
from .extractors import (
    clean_text,
    extract_authority,
    extract_budget,
    extract_cpv_codes,
    extract_issue_date,
    extract_location,
    extract_summary,
    extract_title,
    is_published,
)
from .models import ExclusionReason, FilterResult, RecordFragment

logger = logging.getLogger(__name__)

ACCENT_CLASSES = {
    "a": "[aáàâä]",
    "e": "[eéèêë]",
    "i": "[iíìîï]",
    "o": "[oóòôö]",
    "u": "[uúùûü]",
}
ACCENT_FOLD = {
    accented: base
    for base, cls in ACCENT_CLASSES.items()
    for accented in cls[1:-1]
}


def _term_to_regex(term: str) -> str:
    parts = []
    for ch in term.strip():
        base = ACCENT_FOLD.get(ch.lower(), ch.lower())
        if base in ACCENT_CLASSES:
            parts.append(ACCENT_CLASSES[base])
        elif ch.isspace():
            parts.append(r"\s+")
        else:
            parts.append(re.escape(ch))
    return "".join(parts)


def build_term_pattern(terms: Iterable[str]) -> Optional[Pattern]:
    """Compile terms into one accent-insensitive, whole-word pattern.

    Returns None when there are no terms, meaning "never matches".
    """
    alternatives = [_term_to_regex(t) for t in terms if t and t.strip()]
    if not alternatives:
        return None
    # a match may not touch another letter or digit (accented ones included)
    return re.compile(
        r"(?<![^\W_])(?:" + "|".join(alternatives) + r")(?![^\W_])",
        re.IGNORECASE,
    )


@dataclass(frozen=True)
class RelevanceMatcher:
    """Patterns compiled once per run from a criteria snapshot."""
    criteria: FilterCriteria
    local_re: Optional[Pattern]
    authority_re: Optional[Pattern]
    keyword_re: Optional[Pattern]

    @classmethod
    def from_criteria(cls, criteria: FilterCriteria) -> "RelevanceMatcher":
        local_parts = [re.escape(r) for r in criteria.local_regions]
        local_parts.extend(criteria.local_postal_patterns)
        local_re = re.compile("|".join(local_parts), re.IGNORECASE) if local_parts else None
        return cls(
            criteria=criteria,
            local_re=local_re,
            authority_re=build_term_pattern(criteria.interesting_authorities),
            keyword_re=build_term_pattern(criteria.special_keywords),
        )

    def is_local(self, xml: str) -> bool:
        if self.local_re is None:
            return False
        return bool(self.local_re.search(extract_location(xml)))

    def budget_threshold(self, xml: str) -> float:
        if self.is_local(xml):
            return self.criteria.min_budget_local
        return self.criteria.min_budget_national

    def matches_budget_rule(self, xml: str) -> bool:
        """Rule A: an allowed CPV code and a budget at or above the tier."""
        codes = extract_cpv_codes(xml)
        if not any(code in self.criteria.cpv_codes for code in codes):
            return False
        budget = extract_budget(xml) or 0.0
        return budget >= self.budget_threshold(xml)

    def matches_authority_rule(self, xml: str) -> bool:
        """Rule B: an interesting authority and a keyword in title or summary."""
        if self.authority_re is None or self.keyword_re is None:
            return False
        if not self.authority_re.search(extract_authority(xml)):
            return False
        text = clean_text(extract_title(xml)) + " " + clean_text(extract_summary(xml))
        return bool(self.keyword_re.search(text))

    def is_relevant(self, xml: str) -> bool:
        return self.matches_budget_rule(xml) or self.matches_authority_rule(xml)


def is_within_window(xml: str, window_days: int, today: date) -> bool:
    """True if the issue date is between today - window_days and today, inclusive."""
    issued = extract_issue_date(xml)
    if issued is None:
        return False
    age = (today - issued).days
    return 0 <= age <= window_days


def classify(
    fragment: RecordFragment,
    history: AbstractSet[str],
    matcher: RelevanceMatcher,
    today: date,
) -> Optional[ExclusionReason]:
    """Return the first failing check for a fragment, or None if it is relevant."""
    xml = fragment.text
    if not is_published(xml):
        return ExclusionReason.STATUS
    if not is_within_window(xml, matcher.criteria.window_days, today):
        return ExclusionReason.WINDOW
    if fragment.unique_id in history:
        return ExclusionReason.HISTORY
    if not matcher.is_relevant(xml):
        return ExclusionReason.RELEVANCE
    return None


def filter_relevant_entries(
    fragments: List[RecordFragment],
    history: AbstractSet[str],
    criteria: FilterCriteria,
    today: Optional[date] = None,
) -> FilterResult:
    """
    Keep the fragments that pass every check.

    Args:
        fragments: Extracted entries, in feed order
        history: Ids already processed in earlier runs
        criteria: Filter criteria snapshot for this run
        today: Reference date for the window check (default: today)

    Returns:
        FilterResult with entries keyed by unique id (a later fragment with
        the same id replaces the earlier one but keeps its position) and the
        per-reason exclusion counters.
    """
    today = today or date.today()
    matcher = RelevanceMatcher.from_criteria(criteria)
    result = FilterResult()

    for fragment in fragments:
        reason = classify(fragment, history, matcher, today)
        if reason is not None:
            result.counters.record(reason)
            continue
        if fragment.unique_id in result.entries:
            logger.debug("Duplicate id %s in batch; keeping the last entry", fragment.unique_id)
        result.entries[fragment.unique_id] = fragment

    counters = result.counters
    counters.relevant = len(result.entries)

    logger.info("Filter results:")
    logger.info("  - Excluded by status (not published): %d", counters.by_status)
    logger.info("  - Excluded by window (>%d days): %d", criteria.window_days, counters.by_window)
    logger.info("  - Excluded by history (already sent): %d", counters.by_history)
    logger.info("  - Excluded by relevance (no rule matched): %d", counters.by_relevance)
    logger.info("  - NEW RELEVANT: %d", counters.relevant)

    return result
