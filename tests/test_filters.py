import pytest

from tender_pipeline.config import FilterCriteria
from tender_pipeline.extractors import extract_unique_id
from tender_pipeline.filters import build_term_pattern, filter_relevant_entries
from tender_pipeline.models import RecordFragment

from feed_samples import TODAY, days_ago, make_entry


# --- helpers -----------------------------------------------------------------


def frag(xml: str) -> RecordFragment:
    return RecordFragment(unique_id=extract_unique_id(xml), text=xml)


def run_filter(xmls, history=frozenset(), criteria=None):
    return filter_relevant_entries(
        [frag(x) for x in xmls],
        set(history),
        criteria or FilterCriteria(),
        today=TODAY,
    )


AUTHORITY_CRITERIA = FilterCriteria(
    interesting_authorities=["organizacion portuaria"],
    special_keywords=["energia", "eficiencia energetica"],
)


def authority_entry(**kwargs) -> str:
    """Entry that can only be relevant through the authority + keyword rule."""
    defaults = dict(cpv_codes=["99999999"], budget="100", location="Madrid")
    defaults.update(kwargs)
    return make_entry(**defaults)


# --- build_term_pattern ------------------------------------------------------


@pytest.mark.parametrize(
    "text",
    ["Organización Portuaria", "ORGANIZACIÓN PORTUARIA", "organizacion  portuaria"],
)
def test_term_pattern_is_accent_and_case_insensitive(text):
    pattern = build_term_pattern(["organizacion portuaria"])
    assert pattern.search(text)


def test_term_pattern_accepts_accented_configured_terms():
    pattern = build_term_pattern(["Consejería"])
    assert pattern.search("CONSEJERIA DE FOMENTO")


@pytest.mark.parametrize("text", ["FABRICA MUNICIPAL", "bioenergía", "ICA2"])
def test_term_pattern_requires_whole_words(text):
    pattern = build_term_pattern(["ICA", "energia"])
    assert pattern.search(text) is None


def test_term_pattern_matches_at_punctuation_boundaries():
    pattern = build_term_pattern(["ICA"])
    assert pattern.search("Consorcio (ICA), Murcia")


def test_term_pattern_empty_terms_is_none():
    assert build_term_pattern([]) is None
    assert build_term_pattern(["", "  "]) is None


# --- history -----------------------------------------------------------------


def test_history_excludes_regardless_of_other_criteria():
    """An id already processed is never kept, even if it would be relevant."""
    xml = make_entry("KNOWN-1", budget="5000000")

    result = run_filter([xml], history={"KNOWN-1"})

    assert result.entries == {}
    assert result.counters.by_history == 1
    assert result.counters.by_relevance == 0


def test_status_is_checked_before_history():
    xml = make_entry("KNOWN-2", status="RES")

    result = run_filter([xml], history={"KNOWN-2"})

    assert result.counters.by_status == 1
    assert result.counters.by_history == 0


# --- recency window ----------------------------------------------------------


def test_window_boundary_is_inclusive():
    """window=10: an entry issued exactly 10 days ago is kept, 11 days is not."""
    kept = make_entry("EDGE-10", issue_date=days_ago(10))
    dropped = make_entry("EDGE-11", issue_date=days_ago(11))

    result = run_filter([kept, dropped], criteria=FilterCriteria(window_days=10))

    assert list(result.entries) == ["EDGE-10"]
    assert result.counters.by_window == 1


def test_future_and_missing_dates_are_outside_window():
    future = make_entry("FUT", issue_date=days_ago(-1))
    undated = make_entry("NODATE", issue_date=None)

    result = run_filter([future, undated])

    assert result.entries == {}
    assert result.counters.by_window == 2


# --- rule A: CPV + budget tier -----------------------------------------------


def test_local_budget_threshold_boundary():
    """Local tier 30000: 29999 is excluded, 30000 is kept."""
    below = make_entry("LOC-LOW", budget="29999", location="Murcia")
    at = make_entry("LOC-OK", budget="30000", location="Murcia")

    result = run_filter([below, at], criteria=FilterCriteria(min_budget_local=30000))

    assert list(result.entries) == ["LOC-OK"]
    assert result.counters.by_relevance == 1


def test_national_threshold_applies_outside_local_regions():
    low = make_entry("NAT-LOW", budget="500000", location="Madrid")
    high = make_entry("NAT-OK", budget="1000000", location="Madrid")

    result = run_filter([low, high])

    assert list(result.entries) == ["NAT-OK"]


def test_postal_code_marks_entry_as_local():
    xml = make_entry("POSTAL", budget="40000", location="30001 Lorca")

    result = run_filter([xml])

    assert list(result.entries) == ["POSTAL"]


def test_budget_rule_requires_allowed_cpv_code():
    xml = make_entry("NOCPV", budget="9000000", cpv_codes=["99999999"])

    result = run_filter([xml])

    assert result.entries == {}
    assert result.counters.by_relevance == 1


def test_missing_budget_counts_as_zero():
    xml = make_entry("NOBUDGET", budget=None, location="Murcia")

    result = run_filter([xml])

    assert result.entries == {}


# --- rule B: authority + keyword ---------------------------------------------


def test_accented_authority_matches_unaccented_config():
    xml = authority_entry(
        expediente="AUTH-1",
        authority="Organización Portuaria del Sur",
        summary="Suministro de energía para el muelle",
    )

    result = run_filter([xml], criteria=AUTHORITY_CRITERIA)

    assert list(result.entries) == ["AUTH-1"]


def test_authority_rule_needs_a_keyword():
    xml = authority_entry(
        expediente="AUTH-2",
        authority="Organización Portuaria del Sur",
        summary="Limpieza de oficinas",
    )

    result = run_filter([xml], criteria=AUTHORITY_CRITERIA)

    assert result.entries == {}
    assert result.counters.by_relevance == 1


def test_keyword_found_in_escaped_html_summary():
    xml = authority_entry(
        expediente="AUTH-3",
        authority="ORGANIZACION PORTUARIA",
        summary="&lt;p&gt;Mejora de la eficiencia&lt;br/&gt;energ&#233;tica&lt;/p&gt;",
    )

    result = run_filter([xml], criteria=AUTHORITY_CRITERIA)

    assert list(result.entries) == ["AUTH-3"]


def test_keyword_alone_is_not_enough():
    xml = authority_entry(
        expediente="AUTH-4",
        authority="Ayuntamiento de Teruel",
        summary="Instalaciones de energía solar",
    )

    result = run_filter([xml], criteria=AUTHORITY_CRITERIA)

    assert result.entries == {}


# --- deduplication & end-to-end ----------------------------------------------


def test_duplicate_ids_collapse_to_one_entry_last_wins():
    first = make_entry("DUP-1", summary="first version")
    other = make_entry("OTHER")
    second = make_entry("DUP-1", summary="second version")

    result = run_filter([first, other, second])

    assert list(result.entries) == ["DUP-1", "OTHER"]
    assert "second version" in result.entries["DUP-1"].text
    assert result.counters.relevant == 2


def test_three_fragment_batch_counters():
    """One excluded by status, one by window, one passing everything."""
    not_published = make_entry("S-1", status="RES")
    too_old = make_entry("W-1", issue_date=days_ago(30))
    good = make_entry("OK-1", budget="45000", location="Alicante")

    result = run_filter([not_published, too_old, good])

    assert list(result.entries) == ["OK-1"]
    counters = result.counters
    assert counters.by_status == 1
    assert counters.by_window == 1
    assert counters.by_relevance == 0
    assert counters.by_history == 0
    assert counters.relevant == 1
