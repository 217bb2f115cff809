import json

import httpx
import openai
import pytest

from tender_pipeline import enrichment
from tender_pipeline.enrichment import (
    EnrichmentState,
    TenderEnricher,
    is_rate_limited,
    overlay_manual_fields,
    suggested_wait,
)
from tender_pipeline.errors import EnrichmentRetryable
from tender_pipeline.models import RecordFragment
from tender_pipeline.retry import RetryPolicy
from tender_pipeline.usage import QuotaTracker

from feed_samples import make_entry


# --- fakes -------------------------------------------------------------------


class DummyMessage:
    def __init__(self, content):
        self.content = content


class DummyChoice:
    def __init__(self, content):
        self.message = DummyMessage(content)


class DummyCompletion:
    def __init__(self, content):
        self.choices = [DummyChoice(content)]


class RecordingChatClient:
    """
    Fake OpenAI client whose chat.completions.create returns (or raises)
    the configured outcomes in order.
    """

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

        class _Completions:
            def __init__(self, outer):
                self._outer = outer

            def create(self, **kwargs):
                self._outer.calls.append(kwargs)
                if not self._outer.outcomes:
                    raise RuntimeError("No more fake outcomes configured")
                outcome = self._outer.outcomes.pop(0)
                if isinstance(outcome, Exception):
                    raise outcome
                return DummyCompletion(outcome)

        class _Chat:
            def __init__(self, outer):
                self.completions = _Completions(outer)

        self.chat = _Chat(self)


class ScriptedCall:
    """Stands in for request_structured_tender."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def __call__(self, xml):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def rate_limit_error(headers=None, body=None):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(429, headers=headers or {}, request=request)
    return openai.RateLimitError("Rate limit reached", response=response, body=body)


@pytest.fixture
def quota(tmp_path):
    return QuotaTracker(tmp_path / "usage.json", daily_limit=1000)


@pytest.fixture
def fragment():
    xml = make_entry("EXP-77", budget="75000", notice_dates=["2026-10-15"])
    return RecordFragment(unique_id="EXP-77", text=xml)


PARSED = {
    "id": "WRONG-ID",
    "title": "Rehabilitación del puerto",
    "summary": "Obras de mejora",
    "contractingAuthority": "Autoridad Portuaria",
    "province": "Murcia",
    "budget": 1,
    "publicationDate": "2020-01-01",
    "cpvCodes": ["45310000"],
    "status": "Publicada",
}


# --- retry behaviour ---------------------------------------------------------


def test_rate_limited_four_times_then_success(quota, fragment):
    """Server hint of 5s on attempts 1-4: total wait is 4 * (5 + margin)."""
    sleeps = []
    throttled = EnrichmentRetryable("429 RESOURCE_EXHAUSTED", rate_limited=True, retry_after=5)
    call = ScriptedCall([throttled] * 4 + [dict(PARSED)])
    enricher = TenderEnricher(quota, call=call, sleep=sleeps.append)

    tender = enricher.enrich(fragment)

    assert tender is not None
    assert enricher.last_state is EnrichmentState.SUCCESS
    assert call.calls == 5
    assert sleeps == [7.0, 7.0, 7.0, 7.0]
    assert sum(sleeps) == 4 * (5 + RetryPolicy().retry_after_margin)
    # one quota unit per attempt that reached the API
    assert quota.calls_today() == 5


def test_five_rate_limit_failures_return_none(quota, fragment):
    sleeps = []
    throttled = EnrichmentRetryable("429", rate_limited=True)
    call = ScriptedCall([throttled] * 5)
    enricher = TenderEnricher(quota, call=call, sleep=sleeps.append)

    assert enricher.enrich(fragment) is None
    assert enricher.last_state is EnrichmentState.FAILED
    assert call.calls == 5
    # rate-limit backoff without a hint: 20s * attempt
    assert sleeps == [20.0, 40.0, 60.0, 80.0]


def test_quota_at_limit_never_dispatches(tmp_path, fragment):
    quota = QuotaTracker(tmp_path / "usage.json", daily_limit=2)
    quota.track_call()
    quota.track_call()
    sleeps = []
    call = ScriptedCall([dict(PARSED)])
    enricher = TenderEnricher(quota, call=call, sleep=sleeps.append)

    assert enricher.enrich(fragment) is None
    assert enricher.last_state is EnrichmentState.QUOTA_EXHAUSTED
    assert call.calls == 0
    assert sleeps == []
    assert quota.calls_today() == 2


def test_quota_running_out_mid_retry_stops_without_extra_call(tmp_path, fragment):
    quota = QuotaTracker(tmp_path / "usage.json", daily_limit=2)
    call = ScriptedCall([RuntimeError("502"), RuntimeError("502"), dict(PARSED)])
    enricher = TenderEnricher(quota, call=call, sleep=lambda s: None)

    assert enricher.enrich(fragment) is None
    assert enricher.last_state is EnrichmentState.QUOTA_EXHAUSTED
    assert call.calls == 2
    assert quota.calls_today() == 2


# --- manual overlay ----------------------------------------------------------


def test_manual_id_budget_and_date_override_model_values(fragment):
    tender = overlay_manual_fields(dict(PARSED), fragment)

    assert tender.id == "EXP-77"
    assert tender.budget == 75000.0
    assert tender.publication_date == "2026-10-15"
    # everything else comes from the model
    assert tender.title == "Rehabilitación del puerto"
    assert tender.contracting_authority == "Autoridad Portuaria"
    assert tender.cpv_codes == ["45310000"]


def test_model_values_kept_when_feed_lacks_them():
    xml = make_entry("EXP-78", budget=None)
    fragment = RecordFragment(unique_id="EXP-78", text=xml)

    tender = overlay_manual_fields(dict(PARSED), fragment)

    assert tender.budget == 1
    assert tender.publication_date == "2020-01-01"


def test_unfillable_fields_stay_empty(fragment):
    tender = overlay_manual_fields({"budget": "n/a", "cpvCodes": None, "title": ""}, fragment)

    assert tender.title is None
    assert tender.cpv_codes == []
    assert tender.deadline is None
    # manual budget still wins
    assert tender.budget == 75000.0


# --- OpenAI error classification ----------------------------------------------


def test_openai_rate_limit_error_is_classified_with_retry_after_header():
    err = rate_limit_error(headers={"retry-after": "5"})

    assert is_rate_limited(err)
    assert suggested_wait(err) == 5.0


def test_retry_after_ms_header_takes_precedence():
    err = rate_limit_error(headers={"retry-after-ms": "1500", "retry-after": "9"})
    assert suggested_wait(err) == 1.5


def test_retry_delay_hint_in_error_text():
    err = RuntimeError('{"error": {"code": 429, "details": [{"retryDelay": "12s"}]}}')

    assert is_rate_limited(err)
    assert suggested_wait(err) == 12.0


def test_generic_errors_have_no_hint():
    err = ValueError("Expecting value: line 1 column 1")

    assert not is_rate_limited(err)
    assert suggested_wait(err) is None


# --- request_structured_tender through a fake client --------------------------


def test_request_uses_json_mode_and_parses_response(monkeypatch, quota, fragment):
    fake_client = RecordingChatClient([json.dumps(PARSED)])
    monkeypatch.setattr(enrichment, "client", fake_client)

    tender = TenderEnricher(quota, sleep=lambda s: None).enrich(fragment)

    assert tender is not None
    assert tender.title == PARSED["title"]
    call = fake_client.calls[0]
    assert call["model"] == enrichment.ENRICHMENT_MODEL
    assert call["response_format"] == {"type": "json_object"}
    assert "EXP-77" in call["messages"][-1]["content"]


def test_malformed_json_is_retried_with_generic_backoff(monkeypatch, quota, fragment):
    sleeps = []
    fake_client = RecordingChatClient(["not json at all", json.dumps(PARSED)])
    monkeypatch.setattr(enrichment, "client", fake_client)

    tender = TenderEnricher(quota, sleep=sleeps.append).enrich(fragment)

    assert tender is not None
    assert sleeps == [3.0]
    assert quota.calls_today() == 2


def test_openai_rate_limit_uses_header_wait(monkeypatch, quota, fragment):
    sleeps = []
    fake_client = RecordingChatClient(
        [rate_limit_error(headers={"retry-after": "5"}), json.dumps(PARSED)]
    )
    monkeypatch.setattr(enrichment, "client", fake_client)

    tender = TenderEnricher(quota, sleep=sleeps.append).enrich(fragment)

    assert tender is not None
    assert sleeps == [7.0]


def test_insufficient_quota_fails_fast(monkeypatch, quota, fragment):
    sleeps = []
    fake_client = RecordingChatClient(
        [rate_limit_error(body={"code": "insufficient_quota", "message": "billing"})]
    )
    monkeypatch.setattr(enrichment, "client", fake_client)
    enricher = TenderEnricher(quota, sleep=sleeps.append)

    assert enricher.enrich(fragment) is None
    assert enricher.last_state is EnrichmentState.FAILED
    assert len(fake_client.calls) == 1
    assert sleeps == []


def test_fake_mode_builds_tender_without_api(monkeypatch, quota, fragment):
    class ExplodingClient:
        class _Chat:
            class _Completions:
                def create(self, **kwargs):
                    raise AssertionError("API should not be called in fake mode")
            completions = _Completions()
        chat = _Chat()

    monkeypatch.setattr(enrichment, "client", ExplodingClient())
    monkeypatch.setattr(enrichment, "USE_FAKE_ENRICHMENT", True)

    tender = TenderEnricher(quota).enrich(fragment)

    assert tender.id == "EXP-77"
    assert tender.budget == 75000.0
    assert tender.contracting_authority == "Ayuntamiento de Lorca"
    assert quota.calls_today() == 0


def test_negative_retry_after_header_still_retries(monkeypatch, quota, fragment):
    """A bogus negative hint must not turn into a failed entry."""
    sleeps = []
    fake_client = RecordingChatClient(
        [rate_limit_error(headers={"retry-after": "-5"}), json.dumps(PARSED)]
    )
    monkeypatch.setattr(enrichment, "client", fake_client)
    enricher = TenderEnricher(quota, sleep=sleeps.append)

    tender = enricher.enrich(fragment)

    assert tender is not None
    assert enricher.last_state is EnrichmentState.SUCCESS
    assert sleeps == [2.0]
    assert fake_client.outcomes == []
