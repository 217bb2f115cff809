"""Tender Enrichment Module

Turns a relevant feed entry into a structured tender using an OpenAI chat
model in JSON mode. Handles the daily quota, rate limiting and retries so a
single failing entry never aborts the batch.

Key features:
  - Daily quota check before every attempt (hard stop, no retry)
  - Shared bounded retry with server-suggested or exponential-ish waits
  - Manual id/budget/date extraction overriding the model's values
  - Fake enrichment mode for local runs without API calls

Environment variables:
  OPENAI_API_KEY: API key for OpenAI (defaults to None)
  ENRICHMENT_MODEL: Chat model name (default: gpt-4o-mini)
  ENRICHMENT_BASE_URL: Optional OpenAI-compatible endpoint
  USE_FAKE_ENRICHMENT: Set to '1' to build tenders without calling the API
  MAX_FRAGMENT_CHARS: Maximum entry characters sent to the model (default: 30000)
"""

from enum import Enum
from typing import Any, Callable, Dict, Optional
import json
import logging
import os
import re
import time

import openai
from openai import OpenAI

from .errors import EnrichmentError, EnrichmentFatal, EnrichmentRetryable, QuotaExhausted
from .extractors import (
    clean_text,
    extract_authority,
    extract_budget,
    extract_cpv_codes,
    extract_notice_date,
    extract_summary,
    extract_title,
)
from .models import EnrichedTender, RecordFragment
from .retry import RetryPolicy, call_with_retry
from .usage import QuotaTracker

logger = logging.getLogger(__name__)

client: Optional[OpenAI] = None
USE_FAKE_ENRICHMENT = os.getenv("USE_FAKE_ENRICHMENT", "0") == "1"

ENRICHMENT_MODEL = os.getenv("ENRICHMENT_MODEL", "gpt-4o-mini")

# Entries are a few KB; the cap only guards against pathological ones
MAX_FRAGMENT_CHARS = int(os.getenv("MAX_FRAGMENT_CHARS", "30000"))

RETRY_DELAY_RE = re.compile(r'"?retryDelay"?\s*:\s*"?(\d+(?:\.\d+)?)s')

TENDER_FIELDS = {
    "id": "Case file number (Expediente).",
    "title": "Tender title.",
    "summary": "Short summary of the tender.",
    "publicationDate": "Publication date (YYYY-MM-DD).",
    "contractingAuthority": "Contracting authority.",
    "province": "Province of the PLACE OF EXECUTION.",
    "budget": "Base budget without taxes (number).",
    "currency": "Currency (EUR).",
    "deadline": "Deadline for submitting offers.",
    "link": "Link to the tender.",
    "cpvCodes": "List of CPV codes (strings).",
    "status": "Tender status.",
    "executionPeriod": "Execution period.",
    "procedure": "Award procedure.",
    "awardCriteria": "Award criteria.",
    "provisionalGuarantee": "Provisional guarantee.",
    "solvency": "Required solvency.",
}

SYSTEM_PROMPT = (
    "You extract structured data from public procurement XML entries. "
    "Answer with a single JSON object with these keys:\n"
    + "\n".join(f"- {k}: {v}" for k, v in TENDER_FIELDS.items())
    + "\nUse null for anything not present in the XML. "
    "IMPORTANT: use the province of the place of execution, not the "
    "contracting authority's headquarters."
)


class EnrichmentState(str, Enum):
    READY = "ready"
    CALLING = "calling"
    RETRY_WAIT = "retry_wait"
    SUCCESS = "success"
    QUOTA_EXHAUSTED = "quota_exhausted"
    FAILED = "failed"


def _get_client() -> OpenAI:
    global client
    if client is None:
        # retries are handled by call_with_retry
        client = OpenAI(
            api_key=os.getenv("OPENAI_API_KEY"),
            base_url=os.getenv("ENRICHMENT_BASE_URL") or None,
            max_retries=0,
        )
    return client


def _truncate_fragment(xml: str, max_chars: int = MAX_FRAGMENT_CHARS) -> str:
    if len(xml) <= max_chars:
        return xml
    logger.info("Truncated entry for enrichment: %d -> %d chars", len(xml), max_chars)
    return xml[:max_chars]


def request_structured_tender(xml: str, model: str = ENRICHMENT_MODEL) -> Dict[str, Any]:
    """
    Send one entry to the chat model and return the parsed JSON object.

    Raises:
        EnrichmentFatal: On authentication or insufficient_quota errors
        openai.APIError / ValueError: On any other failure (retried by caller)
    """
    try:
        response = _get_client().chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": f"XML:\n{_truncate_fragment(xml)}"},
            ],
            temperature=0,
            response_format={"type": "json_object"},
        )
    except openai.RateLimitError as e:
        # For pure "insufficient_quota" errors, retries won't help - fail fast
        if getattr(e, "code", None) == "insufficient_quota" or "insufficient_quota" in str(e):
            raise EnrichmentFatal(f"Insufficient API quota: {e}") from e
        raise
    except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
        raise EnrichmentFatal(f"API credentials rejected: {e}") from e

    content = response.choices[0].message.content if response.choices else ""
    parsed = json.loads((content or "").strip())
    if not isinstance(parsed, dict):
        raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


def is_rate_limited(error: Exception) -> bool:
    """Classify a failure as rate limiting (HTTP 429 / resource exhausted)."""
    if isinstance(error, EnrichmentRetryable):
        return error.rate_limited
    if isinstance(error, openai.RateLimitError):
        return True
    message = str(error)
    return "429" in message or "RESOURCE_EXHAUSTED" in message


def suggested_wait(error: Exception) -> Optional[float]:
    """Server-suggested wait in seconds carried by a failure, if any."""
    if isinstance(error, EnrichmentRetryable):
        return error.retry_after

    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        retry_ms = headers.get("retry-after-ms")
        retry_s = headers.get("retry-after")
        try:
            if retry_ms is not None:
                return float(retry_ms) / 1000
            if retry_s is not None:
                return float(retry_s)
        except ValueError:
            pass  # HTTP-date form; fall back to our own backoff

    match = RETRY_DELAY_RE.search(str(error))
    if match:
        return float(match.group(1))
    return None


def overlay_manual_fields(parsed: Dict[str, Any], fragment: RecordFragment) -> EnrichedTender:
    """Build the tender, trusting the feed over the model for id, budget and date."""
    manual_budget = extract_budget(fragment.text)
    manual_date = extract_notice_date(fragment.text)

    tender = EnrichedTender.model_validate({**parsed, "id": fragment.unique_id})
    update: Dict[str, Any] = {}
    if manual_budget is not None:
        update["budget"] = manual_budget
    if manual_date:
        update["publication_date"] = manual_date
    return tender.model_copy(update=update) if update else tender


def _fake_structured_tender(fragment: RecordFragment) -> Dict[str, Any]:
    xml = fragment.text
    return {
        "title": clean_text(extract_title(xml)),
        "summary": clean_text(extract_summary(xml)),
        "contractingAuthority": extract_authority(xml),
        "cpvCodes": extract_cpv_codes(xml),
        "currency": "EUR",
    }


class TenderEnricher:
    """
    Enriches one entry at a time under a shared daily quota.

    Each call to ``enrich`` walks READY -> CALLING -> SUCCESS, RETRY_WAIT,
    QUOTA_EXHAUSTED or FAILED; the final state is kept in ``last_state``.
    """

    def __init__(
        self,
        quota: QuotaTracker,
        policy: RetryPolicy = RetryPolicy(),
        model: str = ENRICHMENT_MODEL,
        call: Optional[Callable[[str], Dict[str, Any]]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.quota = quota
        self.policy = policy
        self.model = model
        self._call = call or (lambda xml: request_structured_tender(xml, model=self.model))
        self._sleep = sleep
        self.last_state = EnrichmentState.READY

    def _before_attempt(self, attempt: int) -> None:
        self.quota.ensure_available()
        self.last_state = EnrichmentState.CALLING
        self.quota.track_call()

    def _wait(self, seconds: float) -> None:
        self.last_state = EnrichmentState.RETRY_WAIT
        self._sleep(seconds)

    def enrich(self, fragment: RecordFragment) -> Optional[EnrichedTender]:
        """
        Enrich one fragment.

        Returns:
            The enriched tender, or None when the quota is exhausted or every
            attempt failed. Never raises for per-entry failures.
        """
        self.last_state = EnrichmentState.READY

        if USE_FAKE_ENRICHMENT:
            logger.warning(
                "USE_FAKE_ENRICHMENT=1 set; building tender %s from the feed "
                "without calling the API.",
                fragment.unique_id,
            )
            self.last_state = EnrichmentState.SUCCESS
            return overlay_manual_fields(_fake_structured_tender(fragment), fragment)

        try:
            parsed = call_with_retry(
                lambda: self._call(fragment.text),
                policy=self.policy,
                is_rate_limited=is_rate_limited,
                suggested_wait=suggested_wait,
                before_attempt=self._before_attempt,
                sleep=self._wait,
                label=f"enrichment of {fragment.unique_id}",
            )
            tender = overlay_manual_fields(parsed, fragment)
        except QuotaExhausted as e:
            self.last_state = EnrichmentState.QUOTA_EXHAUSTED
            logger.error("DAILY LIMIT REACHED. Tender %s not analysed: %s", fragment.unique_id, e)
            return None
        except EnrichmentError as e:
            self.last_state = EnrichmentState.FAILED
            logger.error("Giving up on tender %s: %s", fragment.unique_id, e)
            return None
        except ValueError as e:
            # the model's JSON did not fit the tender shape at all
            self.last_state = EnrichmentState.FAILED
            logger.error("Unusable enrichment for tender %s: %s", fragment.unique_id, e)
            return None

        self.last_state = EnrichmentState.SUCCESS
        return tender
