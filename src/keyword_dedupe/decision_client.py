"""Gemini merge-decision client using the google-genai SDK.

Uses response_mime_type="application/json" with a response_schema so Gemini
returns structured JSON, then validates it into a ``MergeDecision``.

Transient API errors (rate limits, 5xx) are retried 3 times with exponential
backoff inside the blocking client. ``AsyncMergeDecider`` moves the call off
the event loop and bounds it with a timeout; any failure it surfaces is a
``DecisionError`` so the engine can skip the secondary and carry on.
"""

import asyncio
import json
import logging
import threading
from typing import Any, Dict, Optional, Protocol

from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.common.config import DEFAULT_DECISION_TIMEOUT_SEC, GeminiConfig, load_gemini_config
from src.keyword_dedupe.models import Keyword, MergeDecision
from src.keyword_dedupe.prompt_templates import (
    SYSTEM_PROMPT,
    build_merge_prompt,
    get_merge_decision_response_schema,
)
from src.keyword_dedupe.worker_pool import call_blocking

logger = logging.getLogger(__name__)


class DecisionError(Exception):
    """Raised when a merge decision could not be obtained or parsed."""

    pass


class DecisionAPIError(DecisionError):
    """Retryable error from the Gemini API."""

    pass


class MergeDecider(Protocol):
    """Async decision capability consumed by the merge engine."""

    async def decide(self, primary: Keyword, secondary: Keyword) -> MergeDecision:
        ...


def parse_decision(raw_text: str) -> MergeDecision:
    """Parse a model response into a MergeDecision.

    Raises:
        DecisionError: If the text is not JSON or not a valid decision.
    """
    if not raw_text or not raw_text.strip():
        raise DecisionError("Empty response from Gemini")
    try:
        payload = json.loads(raw_text)
    except json.JSONDecodeError as e:
        raise DecisionError(f"Invalid JSON in Gemini response: {raw_text[:200]}") from e
    if not isinstance(payload, dict):
        raise DecisionError(f"Unexpected Gemini response: {raw_text[:200]}")
    try:
        return MergeDecision.model_validate(payload)
    except ValidationError as e:
        raise DecisionError(f"Unexpected Gemini response: {raw_text[:200]}") from e


class GeminiDecisionClient:
    """Blocking client that asks Gemini to merge, rename or skip a keyword pair.

    Handles:
    - Structured JSON output via response_mime_type and response_schema
    - Retry with exponential backoff on transient API errors
    - Validation of the response into a MergeDecision
    """

    def __init__(self, config: Optional[GeminiConfig] = None):
        self.config = config or load_gemini_config()
        self._client = None
        self._client_lock = threading.Lock()
        self._response_schema = get_merge_decision_response_schema()

    def _get_client(self):
        """Lazy-load the google-genai client once, even under concurrent callers."""
        if self._client is not None:
            return self._client
        with self._client_lock:
            if self._client is None:
                self._client = self._create_client()
        return self._client

    def _create_client(self):
        try:
            from google import genai
            from google.genai.types import HttpOptions
        except ImportError as e:
            raise DecisionError(
                "google-genai package not installed. Run: pip install google-genai"
            ) from e

        try:
            return genai.Client(
                vertexai=True,
                project=None,  # Uses GOOGLE_CLOUD_PROJECT from env
                location=self.config.location,
                http_options=HttpOptions(api_version="v1"),
            )
        except Exception as e:
            raise DecisionError(f"Failed to initialize Gemini client: {e}") from e

    @retry(
        retry=retry_if_exception_type(DecisionAPIError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    def _generate(self, prompt: str) -> str:
        client = self._get_client()

        try:
            from google.genai import types

            config = types.GenerateContentConfig(
                system_instruction=SYSTEM_PROMPT,
                temperature=self.config.temperature,
                max_output_tokens=self.config.max_output_tokens,
                response_mime_type="application/json",
                response_schema=self._response_schema,
            )
            response = client.models.generate_content(
                model=self.config.model,
                contents=prompt,
                config=config,
            )
        except Exception as e:
            error_msg = str(e)
            if "429" in error_msg or "rate limit" in error_msg.lower():
                logger.warning("Gemini rate limit hit, will retry", extra={"error": error_msg})
                raise DecisionAPIError(f"Rate limit exceeded: {error_msg}") from e
            if any(code in error_msg for code in ["500", "502", "503", "504"]):
                logger.warning("Gemini transient error, will retry", extra={"error": error_msg})
                raise DecisionAPIError(f"Transient error: {error_msg}") from e
            raise DecisionError(f"Gemini API error: {error_msg}") from e

        return response.text or ""

    def decide(self, primary: Keyword, secondary: Keyword) -> MergeDecision:
        """Decide what to do with ``secondary`` relative to ``primary``.

        Raises:
            DecisionError: If the API call fails or the response is malformed.
        """
        raw_text = self._generate(build_merge_prompt(primary, secondary))
        decision = parse_decision(raw_text)
        logger.debug(
            "Gemini decision",
            extra={
                "primary_id": primary.id,
                "secondary_id": secondary.id,
                "action": decision.action.value,
            },
        )
        return decision


class AsyncMergeDecider:
    """MergeDecider backed by a blocking GeminiDecisionClient and a per-call timeout."""

    def __init__(
        self,
        client: GeminiDecisionClient,
        timeout_sec: float = DEFAULT_DECISION_TIMEOUT_SEC,
    ):
        self.client = client
        self.timeout_sec = timeout_sec

    async def decide(self, primary: Keyword, secondary: Keyword) -> MergeDecision:
        try:
            return await call_blocking(
                self.client.decide, primary, secondary, timeout=self.timeout_sec
            )
        except asyncio.TimeoutError as e:
            raise DecisionError(f"Decision exceeded timeout of {self.timeout_sec}s") from e


def decision_payload(decision: MergeDecision) -> Dict[str, Any]:
    """Compact dict form of a decision for logs."""
    return decision.model_dump(mode="json", exclude_none=True)
