"""Chat-completion client for DMP evaluation.

Requests are shaped by the active :class:`EndpointProfile`, sent with
``requests`` and retried with exponential backoff on transient failures. The
response may arrive as a Server-Sent-Events stream or as a single JSON body.
"""

from __future__ import annotations

import codecs
import copy
import json
import logging
import math
import os
import re
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional

import requests

from models import ProgressEvent

from . import prompts

if TYPE_CHECKING:  # pragma: no cover
    from services.settings_store import SettingsStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]
ChunkCallback = Callable[[str, bool], None]

MAX_RETRIES = 3
INITIAL_DELAY_SECONDS = 2.0
RATE_LIMIT_DELAY_SECONDS = 5.0
TEST_MODE_DELAY_SECONDS = 1.5
DOC_CLEANUP_MAX_CHARS = 15000
SSE_DATA_PREFIX = "data: "

TEST_EVALUATION_DATA: Dict[str, Any] = {
    "overallScore": 75,
    "categories": [
        {
            "id": "1a",
            "name": "Data Description and Collection",
            "score": 80,
            "status": "good",
            "feedback": "The DMP provides good information about data types and formats. Genomic data is well-described with clear references to RNAseq and genetic analysis methods.",
        },
        {
            "id": "1b",
            "name": "Data Updates",
            "score": 70,
            "status": "fair",
            "feedback": "Some information about data collection methods is present, but could be more detailed regarding specific instruments and protocols.",
        },
        {
            "id": "2a",
            "name": "Documentation and Metadata",
            "score": 75,
            "status": "good",
            "feedback": "Metadata standards are mentioned with references to JSON-LD and community standards. Could benefit from more specific examples.",
        },
        {
            "id": "2b",
            "name": "Data Quality",
            "score": 65,
            "status": "fair",
            "feedback": "Quality control measures are mentioned but lack detail. Consider adding specific QA/QC procedures and validation steps.",
        },
        {
            "id": "3a",
            "name": "Storage Solutions",
            "score": 85,
            "status": "good",
            "feedback": "Storage solutions are well-defined with institutional repositories mentioned. Clear backup procedures outlined.",
        },
        {
            "id": "3b",
            "name": "Data Security",
            "score": 70,
            "status": "fair",
            "feedback": "Basic security measures mentioned. Consider adding more details about encryption, access control, and GDPR compliance.",
        },
        {
            "id": "4a",
            "name": "Legal and Ethical Requirements",
            "score": 60,
            "status": "fair",
            "feedback": "Ethical considerations are addressed but lack specific references to GDPR Articles or ethics approval numbers.",
        },
        {
            "id": "4b",
            "name": "IPR and Ownership",
            "score": 75,
            "status": "good",
            "feedback": "Intellectual property rights are clearly stated with consortium agreements mentioned.",
        },
        {
            "id": "5a",
            "name": "Data Sharing Plans",
            "score": 80,
            "status": "good",
            "feedback": "Data sharing plans are comprehensive with repository selection and embargo periods clearly defined.",
        },
        {
            "id": "5b",
            "name": "Long-term Preservation",
            "score": 85,
            "status": "excellent",
            "feedback": "Excellent preservation strategy with DOI assignment and 10+ year retention period specified.",
        },
        {
            "id": "6a",
            "name": "Roles and Responsibilities",
            "score": 70,
            "status": "fair",
            "feedback": "Key roles identified but could benefit from more specific assignment of data management tasks.",
        },
        {
            "id": "6b",
            "name": "Resources",
            "score": 65,
            "status": "fair",
            "feedback": "Resource allocation mentioned but needs more detail on budget, personnel time, and infrastructure.",
        },
    ],
}


class AIClientError(Exception):
    """Raised when the AI client cannot produce a usable response."""


class EvaluationError(AIClientError):
    """Raised when a DMP evaluation request fails."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class CriteriaConversion:
    """Outcome of checking (and possibly rewriting) pasted criteria text."""

    suitable: bool
    converted_text: str
    original_text: str
    message: str
    error: bool = False


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters."""

    return math.ceil(len(text) / 4)


def retry_with_backoff(
    send: Callable[[], requests.Response],
    *,
    max_retries: int = MAX_RETRIES,
    initial_delay: float = INITIAL_DELAY_SECONDS,
    rate_limit_delay: float = RATE_LIMIT_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> requests.Response:
    """Call ``send`` until it returns a usable response.

    5xx responses and connection failures back off from ``initial_delay``;
    429 responses back off from ``rate_limit_delay``. Both double on every
    attempt. Other non-OK responses are returned to the caller untouched.
    """

    last_error: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        try:
            response = send()
        except requests.RequestException as exc:
            last_error = exc
            logger.error("Network error on attempt %d: %s", attempt + 1, exc)
            if attempt < max_retries:
                delay = initial_delay * (2**attempt)
                logger.warning("Retrying in %.1fs...", delay)
                sleep(delay)
            continue

        if response.ok:
            return response

        if response.status_code >= 500 and attempt < max_retries:
            delay = initial_delay * (2**attempt)
            logger.warning(
                "Server error %d, retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                delay,
                attempt + 1,
                max_retries,
            )
            sleep(delay)
            continue

        if response.status_code == 429 and attempt < max_retries:
            delay = rate_limit_delay * (2**attempt)
            logger.warning(
                "Rate limited, retrying in %.1fs (attempt %d/%d)", delay, attempt + 1, max_retries
            )
            sleep(delay)
            continue

        return response

    message = str(last_error) if last_error else "Unknown error"
    raise EvaluationError(f"All retry attempts failed. Last error: {message}")


_FENCE_OPEN = re.compile(r"```json\s*")
_FENCE_ANY = re.compile(r"```\s*")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_BARE_KEY = re.compile(r"(\{|,)\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*:")


def repair_json(text: str) -> Optional[Any]:
    """Parse ``text`` as JSON, patching common model mistakes if needed.

    Heuristic only: handles Markdown fences, trailing commas and unquoted
    keys. Returns ``None`` when the text still does not parse.
    """

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Standard JSON parse failed, attempting repair")

    repaired = _FENCE_OPEN.sub("", text)
    repaired = _FENCE_ANY.sub("", repaired)
    repaired = _TRAILING_COMMA.sub(r"\1", repaired)
    repaired = _BARE_KEY.sub(r'\1"\2":', repaired)

    try:
        return json.loads(repaired)
    except json.JSONDecodeError as exc:
        logger.error("JSON repair failed: %s", exc.msg)
        return None


def parse_sse_stream(chunks: Iterable[bytes], on_chunk: Optional[ChunkCallback] = None) -> str:
    """Accumulate a chat-completion event stream.

    Reasoning deltas and content deltas are collected separately and passed to
    ``on_chunk(text, is_reasoning)`` as they arrive. Returns the content, or
    the reasoning text when the model produced no content.
    """

    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    content_parts: List[str] = []
    reasoning_parts: List[str] = []

    for raw in chunks:
        if not raw:
            continue
        buffer += decoder.decode(raw) if isinstance(raw, bytes) else raw
        lines = buffer.split("\n")
        buffer = lines.pop()

        if _consume_sse_lines(lines, content_parts, reasoning_parts, on_chunk):
            break
    else:
        buffer += decoder.decode(b"", final=True)
        if buffer.strip():
            _consume_sse_lines([buffer], content_parts, reasoning_parts, on_chunk)
        logger.debug("Stream completed")

    content = "".join(content_parts)
    return content or "".join(reasoning_parts)


def _consume_sse_lines(
    lines: List[str],
    content_parts: List[str],
    reasoning_parts: List[str],
    on_chunk: Optional[ChunkCallback],
) -> bool:
    """Process complete SSE lines; return True once the stream has finished."""

    for line in lines:
        stripped = line.strip()
        if not stripped.startswith(SSE_DATA_PREFIX):
            continue

        data = stripped[len(SSE_DATA_PREFIX):]
        if data == "[DONE]":
            logger.debug("Received [DONE] signal")
            return True

        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Failed to parse stream chunk: %s", data[:200])
            continue

        choices = event.get("choices") if isinstance(event, dict) else None
        choice = choices[0] if isinstance(choices, list) and choices else {}
        if not isinstance(choice, dict):
            continue
        delta = choice.get("delta")
        if isinstance(delta, dict):
            reasoning = delta.get("reasoning")
            if isinstance(reasoning, str) and reasoning:
                reasoning_parts.append(reasoning)
                if on_chunk:
                    on_chunk(reasoning, True)
            content = delta.get("content")
            if isinstance(content, str) and content:
                content_parts.append(content)
                if on_chunk:
                    on_chunk(content, False)

        finish_reason = choice.get("finish_reason")
        if finish_reason in ("stop", "length"):
            logger.debug("Stream finished: %s", finish_reason)
            return True

    return False


class ModelClient:
    """Send prompts to the configured chat-completion endpoint."""

    def __init__(
        self,
        settings: "SettingsStore",
        *,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout: Optional[int] = None,
    ) -> None:
        self.settings = settings
        self.session = session or requests.Session()
        self.sleep = sleep
        self.timeout = timeout or int(os.getenv("AI_TIMEOUT_SECONDS", "120"))

    def evaluate_dmp(
        self,
        system_prompt: str,
        user_prompt: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        """Return the model's evaluation as parsed JSON."""

        if self.settings.is_test_mode():
            logger.info("Test mode enabled, returning sample data")
            _emit(on_progress, ProgressEvent.status("Using test mode - sample evaluation data"))
            self.sleep(TEST_MODE_DELAY_SECONDS)
            return copy.deepcopy(TEST_EVALUATION_DATA)

        api_key = self.settings.get_api_key()
        if not api_key:
            raise EvaluationError("API key not configured. Please enter your API key.")

        model = self.settings.get_model()
        logger.info(
            "Evaluating DMP with model %s (~%d prompt tokens)",
            model,
            estimate_tokens(system_prompt + user_prompt),
        )
        _emit(on_progress, ProgressEvent.status(f"Calling {model}..."))

        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        response = self._send(api_key, model, messages)

        content_type = response.headers.get("content-type", "")
        try:
            if "text/event-stream" in content_type:
                logger.info("Streaming response detected")
                content = parse_sse_stream(
                    response.iter_content(chunk_size=None),
                    lambda text, is_reasoning: _emit(
                        on_progress, ProgressEvent.stream(text, is_reasoning=is_reasoning)
                    ),
                )
                _emit(on_progress, ProgressEvent.status("Processing complete response..."))
            else:
                _emit(on_progress, ProgressEvent.status("Parsing response..."))
                content = _message_content(response)
        finally:
            response.close()

        if not content:
            raise EvaluationError("No content in API response")

        result = repair_json(content)
        if result is None:
            raise EvaluationError("Failed to parse evaluation results as JSON")
        if not isinstance(result, dict):
            raise EvaluationError("Evaluation response was not a JSON object")

        _emit(on_progress, ProgressEvent.complete("Evaluation complete!"))
        return result

    def clean_doc_text(self, raw_text: str) -> str:
        """Ask the model to strip binary noise from legacy ``.doc`` text.

        Returns ``raw_text`` unchanged in test mode, without an API key, or
        when the cleanup request fails.
        """

        if self.settings.is_test_mode():
            return raw_text
        api_key = self.settings.get_api_key()
        if not api_key:
            logger.info("No API key, skipping .doc cleanup")
            return raw_text

        truncated = len(raw_text) > DOC_CLEANUP_MAX_CHARS
        messages = [
            {"role": "system", "content": prompts.load_prompt("doc_cleanup_system.md")},
            {
                "role": "user",
                "content": prompts.load_prompt(
                    "doc_cleanup.md",
                    {"raw_text": raw_text[:DOC_CLEANUP_MAX_CHARS], "truncated": truncated},
                ),
            },
        ]
        try:
            cleaned = self._complete_once(api_key, messages)
        except AIClientError as exc:
            logger.warning("AI cleanup failed, using raw text: %s", exc)
            return raw_text

        logger.info("AI cleaned .doc text: %d -> %d characters", len(raw_text), len(cleaned))
        return cleaned

    def detect_and_convert_criteria(
        self, criteria_text: str, on_progress: Optional[ProgressCallback] = None
    ) -> CriteriaConversion:
        """Use pasted criteria as-is when structured, otherwise restructure them."""

        if not criteria_text or len(criteria_text.strip()) < 50:
            raise EvaluationError(
                "Criteria text is too short. Please provide more detailed evaluation criteria."
            )

        _emit(on_progress, ProgressEvent.status("Analyzing evaluation criteria..."))
        has_keywords = re.search(
            r"evaluate|assess|check|criteria|score|rating|measure", criteria_text, re.IGNORECASE
        )
        has_structure = re.search(
            r"\d+\.|###|##|\*\*|criterion|requirement", criteria_text, re.IGNORECASE
        )
        if has_keywords and has_structure and len(criteria_text) > 300:
            return CriteriaConversion(
                suitable=True,
                converted_text=criteria_text,
                original_text=criteria_text,
                message="Criteria format looks good and can be used directly.",
            )

        if self.settings.is_test_mode():
            return CriteriaConversion(
                suitable=False,
                converted_text=criteria_text,
                original_text=criteria_text,
                message="Test mode: Using criteria as-is without AI conversion.",
            )

        _emit(on_progress, ProgressEvent.status("Converting criteria to evaluation format..."))
        try:
            api_key = self.settings.get_api_key()
            if not api_key:
                raise EvaluationError("API key required for criteria conversion")
            messages = [
                {"role": "system", "content": prompts.load_prompt("criteria_converter_system.md")},
                {
                    "role": "user",
                    "content": prompts.load_prompt(
                        "criteria_converter.md", {"criteria_text": criteria_text}
                    ),
                },
            ]
            converted = self._complete_once(api_key, messages, retry=True)
        except AIClientError as exc:
            logger.error("Error converting criteria: %s", exc)
            return CriteriaConversion(
                suitable=False,
                converted_text=criteria_text,
                original_text=criteria_text,
                message=f"Could not convert criteria ({exc}). Using original text.",
                error=True,
            )

        return CriteriaConversion(
            suitable=False,
            converted_text=converted,
            original_text=criteria_text,
            message="Criteria have been converted to evaluation format using AI.",
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _send(
        self, api_key: str, model: str, messages: List[Dict[str, str]], *, retry: bool = True
    ) -> requests.Response:
        request = self.settings.get_active_profile().build_request(api_key, model, messages)

        def send() -> requests.Response:
            return self.session.post(
                request.url,
                headers=request.headers,
                json=request.body,
                timeout=self.timeout,
                stream=True,
            )

        if retry:
            response = retry_with_backoff(send, sleep=self.sleep)
        else:
            try:
                response = send()
            except requests.RequestException as exc:
                raise EvaluationError(str(exc)) from exc

        if not response.ok:
            message = _error_message(response)
            response.close()
            raise EvaluationError(
                f"API Error {response.status_code}: {message}", status_code=response.status_code
            )
        return response

    def _complete_once(
        self, api_key: str, messages: List[Dict[str, str]], *, retry: bool = False
    ) -> str:
        response = self._send(api_key, self.settings.get_model(), messages, retry=retry)
        try:
            if "text/event-stream" in response.headers.get("content-type", ""):
                content = parse_sse_stream(response.iter_content(chunk_size=None))
            else:
                content = _message_content(response)
        finally:
            response.close()
        if not content:
            raise EvaluationError("No content in API response")
        return content


def _emit(callback: Optional[ProgressCallback], event: ProgressEvent) -> None:
    if callback is not None:
        callback(event)


def _message_content(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError as exc:
        raise EvaluationError("API response was not valid JSON") from exc

    choices = data.get("choices") if isinstance(data, dict) else None
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    return content or ""


def _error_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return "Unknown error"
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    return "Unknown error"
