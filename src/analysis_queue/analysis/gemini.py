"""Gemini-backed analysis capability over the REST API."""

from __future__ import annotations

import base64
import logging

import httpx

from analysis_queue.analysis.base import AnalysisError, AnalysisResult
from analysis_queue.analysis.parsing import parse_model_output

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-1.5-flash"
DEFAULT_API_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_IMAGE_MIME_TYPE = "image/jpeg"
DEFAULT_USER_AGENT = "analysis-queue/0.1 (+httpx)"

ANALYSIS_PROMPT = (
    "Analyze this image and provide:\n"
    "1. A detailed description (max 200 words)\n"
    "2. A single category that best describes the main subject\n"
    "3. A confidence score (0-1)\n\n"
    "Format your response as JSON with keys: description, category, confidence"
)


class GeminiAnalyzer:
    """Downloads an image and asks Gemini to describe and categorize it."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str,
        model: str = DEFAULT_MODEL,
        api_base_url: str = DEFAULT_API_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._api_base_url = api_base_url.rstrip("/")
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"User-Agent": DEFAULT_USER_AGENT},
            transport=transport or httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    @property
    def endpoint(self) -> str:
        return f"{self._api_base_url}/models/{self._model}:generateContent"

    def analyze(self, locator: str) -> AnalysisResult:
        """Analyze the image at `locator`."""

        try:
            image_bytes, mime_type = self._download(locator)
            text = self._generate(image_bytes=image_bytes, mime_type=mime_type)
        except httpx.TimeoutException as exc:
            logger.warning("Timeout during analysis of %s", locator)
            raise AnalysisError(f"AI analysis failed: timeout ({exc})") from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error during analysis of %s: %s", locator, exc)
            raise AnalysisError(f"AI analysis failed: {exc}") from exc
        return parse_model_output(text)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GeminiAnalyzer:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _download(self, locator: str) -> tuple[bytes, str]:
        response = self._client.get(locator)
        if not response.is_success:
            raise AnalysisError(
                f"AI analysis failed: image download returned HTTP {response.status_code}",
            )
        content_type = response.headers.get("content-type", "").split(";", 1)[0].strip().lower()
        mime_type = content_type if content_type.startswith("image/") else DEFAULT_IMAGE_MIME_TYPE
        return response.content, mime_type

    def _generate(self, *, image_bytes: bytes, mime_type: str) -> str:
        body = {
            "contents": [
                {
                    "parts": [
                        {"text": ANALYSIS_PROMPT},
                        {
                            "inline_data": {
                                "mime_type": mime_type,
                                "data": base64.b64encode(image_bytes).decode("ascii"),
                            },
                        },
                    ],
                },
            ],
        }
        response = self._client.post(
            self.endpoint,
            json=body,
            headers={"x-goog-api-key": self._api_key},
        )
        try:
            payload = response.json()
        except ValueError as exc:
            raise AnalysisError(
                f"AI analysis failed: Gemini returned non-JSON body (HTTP {response.status_code})",
            ) from exc
        if not response.is_success:
            raise AnalysisError(
                f"AI analysis failed: Gemini returned HTTP {response.status_code}: "
                f"{_error_message(payload)}",
            )
        text = _first_candidate_text(payload)
        if not text:
            raise AnalysisError("AI analysis failed: No response content from Gemini")
        return text


def _first_candidate_text(payload: object) -> str | None:
    if not isinstance(payload, dict):
        return None
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list) or not parts or not isinstance(parts[0], dict):
        return None
    text = parts[0].get("text")
    return text if isinstance(text, str) and text.strip() else None


def _error_message(payload: object) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return "unknown error"
