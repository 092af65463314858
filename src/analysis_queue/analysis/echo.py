"""Deterministic offline analyzer for demos and local runs."""

from __future__ import annotations

from pathlib import PurePosixPath
from urllib.parse import urlparse

from analysis_queue.analysis.base import AnalysisError, AnalysisResult
from analysis_queue.analysis.parsing import DEFAULT_CATEGORY, DEFAULT_CONFIDENCE, extract_tags


class EchoAnalyzer:
    """Describes an artifact from its locator alone, without any network call."""

    def analyze(self, locator: str) -> AnalysisResult:
        if not locator.strip():
            raise AnalysisError("AI analysis failed: empty locator")
        name = PurePosixPath(urlparse(locator).path).stem or locator
        words = name.replace("-", " ").replace("_", " ")
        description = f"Image {words} stored at {locator}"
        return AnalysisResult(
            description=description,
            category=DEFAULT_CATEGORY,
            confidence=DEFAULT_CONFIDENCE,
            tags=extract_tags(words),
        )
