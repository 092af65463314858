"""Analysis capability implementations."""

from analysis_queue.analysis.base import (
    AnalysisCapability,
    AnalysisError,
    AnalysisResult,
    AnalysisTimeoutError,
)
from analysis_queue.analysis.echo import EchoAnalyzer
from analysis_queue.analysis.gemini import GeminiAnalyzer

__all__ = [
    "AnalysisCapability",
    "AnalysisError",
    "AnalysisResult",
    "AnalysisTimeoutError",
    "EchoAnalyzer",
    "GeminiAnalyzer",
]
