"""Analysis capability interface used by the dispatcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


class AnalysisError(RuntimeError):
    """Analysis failed; the message is stored as the job's last error."""


class AnalysisTimeoutError(AnalysisError):
    """Analysis did not finish within the dispatcher's time budget."""


@dataclass(slots=True)
class AnalysisResult:
    """Descriptive metadata produced for one artifact."""

    description: str
    category: str
    confidence: float
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "category": self.category,
            "confidence": self.confidence,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalysisResult:
        tags = data.get("tags") or []
        return cls(
            description=str(data.get("description", "")),
            category=str(data.get("category", "")),
            confidence=float(data.get("confidence", 0.0)),
            tags=[str(tag) for tag in tags] if isinstance(tags, list) else [],
        )


class AnalysisCapability(Protocol):
    """Protocol implemented by analysis backends."""

    def analyze(self, locator: str) -> AnalysisResult:
        """Analyze the artifact at `locator`; raise AnalysisError on failure."""
