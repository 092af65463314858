"""Artifact records that analysis jobs write their results onto."""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from sqlalchemy import case, func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from analysis_queue.analysis.base import AnalysisResult
from analysis_queue.storage.alembic_runner import upgrade_head
from analysis_queue.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from analysis_queue.storage.sqlmodel_models import Artifact

DESCRIPTION_MAX_CHARS = 1000
CATEGORY_MAX_CHARS = 100
TAG_MAX_CHARS = 50


@dataclass(slots=True)
class ArtifactCreate:
    """Input payload for registering a stored artifact."""

    original_name: str
    locator: str
    mime_type: str
    size_bytes: int = 0
    owner_id: str | None = None
    width: int | None = None
    height: int | None = None


@dataclass(slots=True)
class ArtifactView:
    """Readable artifact view."""

    artifact_id: str
    owner_id: str | None
    original_name: str
    locator: str
    mime_type: str
    size_bytes: int
    width: int | None
    height: int | None
    description: str | None
    category: str | None
    confidence: float | None
    tags: list[str]
    is_processed: bool
    processing_error: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ProcessingStats:
    """Artifact counts by analysis state."""

    total: int = 0
    processed: int = 0
    pending: int = 0


class ArtifactStore(Protocol):
    """Artifact operations the dispatcher depends on."""

    def get_artifact(self, artifact_id: str) -> ArtifactView | None:
        """Resolve the subject of a job, or None when it does not exist."""

    def apply_analysis(self, artifact_id: str, result: AnalysisResult) -> None:
        """Write analysis results and mark the artifact processed."""

    def record_processing_error(self, artifact_id: str, message: str) -> None:
        """Remember why analysis permanently failed."""

    def unprocessed_ids(self, artifact_ids: Iterable[str]) -> set[str]:
        """Subset of ids whose artifacts exist and are not processed."""


class ArtifactRepository:
    """SQLite-backed artifact store sharing the queue database."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def create_artifact(self, payload: ArtifactCreate) -> ArtifactView:
        """Persist a newly stored artifact, unprocessed."""

        if not payload.locator.strip():
            raise ValueError("Artifact locator must be a non-empty string.")
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = Artifact(
                artifact_id=str(uuid4()),
                owner_id=payload.owner_id,
                original_name=payload.original_name,
                locator=payload.locator.strip(),
                mime_type=payload.mime_type,
                size_bytes=payload.size_bytes,
                width=payload.width,
                height=payload.height,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_artifact_view(row)

    def get_artifact(self, artifact_id: str) -> ArtifactView | None:
        with Session(self.engine) as session:
            row = session.get(Artifact, artifact_id)
            return _to_artifact_view(row) if row is not None else None

    def apply_analysis(self, artifact_id: str, result: AnalysisResult) -> None:
        now = to_db_datetime(utc_now())
        tags = [tag.strip()[:TAG_MAX_CHARS] for tag in result.tags if tag.strip()]
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(Artifact)
                .where(col(Artifact.artifact_id) == artifact_id)
                .values(
                    description=result.description[:DESCRIPTION_MAX_CHARS],
                    category=result.category[:CATEGORY_MAX_CHARS],
                    confidence=min(max(result.confidence, 0.0), 1.0),
                    tags_json=json.dumps(tags, ensure_ascii=False),
                    is_processed=True,
                    processing_error=None,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                raise LookupError(f"Artifact not found: {artifact_id}")
            session.commit()

    def record_processing_error(self, artifact_id: str, message: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(Artifact)
                .where(col(Artifact.artifact_id) == artifact_id)
                .values(processing_error=message, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()

    def unprocessed_ids(self, artifact_ids: Iterable[str]) -> set[str]:
        wanted = set(artifact_ids)
        if not wanted:
            return set()
        with Session(self.engine) as session:
            rows = session.exec(
                select(Artifact.artifact_id).where(
                    col(Artifact.artifact_id).in_(wanted),
                    col(Artifact.is_processed) == False,  # noqa: E712
                ),
            ).all()
        return set(rows)

    def processing_stats(self, *, owner_id: str | None = None) -> ProcessingStats:
        """Count artifacts by processed flag, optionally for one owner."""

        with Session(self.engine) as session:
            statement = select(
                func.count(),
                func.coalesce(func.sum(case((col(Artifact.is_processed), 1), else_=0)), 0),
            ).select_from(Artifact)
            if owner_id is not None:
                statement = statement.where(Artifact.owner_id == owner_id)
            total, processed = session.exec(statement).one()
        return ProcessingStats(
            total=int(total),
            processed=int(processed),
            pending=int(total) - int(processed),
        )

    def list_artifacts(self, *, owner_id: str | None = None, limit: int = 50) -> list[ArtifactView]:
        with Session(self.engine) as session:
            statement = select(Artifact).order_by(col(Artifact.created_at).desc()).limit(limit)
            if owner_id is not None:
                statement = statement.where(Artifact.owner_id == owner_id)
            rows = session.exec(statement).all()
        return [_to_artifact_view(row) for row in rows]


def _to_artifact_view(row: Artifact) -> ArtifactView:
    try:
        tags = json.loads(row.tags_json or "[]")
    except json.JSONDecodeError:
        tags = []
    return ArtifactView(
        artifact_id=row.artifact_id,
        owner_id=row.owner_id,
        original_name=row.original_name,
        locator=row.locator,
        mime_type=row.mime_type,
        size_bytes=row.size_bytes,
        width=row.width,
        height=row.height,
        description=row.description,
        category=row.category,
        confidence=row.confidence,
        tags=[str(tag) for tag in tags] if isinstance(tags, list) else [],
        is_processed=bool(row.is_processed),
        processing_error=row.processing_error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
