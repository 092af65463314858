"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import datetime
from pathlib import Path

import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from analysis_queue.artifacts.repository import ArtifactCreate, ArtifactRepository, ArtifactView
from analysis_queue.queue.repository import JobRepository
from analysis_queue.storage.common import to_db_datetime
from analysis_queue.storage.sqlmodel_models import Job


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "queue.db"


@pytest.fixture()
def job_repository(db_path: Path) -> Iterator[JobRepository]:
    repository = JobRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def artifact_repository(
    db_path: Path,
    job_repository: JobRepository,
) -> Iterator[ArtifactRepository]:
    repository = ArtifactRepository(db_path)
    yield repository
    repository.close()


@pytest.fixture()
def make_artifact(artifact_repository: ArtifactRepository) -> Callable[..., ArtifactView]:
    """Factory registering an unprocessed image artifact."""

    def _make(name: str = "cat.jpg", owner_id: str | None = "user-1") -> ArtifactView:
        return artifact_repository.create_artifact(
            ArtifactCreate(
                original_name=name,
                locator=f"https://cdn.example.com/uploads/{name}",
                mime_type="image/jpeg",
                size_bytes=1024,
                owner_id=owner_id,
            ),
        )

    return _make


@pytest.fixture()
def backdate_job(job_repository: JobRepository) -> Callable[[str, datetime], None]:
    """Overwrite a job's created_at to control claim order."""

    def _backdate(job_id: str, created_at: datetime) -> None:
        with Session(job_repository.engine) as session:
            session.exec(
                sa_update(Job)
                .where(col(Job.job_id) == job_id)
                .values(created_at=to_db_datetime(created_at)),
            )
            session.commit()

    return _backdate
