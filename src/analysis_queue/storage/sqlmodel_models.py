"""SQLModel ORM tables for queue and artifact storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class Artifact(SQLModel, table=True):
    __tablename__ = "artifacts"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_artifacts_owner_time", "owner_id", "created_at"),
        Index("idx_artifacts_category", "category"),
        Index("idx_artifacts_is_processed", "is_processed"),
    )

    artifact_id: str = Field(primary_key=True)
    owner_id: str | None = None
    original_name: str
    locator: str = Field(sa_column=Column(Text, nullable=False))
    mime_type: str
    size_bytes: int = Field(default=0)
    width: int | None = None
    height: int | None = None
    description: str | None = Field(default=None, sa_column=Column(Text))
    category: str | None = None
    confidence: float | None = Field(default=None, sa_column=Column(Float))
    tags_json: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False, server_default="[]"),
    )
    is_processed: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    processing_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_queue", "status", "kind", "attempts"),
        Index("idx_jobs_created_at", "created_at"),
    )

    job_id: str = Field(primary_key=True)
    subject_id: str = Field(index=True)
    kind: str
    status: str
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    processed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    payload_json: str = Field(sa_column=Column(Text, nullable=False, server_default="{}"))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
