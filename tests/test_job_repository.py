from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from analysis_queue.queue.errors import InvalidTransitionError, JobNotFoundError
from analysis_queue.queue.models import JobCreate, JobKind, JobStatus
from analysis_queue.queue.repository import STALE_PROCESSING_ERROR, JobRepository

pytestmark = [
    allure.epic("Analysis Queue"),
    allure.feature("Job Store"),
]


def test_enqueue_creates_pending_job_with_zero_attempts(job_repository: JobRepository) -> None:
    job = job_repository.enqueue(
        JobCreate(subject_id="artifact-1", payload={"locator": "https://cdn/x.jpg"}),
    )

    assert job.status is JobStatus.PENDING
    assert job.kind is JobKind.ANALYSIS
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.locator == "https://cdn/x.jpg"
    assert job.last_error is None
    assert job.processed_at is None
    assert job.result is None


def test_enqueue_accepts_subject_that_does_not_exist(job_repository: JobRepository) -> None:
    job = job_repository.enqueue(JobCreate(subject_id="never-uploaded"))
    assert job_repository.get_job(job.job_id) is not None


@pytest.mark.parametrize("subject_id", ["", "   "])
def test_enqueue_rejects_blank_subject(job_repository: JobRepository, subject_id: str) -> None:
    with pytest.raises(ValueError, match="subject_id"):
        job_repository.enqueue(JobCreate(subject_id=subject_id))


def test_enqueue_rejects_non_positive_max_attempts(job_repository: JobRepository) -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        job_repository.enqueue(JobCreate(subject_id="artifact-1", max_attempts=0))


def test_claim_batch_returns_oldest_first_without_changing_status(
    job_repository: JobRepository,
    backdate_job,
) -> None:
    base = datetime.now(tz=UTC) - timedelta(minutes=10)
    ids = []
    for index in range(4):
        job = job_repository.enqueue(JobCreate(subject_id=f"artifact-{index}"))
        backdate_job(job.job_id, base + timedelta(seconds=3 - index))
        ids.append(job.job_id)

    claimed = job_repository.claim_batch(limit=3)

    assert [job.job_id for job in claimed] == [ids[3], ids[2], ids[1]]
    assert all(job.status is JobStatus.PENDING for job in claimed)
    assert job_repository.get_stats().pending == 4


def test_claim_batch_skips_exhausted_and_not_yet_eligible_jobs(
    job_repository: JobRepository,
) -> None:
    exhausted = job_repository.enqueue(JobCreate(subject_id="a", max_attempts=1))
    job_repository.mark_processing(exhausted.job_id)
    job_repository.requeue_job(exhausted.job_id, error="boom")
    delayed = job_repository.enqueue(JobCreate(subject_id="b"))
    job_repository.mark_processing(delayed.job_id)
    job_repository.requeue_job(
        delayed.job_id,
        error="boom",
        run_after=datetime.now(tz=UTC) + timedelta(minutes=5),
    )

    assert job_repository.claim_batch(limit=5) == []
    later = job_repository.claim_batch(limit=5, now=datetime.now(tz=UTC) + timedelta(minutes=6))
    assert [job.job_id for job in later] == [delayed.job_id]


def test_claim_batch_with_non_positive_limit_is_empty(job_repository: JobRepository) -> None:
    job_repository.enqueue(JobCreate(subject_id="artifact-1"))
    assert job_repository.claim_batch(limit=0) == []


def test_lifecycle_records_audit_events(job_repository: JobRepository) -> None:
    job = job_repository.enqueue(JobCreate(subject_id="artifact-1"))

    processing = job_repository.mark_processing(job.job_id)
    assert processing.status is JobStatus.PROCESSING
    assert processing.attempts == 1

    assert job_repository.save_result(job.job_id, {"description": "cat"}) is True
    completed = job_repository.complete_job(job.job_id)
    assert completed.status is JobStatus.COMPLETED
    assert completed.status.is_terminal
    assert completed.processed_at is not None
    assert completed.last_error is None
    assert completed.result == {"description": "cat"}

    details = job_repository.get_job_details(job.job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == [
        "enqueued",
        "claimed",
        "result_saved",
        "completed",
    ]
    assert details.events[1].status_from is JobStatus.PENDING
    assert details.events[1].status_to is JobStatus.PROCESSING


def test_complete_clears_previous_error(job_repository: JobRepository) -> None:
    job = job_repository.enqueue(JobCreate(subject_id="artifact-1"))
    job_repository.mark_processing(job.job_id)
    retried = job_repository.requeue_job(job.job_id, error="timeout")
    assert retried.last_error == "timeout"

    job_repository.mark_processing(job.job_id)
    completed = job_repository.complete_job(job.job_id)

    assert completed.attempts == 2
    assert completed.last_error is None


def test_transition_rejects_moves_outside_state_machine(job_repository: JobRepository) -> None:
    job = job_repository.enqueue(JobCreate(subject_id="artifact-1"))

    with pytest.raises(InvalidTransitionError, match="pending to status=completed"):
        job_repository.transition(job.job_id, JobStatus.COMPLETED)

    job_repository.mark_processing(job.job_id)
    job_repository.fail_job(job.job_id, error="subject not found")
    with pytest.raises(InvalidTransitionError):
        job_repository.transition(job.job_id, JobStatus.PENDING)


def test_transition_unknown_job_and_field(job_repository: JobRepository) -> None:
    with pytest.raises(JobNotFoundError):
        job_repository.transition("missing", JobStatus.PROCESSING)

    job = job_repository.enqueue(JobCreate(subject_id="artifact-1"))
    with pytest.raises(ValueError, match="Unsupported job fields: priority"):
        job_repository.transition(job.job_id, JobStatus.PROCESSING, priority=1)


def test_save_result_requires_processing_status(job_repository: JobRepository) -> None:
    job = job_repository.enqueue(JobCreate(subject_id="artifact-1"))
    assert job_repository.save_result(job.job_id, {"description": "cat"}) is False
    assert job_repository.get_job(job.job_id).result is None


def test_get_stats_is_zero_filled(job_repository: JobRepository) -> None:
    stats = job_repository.get_stats()
    assert stats.as_dict() == {"pending": 0, "processing": 0, "completed": 0, "failed": 0}

    job_repository.enqueue(JobCreate(subject_id="artifact-1"))
    failed = job_repository.enqueue(JobCreate(subject_id="artifact-2"))
    job_repository.mark_processing(failed.job_id)
    job_repository.fail_job(failed.job_id, error="boom")

    stats = job_repository.get_stats()
    assert (stats.pending, stats.processing, stats.completed, stats.failed) == (1, 0, 0, 1)
    assert stats.total == 2


def test_purge_deletes_only_expired_completed_jobs(job_repository: JobRepository) -> None:
    old = job_repository.enqueue(JobCreate(subject_id="artifact-1"))
    job_repository.mark_processing(old.job_id)
    job_repository.complete_job(old.job_id)
    failed = job_repository.enqueue(JobCreate(subject_id="artifact-2"))
    job_repository.mark_processing(failed.job_id)
    job_repository.fail_job(failed.job_id, error="boom")
    pending = job_repository.enqueue(JobCreate(subject_id="artifact-3"))

    assert job_repository.purge_completed_older_than(timedelta(hours=24)) == 0

    later = datetime.now(tz=UTC) + timedelta(hours=25)
    assert job_repository.purge_completed_older_than(timedelta(hours=24), now=later) == 1
    assert job_repository.get_job(old.job_id) is None
    assert job_repository.get_job(failed.job_id) is not None
    assert job_repository.get_job(pending.job_id) is not None


def test_recover_stale_processing_requeues_or_fails(job_repository: JobRepository) -> None:
    retryable = job_repository.enqueue(JobCreate(subject_id="artifact-1"))
    job_repository.mark_processing(retryable.job_id)
    exhausted = job_repository.enqueue(JobCreate(subject_id="artifact-2", max_attempts=1))
    job_repository.mark_processing(exhausted.job_id)

    assert job_repository.recover_stale_processing(stale_after=timedelta(minutes=30)) == 0

    later = datetime.now(tz=UTC) + timedelta(minutes=31)
    recovered = job_repository.recover_stale_processing(
        stale_after=timedelta(minutes=30),
        now=later,
    )

    assert recovered == 2
    first = job_repository.get_job(retryable.job_id)
    second = job_repository.get_job(exhausted.job_id)
    assert first.status is JobStatus.PENDING
    assert first.last_error == STALE_PROCESSING_ERROR
    assert second.status is JobStatus.FAILED


def test_list_jobs_filters_newest_first(job_repository: JobRepository, backdate_job) -> None:
    base = datetime.now(tz=UTC) - timedelta(hours=1)
    first = job_repository.enqueue(JobCreate(subject_id="artifact-1"))
    second = job_repository.enqueue(JobCreate(subject_id="artifact-1", kind=JobKind.THUMBNAILING))
    other = job_repository.enqueue(JobCreate(subject_id="artifact-2"))
    backdate_job(first.job_id, base)
    backdate_job(second.job_id, base + timedelta(minutes=1))
    backdate_job(other.job_id, base + timedelta(minutes=2))

    listed = job_repository.list_jobs(subject_id="artifact-1")
    assert [job.job_id for job in listed] == [second.job_id, first.job_id]

    thumbnails = job_repository.list_jobs(kind=JobKind.THUMBNAILING)
    assert [job.job_id for job in thumbnails] == [second.job_id]

    assert job_repository.list_jobs(status=JobStatus.COMPLETED) == []
