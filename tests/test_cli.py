from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from analysis_queue.main import analysis_queue

pytestmark = [
    allure.epic("Analysis Queue"),
    allure.feature("CLI Ops"),
]


@pytest.fixture()
def echo_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ANALYSIS_QUEUE_ANALYZER", "echo")
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)


def _invoke(runner: CliRunner, *args: str):
    return runner.invoke(analysis_queue, list(args))


def test_register_sweep_and_inspect_round_trip(tmp_path: Path, echo_env: None) -> None:
    runner = CliRunner()
    db_path = str(tmp_path / "cli.db")

    registered = _invoke(
        runner,
        "artifacts",
        "register",
        "--db-path",
        db_path,
        "--locator",
        "https://cdn.example.com/uploads/sunset-beach.jpg",
        "--owner-id",
        "user-1",
    )
    assert registered.exit_code == 0, registered.output
    artifact_id = re.search(r"Artifact registered: (\S+)", registered.output).group(1)
    job_id = re.search(r"job_id=(\S+)", registered.output).group(1)

    pending = _invoke(runner, "artifacts", "stats", "--db-path", db_path, "--owner-id", "user-1")
    assert "total=1 processed=0 pending=1" in pending.output

    swept = _invoke(runner, "worker", "sweep", "--db-path", db_path)
    assert swept.exit_code == 0, swept.output
    assert "claimed=1 completed=1 retried=0 failed=0" in swept.output

    processed = _invoke(runner, "artifacts", "stats", "--db-path", db_path)
    assert "total=1 processed=1 pending=0" in processed.output

    stats = _invoke(runner, "jobs", "stats", "--db-path", db_path)
    assert "completed=1" in stats.output
    assert "total=1" in stats.output

    listed = _invoke(runner, "jobs", "list", "--db-path", db_path, "--status", "completed")
    assert "Jobs: 1" in listed.output
    assert f"subject={artifact_id}" in listed.output

    inspected = _invoke(runner, "jobs", "inspect", "--db-path", db_path, job_id)
    assert inspected.exit_code == 0, inspected.output
    assert "Status: completed" in inspected.output
    assert "Attempts: 1/3" in inspected.output
    assert "result_saved" in inspected.output

    reprocessed = _invoke(
        runner,
        "jobs",
        "reprocess",
        "--db-path",
        db_path,
        "--subject-id",
        artifact_id,
    )
    assert reprocessed.exit_code == 0, reprocessed.output
    assert "Reprocessing job enqueued" in reprocessed.output


def test_enqueue_for_missing_subject_fails_on_sweep(tmp_path: Path, echo_env: None) -> None:
    runner = CliRunner()
    db_path = str(tmp_path / "cli.db")

    enqueued = _invoke(
        runner,
        "jobs",
        "enqueue",
        "--db-path",
        db_path,
        "--subject-id",
        "ghost",
        "--max-attempts",
        "2",
    )
    assert enqueued.exit_code == 0, enqueued.output
    assert "max_attempts=2" in enqueued.output

    swept = _invoke(runner, "worker", "sweep", "--db-path", db_path)
    assert "failed=1" in swept.output

    failed = _invoke(runner, "jobs", "list", "--db-path", db_path, "--status", "failed")
    assert "Jobs: 1" in failed.output
    assert "attempts=1/2" in failed.output


def test_reprocess_unknown_artifact_is_a_cli_error(tmp_path: Path, echo_env: None) -> None:
    result = _invoke(
        CliRunner(),
        "jobs",
        "reprocess",
        "--db-path",
        str(tmp_path / "cli.db"),
        "--subject-id",
        "ghost",
    )

    assert result.exit_code == 1
    assert "Artifact not found: ghost" in result.output


def test_inspect_unknown_job(tmp_path: Path) -> None:
    result = _invoke(CliRunner(), "jobs", "inspect", "--db-path", str(tmp_path / "cli.db"), "x")

    assert result.exit_code == 0
    assert "Job not found: x" in result.output


def test_gemini_worker_requires_api_key(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ANALYSIS_QUEUE_ANALYZER", "gemini")
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    result = _invoke(CliRunner(), "worker", "sweep", "--db-path", str(tmp_path / "cli.db"))

    assert result.exit_code == 1
    assert "GEMINI_API_KEY is required" in result.output


def test_purge_reports_count(tmp_path: Path, echo_env: None) -> None:
    result = _invoke(
        CliRunner(),
        "jobs",
        "purge",
        "--db-path",
        str(tmp_path / "cli.db"),
        "--retention-hours",
        "1",
    )

    assert result.exit_code == 0, result.output
    assert "Purged completed jobs: 0 (retention=1h)" in result.output


def test_worker_run_stops_after_duration(
    tmp_path: Path,
    echo_env: None,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("ANALYSIS_QUEUE_SCHEDULER_INITIAL_DELAY_SECONDS", "0")
    runner = CliRunner()
    db_path = str(tmp_path / "cli.db")
    _invoke(
        runner,
        "artifacts",
        "register",
        "--db-path",
        db_path,
        "--locator",
        "https://cdn.example.com/uploads/cat.jpg",
    )

    result = _invoke(runner, "worker", "run", "--db-path", db_path, "--duration-seconds", "0.5")

    assert result.exit_code == 0, result.output
    assert "initial=1" in result.output
    stats = _invoke(runner, "artifacts", "stats", "--db-path", db_path)
    assert "processed=1" in stats.output


def test_worker_run_reports_malformed_environment(
    tmp_path: Path,
    echo_env: None,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("ANALYSIS_QUEUE_RECONCILE_ARTIFACTS", "sometimes")

    result = _invoke(
        CliRunner(),
        "worker",
        "run",
        "--db-path",
        str(tmp_path / "cli.db"),
        "--duration-seconds",
        "0.1",
    )

    assert result.exit_code == 1
    assert "Invalid boolean value for ANALYSIS_QUEUE_RECONCILE_ARTIFACTS" in result.output
