"""Tests for RunStore."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from analytics_deploy.models import (
    DeploymentRequest,
    DeploymentRun,
    Environment,
    RunOutcome,
    Stage,
)
from analytics_deploy.store import RunStore


def _finished_run(env: Environment, minute: int, success: bool = True) -> DeploymentRun:
    run = DeploymentRun(
        request=DeploymentRequest("main", env),
        started_at=datetime(2026, 3, 1, 12, minute, tzinfo=UTC),
    )
    if success:
        run.finish(RunOutcome.succeeded())
    else:
        run.finish(RunOutcome.failed(Stage.BACKUP, "disk full", "backup"))
    return run


class TestRunStore:
    def test_save_and_load(self, tmp_path: Path) -> None:
        store = RunStore(tmp_path)
        run = _finished_run(Environment.PRODUCTION, 0)

        path = store.save(run)

        assert path == tmp_path / "runs" / f"{run.id}.json"
        assert not path.with_suffix(".tmp").exists()
        record = store.load(run.id)
        assert record is not None
        assert record["current_stage"] == "DONE"

    def test_latest_per_environment(self, tmp_path: Path) -> None:
        store = RunStore(tmp_path)
        store.save(_finished_run(Environment.PRODUCTION, 1))
        newest = _finished_run(Environment.PRODUCTION, 5, success=False)
        store.save(newest)
        store.save(_finished_run(Environment.STAGING, 9))

        record = store.latest(Environment.PRODUCTION)

        assert record is not None
        assert record["id"] == newest.id
        assert record["final_outcome"]["stage"] == "BACKUP"

    def test_latest_without_records(self, tmp_path: Path) -> None:
        assert RunStore(tmp_path).latest(Environment.DEVELOPMENT) is None

    def test_unreadable_record_is_skipped(self, tmp_path: Path) -> None:
        store = RunStore(tmp_path)
        older = _finished_run(Environment.STAGING, 1)
        store.save(older)
        (tmp_path / "runs" / "staging-20260301-130000-000000.json").write_text(
            "{not json", encoding="utf-8"
        )

        record = store.latest(Environment.STAGING)

        assert record is not None
        assert record["id"] == older.id
