"""Persisted run records: one JSON file per finished run."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from analytics_deploy.logging import get_logger
from analytics_deploy.models import DeploymentRun, Environment

log = get_logger("analytics_deploy.store")


class RunStore:
    def __init__(self, state_dir: Path | str) -> None:
        self._runs_dir = Path(state_dir) / "runs"

    def save(self, run: DeploymentRun) -> Path | None:
        """Atomically write the run record. Failures are logged, not raised."""
        path = self._runs_dir / f"{run.id}.json"
        try:
            self._runs_dir.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(
                json.dumps(run.to_dict(), indent=2, sort_keys=True),
                encoding="utf-8",
            )
            tmp_path.replace(path)
        except OSError:
            log.exception("run_record_save_failed", path=str(path))
            return None
        return path

    def load(self, run_id: str) -> dict[str, Any] | None:
        path = self._runs_dir / f"{run_id}.json"
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            log.warning("run_record_unreadable", path=str(path))
            return None
        return data if isinstance(data, dict) else None

    def latest(self, environment: Environment) -> dict[str, Any] | None:
        """Most recent run record for an environment."""
        if not self._runs_dir.is_dir():
            return None
        # Run ids embed a sortable timestamp after the environment prefix
        candidates = sorted(self._runs_dir.glob(f"{environment.value}-*.json"))
        for path in reversed(candidates):
            record = self.load(path.stem)
            if record is not None:
                return record
        return None
