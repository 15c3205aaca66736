"""Tests for BackupManager: create, retention and restore."""

from __future__ import annotations

import io
import json
import shutil
import tarfile
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from analytics_deploy.backup import MANIFEST_NAME, BackupManager
from analytics_deploy.errors import BackupFailure, BackupNotFound, PruneWarning, RestoreFailure
from analytics_deploy.shell import CommandResult

VOLUMES = ["postgres-data", "clickhouse-data"]


def _write_archive(path: Path, payload: bytes = b"PGDATA") -> None:
    with tarfile.open(path, "w:gz") as archive:
        info = tarfile.TarInfo("./PG_VERSION")
        info.size = len(payload)
        archive.addfile(info, io.BytesIO(payload))


def _fake_tar(argv: list[str]) -> CommandResult:
    """Play the helper container: write the archive the command asks for."""
    host_dir = next(a.rsplit(":", 1)[0] for a in argv if a.endswith(":/backup"))
    target = next(a for a in argv if a.startswith("/backup/"))
    _write_archive(Path(host_dir) / target.removeprefix("/backup/"))
    return CommandResult(tuple(argv), 0, "", "")


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        current = self.now
        self.now += timedelta(minutes=1)
        return current


def _manager(tmp_path: Path, runner, clock=None) -> BackupManager:
    runner.respond(["tar", "czf"], [_fake_tar])
    return BackupManager(
        tmp_path / "backups",
        runner=runner,
        volume_prefix="analytics",
        clock=clock or _Clock(),
    )


# ---------------------------------------------------------------------------
# create_backup
# ---------------------------------------------------------------------------


class TestCreateBackup:
    @pytest.mark.asyncio
    async def test_archives_every_volume_and_writes_manifest(self, tmp_path: Path, runner) -> None:
        manager = _manager(tmp_path, runner)

        backup_set = await manager.create_backup(VOLUMES)

        assert backup_set.name == "analytics-backup-20260301-120000"
        assert backup_set.volumes == VOLUMES
        set_dir = tmp_path / "backups" / backup_set.name
        manifest = json.loads((set_dir / MANIFEST_NAME).read_text(encoding="utf-8"))
        assert manifest["name"] == backup_set.name
        for volume in VOLUMES:
            assert (set_dir / f"{volume}.tar.gz").stat().st_size > 0
        assert runner.called("-v", "analytics_postgres-data:/data:ro")

    @pytest.mark.asyncio
    async def test_one_failing_volume_fails_the_whole_backup(self, tmp_path: Path, runner) -> None:
        manager = _manager(tmp_path, runner)
        runner.on("volume", "inspect", "analytics_clickhouse-data", returncode=1)

        with pytest.raises(BackupFailure) as exc_info:
            await manager.create_backup(VOLUMES)

        assert exc_info.value.volume == "clickhouse-data"
        assert manager.list_backups() == []
        assert list((tmp_path / "backups").iterdir()) == []

    @pytest.mark.asyncio
    async def test_empty_archive_is_a_failure(self, tmp_path: Path, runner) -> None:
        manager = _manager(tmp_path, runner)
        runner.on("tar", "czf")

        with pytest.raises(BackupFailure, match="missing or empty"):
            await manager.create_backup(["postgres-data"])

    @pytest.mark.asyncio
    async def test_names_are_unique_within_a_second(self, tmp_path: Path, runner) -> None:
        fixed = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        manager = _manager(tmp_path, runner, clock=lambda: fixed)

        first = await manager.create_backup(["postgres-data"])
        second = await manager.create_backup(["postgres-data"])

        assert first.name != second.name
        assert second.name == f"{first.name}-1"

    @pytest.mark.asyncio
    async def test_requires_volumes(self, tmp_path: Path, runner) -> None:
        with pytest.raises(ValueError):
            await _manager(tmp_path, runner).create_backup([])


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------


class TestPruneOld:
    @pytest.mark.asyncio
    async def test_keeps_five_most_recent_of_eight(self, tmp_path: Path, runner) -> None:
        manager = _manager(tmp_path, runner)
        created = [await manager.create_backup(["postgres-data"]) for _ in range(8)]

        pruned = manager.prune_old(retain=5)

        assert sorted(pruned) == sorted(b.name for b in created[:3])
        assert [b.name for b in manager.list_backups()] == [b.name for b in created[3:]]

    @pytest.mark.asyncio
    async def test_never_prunes_a_set_being_restored(self, tmp_path: Path, runner) -> None:
        manager = _manager(tmp_path, runner)
        created = [await manager.create_backup(["postgres-data"]) for _ in range(3)]
        manager._restoring.add(created[0].name)

        pruned = manager.prune_old(retain=1)

        assert pruned == [created[1].name]
        assert {b.name for b in manager.list_backups()} == {created[0].name, created[2].name}

    @pytest.mark.asyncio
    async def test_partial_prune_reports_what_was_deleted(self, tmp_path: Path, runner) -> None:
        manager = _manager(tmp_path, runner)
        created = [await manager.create_backup(["postgres-data"]) for _ in range(3)]
        real_rmtree = shutil.rmtree

        def rmtree(path, *args, **kwargs):
            if Path(path).name == created[0].name:
                raise PermissionError("read-only")
            real_rmtree(path, *args, **kwargs)

        with patch("analytics_deploy.backup.shutil.rmtree", side_effect=rmtree):
            with pytest.raises(PruneWarning) as exc_info:
                manager.prune_old(retain=1)

        assert exc_info.value.pruned == [created[1].name]
        assert exc_info.value.fatal is False
        assert "read-only" in str(exc_info.value)

    def test_negative_retain_rejected(self, tmp_path: Path, runner) -> None:
        with pytest.raises(ValueError):
            _manager(tmp_path, runner).prune_old(retain=-1)

    def test_incomplete_sets_are_ignored(self, tmp_path: Path, runner) -> None:
        manager = _manager(tmp_path, runner)
        (tmp_path / "backups" / "analytics-backup-20260101-000000").mkdir(parents=True)
        assert manager.list_backups() == []
        with pytest.raises(BackupNotFound):
            manager.get_backup("analytics-backup-20260101-000000")


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------


class TestRestore:
    @pytest.mark.asyncio
    async def test_restores_each_volume(self, tmp_path: Path, runner) -> None:
        manager = _manager(tmp_path, runner)
        backup_set = await manager.create_backup(VOLUMES)

        await manager.restore(backup_set)

        extracts = runner.called("sh", "-c")
        assert len(extracts) == 2
        assert "analytics_postgres-data:/data" in extracts[0]
        assert "tar xzf /backup/postgres-data.tar.gz -C /data" in extracts[0][-1]
        assert manager._restoring == set()

    @pytest.mark.asyncio
    async def test_corrupt_archive_fails_before_touching_volumes(
        self, tmp_path: Path, runner
    ) -> None:
        manager = _manager(tmp_path, runner)
        backup_set = await manager.create_backup(VOLUMES)
        backup_set.artifacts["clickhouse-data"].write_bytes(b"\x1f\x8bnot really gzip")

        with pytest.raises(RestoreFailure) as exc_info:
            await manager.restore(backup_set)

        assert exc_info.value.volume == "clickhouse-data"
        assert runner.called("sh", "-c") == []

    @pytest.mark.asyncio
    async def test_unknown_volume(self, tmp_path: Path, runner) -> None:
        manager = _manager(tmp_path, runner)
        backup_set = await manager.create_backup(["postgres-data"])

        with pytest.raises(RestoreFailure, match="not part of backup"):
            await manager.restore(backup_set, ["plausible-data"])

    @pytest.mark.asyncio
    async def test_extraction_failure_is_not_retried(self, tmp_path: Path, runner) -> None:
        manager = _manager(tmp_path, runner)
        backup_set = await manager.create_backup(VOLUMES)
        runner.on("sh", "-c", returncode=1, stderr="No space left on device")

        with pytest.raises(RestoreFailure, match="No space left"):
            await manager.restore(backup_set)

        assert len(runner.called("sh", "-c")) == 1
