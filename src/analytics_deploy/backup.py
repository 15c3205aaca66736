"""Volume snapshots taken before every mutating deploy.

Each backup set is a directory holding one ``<volume>.tar.gz`` per volume
and a ``manifest.json``. The manifest is written last, atomically, so a
directory without one is an incomplete backup and is never listed.
"""

from __future__ import annotations

import asyncio
import json
import os
import shlex
import shutil
import tarfile
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from pathlib import Path

from analytics_deploy.errors import (
    BackupFailure,
    BackupNotFound,
    PruneWarning,
    RestoreFailure,
)
from analytics_deploy.logging import get_logger
from analytics_deploy.models import BackupSet, utc_now
from analytics_deploy.shell import CommandRunner

log = get_logger("analytics_deploy.backup")

MANIFEST_NAME = "manifest.json"
DEFAULT_RETENTION = 5


def _fsync_path(path: Path) -> None:
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _verify_archive(path: Path) -> None:
    """Read a gzip tar end to end; raises on truncation or corruption."""
    with tarfile.open(path, "r:gz") as archive:
        for _member in archive:
            pass


class BackupManager:
    """Create, list, prune and restore volume backup sets."""

    def __init__(
        self,
        backup_dir: Path | str,
        runner: CommandRunner | None = None,
        volume_prefix: str | None = None,
        helper_image: str = "alpine",
        name_prefix: str = "analytics-backup",
        timeout: float = 1800.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._backup_dir = Path(backup_dir)
        self._runner = runner or CommandRunner()
        self._volume_prefix = volume_prefix
        self._helper_image = helper_image
        self._name_prefix = name_prefix
        self._timeout = timeout
        self._clock = clock
        self._restoring: set[str] = set()

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    def docker_volume(self, volume: str) -> str:
        """Map a logical volume name to the docker volume compose created."""
        if self._volume_prefix:
            return f"{self._volume_prefix}_{volume}"
        return volume

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_backup(self, volume_names: Sequence[str]) -> BackupSet:
        """Archive every volume; all or nothing.

        Raises ``BackupFailure`` naming the first volume that could not be
        archived. Nothing from a failed attempt is left behind as a backup.
        """
        volumes = list(volume_names)
        if not volumes:
            raise ValueError("at least one volume is required for a backup")

        created_at = self._clock()
        set_dir = self._allocate_set_dir(created_at)
        log.info("backup_started", backup=set_dir.name, volumes=volumes)

        artifacts: dict[str, Path] = {}
        try:
            for volume in volumes:
                artifacts[volume] = await self._archive_volume(volume, set_dir)
            backup_set = BackupSet(name=set_dir.name, created_at=created_at, artifacts=artifacts)
            self._write_manifest(set_dir, backup_set)
        except BackupFailure:
            self._discard(set_dir)
            raise
        except OSError as exc:
            self._discard(set_dir)
            failed = next((v for v in volumes if v not in artifacts), volumes[-1])
            raise BackupFailure(failed, str(exc)) from exc

        log.info("backup_created", backup=backup_set.name, volumes=volumes)
        return backup_set

    def _allocate_set_dir(self, created_at: datetime) -> Path:
        self._backup_dir.mkdir(parents=True, exist_ok=True)
        base = f"{self._name_prefix}-{created_at.strftime('%Y%m%d-%H%M%S')}"
        candidate = self._backup_dir / base
        counter = 1
        while True:
            try:
                candidate.mkdir()
                return candidate
            except FileExistsError:
                candidate = self._backup_dir / f"{base}-{counter}"
                counter += 1

    async def _archive_volume(self, volume: str, set_dir: Path) -> Path:
        docker_volume = self.docker_volume(volume)

        # docker run would silently create a missing volume and archive nothing
        inspect = await self._runner.run(
            ["docker", "volume", "inspect", docker_volume], timeout=self._timeout
        )
        if not inspect.ok:
            raise BackupFailure(volume, f"volume {docker_volume} does not exist")

        archive_name = f"{volume}.tar.gz"
        result = await self._runner.run(
            [
                "docker",
                "run",
                "--rm",
                "-v",
                f"{docker_volume}:/data:ro",
                "-v",
                f"{set_dir}:/backup",
                self._helper_image,
                "tar",
                "czf",
                f"/backup/{archive_name}",
                "-C",
                "/data",
                ".",
            ],
            timeout=self._timeout,
        )
        if not result.ok:
            raise BackupFailure(volume, result.describe_failure())

        archive = set_dir / archive_name
        if not archive.is_file() or archive.stat().st_size == 0:
            raise BackupFailure(volume, f"archive {archive} missing or empty")
        _fsync_path(archive)
        log.debug("volume_archived", volume=volume, archive=str(archive))
        return archive

    def _write_manifest(self, set_dir: Path, backup_set: BackupSet) -> None:
        manifest = set_dir / MANIFEST_NAME
        tmp_path = manifest.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as fh:
            json.dump(backup_set.to_dict(), fh, indent=2, sort_keys=True)
            fh.flush()
            os.fsync(fh.fileno())
        tmp_path.replace(manifest)
        _fsync_path(set_dir)

    def _discard(self, set_dir: Path) -> None:
        shutil.rmtree(set_dir, ignore_errors=True)
        if set_dir.exists():
            log.warning("backup_partial_not_removed", path=str(set_dir))

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def list_backups(self) -> list[BackupSet]:
        """Complete backup sets, oldest first."""
        if not self._backup_dir.is_dir():
            return []
        backups = []
        for entry in self._backup_dir.iterdir():
            manifest = entry / MANIFEST_NAME
            if not entry.is_dir() or not manifest.is_file():
                continue
            try:
                data = json.loads(manifest.read_text(encoding="utf-8"))
                backups.append(BackupSet.from_dict(data))
            except (OSError, ValueError) as exc:
                log.warning("backup_manifest_unreadable", path=str(manifest), error=str(exc))
        backups.sort(key=lambda b: b.created_at)
        return backups

    def get_backup(self, name: str) -> BackupSet:
        for backup_set in self.list_backups():
            if backup_set.name == name:
                return backup_set
        raise BackupNotFound(name)

    def latest(self) -> BackupSet | None:
        backups = self.list_backups()
        return backups[-1] if backups else None

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def prune_old(self, retain: int = DEFAULT_RETENTION) -> list[str]:
        """Delete all but the ``retain`` most recent backup sets.

        Sets that are being restored are kept regardless of age. Returns
        the names that were deleted.
        """
        if retain < 0:
            raise ValueError("retain must be >= 0")

        newest_first = sorted(self.list_backups(), key=lambda b: b.created_at, reverse=True)
        pruned: list[str] = []
        errors: list[str] = []
        for backup_set in newest_first[retain:]:
            if backup_set.name in self._restoring:
                log.info("backup_prune_skipped_restoring", backup=backup_set.name)
                continue
            try:
                shutil.rmtree(self._backup_dir / backup_set.name)
                pruned.append(backup_set.name)
            except OSError as exc:
                errors.append(f"{backup_set.name}: {exc}")

        if pruned:
            log.info("backups_pruned", pruned=pruned, retained=retain)
        if errors:
            raise PruneWarning(errors, pruned)
        return pruned

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore(
        self, backup_set: BackupSet, volume_names: Iterable[str] | None = None
    ) -> None:
        """Replace volume contents with the archived snapshot.

        The caller must have stopped every service using the volumes. A
        failure can leave a volume partially overwritten; it is reported,
        never retried.
        """
        volumes = list(volume_names) if volume_names is not None else backup_set.volumes
        self._restoring.add(backup_set.name)
        try:
            for volume in volumes:
                archive = backup_set.artifacts.get(volume)
                if archive is None:
                    raise RestoreFailure(volume, f"not part of backup {backup_set.name}")
                if not archive.is_file():
                    raise RestoreFailure(volume, f"archive {archive} is missing")
                try:
                    await asyncio.to_thread(_verify_archive, archive)
                except (tarfile.TarError, OSError, EOFError) as exc:
                    raise RestoreFailure(volume, f"archive {archive} is corrupt: {exc}") from exc

            log.warning("restore_started", backup=backup_set.name, volumes=volumes)
            for volume in volumes:
                await self._extract_volume(volume, backup_set.artifacts[volume])
            log.info("restore_completed", backup=backup_set.name, volumes=volumes)
        finally:
            self._restoring.discard(backup_set.name)

    async def _extract_volume(self, volume: str, archive: Path) -> None:
        docker_volume = self.docker_volume(volume)
        source = shlex.quote(f"/backup/{archive.name}")
        script = f"find /data -mindepth 1 -delete && tar xzf {source} -C /data"
        result = await self._runner.run(
            [
                "docker",
                "run",
                "--rm",
                "-v",
                f"{docker_volume}:/data",
                "-v",
                f"{archive.parent}:/backup:ro",
                self._helper_image,
                "sh",
                "-c",
                script,
            ],
            timeout=self._timeout,
        )
        if not result.ok:
            log.critical(
                "restore_volume_failed",
                volume=volume,
                reason=result.describe_failure(),
                hint="volume may be partially overwritten; manual intervention required",
            )
            raise RestoreFailure(volume, result.describe_failure())
