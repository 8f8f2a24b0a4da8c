"""
Retention policies for backup archives.

Local archives are pruned by age. Remote archives are pruned by count, one
artifact per run: when more than ``keep`` matching artifacts exist only the
oldest is removed, so a backlog shrinks over several runs.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional


logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".zip"


@dataclass(frozen=True)
class BackupArtifact:
    name: str
    created_at: datetime
    size: int = 0
    path: Optional[Path] = None
    remote_id: Optional[str] = None


def list_local_artifacts(backup_dir: Path, prefix: str) -> List[BackupArtifact]:
    if not backup_dir.exists():
        return []

    artifacts: List[BackupArtifact] = []
    for candidate in backup_dir.iterdir():
        if not candidate.is_file():
            continue
        if not candidate.name.startswith(prefix) or candidate.suffix != ARCHIVE_SUFFIX:
            logger.debug("Skipping non-archive file %s", candidate.name)
            continue
        stat = candidate.stat()
        artifacts.append(
            BackupArtifact(
                name=candidate.name,
                created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                size=stat.st_size,
                path=candidate,
            )
        )
    artifacts.sort(key=lambda artifact: artifact.created_at)
    return artifacts


def select_expired(
    artifacts: Iterable[BackupArtifact],
    *,
    now: datetime,
    max_age: timedelta,
    protected: Iterable[str] = (),
) -> List[BackupArtifact]:
    protected_names = set(protected)
    return [
        artifact
        for artifact in artifacts
        if artifact.name not in protected_names and now - artifact.created_at >= max_age
    ]


def select_excess(
    artifacts: Iterable[BackupArtifact],
    *,
    keep: int,
    name_contains: str,
    protected: Iterable[str] = (),
) -> Optional[BackupArtifact]:
    if keep < 0:
        raise ValueError("keep must not be negative.")

    matching = [artifact for artifact in artifacts if name_contains in artifact.name]
    if len(matching) <= keep:
        return None

    protected_names = set(protected)
    for artifact in sorted(matching, key=lambda item: item.created_at):
        if artifact.name not in protected_names:
            return artifact
    return None


def prune_local(
    artifacts: Iterable[BackupArtifact],
    *,
    now: datetime,
    max_age: timedelta,
    delete: Callable[[BackupArtifact], None],
    protected: Iterable[str] = (),
) -> List[BackupArtifact]:
    expired = select_expired(artifacts, now=now, max_age=max_age, protected=protected)
    deleted: List[BackupArtifact] = []
    for artifact in expired:
        logger.info(
            "Deleting old backup %s (created %s)",
            artifact.name,
            artifact.created_at.isoformat(),
        )
        try:
            delete(artifact)
        except OSError as error:
            logger.error("Failed to delete old backup %s: %s", artifact.name, error)
            continue
        deleted.append(artifact)
    return deleted


def prune_remote(
    artifacts: Iterable[BackupArtifact],
    *,
    keep: int,
    name_contains: str,
    delete: Callable[[BackupArtifact], None],
    protected: Iterable[str] = (),
) -> Optional[BackupArtifact]:
    oldest = select_excess(
        artifacts, keep=keep, name_contains=name_contains, protected=protected
    )
    if oldest is None:
        logger.debug("Remote storage holds at most %d backups, nothing to prune.", keep)
        return None

    logger.info("Deleting old remote backup %s", oldest.name)
    delete(oldest)
    return oldest


def delete_local_artifact(artifact: BackupArtifact) -> None:
    if artifact.path is None:
        raise ValueError(f"Artifact {artifact.name} has no local path.")
    artifact.path.unlink(missing_ok=True)
