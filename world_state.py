"""
World change detection.

Computes a fingerprint of the files directly inside a world directory and
compares it against the fingerprint recorded by the previous backup run.
"""
from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import List, Optional


logger = logging.getLogger(__name__)

FINGERPRINT_RECORD_NAME = "last_hash.txt"
_CHUNK_SIZE = 1024 * 1024


def _tracked_files(directory: Path) -> List[Path]:
    files: List[Path] = []
    with os.scandir(directory) as entries:
        for entry in entries:
            if entry.is_symlink() or not entry.is_file(follow_symlinks=False):
                continue
            files.append(Path(entry.path))
    files.sort(key=lambda path: os.fsencode(path.name))
    return files


def compute_fingerprint(directory: Path) -> str:
    """Return the hex MD5 digest of the regular files directly in ``directory``.

    Files are hashed in byte-wise name order. Each file contributes its name
    and length as well as its content, so adding, removing or renaming a file
    changes the result even when the concatenated contents would not.

    Raises OSError when the directory is missing or a file cannot be read.
    """
    digest = hashlib.md5()
    for file_path in _tracked_files(directory):
        digest.update(os.fsencode(file_path.name))
        digest.update(b"\0")
        digest.update(str(file_path.stat().st_size).encode("ascii"))
        digest.update(b"\0")
        with file_path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
                digest.update(chunk)
    fingerprint = digest.hexdigest()
    logger.debug("Fingerprint of %s is %s", directory, fingerprint)
    return fingerprint


def read_fingerprint(record_path: Path) -> Optional[str]:
    if not record_path.exists():
        return None
    return record_path.read_text(encoding="utf-8").strip()


def should_backup(current: str, record_path: Path) -> bool:
    previous = read_fingerprint(record_path)
    if previous is None:
        logger.info("No previous fingerprint at %s; backup required.", record_path)
        return True
    if previous == current:
        logger.info("No changes detected in world, skipping backup.")
        return False
    logger.info("World changed since last backup (%s -> %s).", previous, current)
    return True


def commit_fingerprint(fingerprint: str, record_path: Path) -> None:
    """Atomically replace the stored fingerprint with ``fingerprint``."""
    record_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = record_path.with_name(f"{record_path.name}.tmp")
    temp_path.write_text(fingerprint, encoding="utf-8")
    os.replace(temp_path, record_path)
    logger.debug("Recorded fingerprint %s in %s", fingerprint, record_path)
