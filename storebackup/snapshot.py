"""
Hot backup of a live store.

The live store is never touched. A throwaway coordinator attaches the same
file read-only and migrates that attachment to a new single-file database
(journal mode DELETE, vacuumed). SQLite's WAL mode lets the read-only
attachment read a consistent snapshot while the live handle keeps writing.

Artifacts are named `<store-stem>-<YYYYMMDDTHHMMSS><suffix>` in UTC, e.g.
`app_store-20180221T200731.sqlite`. They sort by name and are unique to the
second.
"""

from __future__ import annotations

import logging
import os
import re
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from . import config
from .db import StoreCoordinator, StoreOptions, store_lock
from .errors import BackupCancelled, CopyStoreError, DestinationNotRemoved, InvalidSource
from .registry import BackupRegistry, PreferenceStore
from .utils import ensure_dir, parse_utc_stamp, side_files, utc_stamp

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".partial"

_FILENAME_RE = re.compile(r"^(?P<base>.+)-(?P<stamp>\d{8}T\d{6})(?P<ext>\.[^.]+)?$")

BACKUP_OPTIONS = StoreOptions(read_only=True, journal_mode="DELETE", manual_vacuum=True)


@dataclass(frozen=True)
class BackupArtifact:
    filename: str
    path: Path
    created_at: datetime

    @classmethod
    def from_path(cls, path: Path) -> BackupArtifact:
        path = Path(path)
        m = _FILENAME_RE.match(path.name)
        if m is None:
            raise InvalidSource(f"Not a backup filename: {path.name}", path=str(path))
        try:
            created_at = parse_utc_stamp(m.group("stamp"))
        except ValueError as e:
            raise InvalidSource(f"Bad timestamp in backup filename {path.name}", path=str(path)) from e
        return cls(filename=path.name, path=path.resolve(), created_at=created_at)


def make_backup_filename(source: Path | None, now: datetime | None = None) -> str:
    basename = source.stem if source is not None else "store-backup"
    suffix = (source.suffix if source is not None else "") or config.STORE_EXTENSION
    return f"{basename}-{utc_stamp(now)}{suffix}"


def backup_path(name: str, backup_dir: Path | None = None) -> Path:
    return (backup_dir or config.backup_dir()) / name


def list_backups(backup_dir: Path | None = None) -> list[BackupArtifact]:
    """Backup artifacts in `backup_dir`, newest first."""
    directory = backup_dir or config.backup_dir()
    if not directory.exists():
        return []

    artifacts = []
    for p in directory.iterdir():
        if not p.is_file():
            continue
        try:
            artifacts.append(BackupArtifact.from_path(p))
        except InvalidSource:
            logger.debug("Skipping %s: not a backup artifact", p)
    return sorted(artifacts, key=lambda a: (a.created_at, a.filename), reverse=True)


def backup_persistent_store(
    coordinator: StoreCoordinator,
    index: int,
    registry: BackupRegistry,
    *,
    backup_dir: Path | None = None,
    now: datetime | None = None,
    cancel: threading.Event | None = None,
    preferences: PreferenceStore | None = None,
) -> tuple[BackupArtifact, BackupRegistry]:
    """Copy the store attached at `index` into a new backup artifact.

    Returns the artifact and the registry with the artifact recorded as the
    latest backup. The registry is also saved to `preferences` when given.

    Raises:
        InvalidSource: `index` is out of range or the store has no file
        BackupCancelled: `cancel` was set before the copy started
        Busy: a backup or restore of the same store is running
        CopyStoreError: the engine failed to copy; the live store is untouched
    """
    source = coordinator.store_at(index)
    if source.path is None:
        raise InvalidSource("In-memory stores cannot be backed up", index=index)

    directory = backup_dir or config.backup_dir()
    filename = make_backup_filename(source.path, now)
    dest = directory / filename
    partial = dest.with_name(dest.name + PARTIAL_SUFFIX)

    with store_lock(source.lock_key):
        # Never the live coordinator: migrating detaches the migrated store
        backup_coordinator = StoreCoordinator()
        try:
            intermediate = backup_coordinator.attach_read_only(source.path, source.options)

            if cancel is not None and cancel.is_set():
                raise BackupCancelled("Backup cancelled before copy started", source=str(source.path))

            if partial.exists():
                try:
                    partial.unlink()
                except OSError as e:
                    raise DestinationNotRemoved(
                        f"Could not remove leftover {partial}: {e}", path=str(partial)
                    ) from e

            try:
                ensure_dir(directory)
                backup_coordinator.migrate(intermediate, partial, BACKUP_OPTIONS)
                os.replace(partial, dest)
            except (SQLAlchemyError, sqlite3.Error, OSError) as e:
                logger.error("Could not migrate intermediate store %s: %s", source.path, e)
                for leftover in [partial, *side_files(partial)]:
                    try:
                        if leftover.exists():
                            leftover.unlink()
                    except OSError as cleanup_error:
                        logger.warning("Could not remove %s: %s", leftover, cleanup_error)
                raise CopyStoreError(
                    f"Backup of {source.path} failed: {e}", source=str(source.path), dest=str(dest)
                ) from e
        finally:
            backup_coordinator.dispose()

    artifact = BackupArtifact.from_path(dest)
    registry = registry.record(artifact.filename)
    if preferences is not None:
        preferences.save(registry)

    logger.info("Created backup %s of %s", artifact.path, source.path)
    return artifact, registry
