"""
Restore the live store from the latest registered backup.

    IDLE -> VALIDATING -> DETACHING -> REPLACING -> REATTACHING -> DONE
                 |                         |             |
                 +-------> FAILED <--------+-------------+

The live file is overwritten through the engine (online-backup API), not a
raw file copy. After a successful restore the generation token changes; the
presentation layer rebuilds everything it derived from the store.

**Be careful with this.** Every ORM object loaded before the restore is
invalid once DETACHING starts. Callers must stop using previously fetched
objects and sessions; this module cannot detect such use.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from enum import Enum
from pathlib import Path
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from .db import StoreHandle, check_connection, store_lock
from .errors import CopyStoreError, InvalidDestination, InvalidSource
from .persistence import PersistenceController
from .registry import BackupRegistry
from .snapshot import backup_path

logger = logging.getLogger(__name__)

RESTART_HINT = "restart the application before using the store again"


class RestoreState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    DETACHING = "detaching"
    REPLACING = "replacing"
    REATTACHING = "reattaching"
    DONE = "done"
    FAILED = "failed"


class RestoreSignals:
    """What the presentation layer observes.

    `generation` changes after every successful restore; `restoring` is True
    while a restore runs.
    """

    def __init__(self) -> None:
        self.generation = uuid.uuid4().hex
        self.restoring = False
        self._subscribers: list[Callable[[str], None]] = []

    def subscribe(self, callback: Callable[[str], None]) -> None:
        self._subscribers.append(callback)

    def bump(self) -> str:
        self.generation = uuid.uuid4().hex
        for callback in list(self._subscribers):
            callback(self.generation)
        return self.generation


class RestoreOrchestrator:
    def __init__(
        self,
        controller: PersistenceController,
        signals: RestoreSignals | None = None,
        backup_dir: Path | None = None,
    ) -> None:
        self.controller = controller
        self.signals = signals or RestoreSignals()
        self.backup_dir = backup_dir
        self.state = RestoreState.IDLE

    def _validate(self, registry: BackupRegistry, store_index: int) -> tuple[Path, StoreHandle]:
        if not registry.latest:
            raise InvalidSource("Could not get backup name")

        source = backup_path(registry.latest, self.backup_dir)
        if not source.is_file():
            raise InvalidSource(f"Backup {source} does not exist", path=str(source))

        live = self.controller.coordinator.store_at(store_index)
        if live.path is None:
            raise InvalidDestination("Live store has no file path", index=store_index)
        return source, live

    def restore(self, registry: BackupRegistry, store_index: int = 0) -> StoreHandle:
        """Replace the live store at `store_index` with the registry's latest backup.

        Returns the newly attached live handle.

        Raises:
            InvalidSource: no backup registered, or its file is gone
            InvalidDestination: the live store is not file backed
            Busy: another backup or restore of this store is running
            CopyStoreError: the engine failed; the live store may be partially
                replaced and the application must be restarted
        """
        self.state = RestoreState.VALIDATING
        try:
            source, live = self._validate(registry, store_index)
        except (InvalidSource, InvalidDestination):
            self.state = RestoreState.FAILED
            raise

        coordinator = self.controller.coordinator
        self.signals.restoring = True
        try:
            with store_lock(live.lock_key):
                self.state = RestoreState.DETACHING
                self.controller.detach_sessions()
                coordinator.remove_store(live)

                self.state = RestoreState.REPLACING
                try:
                    coordinator.replace_store(live.path, source)
                except (SQLAlchemyError, sqlite3.Error, OSError) as e:
                    logger.error("Error replacing store %s: %s", live.path, e)
                    raise CopyStoreError(
                        f"Could not replace persistent store: {e}; {RESTART_HINT}",
                        dest=str(live.path),
                        source=str(source),
                    ) from e

                self.state = RestoreState.REATTACHING
                try:
                    handle = coordinator.add_store(live.path, live.options, index=store_index)
                    check_connection(handle.engine)
                    self.controller.reload()
                except (SQLAlchemyError, sqlite3.Error, OSError) as e:
                    logger.error("Error reattaching store %s: %s", live.path, e)
                    raise CopyStoreError(
                        f"Could not reattach restored store: {e}; {RESTART_HINT}",
                        dest=str(live.path),
                    ) from e
        except Exception:
            self.state = RestoreState.FAILED
            raise
        finally:
            self.signals.restoring = False

        self.state = RestoreState.DONE
        self.signals.bump()
        logger.info("Restore complete: %s from %s", live.path, source)
        return handle


def restore_backup(
    controller: PersistenceController,
    registry: BackupRegistry,
    store_index: int = 0,
    signals: RestoreSignals | None = None,
    backup_dir: Path | None = None,
) -> StoreHandle:
    return RestoreOrchestrator(controller, signals, backup_dir).restore(registry, store_index)
