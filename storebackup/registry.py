"""
Backup bookkeeping: which artifact is the current backup, and which are known.

BackupRegistry is an immutable value; `record()` returns a new registry.
Persistence goes through a PreferenceStore with just load/save.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

LAST_BACKUP_KEY = "backup_name"
KNOWN_BACKUPS_KEY = "backups"


@dataclass(frozen=True)
class BackupRegistry:
    """Attributes:
    latest: Filename in the single "most recent backup" slot (last write wins)
    known: Filenames for display, oldest first, without duplicates
    """

    latest: str | None = None
    known: tuple[str, ...] = ()

    def record(self, filename: str) -> BackupRegistry:
        known = tuple(n for n in self.known if n != filename) + (filename,)
        return BackupRegistry(latest=filename, known=known)

    def to_dict(self) -> dict:
        return {LAST_BACKUP_KEY: self.latest, KNOWN_BACKUPS_KEY: list(self.known)}

    @classmethod
    def from_dict(cls, data: dict) -> BackupRegistry:
        latest = data.get(LAST_BACKUP_KEY)
        known = data.get(KNOWN_BACKUPS_KEY) or []
        return cls(
            latest=latest if isinstance(latest, str) else None,
            known=tuple(n for n in known if isinstance(n, str)),
        )


class PreferenceStore(Protocol):
    def load(self) -> BackupRegistry: ...

    def save(self, registry: BackupRegistry) -> None: ...


class MemoryPreferenceStore:
    def __init__(self, registry: BackupRegistry | None = None) -> None:
        self.registry = registry or BackupRegistry()

    def load(self) -> BackupRegistry:
        return self.registry

    def save(self, registry: BackupRegistry) -> None:
        self.registry = registry


class JsonPreferenceStore:
    """Key-value preferences in a JSON file.

    Keys other than the registry's are preserved on save.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Preferences file {self.path} does not hold an object")
        return data

    def load(self) -> BackupRegistry:
        return BackupRegistry.from_dict(self._read())

    def save(self, registry: BackupRegistry) -> None:
        data = self._read()
        data.update(registry.to_dict())

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.debug("Saved backup registry to %s (latest=%s)", self.path, registry.latest)
