from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

STAMP_FORMAT = "%Y%m%dT%H%M%S"


def utc_stamp(now: datetime | None = None) -> str:
    # ISO-8601 basic format, e.g. 20180221T200731
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime(STAMP_FORMAT)


def parse_utc_stamp(stamp: str) -> datetime:
    return datetime.strptime(stamp, STAMP_FORMAT).replace(tzinfo=timezone.utc)


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def side_files(db_path: Path) -> list[Path]:
    """Journal files SQLite may keep next to a database."""
    return [
        db_path.with_name(db_path.name + suffix)
        for suffix in ("-wal", "-shm", "-journal")
        if db_path.with_name(db_path.name + suffix).exists()
    ]
