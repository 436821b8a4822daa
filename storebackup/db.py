"""
Store coordinator: owns SQLAlchemy engines for attached SQLite stores.

The coordinator exposes the four engine primitives backup and restore are
built on: open a store, attach a store read-only, migrate a store to a new
file, and replace the content of a store file with another file's content.
Copies always go through SQLite's online-backup API so the engine handles
its own locks and journals.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import stat
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.pool import NullPool, QueuePool, StaticPool

from .errors import Busy, InvalidSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreOptions:
    read_only: bool = False
    journal_mode: str = "WAL"
    pragmas: dict[str, str] = field(default_factory=dict)
    manual_vacuum: bool = False

    def merged(self, **overrides) -> StoreOptions:
        return replace(self, **overrides)


@dataclass
class StoreHandle:
    path: Path | None
    options: StoreOptions
    engine: Engine
    identity: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def lock_key(self) -> str:
        return str(self.path.resolve()) if self.path is not None else self.identity


def read_only_uri(path: Path) -> str:
    # as_uri() percent-encodes "#", "?" and "%" so SQLite sees the whole path
    return f"{Path(path).resolve().as_uri()}?mode=ro"


def sqlite_url(path: Path | None) -> URL:
    if path is None:
        return URL.create("sqlite+pysqlite")
    return URL.create("sqlite+pysqlite", database=str(path))


def get_engine(
    path: Path | None,
    options: StoreOptions | None = None,
    echo: bool = False,
    poolclass=None,
) -> Engine:
    options = options or StoreOptions()

    if path is None:
        # One shared connection, otherwise every session gets its own empty db
        engine = create_engine(
            sqlite_url(None),
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    elif options.read_only:
        # Connect with the encoded URI ourselves so the file name is never
        # reparsed as URI syntax
        uri = read_only_uri(path)
        engine = create_engine(
            sqlite_url(path),
            echo=echo,
            poolclass=poolclass or QueuePool,
            creator=lambda: sqlite3.connect(uri, uri=True, check_same_thread=False),
        )
    else:
        kwargs = {"poolclass": poolclass} if poolclass is not None else {}
        engine = create_engine(
            sqlite_url(path),
            echo=echo,
            connect_args={"check_same_thread": False},
            **kwargs,
        )

    @event.listens_for(engine, "connect")
    def _apply_pragmas(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        try:
            if not options.read_only:
                cursor.execute(f"PRAGMA journal_mode={options.journal_mode}")
            for name, value in options.pragmas.items():
                cursor.execute(f"PRAGMA {name}={value}")
        finally:
            cursor.close()

    return engine


def check_connection(engine: Engine) -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def _online_copy(source: Engine, dest_path: Path) -> None:
    dest = sqlite3.connect(str(dest_path))
    try:
        raw = source.raw_connection()
        try:
            raw.driver_connection.backup(dest)
        finally:
            raw.close()
    finally:
        dest.close()


def _set_journal_mode(dest_path: Path, journal_mode: str, vacuum: bool = False) -> None:
    # A fresh connection reads the journal mode the copy wrote into the header
    dest = sqlite3.connect(str(dest_path))
    try:
        dest.execute(f"PRAGMA journal_mode={journal_mode}")
        if vacuum:
            dest.execute("VACUUM")
    finally:
        dest.close()


def journal_mode_of(path: Path) -> str:
    conn = sqlite3.connect(str(path))
    try:
        return conn.execute("PRAGMA journal_mode").fetchone()[0]
    finally:
        conn.close()


_locks: dict[str, threading.Lock] = {}
_locks_guard = threading.Lock()


@contextmanager
def store_lock(key: str) -> Iterator[None]:
    """Hold the exclusive backup/restore lock for one store; never waits."""
    with _locks_guard:
        lock = _locks.setdefault(key, threading.Lock())
    if not lock.acquire(blocking=False):
        raise Busy(f"A backup or restore is already running for {key}", store=key)
    try:
        yield
    finally:
        lock.release()


class StoreCoordinator:
    """Ordered set of attached stores."""

    def __init__(self) -> None:
        self.stores: list[StoreHandle] = []

    def store_at(self, index: int) -> StoreHandle:
        if not 0 <= index < len(self.stores):
            raise InvalidSource(
                f"Index {index} doesn't exist in attached stores ({len(self.stores)} attached)",
                index=index,
            )
        return self.stores[index]

    def index_of(self, handle: StoreHandle) -> int:
        for i, h in enumerate(self.stores):
            if h.identity == handle.identity:
                return i
        raise InvalidSource(f"Store {handle.identity} is not attached", identity=handle.identity)

    def add_store(
        self,
        path: Path | None,
        options: StoreOptions | None = None,
        index: int | None = None,
    ) -> StoreHandle:
        options = options or StoreOptions()
        if path is not None:
            path = Path(path)
            if not options.read_only:
                path.parent.mkdir(parents=True, exist_ok=True)

        handle = StoreHandle(path=path, options=options, engine=get_engine(path, options))
        if index is None:
            self.stores.append(handle)
        else:
            self.stores.insert(index, handle)
        logger.debug("Attached store %s at %s (read_only=%s)", handle.identity, path, options.read_only)
        return handle

    def attach_read_only(self, path: Path, options: StoreOptions | None = None) -> StoreHandle:
        options = (options or StoreOptions()).merged(read_only=True)
        return self.add_store(path, options)

    def remove_store(self, handle: StoreHandle) -> None:
        self.stores.pop(self.index_of(handle))
        handle.engine.dispose()
        logger.debug("Detached store %s", handle.identity)

    def dispose(self) -> None:
        for handle in list(self.stores):
            self.remove_store(handle)

    def migrate(self, handle: StoreHandle, dest_path: Path, options: StoreOptions) -> None:
        """Physically copy an attached store to a new file.

        The destination gets `options.journal_mode` (use DELETE for a single
        self-contained file) and is vacuumed when `options.manual_vacuum` is
        set. The source handle is detached afterwards.
        """
        dest_path = Path(dest_path)
        _online_copy(handle.engine, dest_path)
        _set_journal_mode(dest_path, options.journal_mode, vacuum=options.manual_vacuum)

        if options.read_only:
            os.chmod(dest_path, stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)

        self.remove_store(handle)
        logger.info("Migrated store %s to %s", handle.path, dest_path)

    def replace_store(self, dest_path: Path, source_path: Path) -> None:
        """Overwrite the store at `dest_path` with the content of `source_path`.

        Any handle attached at `dest_path` is detached first; callers attach a
        fresh one afterwards.
        """
        dest_path = Path(dest_path)
        for handle in list(self.stores):
            if handle.path is not None and handle.path.resolve() == dest_path.resolve():
                self.remove_store(handle)

        journal_mode = journal_mode_of(dest_path)
        # Checkpoint and drop -wal/-shm before the copy, restore the mode after
        _set_journal_mode(dest_path, "DELETE")
        source = get_engine(Path(source_path), StoreOptions(read_only=True), poolclass=NullPool)
        try:
            _online_copy(source, dest_path)
        finally:
            source.dispose()
        _set_journal_mode(dest_path, journal_mode)
        logger.info("Replaced store %s with %s", dest_path, source_path)
