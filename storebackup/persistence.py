"""
Application persistence container.

Opens the live store at startup and hands out ORM sessions for it. The view
session is the one the presentation layer reads from; background sessions
write, and every background commit expires the view session so it reloads
committed rows on next access.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from . import config
from .db import StoreCoordinator, StoreHandle, StoreOptions, check_connection
from .schema import init_db

logger = logging.getLogger(__name__)


class PersistenceController:
    def __init__(self, coordinator: StoreCoordinator, store_index: int = 0) -> None:
        self.coordinator = coordinator
        self.store_index = store_index

        engine = self.live_store().engine
        self._view_factory = sessionmaker(bind=engine, autoflush=False)
        self._background_factory = sessionmaker(bind=engine, autoflush=False)
        event.listen(self._background_factory, "after_commit", self._merge_into_view)

        self.view_session: Session = self._view_factory()

    @classmethod
    def open(
        cls,
        store_name: str | None = None,
        in_memory: bool = False,
        data_dir: Path | None = None,
        options: StoreOptions | None = None,
    ) -> PersistenceController:
        """Open (creating if absent) the live store.

        An in-memory store lives only as long as the process and is never
        backed up. An engine error here is unrecoverable: the application
        cannot run without its store, so the process exits.
        """
        path = None if in_memory else config.store_path(store_name, data_dir)
        coordinator = StoreCoordinator()
        try:
            handle = coordinator.add_store(path, options)
            init_db(handle.engine)
            check_connection(handle.engine)
        except (SQLAlchemyError, OSError) as e:
            logger.critical("Unresolved error opening store %s: %s", path, e, exc_info=True)
            raise SystemExit(f"Unresolved error opening store {path}: {e}") from e

        logger.info("Opened store %s", path or ":memory:")
        return cls(coordinator, store_index=0)

    def live_store(self) -> StoreHandle:
        return self.coordinator.store_at(self.store_index)

    def _merge_into_view(self, session: Session) -> None:
        self.view_session.expire_all()

    @contextmanager
    def background_session(self) -> Iterator[Session]:
        session = self._background_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def detach_sessions(self) -> None:
        """Release every connection the view session holds."""
        self.view_session.close()

    def reload(self) -> None:
        """Rebind sessions to the current live store and start a fresh view session.

        Objects loaded through the previous view session must not be used
        afterwards.
        """
        self.view_session.close()
        engine = self.live_store().engine
        self._view_factory.configure(bind=engine)
        self._background_factory.configure(bind=engine)
        self.view_session = self._view_factory()

    def close(self) -> None:
        self.view_session.close()
        self.coordinator.dispose()
