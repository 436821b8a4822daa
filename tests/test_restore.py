import sqlite3
from pathlib import Path

import pytest

from storebackup.db import journal_mode_of, read_only_uri, store_lock
from storebackup.errors import Busy, CopyStoreError, InvalidDestination, InvalidSource
from storebackup.persistence import PersistenceController
from storebackup.queries import add_item, item_names
from storebackup.registry import BackupRegistry
from storebackup.restore import RestoreOrchestrator, RestoreSignals, RestoreState, restore_backup
from storebackup.snapshot import backup_persistent_store


def _controller(tmp_path: Path, names=("A", "B")) -> PersistenceController:
    controller = PersistenceController.open("shop", data_dir=tmp_path / "data")
    with controller.background_session() as session:
        for name in names:
            add_item(session, name)
    return controller


def _live_bytes(controller: PersistenceController) -> bytes:
    return controller.live_store().path.read_bytes()


def test_restore_end_to_end(tmp_path: Path):
    controller = _controller(tmp_path)
    backups = tmp_path / "backups"
    _, registry = backup_persistent_store(controller.coordinator, 0, BackupRegistry(), backup_dir=backups)

    with controller.background_session() as session:
        add_item(session, "C")
    assert item_names(controller.view_session) == ["A", "B", "C"]

    signals = RestoreSignals()
    before = signals.generation
    orchestrator = RestoreOrchestrator(controller, signals, backup_dir=backups)
    handle = orchestrator.restore(registry)

    assert orchestrator.state is RestoreState.DONE
    assert signals.generation != before
    assert signals.restoring is False
    assert handle is controller.live_store()
    assert item_names(controller.view_session) == ["A", "B"]
    assert journal_mode_of(handle.path) == "wal"


def test_restored_store_accepts_writes(tmp_path: Path):
    controller = _controller(tmp_path)
    backups = tmp_path / "backups"
    _, registry = backup_persistent_store(controller.coordinator, 0, BackupRegistry(), backup_dir=backups)

    restore_backup(controller, registry, backup_dir=backups)
    with controller.background_session() as session:
        add_item(session, "D")

    assert item_names(controller.view_session) == ["A", "B", "D"]


def test_subscribers_get_new_generation(tmp_path: Path):
    controller = _controller(tmp_path)
    backups = tmp_path / "backups"
    _, registry = backup_persistent_store(controller.coordinator, 0, BackupRegistry(), backup_dir=backups)
    signals = RestoreSignals()
    seen: list[str] = []
    signals.subscribe(seen.append)

    restore_backup(controller, registry, signals=signals, backup_dir=backups)

    assert seen == [signals.generation]


def test_restore_without_backup_leaves_live_store_untouched(tmp_path: Path):
    controller = _controller(tmp_path)
    before = _live_bytes(controller)
    signals = RestoreSignals()
    generation = signals.generation
    orchestrator = RestoreOrchestrator(controller, signals, backup_dir=tmp_path / "backups")

    with pytest.raises(InvalidSource):
        orchestrator.restore(BackupRegistry())

    assert orchestrator.state is RestoreState.FAILED
    assert signals.generation == generation
    assert _live_bytes(controller) == before
    assert item_names(controller.view_session) == ["A", "B"]


def test_restore_with_deleted_backup_fails(tmp_path: Path):
    controller = _controller(tmp_path)
    backups = tmp_path / "backups"
    artifact, registry = backup_persistent_store(
        controller.coordinator, 0, BackupRegistry(), backup_dir=backups
    )
    artifact.path.unlink()

    with pytest.raises(InvalidSource):
        restore_backup(controller, registry, backup_dir=backups)

    assert item_names(controller.view_session) == ["A", "B"]


def test_restore_into_in_memory_store_fails(tmp_path: Path):
    controller = PersistenceController.open("scratch", in_memory=True)
    backups = tmp_path / "backups"
    backups.mkdir()
    (backups / "scratch-20240101T000000.sqlite").write_bytes(b"")
    registry = BackupRegistry(latest="scratch-20240101T000000.sqlite")

    with pytest.raises(InvalidDestination):
        restore_backup(controller, registry, backup_dir=backups)


def test_restore_refused_while_store_is_busy(tmp_path: Path):
    controller = _controller(tmp_path)
    backups = tmp_path / "backups"
    _, registry = backup_persistent_store(controller.coordinator, 0, BackupRegistry(), backup_dir=backups)
    with controller.background_session() as session:
        add_item(session, "C")
    signals = RestoreSignals()
    orchestrator = RestoreOrchestrator(controller, signals, backup_dir=backups)

    with store_lock(controller.live_store().lock_key):
        with pytest.raises(Busy):
            orchestrator.restore(registry)

    assert orchestrator.state is RestoreState.FAILED
    assert signals.restoring is False
    assert item_names(controller.view_session) == ["A", "B", "C"]


def test_corrupt_backup_raises_copy_error(tmp_path: Path):
    controller = _controller(tmp_path)
    backups = tmp_path / "backups"
    backups.mkdir()
    name = "shop-20240101T000000.sqlite"
    (backups / name).write_bytes(b"this is not a sqlite database" * 40)
    signals = RestoreSignals()
    generation = signals.generation
    orchestrator = RestoreOrchestrator(controller, signals, backup_dir=backups)

    with pytest.raises(CopyStoreError) as excinfo:
        orchestrator.restore(BackupRegistry(latest=name))

    assert "restart" in excinfo.value.message
    assert orchestrator.state is RestoreState.FAILED
    assert signals.restoring is False
    assert signals.generation == generation


def test_backup_file_is_not_modified_by_restore(tmp_path: Path):
    controller = _controller(tmp_path)
    backups = tmp_path / "backups"
    artifact, registry = backup_persistent_store(
        controller.coordinator, 0, BackupRegistry(), backup_dir=backups
    )
    before = artifact.path.read_bytes()

    restore_backup(controller, registry, backup_dir=backups)

    assert artifact.path.read_bytes() == before
    conn = sqlite3.connect(read_only_uri(artifact.path), uri=True)
    try:
        assert conn.execute("PRAGMA integrity_check").fetchone()[0] == "ok"
    finally:
        conn.close()


@pytest.mark.parametrize("dirname", ["my#backups", "my?backups", "my%41backups"])
def test_restore_from_uri_special_backup_directory(tmp_path: Path, dirname: str):
    controller = _controller(tmp_path)
    backups = tmp_path / dirname
    _, registry = backup_persistent_store(controller.coordinator, 0, BackupRegistry(), backup_dir=backups)
    with controller.background_session() as session:
        add_item(session, "C")

    restore_backup(controller, registry, backup_dir=backups)

    assert item_names(controller.view_session) == ["A", "B"]
    assert sorted(p.name for p in tmp_path.iterdir()) == sorted(["data", dirname])
