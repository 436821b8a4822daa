from pathlib import Path

from storebackup.cli import main


def _env(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("STOREBACKUP_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("STOREBACKUP_BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.setenv("STOREBACKUP_STORE_NAME", "shop")


def test_cli_backup_restore_smoke(tmp_path: Path, monkeypatch, capsys):
    _env(tmp_path, monkeypatch)

    assert main(["init-db"]) == 0
    assert (tmp_path / "data" / "shop.sqlite").exists()

    assert main(["add-item", "--name", "A"]) == 0
    assert main(["add-item", "--name", "B"]) == 0
    assert main(["backup"]) == 0
    assert main(["add-item", "--name", "C"]) == 0

    capsys.readouterr()
    assert main(["restore"]) == 0
    assert main(["list-items"]) == 0

    out = capsys.readouterr().out
    assert ",A," in out and ",B," in out and ",C," not in out
    assert "rows_returned: 2" in out

    assert main(["list-backups"]) == 0
    out = capsys.readouterr().out
    assert out.startswith("* shop-")
    assert (tmp_path / "data" / "preferences.json").exists()


def test_cli_restore_without_backup_fails(tmp_path: Path, monkeypatch, capsys):
    _env(tmp_path, monkeypatch)

    assert main(["restore"]) == 1
    assert "INVALID_SOURCE" in capsys.readouterr().out


def test_cli_info(tmp_path: Path, monkeypatch, capsys):
    _env(tmp_path, monkeypatch)

    assert main(["info"]) == 0
    out = capsys.readouterr().out
    assert f"STORE_PATH: {tmp_path / 'data' / 'shop.sqlite'}" in out
    assert "LATEST_BACKUP: None" in out
