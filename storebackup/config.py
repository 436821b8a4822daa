import os
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]

STORE_EXTENSION = ".sqlite"
DEFAULT_STORE_NAME = "app_store"

# Environment is read on every call so tests can point everything at tmp_path


def data_dir() -> Path:
    env = os.getenv("STOREBACKUP_DATA_DIR")
    return Path(env) if env else (PROJECT_ROOT / "data")


def backup_dir() -> Path:
    env = os.getenv("STOREBACKUP_BACKUP_DIR")
    return Path(env) if env else (PROJECT_ROOT / "backups")


def prefs_path() -> Path:
    env = os.getenv("STOREBACKUP_PREFS_PATH")
    return Path(env) if env else (data_dir() / "preferences.json")


def store_name() -> str:
    return os.getenv("STOREBACKUP_STORE_NAME", DEFAULT_STORE_NAME)


def store_path(name: str | None = None, directory: Path | None = None) -> Path:
    return (directory or data_dir()) / f"{name or store_name()}{STORE_EXTENSION}"
