import argparse
import logging

from . import config
from .errors import BackupError
from .persistence import PersistenceController
from .queries import add_item, get_items
from .registry import JsonPreferenceStore
from .restore import RestoreOrchestrator
from .snapshot import backup_persistent_store, list_backups


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="storebackup", description="Hot backup and restore for the application store")
    p.add_argument("--verbose", "-v", action="store_true", help="Log debug output")
    p.add_argument("--store", default=None, help="Store name (default from STOREBACKUP_STORE_NAME)")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("info", help="Show store, backup and preference locations")
    sub.add_parser("init-db", help="Create the store and its tables")

    add = sub.add_parser("add-item", help="Insert a record into the store")
    add.add_argument("--name", required=True, help="Record name")

    ls = sub.add_parser("list-items", help="Print records in the store")
    ls.add_argument("--limit", type=int, default=None, help="Max rows to print")

    sub.add_parser("backup", help="Create a timestamped single-file backup of the live store")
    sub.add_parser("restore", help="Replace the live store with the latest backup")
    sub.add_parser("list-backups", help="List backup files, newest first")

    return p


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    prefs = JsonPreferenceStore(config.prefs_path())

    if args.command == "info":
        print(f"STORE_PATH: {config.store_path(args.store)}")
        print(f"BACKUP_DIR: {config.backup_dir()}")
        print(f"PREFS_PATH: {config.prefs_path()}")
        print(f"LATEST_BACKUP: {prefs.load().latest}")
        return 0

    if args.command == "list-backups":
        latest = prefs.load().latest
        for artifact in list_backups():
            marker = "*" if artifact.filename == latest else " "
            print(f"{marker} {artifact.filename}  {artifact.created_at.isoformat()}")
        return 0

    controller = PersistenceController.open(args.store)
    try:
        if args.command == "init-db":
            print(f"OK: store ready at {controller.live_store().path}")
            return 0

        if args.command == "add-item":
            with controller.background_session() as session:
                add_item(session, args.name)
            print(f"OK: added {args.name}")
            return 0

        if args.command == "list-items":
            rows = get_items(controller.view_session, limit=args.limit)
            print("id,name,created_at")
            for r in rows:
                print(f"{r.id},{r.name},{r.created_at}")
            print(f"rows_returned: {len(rows)}")
            return 0

        if args.command == "backup":
            artifact, _ = backup_persistent_store(
                controller.coordinator, 0, prefs.load(), preferences=prefs
            )
            print(f"OK: backup created at {artifact.path}")
            return 0

        if args.command == "restore":
            handle = RestoreOrchestrator(controller).restore(prefs.load())
            print(f"OK: restored {handle.path} from {prefs.load().latest}")
            return 0

    except BackupError as e:
        print(f"ERROR [{e.code}]: {e.message}")
        return 1
    finally:
        controller.close()

    return 1
