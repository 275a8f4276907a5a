import argparse
import os
import shutil
import sys
from pathlib import Path

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

TABLES = ["attachments", "documents", "local_preferences"]


def wipe_database(engine, keep_preferences: bool = False):
    existing = set(inspect(engine).get_table_names())
    targets = [t for t in TABLES if t in existing]
    if keep_preferences and "local_preferences" in targets:
        targets.remove("local_preferences")
    if not targets:
        print("No target tables found to clear.")
        return
    with engine.begin() as conn:
        for table in targets:
            conn.execute(text(f"DELETE FROM {table}"))
    print(f"Cleared tables: {', '.join(targets)}")


def wipe_storage(storage_path: Path):
    if not storage_path.exists():
        return
    for child in storage_path.iterdir():
        if child.is_file():
            child.unlink(missing_ok=True)
        elif child.is_dir():
            shutil.rmtree(child, ignore_errors=True)


def main():
    parser = argparse.ArgumentParser(description="Wipe MeshChat local replica and device data.")
    parser.add_argument("--yes", action="store_true", help="Confirm destructive wipe.")
    parser.add_argument(
        "--delete-storage",
        action="store_true",
        help="Also delete stored attachment blobs (UPLOAD_FOLDER).",
    )
    parser.add_argument(
        "--keep-preferences",
        action="store_true",
        help="Keep the current user id, archived rooms and private rooms.",
    )
    args = parser.parse_args()

    if not args.yes:
        print("Refusing to run without --yes")
        sys.exit(1)

    db_uri = os.environ.get("MESHCHAT_DATABASE_URI", "sqlite:///meshchat.db")
    try:
        engine = create_engine(db_uri)
        wipe_database(engine, keep_preferences=args.keep_preferences)
    except SQLAlchemyError as exc:
        print(f"Database wipe failed: {exc}")
        sys.exit(1)

    if args.delete_storage:
        storage_root = Path(os.environ.get("MESHCHAT_UPLOAD_FOLDER", "meshchat/storage"))
        wipe_storage(storage_root)
        print(f"Storage cleared: {storage_root}")

    print("Reset complete.")


if __name__ == "__main__":
    main()
