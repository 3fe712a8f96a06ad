"""
Wipe the local store and rebuild it from the migrations

Anything still waiting in the outbox is lost, so the script refuses to run while
mutations are pending unless --force is given.

Usage:
    python scripts/reset_local_db.py [--force]
"""
import argparse
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from fieldsync.db import Database
from fieldsync.logging import setup_logging
from fieldsync.migrations import get_current_version
from fieldsync.sync.outbox import MutationOutbox


def main():
    parser = argparse.ArgumentParser(description="Reset the local FieldSync database")
    parser.add_argument("--force", action="store_true", help="Reset even with unsynced mutations")
    args = parser.parse_args()

    setup_logging()
    db = Database().init()
    try:
        pending = MutationOutbox(db).count_pending()
        if pending and not args.force:
            print(f"[ERROR] {pending} mutation(s) not yet pushed. Sync first or pass --force.")
            sys.exit(1)
        db.reset()
        print(f"Local store reset ({db.url}), schema version {get_current_version(db)}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
