"""
Run one sync pass against the backend from the command line

Pulls then pushes every registered entity (or just one), then uploads queued attachments.

Usage:
    python scripts/sync_now.py [--entity ENTITY] [--push-only] [--retries N] [--skip-attachments]
"""
import argparse
import os
import sys
import time
import uuid

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from fieldsync.config import settings
from fieldsync.db import Database
from fieldsync.logging import bind_sync_context, clear_sync_context, setup_logging
from fieldsync.repositories.checklist_answers import ChecklistAnswerRepository
from fieldsync.repositories.checklist_attachments import ChecklistAttachmentRepository
from fieldsync.services.attachment_uploads import AttachmentUploadService
from fieldsync.storage.local_provider import LocalAttachmentStore
from fieldsync.sync.adapters.registry import default_adapters
from fieldsync.sync.api_client import SyncApiClient
from fieldsync.sync.engine import SyncEngine
from fieldsync.sync.network import HttpNetworkProbe
from fieldsync.sync.outbox import MutationOutbox


def build_engine(db: Database) -> SyncEngine:
    outbox = MutationOutbox(db)
    engine = SyncEngine(db, outbox, SyncApiClient(), HttpNetworkProbe())
    for adapter in default_adapters():
        engine.register(adapter)
    engine.configure(settings.api_base_url or "", settings.api_token or "", settings.technician_id or "")
    return engine


def run_once(engine: SyncEngine, entity=None, push_only=False) -> bool:
    """Returns True when every entity synced without errors."""
    if push_only:
        summary = engine.push_only()
        print(f"Pushed: {summary.pushed}  Failed: {summary.failed}  Offline: {summary.offline}")
        return not summary.offline and summary.failed == 0

    results = [engine.sync_entity(entity)] if entity else engine.sync_all()
    if not results:
        print("[WARN]  Nothing synced (engine busy or not configured)")
        return False
    for r in results:
        flag = "OK" if r.success else ("OFFLINE" if r.offline else "ERROR")
        print(f"  [{flag:7}] {r.entity:22} pulled={r.pulled:<5} pushed={r.pushed:<5} failed={r.failed:<4} {r.duration_ms}ms")
        for err in r.errors:
            print(f"            {err.operation}: {err.message}")
    return all(r.success for r in results)


def main():
    parser = argparse.ArgumentParser(
        description="Sync the local store with the field-service backend",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Full pull + push of every entity
  python scripts/sync_now.py

  # Only send queued local changes
  python scripts/sync_now.py --push-only

  # One entity, retrying up to 3 times with backoff
  python scripts/sync_now.py --entity work_orders --retries 3
        """
    )
    parser.add_argument("--entity", help="Sync a single entity (e.g. work_orders, checklist_answers)")
    parser.add_argument("--push-only", action="store_true", help="Push queued mutations without pulling")
    parser.add_argument("--retries", type=int, default=0, help="Retry a failed pass this many times")
    parser.add_argument("--backoff", type=float, default=2.0, help="Initial retry delay in seconds (doubles)")
    parser.add_argument("--skip-attachments", action="store_true", help="Do not upload queued attachments")
    args = parser.parse_args()

    setup_logging()
    bind_sync_context(run_id=str(uuid.uuid4()), technician_id=settings.technician_id)

    db = Database().init()
    try:
        engine = build_engine(db)
        if not engine.is_configured():
            print("[ERROR] Set API_BASE_URL, API_TOKEN and TECHNICIAN_ID first")
            sys.exit(2)
        if args.entity:
            try:
                engine.get_adapter(args.entity)
            except KeyError:
                print(f"[ERROR] Unknown entity: {args.entity}")
                sys.exit(2)

        print("=" * 70)
        print(f"Sync against {settings.api_base_url}")
        print("=" * 70)

        ok = False
        delay = args.backoff
        for attempt in range(args.retries + 1):
            if attempt:
                print(f"\n[WARN]  Retry {attempt}/{args.retries} in {delay:.0f}s...")
                time.sleep(delay)
                delay *= 2
            ok = run_once(engine, args.entity, args.push_only)
            if ok:
                break

        if not args.skip_attachments:
            uploads = AttachmentUploadService(
                ChecklistAttachmentRepository(db),
                ChecklistAnswerRepository(db),
                engine.api,
                engine.network_probe,
                LocalAttachmentStore(),
            ).upload_pending()
            print(f"\nAttachments: uploaded={uploads.uploaded} failed={uploads.failed} "
                  f"waiting={uploads.skipped} offline={uploads.offline}")

        removed = engine.outbox.cleanup()
        if removed:
            print(f"Cleaned up {removed} completed mutation(s)")
    finally:
        clear_sync_context()
        db.close()

    print("\n" + "=" * 70)
    print("Sync complete" if ok else "Sync finished with errors")
    print("=" * 70)
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
