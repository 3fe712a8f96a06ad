"""
Versioned schema for the local store.

Each migration is applied once, in ascending version order, inside its own
transaction; its version is recorded in db_version after the statements succeed.
Never edit a released migration: append a new version instead.
"""
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Sequence

import structlog
from sqlalchemy.exc import DBAPIError

from .errors import SchemaIntegrityError

if TYPE_CHECKING:
    from .db import Database


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    statements: Sequence[str]


MIGRATIONS: List[Migration] = [
    Migration(
        version=1,
        description="core entities, sync metadata and mutation queue",
        statements=[
            """
            CREATE TABLE IF NOT EXISTS clients (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT,
                phone TEXT,
                address TEXT,
                notes TEXT,
                isActive INTEGER DEFAULT 1,
                createdAt TEXT,
                updatedAt TEXT,
                syncedAt TEXT,
                technicianId TEXT
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_clients_technician ON clients(technicianId)",
            "CREATE INDEX IF NOT EXISTS idx_clients_name ON clients(name)",
            """
            CREATE TABLE IF NOT EXISTS quotes (
                id TEXT PRIMARY KEY,
                clientId TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'DRAFT',
                discountValue REAL DEFAULT 0,
                totalValue REAL DEFAULT 0,
                notes TEXT,
                createdAt TEXT,
                updatedAt TEXT,
                syncedAt TEXT,
                technicianId TEXT
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_quotes_client ON quotes(clientId)",
            "CREATE INDEX IF NOT EXISTS idx_quotes_status ON quotes(status)",
            """
            CREATE TABLE IF NOT EXISTS quote_items (
                id TEXT PRIMARY KEY,
                quoteId TEXT NOT NULL,
                itemId TEXT,
                type TEXT,
                name TEXT NOT NULL,
                unit TEXT,
                quantity REAL DEFAULT 1,
                unitPrice REAL DEFAULT 0,
                discountValue REAL DEFAULT 0,
                totalPrice REAL DEFAULT 0,
                sortOrder INTEGER DEFAULT 0,
                createdAt TEXT,
                updatedAt TEXT
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_quote_items_quote ON quote_items(quoteId)",
            """
            CREATE TABLE IF NOT EXISTS work_orders (
                id TEXT PRIMARY KEY,
                clientId TEXT NOT NULL,
                quoteId TEXT,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'SCHEDULED',
                scheduledDate TEXT,
                scheduledStartTime TEXT,
                scheduledEndTime TEXT,
                executionStart TEXT,
                executionEnd TEXT,
                address TEXT,
                notes TEXT,
                totalValue REAL,
                isActive INTEGER DEFAULT 1,
                createdAt TEXT,
                updatedAt TEXT,
                syncedAt TEXT,
                technicianId TEXT
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_work_orders_technician ON work_orders(technicianId)",
            "CREATE INDEX IF NOT EXISTS idx_work_orders_status ON work_orders(status)",
            "CREATE INDEX IF NOT EXISTS idx_work_orders_scheduled ON work_orders(scheduledDate)",
            "CREATE INDEX IF NOT EXISTS idx_work_orders_client ON work_orders(clientId)",
            """
            CREATE TABLE IF NOT EXISTS sync_meta (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entity TEXT NOT NULL UNIQUE,
                lastSyncAt TEXT NOT NULL DEFAULT '1970-01-01T00:00:00.000Z',
                lastCursor TEXT,
                syncStatus TEXT NOT NULL DEFAULT 'idle',
                errorMessage TEXT
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS mutations_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entity TEXT NOT NULL,
                entityId TEXT NOT NULL,
                operation TEXT NOT NULL,
                payload TEXT NOT NULL,
                createdAt TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                lastAttempt TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                errorMessage TEXT
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_mutations_status ON mutations_queue(status)",
            "CREATE INDEX IF NOT EXISTS idx_mutations_entity ON mutations_queue(entity)",
            "CREATE INDEX IF NOT EXISTS idx_mutations_created ON mutations_queue(createdAt)",
        ],
    ),
    Migration(
        version=2,
        description="checklist templates, instances, answers and attachments",
        statements=[
            """
            CREATE TABLE IF NOT EXISTS checklist_templates (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                version INTEGER DEFAULT 1,
                isActive INTEGER DEFAULT 1,
                sections TEXT,
                questions TEXT,
                createdAt TEXT,
                updatedAt TEXT,
                syncedAt TEXT,
                technicianId TEXT
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS checklist_instances (
                id TEXT PRIMARY KEY,
                workOrderId TEXT NOT NULL,
                templateId TEXT NOT NULL,
                templateVersionSnapshot TEXT,
                templateName TEXT,
                status TEXT NOT NULL DEFAULT 'PENDING',
                progress INTEGER DEFAULT 0,
                startedAt TEXT,
                completedAt TEXT,
                completedBy TEXT,
                localId TEXT,
                deletedAt TEXT,
                createdAt TEXT,
                updatedAt TEXT,
                syncedAt TEXT,
                technicianId TEXT
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_checklist_instances_work_order ON checklist_instances(workOrderId)",
            "CREATE INDEX IF NOT EXISTS idx_checklist_instances_status ON checklist_instances(status)",
            """
            CREATE TABLE IF NOT EXISTS checklist_answers (
                id TEXT PRIMARY KEY,
                instanceId TEXT NOT NULL,
                questionId TEXT NOT NULL,
                type TEXT NOT NULL,
                valueText TEXT,
                valueNumber REAL,
                valueBoolean INTEGER,
                valueDate TEXT,
                valueJson TEXT,
                answeredAt TEXT,
                answeredBy TEXT,
                deviceInfo TEXT,
                localId TEXT,
                deletedAt TEXT,
                syncStatus TEXT NOT NULL DEFAULT 'PENDING',
                syncedAt TEXT,
                createdAt TEXT,
                updatedAt TEXT
            )
            """,
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_checklist_answers_question ON checklist_answers(instanceId, questionId)",
            "CREATE INDEX IF NOT EXISTS idx_checklist_answers_sync ON checklist_answers(syncStatus)",
            "CREATE INDEX IF NOT EXISTS idx_checklist_answers_local ON checklist_answers(localId)",
            """
            CREATE TABLE IF NOT EXISTS checklist_attachments (
                id TEXT PRIMARY KEY,
                answerId TEXT,
                workOrderId TEXT,
                type TEXT NOT NULL,
                fileName TEXT,
                fileSize INTEGER DEFAULT 0,
                mimeType TEXT,
                localPath TEXT,
                remotePath TEXT,
                thumbnailPath TEXT,
                base64Data TEXT,
                syncStatus TEXT NOT NULL DEFAULT 'PENDING',
                uploadAttempts INTEGER NOT NULL DEFAULT 0,
                lastUploadError TEXT,
                localId TEXT,
                createdAt TEXT,
                updatedAt TEXT,
                syncedAt TEXT,
                technicianId TEXT
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_checklist_attachments_answer ON checklist_attachments(answerId)",
            "CREATE INDEX IF NOT EXISTS idx_checklist_attachments_work_order ON checklist_attachments(workOrderId)",
            "CREATE INDEX IF NOT EXISTS idx_checklist_attachments_sync ON checklist_attachments(syncStatus)",
        ],
    ),
    Migration(
        version=3,
        description="work order execution sessions",
        statements=[
            """
            CREATE TABLE IF NOT EXISTS work_order_execution_sessions (
                id TEXT PRIMARY KEY,
                workOrderId TEXT NOT NULL,
                sessionType TEXT NOT NULL,
                startedAt TEXT NOT NULL,
                endedAt TEXT,
                duration INTEGER,
                pauseReason TEXT,
                notes TEXT,
                createdAt TEXT,
                updatedAt TEXT,
                technicianId TEXT,
                syncedAt TEXT,
                serverId TEXT
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_execution_sessions_work_order ON work_order_execution_sessions(workOrderId)",
            "CREATE INDEX IF NOT EXISTS idx_execution_sessions_open ON work_order_execution_sessions(workOrderId, endedAt)",
        ],
    ),
    Migration(
        version=4,
        description="work order soft delete and denormalized client fields",
        statements=[
            "ALTER TABLE work_orders ADD COLUMN deletedAt TEXT",
            "ALTER TABLE work_orders ADD COLUMN clientName TEXT",
            "ALTER TABLE work_orders ADD COLUMN clientPhone TEXT",
            "ALTER TABLE work_orders ADD COLUMN clientAddress TEXT",
        ],
    ),
    Migration(
        version=5,
        description="per-record outbox lookup",
        statements=[
            "CREATE INDEX IF NOT EXISTS idx_mutations_entity_record ON mutations_queue(entity, entityId, status)",
        ],
    ),
]

CURRENT_DB_VERSION = MIGRATIONS[-1].version

# Columns that every later migration relies on; a missing one means the file is not ours.
INTEGRITY_CHECKS = [
    "SELECT id, name, technicianId, updatedAt FROM clients LIMIT 1",
    "SELECT id, clientId, status, isActive, deletedAt, technicianId, updatedAt FROM work_orders LIMIT 1",
]


def get_current_version(db: "Database") -> int:
    db.raw_exec("CREATE TABLE IF NOT EXISTS db_version (version INTEGER PRIMARY KEY)")
    rows = db.raw_query("SELECT MAX(version) AS version FROM db_version")
    version = rows[0]["version"] if rows else None
    return int(version or 0)


def run_migrations(db: "Database", migrations: Sequence[Migration] = MIGRATIONS) -> List[int]:
    """
    Apply every migration newer than the stored version.

    Args:
        db: Open database
        migrations: Migration list (ascending versions)

    Returns:
        Versions applied in this call
    """
    current = get_current_version(db)
    applied: List[int] = []

    for migration in sorted(migrations, key=lambda m: m.version):
        if migration.version <= current:
            continue
        logger.info("migration_apply", version=migration.version, description=migration.description)

        def _apply(tx: "Database", migration: Migration = migration) -> None:
            for statement in migration.statements:
                tx.raw_exec(statement)
            tx.raw_exec("INSERT INTO db_version (version) VALUES (:version)", {"version": migration.version})

        try:
            db.transaction(_apply)
        except DBAPIError as e:
            raise SchemaIntegrityError(f"migration {migration.version} failed: {e.orig}") from e
        applied.append(migration.version)

    if not applied:
        logger.debug("migrations_current", version=current)
    check_integrity(db)
    return applied


def check_integrity(db: "Database") -> None:
    for query in INTEGRITY_CHECKS:
        try:
            db.raw_query(query)
        except DBAPIError as e:
            raise SchemaIntegrityError(str(e.orig)) from e
