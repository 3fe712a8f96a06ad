import json
from typing import Any, Dict, List, Optional, Sequence

from ...db import Database
from ...schemas.sync import MutationQueueItem
from ...services.time_rules import now_iso


class EntitySyncAdapter:
    """
    Per-entity sync strategy.

    Subclasses set the endpoint/table attributes and override the transforms.
    Registered explicitly with SyncEngine.register().
    """

    name: str = ""
    table_name: str = ""
    api_endpoint: str = ""
    api_mutation_endpoint: Optional[str] = None
    cursor_field: str = "updatedAt"
    primary_keys: Sequence[str] = ("id",)
    scope_field: str = "technicianId"
    batch_size: int = 100
    conflict_resolution: str = "last_write_wins"
    # Lower pushes first; parents before children
    push_priority: int = 100

    # Fields sent on push. Empty means "everything except server_owned_fields".
    mutable_fields: Sequence[str] = ()
    # Never sent to the server
    server_owned_fields: Sequence[str] = ("technicianId", "isActive", "syncedAt", "deletedAt")
    # Soft-deleted locally instead of removed when a pending delete is replayed
    soft_delete: bool = False

    @property
    def can_push(self) -> bool:
        return bool(self.api_mutation_endpoint)

    @property
    def has_custom_save(self) -> bool:
        return type(self).custom_save is not EntitySyncAdapter.custom_save

    def transform_from_server(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return dict(record)

    def transform_to_server(self, record: Dict[str, Any]) -> Dict[str, Any]:
        if self.mutable_fields:
            return {k: record[k] for k in self.mutable_fields if k in record}
        return {k: v for k, v in record.items() if k not in self.server_owned_fields}

    def get_scope_params(self, technician_id: Optional[str]) -> Dict[str, Any]:
        return {"scope": "all"}

    def pull_scopes(self, db: Database, technician_id: Optional[str]) -> List[Dict[str, Any]]:
        """One dict of extra query params per pull pass. Most entities pull once."""
        return [self.get_scope_params(technician_id)]

    def custom_save(self, db: Database, records: List[Dict[str, Any]], technician_id: Optional[str]) -> None:
        raise NotImplementedError

    def record_id(self, record: Dict[str, Any]) -> str:
        return str(record[self.primary_keys[0]])

    def replay_local(self, row: Dict[str, Any], mutation: MutationQueueItem) -> Optional[Dict[str, Any]]:
        """
        Apply a still-queued local mutation on top of a freshly pulled row.

        Returns:
            The row to store, or None when the record should be removed locally
        """
        if mutation.operation == "delete":
            if not self.soft_delete:
                return None
            return {**row, "isActive": 0, "deletedAt": row.get("deletedAt") or now_iso()}
        merged = dict(row)
        for key, value in (mutation.payload or {}).items():
            if key in self.primary_keys:
                continue
            merged[key] = value
        return merged

    def rekey_local(self, db: Database, local_id: str, server_id: str) -> None:
        """Move a locally created row to the id the server assigned to it."""
        key = self.primary_keys[0]
        row = db.find_one(self.table_name, {key: local_id})
        if row is None:
            return

        def _rekey(tx: Database) -> None:
            tx.remove_where(self.table_name, {key: local_id})
            tx.insert(self.table_name, {**row, key: server_id})

        db.transaction(_rekey)


def json_text(value: Any) -> Optional[str]:
    """Objects become JSON text; strings pass through unchanged."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"))


def parse_json_text(value: Any) -> Any:
    """JSON text becomes an object; invalid JSON is returned as-is."""
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def to_flag(value: Any, default: int = 1) -> int:
    if value is None:
        return default
    return 1 if value else 0
