import uuid
from typing import Any, Dict, List, Optional

import structlog

from ..db import Database
from ..schemas.checklists import ChecklistInstance, InstanceStatus
from ..services.time_rules import now_iso


logger = structlog.get_logger(__name__)

TABLE = "checklist_instances"
ANSWERS_TABLE = "checklist_answers"


class ChecklistInstanceRepository:
    def __init__(self, db: Database):
        self.db = db

    def create(
        self,
        work_order_id: str,
        template_id: str,
        template_version_snapshot: Optional[str] = None,
        template_name: Optional[str] = None,
        technician_id: Optional[str] = None,
        instance_id: Optional[str] = None,
    ) -> ChecklistInstance:
        now = now_iso()
        new_id = instance_id or str(uuid.uuid4())
        instance = ChecklistInstance(
            id=new_id,
            work_order_id=work_order_id,
            template_id=template_id,
            template_version_snapshot=template_version_snapshot,
            template_name=template_name,
            status=InstanceStatus.PENDING,
            progress=0,
            local_id=new_id,
            created_at=now,
            updated_at=now,
            technician_id=technician_id,
        )
        self.db.insert(TABLE, instance.to_row())
        return instance

    def get_by_id(self, instance_id: str) -> Optional[ChecklistInstance]:
        row = self.db.find_by_id(TABLE, instance_id)
        return ChecklistInstance.from_row(row) if row else None

    def get_by_work_order(self, work_order_id: str) -> List[ChecklistInstance]:
        rows = self.db.find_all(TABLE, where={"workOrderId": work_order_id, "deletedAt": None}, order_by="createdAt")
        return [ChecklistInstance.from_row(row) for row in rows]

    def get_by_status(self, status: str, technician_id: Optional[str] = None) -> List[ChecklistInstance]:
        where: Dict[str, Any] = {"status": status, "deletedAt": None}
        if technician_id:
            where["technicianId"] = technician_id
        return [ChecklistInstance.from_row(row) for row in self.db.find_all(TABLE, where=where, order_by="createdAt")]

    def get_unsynced(self) -> List[ChecklistInstance]:
        rows = self.db.raw_query(
            f"SELECT * FROM {TABLE} WHERE syncedAt IS NULL OR updatedAt > syncedAt ORDER BY createdAt ASC"
        )
        return [ChecklistInstance.from_row(row) for row in rows]

    def update(self, instance_id: str, changes: Dict[str, Any]) -> Optional[ChecklistInstance]:
        values = {k: v for k, v in changes.items() if k != "id"}
        values.setdefault("updatedAt", now_iso())
        self.db.update(TABLE, instance_id, values)
        return self.get_by_id(instance_id)

    def update_status(
        self, instance_id: str, status: str, completed_by: Optional[str] = None
    ) -> Optional[ChecklistInstance]:
        """
        Set the status.
        startedAt is stamped on the first IN_PROGRESS; COMPLETED stamps completedAt/completedBy and forces progress 100.
        """
        current = self.get_by_id(instance_id)
        if current is None:
            return None
        now = now_iso()
        values: Dict[str, Any] = {"status": status, "updatedAt": now}
        if status == InstanceStatus.IN_PROGRESS.value and not current.started_at:
            values["startedAt"] = now
        if status == InstanceStatus.COMPLETED.value:
            values["completedAt"] = now
            values["completedBy"] = completed_by
            values["progress"] = 100
        elif current.status == InstanceStatus.COMPLETED.value:
            # reopened
            values["completedAt"] = None
            values["completedBy"] = None
        self.db.update(TABLE, instance_id, values)
        return self.get_by_id(instance_id)

    def update_progress(self, instance_id: str, progress: int) -> None:
        clamped = max(0, min(100, int(round(progress))))
        self.db.update(TABLE, instance_id, {"progress": clamped, "updatedAt": now_iso()})

    def mark_synced(self, instance_id: str, server_id: Optional[str] = None) -> Optional[ChecklistInstance]:
        """
        Stamp syncedAt. When the server assigned a different id the row and its answers move to it.

        Returns:
            The instance under its final id
        """
        now = now_iso()
        if not server_id or server_id == instance_id:
            self.db.update(TABLE, instance_id, {"syncedAt": now})
            return self.get_by_id(instance_id)

        row = self.db.find_by_id(TABLE, instance_id)
        if row is None:
            return None

        def _rekey(tx: Database) -> None:
            tx.remove(TABLE, instance_id)
            tx.insert(TABLE, {**row, "id": server_id, "localId": row.get("localId") or instance_id, "syncedAt": now})
            tx.update_where(ANSWERS_TABLE, {"instanceId": instance_id}, {"instanceId": server_id})

        self.db.transaction(_rekey)
        logger.info("checklist_instance_rekeyed", local_id=instance_id, server_id=server_id)
        return self.get_by_id(server_id)

    def delete(self, instance_id: str) -> bool:
        def _delete(tx: Database) -> int:
            tx.remove_where(ANSWERS_TABLE, {"instanceId": instance_id})
            return tx.remove(TABLE, instance_id)

        return self.db.transaction(_delete) > 0

    def delete_by_work_order(self, work_order_id: str) -> int:
        ids = [row["id"] for row in self.db.find_all(TABLE, where={"workOrderId": work_order_id})]
        if not ids:
            return 0

        def _delete(tx: Database) -> int:
            tx.remove_where(ANSWERS_TABLE, {"instanceId": ids})
            return tx.remove_where(TABLE, {"id": ids})

        return self.db.transaction(_delete)

    def batch_upsert(self, instances: List[ChecklistInstance]) -> int:
        if not instances:
            return 0

        def _save(tx: Database) -> None:
            for instance in instances:
                tx.upsert(TABLE, instance.to_row())

        self.db.transaction(_save)
        return len(instances)

    def are_all_completed(self, work_order_id: str) -> bool:
        """True when the work order has no checklist left open. Cancelled instances do not block."""
        open_count = self.db.count(TABLE, {
            "workOrderId": work_order_id,
            "deletedAt": None,
            "status": [InstanceStatus.PENDING.value, InstanceStatus.IN_PROGRESS.value],
        })
        return open_count == 0
