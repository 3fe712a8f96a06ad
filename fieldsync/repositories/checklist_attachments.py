"""
Checklist attachments (photos, signatures, files) and their upload queue.
"""
import uuid
from typing import Any, Dict, List, Optional

from ..config import settings
from ..db import Database
from ..schemas.checklists import AttachmentSyncStatus, ChecklistAttachment
from ..services.time_rules import now_iso


TABLE = "checklist_attachments"

UPLOADABLE_STATUSES = [
    AttachmentSyncStatus.PENDING.value,
    AttachmentSyncStatus.FAILED.value,
    AttachmentSyncStatus.UPLOADING.value,
]


class ChecklistAttachmentRepository:
    def __init__(self, db: Database, max_upload_attempts: Optional[int] = None):
        self.db = db
        self.max_upload_attempts = max_upload_attempts or settings.attachment_max_upload_attempts

    def create(
        self,
        type: str,
        answer_id: Optional[str] = None,
        work_order_id: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: int = 0,
        mime_type: Optional[str] = None,
        local_path: Optional[str] = None,
        base64_data: Optional[str] = None,
        technician_id: Optional[str] = None,
    ) -> ChecklistAttachment:
        now = now_iso()
        attachment = ChecklistAttachment(
            id=str(uuid.uuid4()),
            answer_id=answer_id,
            work_order_id=work_order_id,
            type=type,
            file_name=file_name,
            file_size=file_size,
            mime_type=mime_type,
            local_path=local_path,
            base64_data=base64_data,
            sync_status=AttachmentSyncStatus.PENDING,
            upload_attempts=0,
            local_id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            technician_id=technician_id,
        )
        self.db.insert(TABLE, attachment.to_row())
        return attachment

    def _one(self, row: Optional[Dict[str, Any]]) -> Optional[ChecklistAttachment]:
        return ChecklistAttachment.from_row(row) if row else None

    def _many(self, rows: List[Dict[str, Any]]) -> List[ChecklistAttachment]:
        return [ChecklistAttachment.from_row(row) for row in rows]

    def get_by_id(self, attachment_id: str) -> Optional[ChecklistAttachment]:
        return self._one(self.db.find_by_id(TABLE, attachment_id))

    def get_by_local_id(self, local_id: str) -> Optional[ChecklistAttachment]:
        return self._one(self.db.find_one(TABLE, {"localId": local_id}))

    def get_by_answer(self, answer_id: str) -> List[ChecklistAttachment]:
        return self._many(self.db.find_all(TABLE, where={"answerId": answer_id}, order_by="createdAt"))

    def get_by_work_order(self, work_order_id: str) -> List[ChecklistAttachment]:
        return self._many(self.db.find_all(TABLE, where={"workOrderId": work_order_id}, order_by="createdAt"))

    def get_pending_upload(self, limit: int = 10) -> List[ChecklistAttachment]:
        """Uploadable attachments below the attempt limit, fewest attempts first."""
        rows = self.db.raw_query(
            f"SELECT * FROM {TABLE} "
            "WHERE syncStatus IN ('PENDING', 'FAILED', 'UPLOADING') AND uploadAttempts < :max_attempts "
            "ORDER BY uploadAttempts ASC, createdAt ASC LIMIT :limit",
            {"max_attempts": self.max_upload_attempts, "limit": limit},
        )
        return self._many(rows)

    def get_by_sync_status(self, status: str, technician_id: Optional[str] = None) -> List[ChecklistAttachment]:
        where: Dict[str, Any] = {"syncStatus": status}
        if technician_id:
            where["technicianId"] = technician_id
        return self._many(self.db.find_all(TABLE, where=where, order_by="createdAt"))

    def update(self, attachment_id: str, changes: Dict[str, Any]) -> None:
        values = {k: v for k, v in changes.items() if k != "id"}
        values.setdefault("updatedAt", now_iso())
        self.db.update(TABLE, attachment_id, values)

    def update_sync_status(self, attachment_id: str, status: str, error: Optional[str] = None) -> None:
        values: Dict[str, Any] = {"syncStatus": status}
        if status == AttachmentSyncStatus.FAILED.value:
            values["lastUploadError"] = error
        if status == AttachmentSyncStatus.SYNCED.value:
            values["syncedAt"] = now_iso()
            values["lastUploadError"] = None
        self.update(attachment_id, values)

    def mark_uploading(self, attachment_id: str) -> None:
        self.update_sync_status(attachment_id, AttachmentSyncStatus.UPLOADING.value)

    def increment_upload_attempts(self, attachment_id: str, error: Optional[str] = None) -> None:
        now = now_iso()
        self.db.raw_exec(
            f"UPDATE {TABLE} SET uploadAttempts = uploadAttempts + 1, lastUploadError = :error, "
            "syncStatus = :failed, updatedAt = :now WHERE id = :id",
            {"error": error, "failed": AttachmentSyncStatus.FAILED.value, "now": now, "id": attachment_id},
        )

    def mark_synced(self, attachment_id: str, remote_path: str) -> None:
        self.update(attachment_id, {
            "remotePath": remote_path,
            "syncStatus": AttachmentSyncStatus.SYNCED.value,
            "syncedAt": now_iso(),
            "lastUploadError": None,
            "base64Data": None,
        })

    def delete(self, attachment_id: str) -> bool:
        return self.db.remove(TABLE, attachment_id) > 0

    def delete_by_answer(self, answer_id: str) -> int:
        return self.db.remove_where(TABLE, {"answerId": answer_id})

    def delete_by_work_order(self, work_order_id: str) -> int:
        return self.db.remove_where(TABLE, {"workOrderId": work_order_id})

    def batch_upsert(self, attachments: List[ChecklistAttachment]) -> int:
        if not attachments:
            return 0

        def _save(tx: Database) -> None:
            for attachment in attachments:
                tx.upsert(TABLE, attachment.to_row())

        self.db.transaction(_save)
        return len(attachments)

    def count_by_sync_status(self, work_order_id: Optional[str] = None) -> Dict[str, int]:
        counts = {status.value: 0 for status in AttachmentSyncStatus}
        sql = f"SELECT syncStatus, COUNT(*) AS count FROM {TABLE}"
        params: Dict[str, Any] = {}
        if work_order_id:
            sql += " WHERE workOrderId = :work_order_id"
            params["work_order_id"] = work_order_id
        for row in self.db.raw_query(sql + " GROUP BY syncStatus", params):
            if row["syncStatus"] in counts:
                counts[row["syncStatus"]] = int(row["count"])
        return counts

    def _pending_where(self, technician_id: Optional[str], work_order_id: Optional[str]) -> Dict[str, Any]:
        where: Dict[str, Any] = {"syncStatus": UPLOADABLE_STATUSES}
        if technician_id:
            where["technicianId"] = technician_id
        if work_order_id:
            where["workOrderId"] = work_order_id
        return where

    def count_pending_upload(self, technician_id: Optional[str] = None, work_order_id: Optional[str] = None) -> int:
        return self.db.count(TABLE, self._pending_where(technician_id, work_order_id))

    def get_pending_upload_size(self, technician_id: Optional[str] = None) -> int:
        """Bytes waiting to be uploaded."""
        rows = self.db.find_all(TABLE, where=self._pending_where(technician_id, None))
        return sum(int(row.get("fileSize") or 0) for row in rows)

    def clear_synced_base64(self) -> int:
        """Drop inline data of uploaded attachments. Returns the number of rows cleared."""
        return self.db.raw_exec(
            f"UPDATE {TABLE} SET base64Data = NULL, updatedAt = :now "
            "WHERE syncStatus = 'SYNCED' AND base64Data IS NOT NULL",
            {"now": now_iso()},
        )
