"""
Checklist answers.

One answer per (instanceId, questionId), enforced by a unique index.
Every local write puts the answer back to syncStatus PENDING.
"""
import uuid
from typing import Any, Dict, List, Optional

import structlog

from ..db import Database
from ..schemas.checklists import VALUE_SLOTS, AnswerSyncStatus, ChecklistAnswer
from ..services.time_rules import now_iso


logger = structlog.get_logger(__name__)

TABLE = "checklist_answers"
ATTACHMENTS_TABLE = "checklist_attachments"


class ChecklistAnswerRepository:
    def __init__(self, db: Database):
        self.db = db

    def create(
        self,
        instance_id: str,
        question_id: str,
        type: str,
        values: Optional[Dict[str, Any]] = None,
        answered_by: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> ChecklistAnswer:
        now = now_iso()
        row: Dict[str, Any] = {slot: None for slot in VALUE_SLOTS}
        row.update(values or {})
        row.update({
            "id": str(uuid.uuid4()),
            "instanceId": instance_id,
            "questionId": question_id,
            "type": type,
            "answeredAt": row.get("answeredAt") or now,
            "answeredBy": answered_by,
            "deviceInfo": device_info,
            "localId": str(uuid.uuid4()),
            "syncStatus": AnswerSyncStatus.PENDING.value,
            "createdAt": now,
            "updatedAt": now,
        })
        self.db.insert(TABLE, row)
        return ChecklistAnswer.from_row(self.db.find_by_id(TABLE, row["id"]))

    def _one(self, row: Optional[Dict[str, Any]]) -> Optional[ChecklistAnswer]:
        return ChecklistAnswer.from_row(row) if row else None

    def get_by_id(self, answer_id: str) -> Optional[ChecklistAnswer]:
        return self._one(self.db.find_by_id(TABLE, answer_id))

    def get_by_local_id(self, local_id: str) -> Optional[ChecklistAnswer]:
        return self._one(self.db.find_one(TABLE, {"localId": local_id}))

    def get_by_question(self, instance_id: str, question_id: str) -> Optional[ChecklistAnswer]:
        return self._one(self.db.find_one(TABLE, {"instanceId": instance_id, "questionId": question_id}))

    def get_by_instance(self, instance_id: str) -> List[ChecklistAnswer]:
        rows = self.db.find_all(TABLE, where={"instanceId": instance_id}, order_by="createdAt")
        return [ChecklistAnswer.from_row(row) for row in rows]

    def get_pending_sync(self, instance_id: Optional[str] = None) -> List[ChecklistAnswer]:
        where: Dict[str, Any] = {"syncStatus": AnswerSyncStatus.PENDING.value}
        if instance_id:
            where["instanceId"] = instance_id
        return [ChecklistAnswer.from_row(row) for row in self.db.find_all(TABLE, where=where, order_by="createdAt")]

    def upsert(
        self,
        instance_id: str,
        question_id: str,
        type: str,
        values: Dict[str, Any],
        answered_by: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> ChecklistAnswer:
        """
        Write the answer of a question, creating it on first write.

        Args:
            instance_id: Checklist instance
            question_id: Question within the instance's template
            type: Question type
            values: Column values, normally the five value slots (plus answeredAt)

        Returns:
            The stored answer, syncStatus PENDING
        """
        existing = self.get_by_question(instance_id, question_id)
        if existing is None:
            return self.create(instance_id, question_id, type, values, answered_by, device_info)

        changes = dict(values)
        changes["type"] = type
        changes["syncStatus"] = AnswerSyncStatus.PENDING.value
        changes.setdefault("answeredAt", now_iso())
        if answered_by is not None:
            changes["answeredBy"] = answered_by
        if device_info is not None:
            changes["deviceInfo"] = device_info
        self.update(existing.id, changes)
        return self.get_by_id(existing.id)

    def update(self, answer_id: str, changes: Dict[str, Any]) -> None:
        values = {k: v for k, v in changes.items() if k != "id"}
        values.setdefault("updatedAt", now_iso())
        self.db.update(TABLE, answer_id, values)

    def update_sync_status(self, answer_id: str, status: str) -> None:
        values: Dict[str, Any] = {"syncStatus": status}
        if status == AnswerSyncStatus.SYNCED.value:
            values["syncedAt"] = now_iso()
        self.update(answer_id, values)

    def mark_many_synced(self, answer_ids: List[str]) -> int:
        if not answer_ids:
            return 0
        now = now_iso()
        return self.db.update_where(
            TABLE,
            {"id": list(answer_ids)},
            {"syncStatus": AnswerSyncStatus.SYNCED.value, "syncedAt": now, "updatedAt": now},
        )

    def mark_synced_with_server_id(self, local_id: str, server_id: str) -> Optional[ChecklistAnswer]:
        """
        Reconcile a locally created answer with the id the server assigned.

        When the ids differ the local row is replaced by one keyed on server_id.
        The old row is removed first since both share (instanceId, questionId).

        Returns:
            The synced answer, or None when no answer has that local id
        """
        row = self.db.find_one(TABLE, {"localId": local_id}) or self.db.find_by_id(TABLE, local_id)
        if row is None:
            return None
        now = now_iso()
        if row["id"] == server_id:
            self.db.update(TABLE, server_id, {"syncStatus": AnswerSyncStatus.SYNCED.value, "syncedAt": now, "updatedAt": now})
            return self.get_by_id(server_id)

        old_id = row["id"]

        def _rekey(tx: Database) -> None:
            tx.remove(TABLE, old_id)
            tx.insert(TABLE, {
                **row,
                "id": server_id,
                "syncStatus": AnswerSyncStatus.SYNCED.value,
                "syncedAt": now,
                "updatedAt": now,
            })
            tx.update_where(ATTACHMENTS_TABLE, {"answerId": old_id}, {"answerId": server_id})

        self.db.transaction(_rekey)
        logger.info("checklist_answer_rekeyed", local_id=old_id, server_id=server_id)
        return self.get_by_id(server_id)

    def delete(self, answer_id: str) -> bool:
        return self.db.remove(TABLE, answer_id) > 0

    def delete_by_instance(self, instance_id: str) -> int:
        return self.db.remove_where(TABLE, {"instanceId": instance_id})

    def batch_upsert(self, answers: List[ChecklistAnswer]) -> int:
        if not answers:
            return 0

        def _save(tx: Database) -> None:
            for answer in answers:
                tx.upsert(TABLE, answer.to_row())

        self.db.transaction(_save)
        return len(answers)

    def count_by_sync_status(self, instance_id: Optional[str] = None) -> Dict[str, int]:
        counts = {status.value: 0 for status in AnswerSyncStatus}
        sql = f"SELECT syncStatus, COUNT(*) AS count FROM {TABLE}"
        params: Dict[str, Any] = {}
        if instance_id:
            sql += " WHERE instanceId = :instance_id"
            params["instance_id"] = instance_id
        for row in self.db.raw_query(sql + " GROUP BY syncStatus", params):
            if row["syncStatus"] in counts:
                counts[row["syncStatus"]] = int(row["count"])
        return counts

    def count_by_instance(self, instance_id: str) -> int:
        return self.db.count(TABLE, {"instanceId": instance_id})

    def get_answered_question_ids(self, instance_id: str) -> List[str]:
        rows = self.db.raw_query(
            f"SELECT questionId FROM {TABLE} WHERE instanceId = :instance_id",
            {"instance_id": instance_id},
        )
        return [row["questionId"] for row in rows]
