from typing import Any, Dict, List, Optional

import structlog

from ...db import Database
from ...repositories.checklist_answers import ChecklistAnswerRepository
from ...repositories.checklist_instances import ChecklistInstanceRepository
from ...services.time_rules import now_iso
from ..outbox import MutationOutbox
from .base import EntitySyncAdapter, json_text, parse_json_text, to_flag


logger = structlog.get_logger(__name__)


class ChecklistTemplateSyncAdapter(EntitySyncAdapter):
    """Templates are authored on the server; the client only pulls them."""

    name = "checklist_templates"
    table_name = "checklist_templates"
    api_endpoint = "/checklist-templates/sync"
    api_mutation_endpoint = None
    batch_size = 50
    push_priority = 40

    def transform_from_server(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": record["id"],
            "name": record.get("name") or "",
            "description": record.get("description"),
            "version": int(record.get("version") or 1),
            "isActive": to_flag(record.get("isActive")),
            "sections": json_text(record.get("sections") or []),
            "questions": json_text(record.get("questions") or []),
            "createdAt": record.get("createdAt"),
            "updatedAt": record.get("updatedAt"),
            "technicianId": record.get("technicianId"),
        }


class ChecklistInstanceSyncAdapter(EntitySyncAdapter):
    name = "checklist_instances"
    table_name = "checklist_instances"
    api_endpoint = "/checklist-instances/sync"
    api_mutation_endpoint = "/checklist-instances/sync/mutations"
    batch_size = 50
    push_priority = 50
    server_owned_fields = ("technicianId", "syncedAt", "deletedAt")

    def transform_from_server(self, record: Dict[str, Any]) -> Dict[str, Any]:
        snapshot = record.get("templateVersionSnapshot")
        template_name = record.get("templateName")
        if not template_name and isinstance(snapshot, dict):
            template_name = snapshot.get("name")
        return {
            "id": record["id"],
            "workOrderId": record.get("workOrderId"),
            "templateId": record.get("templateId"),
            "templateVersionSnapshot": json_text(snapshot),
            "templateName": template_name,
            "status": record.get("status") or "PENDING",
            "progress": int(record.get("progress") or 0),
            "startedAt": record.get("startedAt"),
            "completedAt": record.get("completedAt"),
            "completedBy": record.get("completedBy"),
            "localId": record.get("localId"),
            "createdAt": record.get("createdAt"),
            "updatedAt": record.get("updatedAt"),
            "technicianId": record.get("technicianId"),
        }

    def transform_to_server(self, record: Dict[str, Any]) -> Dict[str, Any]:
        out = super().transform_to_server(record)
        out.pop("templateVersionSnapshot", None)
        out["localId"] = record.get("localId") or record.get("id")
        return out

    def rekey_local(self, db: Database, local_id: str, server_id: str) -> None:
        ChecklistInstanceRepository(db).mark_synced(local_id, server_id)
        # queued answers still carry the local instance id
        for row in db.find_all("mutations_queue", where={"entity": "checklist_answers", "status": ["pending", "processing"]}):
            payload = parse_json_text(row["payload"]) or {}
            if isinstance(payload, dict) and payload.get("instanceId") == local_id:
                db.update("mutations_queue", row["id"], {"payload": {**payload, "instanceId": server_id}})


ANSWER_FIELDS = (
    "id", "instanceId", "questionId", "type",
    "valueText", "valueNumber", "valueBoolean", "valueDate", "valueJson",
    "answeredAt", "answeredBy", "deviceInfo", "localId", "createdAt", "updatedAt",
)


class ChecklistAnswerSyncAdapter(EntitySyncAdapter):
    name = "checklist_answers"
    table_name = "checklist_answers"
    api_endpoint = "/checklist-instances/answers/sync"
    api_mutation_endpoint = "/checklist-instances/sync"
    scope_field = "instanceId"
    batch_size = 100
    push_priority = 60
    server_owned_fields = ("syncStatus", "syncedAt", "deletedAt")

    def pull_scopes(self, db: Database, technician_id: Optional[str]) -> List[Dict[str, Any]]:
        where: Dict[str, Any] = {"status": ["PENDING", "IN_PROGRESS", "COMPLETED"]}
        if technician_id:
            where["technicianId"] = technician_id
        instances = db.find_all("checklist_instances", where=where, order_by="createdAt")
        return [{"instanceId": row["id"]} for row in instances]

    def transform_from_server(self, record: Dict[str, Any]) -> Dict[str, Any]:
        out = {field: record.get(field) for field in ANSWER_FIELDS}
        out["valueJson"] = json_text(record.get("valueJson"))
        if record.get("valueBoolean") is not None:
            out["valueBoolean"] = 1 if record["valueBoolean"] else 0
        if record.get("valueNumber") is not None:
            out["valueNumber"] = float(record["valueNumber"])
        out["syncStatus"] = "SYNCED"
        return out

    def custom_save(self, db: Database, records: List[Dict[str, Any]], technician_id: Optional[str]) -> None:
        """
        Upsert pulled answers, adopting the server id for a local answer to the same question.

        A local row keyed on its own id is moved to the server id first, together with its
        attachments and queued mutations, since (instanceId, questionId) is unique.
        """
        columns = set(db.columns(self.table_name))
        synced_at = now_iso()

        def _save(tx: Database) -> None:
            answers = ChecklistAnswerRepository(tx)
            for record in records:
                row = {k: v for k, v in record.items() if k in columns}
                if row.get("localId") is None:
                    row.pop("localId", None)
                row["syncedAt"] = synced_at
                if tx.find_by_id(self.table_name, row["id"]) is None:
                    local = self._find_local(tx, row)
                    if local is not None and local["id"] != row["id"]:
                        answers.mark_synced_with_server_id(local.get("localId") or local["id"], row["id"])
                        MutationOutbox(tx).reassign_entity_id(self.name, local["id"], row["id"])
                        logger.info("checklist_answer_adopted_server_id", local_id=local["id"], server_id=row["id"])
                tx.upsert(self.table_name, row)

        db.transaction(_save)

    def _find_local(self, db: Database, row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if row.get("localId"):
            local = db.find_one(self.table_name, {"localId": row["localId"]})
            if local is not None:
                return local
        if row.get("instanceId") and row.get("questionId"):
            return db.find_one(self.table_name, {"instanceId": row["instanceId"], "questionId": row["questionId"]})
        return None

    def transform_to_server(self, record: Dict[str, Any]) -> Dict[str, Any]:
        out = super().transform_to_server(record)
        if "valueBoolean" in out and out["valueBoolean"] is not None:
            out["valueBoolean"] = bool(out["valueBoolean"])
        if "valueJson" in out:
            out["valueJson"] = parse_json_text(out["valueJson"])
        out["localId"] = record.get("localId") or record.get("id")
        return out

    def rekey_local(self, db: Database, local_id: str, server_id: str) -> None:
        ChecklistAnswerRepository(db).mark_synced_with_server_id(local_id, server_id)
