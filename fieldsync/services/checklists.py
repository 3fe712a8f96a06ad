"""
Checklist execution: instances created from a frozen template snapshot, answers, attachments.

Each local write and its outbox entry are committed in one transaction.
"""
from typing import Any, Dict, List, Optional

import structlog

from ..db import Database
from ..errors import ChecklistServiceError, ServiceError
from ..repositories.checklist_answers import ChecklistAnswerRepository
from ..repositories.checklist_attachments import ChecklistAttachmentRepository
from ..repositories.checklist_instances import ChecklistInstanceRepository
from ..repositories.checklist_templates import ChecklistTemplateRepository
from ..schemas.checklists import (
    INSTANCE_TRANSITIONS,
    ChecklistAnswer,
    ChecklistAttachment,
    ChecklistInstance,
    ChecklistQuestion,
    InstanceStatus,
)
from ..schemas.sync import MutationOperation
from ..sync.outbox import MutationOutbox
from .answer_values import set_answer_value, validate_answer
from .checklist_logic import are_all_required_answered, calculate_progress


logger = structlog.get_logger(__name__)

INSTANCE_ENTITY = "checklist_instances"
ANSWER_ENTITY = "checklist_answers"

LOCKED_STATUSES = {InstanceStatus.COMPLETED.value, InstanceStatus.CANCELLED.value}


class ChecklistService:
    def __init__(self, db: Database, outbox: MutationOutbox):
        self.db = db
        self.outbox = outbox
        self.templates = ChecklistTemplateRepository(db)
        self.instances = ChecklistInstanceRepository(db)
        self.answers = ChecklistAnswerRepository(db)
        self.attachments = ChecklistAttachmentRepository(db)

    # ------------------------------------------------------------------ reads

    def get_instance(self, instance_id: str) -> Optional[ChecklistInstance]:
        return self.instances.get_by_id(instance_id)

    def get_instances_for_work_order(self, work_order_id: str) -> List[ChecklistInstance]:
        return self.instances.get_by_work_order(work_order_id)

    def get_answers_map(self, instance_id: str) -> Dict[str, ChecklistAnswer]:
        return {answer.question_id: answer for answer in self.answers.get_by_instance(instance_id)}

    def get_questions(self, instance: ChecklistInstance) -> List[ChecklistQuestion]:
        snapshot = instance.snapshot()
        return list(snapshot.questions) if snapshot else []

    def _require_instance(self, instance_id: str) -> ChecklistInstance:
        instance = self.instances.get_by_id(instance_id)
        if instance is None:
            raise ChecklistServiceError(ServiceError.NOT_FOUND, "Checklist instance not found", {"instanceId": instance_id})
        return instance

    # ------------------------------------------------------------------ instances

    def create_instance(self, work_order_id: str, template_id: str, technician_id: Optional[str] = None) -> ChecklistInstance:
        """Create a PENDING instance holding a frozen copy of the template."""
        template = self.templates.get_by_id(template_id)
        if template is None:
            raise ChecklistServiceError(ServiceError.NOT_FOUND, "Checklist template not found", {"templateId": template_id})

        def _create(tx: Database) -> ChecklistInstance:
            instance = ChecklistInstanceRepository(tx).create(
                work_order_id=work_order_id,
                template_id=template_id,
                template_version_snapshot=template.model_dump_json(by_alias=True),
                template_name=template.name,
                technician_id=technician_id,
            )
            self.outbox.enqueue(INSTANCE_ENTITY, instance.id, MutationOperation.CREATE.value, instance.to_row())
            return instance

        instance = self.db.transaction(_create)
        logger.info("checklist_instance_created", instance_id=instance.id, work_order_id=work_order_id, template_id=template_id)
        return instance

    def _transition(self, tx: Database, instance: ChecklistInstance, new_status: str, completed_by: Optional[str] = None) -> ChecklistInstance:
        if new_status not in INSTANCE_TRANSITIONS.get(instance.status, []):
            raise ChecklistServiceError(
                ServiceError.INVALID_TRANSITION,
                f"Invalid status transition from {instance.status} to {new_status}",
                {"currentStatus": instance.status, "newStatus": new_status},
            )
        updated = ChecklistInstanceRepository(tx).update_status(instance.id, new_status, completed_by)
        self.outbox.enqueue(INSTANCE_ENTITY, instance.id, MutationOperation.UPDATE.value, {
            "id": instance.id,
            "status": updated.status,
            "progress": updated.progress,
            "startedAt": updated.started_at,
            "completedAt": updated.completed_at,
            "completedBy": updated.completed_by,
            "updatedAt": updated.updated_at,
        })
        return updated

    def complete_instance(self, instance_id: str, completed_by: Optional[str] = None) -> ChecklistInstance:
        """Complete an IN_PROGRESS instance; every visible required question must be answered."""
        instance = self._require_instance(instance_id)
        if instance.status == InstanceStatus.IN_PROGRESS.value:
            complete, missing = are_all_required_answered(self.get_questions(instance), self.get_answers_map(instance_id))
            if not complete:
                raise ChecklistServiceError(
                    ServiceError.VALIDATION_ERROR,
                    f"{len(missing)} required question(s) unanswered",
                    {"missingQuestionIds": missing},
                )
        updated = self.db.transaction(lambda tx: self._transition(tx, instance, InstanceStatus.COMPLETED.value, completed_by))
        logger.info("checklist_instance_completed", instance_id=instance_id)
        return updated

    def reopen_instance(self, instance_id: str) -> ChecklistInstance:
        instance = self._require_instance(instance_id)
        if instance.status != InstanceStatus.COMPLETED.value:
            raise ChecklistServiceError(
                ServiceError.INVALID_TRANSITION,
                "Only completed checklists can be reopened",
                {"currentStatus": instance.status},
            )
        return self.db.transaction(lambda tx: self._transition(tx, instance, InstanceStatus.IN_PROGRESS.value))

    def cancel_instance(self, instance_id: str) -> ChecklistInstance:
        instance = self._require_instance(instance_id)
        return self.db.transaction(lambda tx: self._transition(tx, instance, InstanceStatus.CANCELLED.value))

    def _refresh_progress(self, tx: Database, instance: ChecklistInstance) -> int:
        answers = {a.question_id: a for a in ChecklistAnswerRepository(tx).get_by_instance(instance.id)}
        progress = calculate_progress(self.get_questions(instance), answers)
        ChecklistInstanceRepository(tx).update_progress(instance.id, progress)
        return progress

    # ------------------------------------------------------------------ answers

    def save_answer(
        self,
        instance_id: str,
        question_id: str,
        value: Any,
        question_type: Optional[str] = None,
        answered_by: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> ChecklistAnswer:
        """
        Validate and store the answer to one question.

        A PENDING instance moves to IN_PROGRESS. Progress is recomputed afterwards.

        Args:
            instance_id: Checklist instance
            question_id: Question in the instance's snapshot
            value: Plain value (str, number, bool, list, dict)
            question_type: Needed only when the question is missing from the snapshot

        Returns:
            Stored answer (syncStatus PENDING)
        """
        instance = self._require_instance(instance_id)
        if instance.status in LOCKED_STATUSES:
            raise ChecklistServiceError(
                ServiceError.CANNOT_EDIT,
                f"Checklist with status {instance.status} can no longer be edited",
                {"currentStatus": instance.status},
            )

        question = next((q for q in self.get_questions(instance) if q.id == question_id), None)
        if question is not None:
            question_type = question.type
        if not question_type:
            raise ChecklistServiceError(ServiceError.VALIDATION_ERROR, "Unknown question", {"questionId": question_id})

        validation = validate_answer(question_type, value, False, question.validations if question else None)
        if not validation.valid:
            raise ChecklistServiceError(ServiceError.VALIDATION_ERROR, validation.error, {"questionId": question_id})

        values = set_answer_value(question_type, value)

        def _save(tx: Database) -> ChecklistAnswer:
            current = instance
            if current.status == InstanceStatus.PENDING.value:
                current = self._transition(tx, current, InstanceStatus.IN_PROGRESS.value)
            answers = ChecklistAnswerRepository(tx)
            existed = answers.get_by_question(instance_id, question_id) is not None
            answer = answers.upsert(instance_id, question_id, question_type, values, answered_by, device_info)
            operation = MutationOperation.UPDATE if existed else MutationOperation.CREATE
            self.outbox.enqueue(ANSWER_ENTITY, answer.id, operation.value, answer.to_row())
            self._refresh_progress(tx, current)
            return answer

        answer = self.db.transaction(_save)
        logger.debug("checklist_answer_saved", instance_id=instance_id, question_id=question_id)
        return answer

    def delete_answer(self, answer_id: str) -> bool:
        answer = self.answers.get_by_id(answer_id)
        if answer is None:
            return False
        instance = self._require_instance(answer.instance_id)
        if instance.status in LOCKED_STATUSES:
            raise ChecklistServiceError(
                ServiceError.CANNOT_EDIT,
                f"Checklist with status {instance.status} can no longer be edited",
                {"currentStatus": instance.status},
            )

        def _delete(tx: Database) -> None:
            ChecklistAttachmentRepository(tx).delete_by_answer(answer_id)
            ChecklistAnswerRepository(tx).delete(answer_id)
            if answer.synced_at is None:
                # never reached the server: drop its queued writes instead of sending a delete
                self.outbox.remove_for_entity(ANSWER_ENTITY, answer_id)
            else:
                self.outbox.enqueue(ANSWER_ENTITY, answer_id, MutationOperation.DELETE.value, {"id": answer_id})
            self._refresh_progress(tx, instance)

        self.db.transaction(_delete)
        return True

    # ------------------------------------------------------------------ attachments

    def add_attachment(
        self,
        work_order_id: str,
        type: str,
        answer_id: Optional[str] = None,
        file_name: Optional[str] = None,
        mime_type: Optional[str] = None,
        file_size: int = 0,
        local_path: Optional[str] = None,
        base64_data: Optional[str] = None,
        technician_id: Optional[str] = None,
    ) -> ChecklistAttachment:
        """Queue a photo/signature/file for upload, optionally tied to an answer."""
        if answer_id and self.answers.get_by_id(answer_id) is None:
            raise ChecklistServiceError(ServiceError.NOT_FOUND, "Answer not found", {"answerId": answer_id})
        if not local_path and not base64_data:
            raise ChecklistServiceError(ServiceError.VALIDATION_ERROR, "Attachment needs a local file or inline data")
        attachment = self.attachments.create(
            type=type,
            answer_id=answer_id,
            work_order_id=work_order_id,
            file_name=file_name,
            file_size=file_size,
            mime_type=mime_type,
            local_path=local_path,
            base64_data=base64_data,
            technician_id=technician_id,
        )
        logger.info("attachment_queued", attachment_id=attachment.id, answer_id=answer_id, work_order_id=work_order_id)
        return attachment

    def delete_attachment(self, attachment_id: str) -> bool:
        return self.attachments.delete(attachment_id)
