"""
Attachment upload queue.

Attachments tied to an answer wait until that answer is SYNCED on the server; the rest
go straight to the work order attachment endpoint. Failures bump uploadAttempts and the
row stays in the queue until the attempt limit is reached.
"""
from typing import Optional, Set

import structlog

from ..config import settings
from ..errors import NotConfiguredError, SyncError, TransientSyncError
from ..events import EventEmitter
from ..repositories.checklist_answers import ChecklistAnswerRepository
from ..repositories.checklist_attachments import ChecklistAttachmentRepository
from ..schemas.checklists import AnswerSyncStatus, ChecklistAttachment, UploadBatchResult, UploadResult
from ..storage.provider import AttachmentStore
from ..sync.api_client import SyncApiClient
from ..sync.network import NetworkProbe


logger = structlog.get_logger(__name__)

MAX_CONSECUTIVE_NETWORK_ERRORS = 2
BATCH_SIZE = 2


class AttachmentUploadService:
    def __init__(
        self,
        attachments: ChecklistAttachmentRepository,
        answers: ChecklistAnswerRepository,
        api_client: SyncApiClient,
        network_probe: NetworkProbe,
        storage: AttachmentStore,
    ):
        self.attachments = attachments
        self.answers = answers
        self.api_client = api_client
        self.network_probe = network_probe
        self.storage = storage
        self.events = EventEmitter("attachments")

    def subscribe(self, listener):
        return self.events.subscribe(listener)

    def count_pending(self, technician_id: Optional[str] = None) -> int:
        return self.attachments.count_pending_upload(technician_id)

    def upload_pending(self, limit: Optional[int] = None) -> UploadBatchResult:
        """
        Upload queued attachments.

        Args:
            limit: Stop after this many attempts (None: drain the queue)

        Returns:
            UploadBatchResult; offline=True when nothing was tried for lack of connectivity
        """
        if not self.api_client.is_configured or not self.network_probe.is_network_online():
            return UploadBatchResult(offline=True)

        result = UploadBatchResult()
        seen: Set[str] = set()
        network_errors = 0

        while network_errors < MAX_CONSECUTIVE_NETWORK_ERRORS:
            batch = [a for a in self.attachments.get_pending_upload(BATCH_SIZE + len(seen)) if a.id not in seen]
            if not batch:
                break
            for attachment in batch:
                if limit is not None and len(result.results) >= limit:
                    return self._finish(result)
                seen.add(attachment.id)
                try:
                    outcome = self._upload(attachment)
                    network_errors = 0
                except TransientSyncError as e:
                    outcome = self._failed(attachment, str(e))
                    network_errors += 1
                except SyncError as e:
                    outcome = self._failed(attachment, str(e))
                result.results.append(outcome)
                if outcome.skipped:
                    result.skipped += 1
                elif outcome.success:
                    result.uploaded += 1
                else:
                    result.failed += 1
                if network_errors >= MAX_CONSECUTIVE_NETWORK_ERRORS:
                    logger.warning("attachment_upload_stopped", reason="network_errors")
                    result.offline = True
                    break

        return self._finish(result)

    def _finish(self, result: UploadBatchResult) -> UploadBatchResult:
        self.events.emit("queue_updated", pending=self.count_pending())
        logger.info(
            "attachment_upload_pass",
            uploaded=result.uploaded,
            failed=result.failed,
            skipped=result.skipped,
            offline=result.offline,
        )
        return result

    def _failed(self, attachment: ChecklistAttachment, error: str) -> UploadResult:
        self.attachments.increment_upload_attempts(attachment.id, error)
        logger.warning("attachment_upload_failed", attachment_id=attachment.id, error=error)
        self.events.emit("failed", attachment_id=attachment.id, error=error)
        return UploadResult(attachment_id=attachment.id, success=False, error=error)

    def _upload(self, attachment: ChecklistAttachment) -> UploadResult:
        if attachment.answer_id:
            answer = self.answers.get_by_id(attachment.answer_id)
            if answer is None:
                return UploadResult(attachment_id=attachment.id, success=False, skipped=True, error="Answer not found locally")
            if answer.sync_status != AnswerSyncStatus.SYNCED.value:
                return UploadResult(attachment_id=attachment.id, success=False, skipped=True, error="Answer not synced yet")

        self.attachments.mark_uploading(attachment.id)

        data, from_file = self._read_data(attachment)
        if data is None:
            return self._failed(attachment, "No data to upload")

        if attachment.answer_id:
            endpoint = f"/checklist-instances/answers/{attachment.answer_id}/attachments/base64"
            body = {"data": data, "type": attachment.type, "fileName": attachment.file_name}
        elif attachment.work_order_id:
            endpoint = "/attachments/base64"
            mime_type = attachment.mime_type or "image/jpeg"
            body = {"data": f"data:{mime_type};base64,{data}", "type": attachment.type, "workOrderId": attachment.work_order_id}
        else:
            return self._failed(attachment, "Attachment has neither answerId nor workOrderId")

        try:
            response = self.api_client.post(endpoint, body, timeout=settings.upload_timeout_s)
        except NotConfiguredError:
            raise TransientSyncError("sync API client not configured")

        remote_path = None
        for key in ("storagePath", "publicUrl", "url", "id"):
            if response.get(key):
                remote_path = str(response[key])
                break
        self.attachments.mark_synced(attachment.id, remote_path)

        if from_file and settings.delete_attachment_after_sync:
            self.storage.delete(attachment.local_path)
            self.attachments.update(attachment.id, {"localPath": None})

        logger.info("attachment_uploaded", attachment_id=attachment.id, remote_path=remote_path)
        self.events.emit("completed", attachment_id=attachment.id, remote_path=remote_path)
        return UploadResult(attachment_id=attachment.id, success=True, remote_path=remote_path)

    def _read_data(self, attachment: ChecklistAttachment):
        """(base64 data, came from a local file); the file wins over inline data."""
        if attachment.local_path and self.storage.exists(attachment.local_path):
            return self.storage.read_base64(attachment.local_path), True
        if attachment.base64_data:
            return attachment.base64_data, False
        return None, False
