"""
Work order service: local writes plus outbox entries, committed together.

A rejected call raises WorkOrderServiceError before anything is written or queued.
"""
import uuid
from typing import List, Optional

import structlog

from ..db import Database
from ..errors import ServiceError, WorkOrderServiceError
from ..repositories.work_orders import WorkOrderRepository
from ..schemas.sync import MutationOperation
from ..schemas.work_orders import (
    WorkOrder,
    WorkOrderCreate,
    WorkOrderFilter,
    WorkOrderStatus,
    WorkOrderUpdate,
    can_delete,
    can_edit,
    is_valid_transition,
)
from ..sync.outbox import MutationOutbox
from .time_rules import now_iso


logger = structlog.get_logger(__name__)

ENTITY = "work_orders"


class WorkOrderService:
    def __init__(self, db: Database, outbox: MutationOutbox, technician_id: Optional[str] = None):
        self.db = db
        self.outbox = outbox
        self.repository = WorkOrderRepository(db)
        self.technician_id = technician_id

    def _require(self, work_order_id: str) -> WorkOrder:
        work_order = self.repository.get_by_id(work_order_id)
        if work_order is None:
            raise WorkOrderServiceError(
                ServiceError.NOT_FOUND, "Work order not found", {"workOrderId": work_order_id}
            )
        return work_order

    def get(self, work_order_id: str) -> Optional[WorkOrder]:
        return self.repository.get_by_id(work_order_id)

    def list(self, filter: Optional[WorkOrderFilter] = None) -> List[WorkOrder]:
        return self.repository.list(self.technician_id, filter)

    def create(self, data: WorkOrderCreate) -> WorkOrder:
        if not data.client_id or not data.title or not data.title.strip():
            raise WorkOrderServiceError(ServiceError.VALIDATION_ERROR, "clientId and title are required")

        now = now_iso()
        work_order = WorkOrder(
            id=str(uuid.uuid4()),
            status=WorkOrderStatus.SCHEDULED,
            is_active=1,
            created_at=now,
            updated_at=now,
            technician_id=self.technician_id,
            **data.model_dump(),
        )

        def _create(tx: Database) -> None:
            WorkOrderRepository(tx).insert(work_order)
            self.outbox.enqueue(ENTITY, work_order.id, MutationOperation.CREATE.value, work_order.to_row())

        self.db.transaction(_create)
        logger.info("work_order_created", work_order_id=work_order.id)
        return work_order

    def update(self, work_order_id: str, data: WorkOrderUpdate) -> WorkOrder:
        existing = self._require(work_order_id)
        if not can_edit(existing.status):
            raise WorkOrderServiceError(
                ServiceError.CANNOT_EDIT,
                f"Cannot edit work order with status {existing.status}",
                {"currentStatus": existing.status},
            )
        changes = data.model_dump(by_alias=True, exclude_unset=True)
        if "title" in changes and not (changes["title"] or "").strip():
            raise WorkOrderServiceError(ServiceError.VALIDATION_ERROR, "title cannot be empty")
        changes["updatedAt"] = now_iso()

        def _update(tx: Database) -> WorkOrder:
            updated = WorkOrderRepository(tx).update(work_order_id, changes)
            self.outbox.enqueue(ENTITY, work_order_id, MutationOperation.UPDATE.value, {
                "id": work_order_id,
                **changes,
            })
            return updated

        return self.db.transaction(_update)

    def update_status(self, work_order_id: str, new_status: str) -> WorkOrder:
        try:
            new_status = WorkOrderStatus(new_status).value
        except ValueError:
            raise WorkOrderServiceError(ServiceError.VALIDATION_ERROR, f"Unknown status {new_status}")
        existing = self._require(work_order_id)
        if not is_valid_transition(existing.status, new_status):
            raise WorkOrderServiceError(
                ServiceError.INVALID_TRANSITION,
                f"Invalid status transition from {existing.status} to {new_status}",
                {"currentStatus": existing.status, "newStatus": new_status},
            )

        def _update(tx: Database) -> WorkOrder:
            updated = WorkOrderRepository(tx).update_status(work_order_id, new_status)
            self.outbox.enqueue(ENTITY, work_order_id, MutationOperation.UPDATE_STATUS.value, {
                "id": work_order_id,
                "status": updated.status,
                "executionStart": updated.execution_start,
                "executionEnd": updated.execution_end,
                "updatedAt": updated.updated_at,
            })
            return updated

        updated = self.db.transaction(_update)
        logger.info("work_order_status_changed", work_order_id=work_order_id, old=existing.status, new=new_status)
        return updated

    def start(self, work_order_id: str) -> WorkOrder:
        return self.update_status(work_order_id, WorkOrderStatus.IN_PROGRESS.value)

    def complete(self, work_order_id: str) -> WorkOrder:
        return self.update_status(work_order_id, WorkOrderStatus.DONE.value)

    def cancel(self, work_order_id: str) -> WorkOrder:
        return self.update_status(work_order_id, WorkOrderStatus.CANCELED.value)

    def delete(self, work_order_id: str) -> bool:
        """Soft delete; only SCHEDULED work orders can be deleted."""
        existing = self._require(work_order_id)
        if not can_delete(existing.status):
            raise WorkOrderServiceError(
                ServiceError.CANNOT_DELETE,
                f"Cannot delete work order with status {existing.status}",
                {"currentStatus": existing.status},
            )

        def _delete(tx: Database) -> bool:
            deleted = WorkOrderRepository(tx).soft_delete(work_order_id)
            if deleted:
                self.outbox.enqueue(ENTITY, work_order_id, MutationOperation.DELETE.value, {"id": work_order_id})
            return deleted

        return self.db.transaction(_delete)
