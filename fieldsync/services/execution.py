"""
Work order execution tracking: start, pause, resume, complete and cancel,
with WORK/PAUSE sessions timing the technician's work.
"""
from typing import Optional

import structlog

from ..db import Database
from ..errors import ServiceError, WorkOrderServiceError
from ..events import EventEmitter
from ..repositories.checklist_instances import ChecklistInstanceRepository
from ..repositories.execution_sessions import ExecutionSessionRepository
from ..repositories.work_orders import WorkOrderRepository
from ..schemas.execution import ExecutionResult, ExecutionState, ExecutionSummary, SessionType
from ..schemas.work_orders import WorkOrderStatus
from ..sync.outbox import MutationOutbox
from .time_rules import format_duration, seconds_between
from .work_orders import WorkOrderService


logger = structlog.get_logger(__name__)

NOT_FOUND = "Work order not found"


class WorkOrderExecutionService:
    def __init__(self, db: Database, outbox: MutationOutbox, technician_id: Optional[str] = None):
        self.db = db
        self.technician_id = technician_id
        self.work_orders = WorkOrderRepository(db)
        self.sessions = ExecutionSessionRepository(db)
        self.instances = ChecklistInstanceRepository(db)
        self.work_order_service = WorkOrderService(db, outbox, technician_id)
        self.events = EventEmitter("execution")

    def subscribe(self, listener):
        return self.events.subscribe(listener)

    def get_execution_state(self, work_order_id: str) -> ExecutionState:
        work_order = self.work_orders.get_by_id(work_order_id)
        if work_order is None:
            raise WorkOrderServiceError(ServiceError.NOT_FOUND, NOT_FOUND, {"workOrderId": work_order_id})

        active = self.sessions.get_active_session(work_order_id)
        summary = self.sessions.get_time_summary(work_order_id)
        in_progress = work_order.status == WorkOrderStatus.IN_PROGRESS.value
        is_paused = in_progress and active is not None and active.session_type == SessionType.PAUSE.value
        return ExecutionState(
            work_order_id=work_order_id,
            status=work_order.status,
            is_executing=in_progress and active is not None and active.session_type == SessionType.WORK.value,
            is_paused=is_paused,
            active_session=active,
            total_work_time=summary.total_work_time,
            total_pause_time=summary.total_pause_time,
            current_session_time=seconds_between(active.started_at) if active else 0,
            pause_reason=active.pause_reason if is_paused else None,
        )

    def get_execution_summary(self, work_order_id: str) -> ExecutionSummary:
        work_order = self.work_orders.get_by_id(work_order_id)
        if work_order is None:
            raise WorkOrderServiceError(ServiceError.NOT_FOUND, NOT_FOUND, {"workOrderId": work_order_id})
        summary = self.sessions.get_time_summary(work_order_id)
        return ExecutionSummary(
            work_order_id=work_order_id,
            status=work_order.status,
            first_started_at=work_order.execution_start,
            last_ended_at=work_order.execution_end,
            total_work_time=summary.total_work_time,
            total_pause_time=summary.total_pause_time,
            total_work_time_formatted=format_duration(summary.total_work_time),
            total_pause_time_formatted=format_duration(summary.total_pause_time),
            session_count=summary.session_count,
            pause_count=summary.pause_count,
        )

    def _fail(self, work_order_id: str, error: str) -> ExecutionResult:
        logger.info("execution_rejected", work_order_id=work_order_id, error=error)
        return ExecutionResult(success=False, error=error)

    def start_execution(self, work_order_id: str) -> ExecutionResult:
        """SCHEDULED -> IN_PROGRESS and open a WORK session."""
        work_order = self.work_orders.get_by_id(work_order_id)
        if work_order is None:
            return self._fail(work_order_id, NOT_FOUND)

        if work_order.status == WorkOrderStatus.IN_PROGRESS.value:
            active = self.sessions.get_active_session(work_order_id)
            if active is not None and active.session_type == SessionType.WORK.value:
                return self._fail(work_order_id, "Work order is already being executed")
            if active is not None and active.session_type == SessionType.PAUSE.value:
                return self._fail(work_order_id, "Work order is paused; resume it instead")
        elif work_order.status != WorkOrderStatus.SCHEDULED.value:
            return self._fail(work_order_id, f"Cannot start a work order with status {work_order.status}")

        def _start(tx: Database) -> None:
            if work_order.status == WorkOrderStatus.SCHEDULED.value:
                self.work_order_service.start(work_order_id)
            ExecutionSessionRepository(tx).start_work_session(work_order_id, self.technician_id)

        try:
            self.db.transaction(_start)
        except ServiceError as e:
            return self._fail(work_order_id, e.message)
        self.events.emit("started", work_order_id=work_order_id)
        return ExecutionResult(success=True, new_status=WorkOrderStatus.IN_PROGRESS.value)

    def pause_execution(self, work_order_id: str, reason: Optional[str] = None) -> ExecutionResult:
        work_order = self.work_orders.get_by_id(work_order_id)
        if work_order is None:
            return self._fail(work_order_id, NOT_FOUND)
        if work_order.status != WorkOrderStatus.IN_PROGRESS.value:
            return self._fail(work_order_id, "Only a work order in progress can be paused")
        active = self.sessions.get_active_session(work_order_id)
        if active is not None and active.session_type == SessionType.PAUSE.value:
            return self._fail(work_order_id, "Work order is already paused")

        self.sessions.start_pause_session(work_order_id, self.technician_id, reason)
        self.events.emit("paused", work_order_id=work_order_id, reason=reason)
        return ExecutionResult(success=True, new_status=WorkOrderStatus.IN_PROGRESS.value)

    def resume_execution(self, work_order_id: str) -> ExecutionResult:
        work_order = self.work_orders.get_by_id(work_order_id)
        if work_order is None:
            return self._fail(work_order_id, NOT_FOUND)
        if work_order.status != WorkOrderStatus.IN_PROGRESS.value:
            return self._fail(work_order_id, "Only a work order in progress can be resumed")
        active = self.sessions.get_active_session(work_order_id)
        if active is None or active.session_type != SessionType.PAUSE.value:
            return self._fail(work_order_id, "Work order is not paused")

        self.sessions.start_work_session(work_order_id, self.technician_id)
        self.events.emit("resumed", work_order_id=work_order_id)
        return ExecutionResult(success=True, new_status=WorkOrderStatus.IN_PROGRESS.value)

    def complete_execution(self, work_order_id: str, require_all_checklists_complete: bool = False) -> ExecutionResult:
        """Close the open session and move IN_PROGRESS -> DONE."""
        work_order = self.work_orders.get_by_id(work_order_id)
        if work_order is None:
            return self._fail(work_order_id, NOT_FOUND)
        if work_order.status != WorkOrderStatus.IN_PROGRESS.value:
            return self._fail(
                work_order_id, f"Only a work order in progress can be completed. Current status: {work_order.status}"
            )
        if require_all_checklists_complete and not self.instances.are_all_completed(work_order_id):
            return self._fail(work_order_id, "All checklists must be completed before finishing the work order")

        def _complete(tx: Database) -> None:
            ExecutionSessionRepository(tx).end_all_active_sessions(work_order_id)
            self.work_order_service.complete(work_order_id)

        try:
            self.db.transaction(_complete)
        except ServiceError as e:
            return self._fail(work_order_id, e.message)
        self.events.emit("completed", work_order_id=work_order_id)
        logger.info("execution_completed", work_order_id=work_order_id)
        return ExecutionResult(success=True, new_status=WorkOrderStatus.DONE.value)

    def cancel_execution(self, work_order_id: str) -> ExecutionResult:
        work_order = self.work_orders.get_by_id(work_order_id)
        if work_order is None:
            return self._fail(work_order_id, NOT_FOUND)

        def _cancel(tx: Database) -> None:
            ExecutionSessionRepository(tx).end_all_active_sessions(work_order_id)
            self.work_order_service.cancel(work_order_id)

        try:
            self.db.transaction(_cancel)
        except ServiceError as e:
            return self._fail(work_order_id, e.message)
        self.events.emit("status_changed", work_order_id=work_order_id, new_status=WorkOrderStatus.CANCELED.value)
        return ExecutionResult(success=True, new_status=WorkOrderStatus.CANCELED.value)
