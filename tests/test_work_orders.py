"""Tests for work order persistence and the work order service."""
from datetime import date

import pytest
from conftest import TECHNICIAN_ID, make_work_order_row

from fieldsync.errors import ServiceError, WorkOrderServiceError
from fieldsync.repositories.work_orders import WorkOrderRepository
from fieldsync.schemas.work_orders import (
    WorkOrderCreate,
    WorkOrderFilter,
    WorkOrderStatus,
    WorkOrderUpdate,
    is_valid_transition,
)
from fieldsync.services.work_orders import WorkOrderService


@pytest.fixture
def service(db, outbox):
    return WorkOrderService(db, outbox, TECHNICIAN_ID)


@pytest.fixture
def repo(db):
    return WorkOrderRepository(db)


class TestTransitions:
    """Status machine."""

    @pytest.mark.parametrize("current,new,allowed", [
        ("SCHEDULED", "IN_PROGRESS", True),
        ("SCHEDULED", "CANCELED", True),
        ("SCHEDULED", "DONE", False),
        ("IN_PROGRESS", "DONE", True),
        ("IN_PROGRESS", "SCHEDULED", False),
        ("DONE", "IN_PROGRESS", False),
        ("CANCELED", "SCHEDULED", False),
    ])
    def test_table(self, current, new, allowed):
        assert is_valid_transition(current, new) is allowed


class TestWorkOrderRepository:
    """Queries."""

    def _seed(self, db):
        db.insert("work_orders", make_work_order_row("wo-1", title="Compressor", scheduledDate="2024-03-10T13:00:00.000Z"))
        db.insert("work_orders", make_work_order_row("wo-2", title="Filter swap", status="DONE", scheduledDate="2024-03-09T13:00:00.000Z"))
        db.insert("work_orders", make_work_order_row("wo-3", title="Other tech", technicianId="tech-2"))
        db.insert("work_orders", make_work_order_row("wo-4", title="Deleted", isActive=0))
        db.insert("work_orders", make_work_order_row("wo-5", title="Boiler", clientName="Compressor Ltd", scheduledDate="2024-03-11T02:00:00.000Z"))

    def test_list_scoped_to_technician_and_active(self, db, repo):
        self._seed(db)
        assert [w.id for w in repo.list(TECHNICIAN_ID)] == ["wo-2", "wo-1", "wo-5"]

    def test_filter_by_status_list(self, db, repo):
        self._seed(db)
        found = repo.list(TECHNICIAN_ID, WorkOrderFilter(status=[WorkOrderStatus.DONE]))
        assert [w.id for w in found] == ["wo-2"]

    def test_search_covers_client_name(self, db, repo):
        self._seed(db)
        found = repo.list(TECHNICIAN_ID, WorkOrderFilter(search_query="compressor"))
        assert {w.id for w in found} == {"wo-1", "wo-5"}

    def test_limit_offset(self, db, repo):
        self._seed(db)
        found = repo.list(TECHNICIAN_ID, WorkOrderFilter(limit=1, offset=1))
        assert [w.id for w in found] == ["wo-1"]

    def test_get_by_day_uses_local_timezone(self, db, repo):
        """02:00 UTC on the 11th is still the 10th in Sao Paulo."""
        self._seed(db)
        found = repo.get_by_day(TECHNICIAN_ID, date(2024, 3, 10), "America/Sao_Paulo")
        assert {w.id for w in found} == {"wo-1", "wo-5"}

    def test_pending_sync(self, db, repo):
        db.insert("work_orders", make_work_order_row("wo-1", syncedAt="2024-03-02T00:00:00.000Z"))
        db.insert("work_orders", make_work_order_row("wo-2"))
        db.insert("work_orders", make_work_order_row("wo-3", syncedAt="2024-02-01T00:00:00.000Z"))
        assert {w.id for w in repo.get_pending_sync()} == {"wo-2", "wo-3"}

    def test_execution_start_set_once(self, db, repo):
        db.insert("work_orders", make_work_order_row(status="IN_PROGRESS", executionStart="2024-03-10T13:00:00.000Z"))
        updated = repo.update_status("wo-1", "IN_PROGRESS")
        assert updated.execution_start == "2024-03-10T13:00:00.000Z"

    def test_count(self, db, repo):
        self._seed(db)
        assert repo.count(TECHNICIAN_ID) == 3
        assert repo.count(TECHNICIAN_ID, "DONE") == 1


class TestWorkOrderService:
    """Writes and their outbox entries."""

    def test_create_enqueues(self, service, outbox):
        work_order = service.create(WorkOrderCreate(client_id="c1", title="Install"))
        assert work_order.status == "SCHEDULED"
        assert work_order.technician_id == TECHNICIAN_ID
        [queued] = outbox.get_by_entity("work_orders", work_order.id)
        assert queued.operation == "create"
        assert queued.payload["title"] == "Install"

    def test_create_requires_title(self, service, outbox):
        with pytest.raises(WorkOrderServiceError) as exc:
            service.create(WorkOrderCreate(client_id="c1", title="  "))
        assert exc.value.code == ServiceError.VALIDATION_ERROR
        assert outbox.count_pending() == 0

    def test_update_sends_changed_fields(self, service, outbox):
        work_order = service.create(WorkOrderCreate(client_id="c1", title="Install"))
        service.update(work_order.id, WorkOrderUpdate(notes="gate code 1234"))
        update = outbox.get_by_entity("work_orders", work_order.id)[-1]
        assert update.operation == "update"
        assert update.payload["notes"] == "gate code 1234"
        assert "title" not in update.payload

    def test_start_then_complete(self, service, outbox):
        work_order = service.create(WorkOrderCreate(client_id="c1", title="Install"))
        started = service.start(work_order.id)
        assert started.status == "IN_PROGRESS"
        assert started.execution_start
        done = service.complete(work_order.id)
        assert done.status == "DONE"
        assert done.execution_end
        ops = [m.operation for m in outbox.get_by_entity("work_orders", work_order.id)]
        assert ops == ["create", "update_status", "update_status"]

    def test_invalid_transition_writes_nothing(self, service, outbox):
        """A rejected status change leaves both the row and the outbox alone."""
        work_order = service.create(WorkOrderCreate(client_id="c1", title="Install"))
        with pytest.raises(WorkOrderServiceError) as exc:
            service.complete(work_order.id)
        assert exc.value.code == ServiceError.INVALID_TRANSITION
        assert exc.value.context == {"currentStatus": "SCHEDULED", "newStatus": "DONE"}
        assert service.get(work_order.id).status == "SCHEDULED"
        assert len(outbox.get_by_entity("work_orders", work_order.id)) == 1

    def test_unknown_status(self, service):
        work_order = service.create(WorkOrderCreate(client_id="c1", title="Install"))
        with pytest.raises(WorkOrderServiceError) as exc:
            service.update_status(work_order.id, "PAUSED")
        assert exc.value.code == ServiceError.VALIDATION_ERROR

    def test_done_is_not_editable(self, service):
        work_order = service.create(WorkOrderCreate(client_id="c1", title="Install"))
        service.start(work_order.id)
        service.complete(work_order.id)
        with pytest.raises(WorkOrderServiceError) as exc:
            service.update(work_order.id, WorkOrderUpdate(notes="late"))
        assert exc.value.code == ServiceError.CANNOT_EDIT

    def test_delete_only_scheduled(self, service, outbox):
        first = service.create(WorkOrderCreate(client_id="c1", title="A"))
        second = service.create(WorkOrderCreate(client_id="c1", title="B"))
        service.start(second.id)

        assert service.delete(first.id)
        assert service.get(first.id).is_active == 0
        assert outbox.get_by_entity("work_orders", first.id)[-1].operation == "delete"
        with pytest.raises(WorkOrderServiceError) as exc:
            service.delete(second.id)
        assert exc.value.code == ServiceError.CANNOT_DELETE

    def test_missing_work_order(self, service):
        with pytest.raises(WorkOrderServiceError) as exc:
            service.start("nope")
        assert exc.value.code == ServiceError.NOT_FOUND

    def test_list_excludes_deleted(self, service):
        keep = service.create(WorkOrderCreate(client_id="c1", title="Keep"))
        gone = service.create(WorkOrderCreate(client_id="c1", title="Gone"))
        service.delete(gone.id)
        assert [w.id for w in service.list()] == [keep.id]
