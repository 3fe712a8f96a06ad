"""Tests for the sync engine: delta pull, push, replay and offline handling."""
import json

import httpx
from conftest import TECHNICIAN_ID, make_work_order_row

from fieldsync.repositories.checklist_answers import ChecklistAnswerRepository
from fieldsync.repositories.checklist_attachments import ChecklistAttachmentRepository
from fieldsync.repositories.execution_sessions import ExecutionSessionRepository
from fieldsync.schemas.sync import MutationStatus, SyncStatus
from fieldsync.services.answer_values import set_answer_value
from fieldsync.sync.adapters.clients import ClientSyncAdapter
from fieldsync.sync.api_client import SyncApiClient
from fieldsync.sync.engine import SyncEngine
from fieldsync.sync.outbox import MutationOutbox


WO_PULL = "/work-orders/sync"
WO_PUSH = "/work-orders/sync/mutations"


def _page(items, has_more=False, next_cursor=None):
    return {"items": items, "hasMore": has_more, "nextCursor": next_cursor}


class TestConfiguration:
    """Registration and configuration."""

    def test_adapters_in_push_priority_order(self, engine):
        names = [a.name for a in engine.adapters()]
        assert names == [
            "clients", "quotes", "work_orders",
            "checklist_templates", "checklist_instances", "checklist_answers",
        ]

    def test_unconfigured_engine_does_not_sync(self, db, outbox, api_client, network):
        engine = SyncEngine(db, outbox, api_client, network)
        assert engine.sync_all() == []

    def test_unconfigured_pull_reports_error(self, db, outbox, network, backend):
        engine = SyncEngine(db, outbox, SyncApiClient(), network)
        engine.register(ClientSyncAdapter())
        result = engine.pull("clients")
        assert result.errors[0].message == "sync engine not configured"
        assert backend.requests == []

    def test_sync_meta_row_created_on_register(self, engine):
        meta = engine.get_sync_meta("work_orders")
        assert meta.last_cursor is None
        assert meta.sync_status == SyncStatus.IDLE.value


class TestPull:
    """Delta pull."""

    def test_pull_stores_rows_with_technician_and_synced_at(self, engine, backend, db):
        backend.pages[WO_PULL] = [_page([make_work_order_row(technicianId=None)])]
        result = engine.pull("work_orders")
        assert result.pulled == 1
        row = db.find_by_id("work_orders", "wo-1")
        assert row["technicianId"] == TECHNICIAN_ID
        assert row["syncedAt"] is not None

    def test_scope_params_sent(self, engine, backend):
        engine.pull("work_orders")
        params = backend.pulls(WO_PULL)[0].url.params
        assert params["scope"] == "date_range"
        assert params["startDate"] < params["endDate"]
        assert "since" not in params

    def test_pages_followed_until_has_more_false(self, engine, backend, db):
        backend.pages[WO_PULL] = [
            _page([make_work_order_row("wo-1")], has_more=True, next_cursor="c-1"),
            _page([make_work_order_row("wo-2")], has_more=True, next_cursor="c-2"),
            _page([make_work_order_row("wo-3")]),
        ]
        result = engine.pull("work_orders")
        assert result.pages == 3
        assert db.count("work_orders") == 3
        cursors = [r.url.params.get("cursor") for r in backend.pulls(WO_PULL)]
        assert cursors == [None, "c-1", "c-2"]

    def test_has_more_without_cursor_stops(self, engine, backend):
        backend.pages[WO_PULL] = [_page([make_work_order_row()], has_more=True, next_cursor=None)]
        assert engine.pull("work_orders").pages == 1

    def test_next_pull_sends_max_cursor_as_since(self, engine, backend):
        backend.pages[WO_PULL] = [_page([
            make_work_order_row("wo-1", updatedAt="2024-03-02T10:00:00.000Z"),
            make_work_order_row("wo-2", updatedAt="2024-03-05T10:00:00.000Z"),
            make_work_order_row("wo-3", updatedAt="2024-03-03T10:00:00.000Z"),
        ]), _page([])]
        engine.pull("work_orders")
        assert engine.get_sync_meta("work_orders").last_cursor == "2024-03-05T10:00:00.000Z"

        engine.pull("work_orders")
        assert backend.pulls(WO_PULL)[-1].url.params["since"] == "2024-03-05T10:00:00.000Z"

    def test_failed_pull_keeps_cursor(self, engine, backend):
        backend.pages[WO_PULL] = [_page([make_work_order_row(updatedAt="2024-03-05T10:00:00.000Z")])]
        engine.pull("work_orders")
        backend.fail_with = 503
        result = engine.pull("work_orders")
        assert result.offline
        meta = engine.get_sync_meta("work_orders")
        assert meta.last_cursor == "2024-03-05T10:00:00.000Z"
        assert meta.sync_status == SyncStatus.ERROR.value

    def test_rejected_pull_is_not_offline(self, engine, backend):
        backend.fail_with = 400
        result = engine.pull("work_orders")
        assert not result.offline
        assert result.errors

    def test_reset_sync_meta_forces_full_pull(self, engine, backend):
        backend.pages[WO_PULL] = [_page([make_work_order_row()])]
        engine.pull("work_orders")
        engine.reset_sync_meta("work_orders")
        engine.pull("work_orders")
        assert "since" not in backend.pulls(WO_PULL)[-1].url.params

    def test_pending_local_change_survives_pull(self, engine, backend, db, outbox):
        """Server row is stored, then queued local edits are replayed on top of it."""
        db.insert("work_orders", make_work_order_row(title="Old"))
        outbox.enqueue("work_orders", "wo-1", "update", {"id": "wo-1", "title": "Local title"})
        backend.pages[WO_PULL] = [_page([
            make_work_order_row(title="Server title", notes="from office", updatedAt="2024-03-04T00:00:00.000Z"),
        ])]

        engine.pull("work_orders")
        row = db.find_by_id("work_orders", "wo-1")
        assert row["title"] == "Local title"
        assert row["notes"] == "from office"
        assert row["syncedAt"] is None
        assert outbox.count_pending("work_orders") == 1

    def test_pending_delete_survives_pull(self, engine, backend, db, outbox):
        db.insert("work_orders", make_work_order_row())
        outbox.enqueue("work_orders", "wo-1", "delete", {"id": "wo-1"})
        backend.pages[WO_PULL] = [_page([make_work_order_row()])]
        engine.pull("work_orders")
        row = db.find_by_id("work_orders", "wo-1")
        assert row["isActive"] == 0
        assert row["deletedAt"] is not None

    def test_quotes_saved_with_items(self, engine, backend, db):
        backend.pages["/quotes/sync"] = [_page([{
            "id": "q1", "clientId": "client-1", "totalValue": "150.5",
            "updatedAt": "2024-03-01T00:00:00.000Z",
            "items": [{"name": "Filter", "quantity": 2, "unitPrice": 10}, {"name": "Labour"}],
        }])]
        engine.pull("quotes")
        assert db.find_by_id("quotes", "q1")["totalValue"] == 150.5
        items = db.find_all("quote_items", where={"quoteId": "q1"}, order_by="sortOrder")
        assert [i["name"] for i in items] == ["Filter", "Labour"]

    def test_answers_pulled_per_instance(self, engine, backend, db):
        db.insert("checklist_instances", {"id": "inst-1", "workOrderId": "wo-1", "templateId": "t", "status": "IN_PROGRESS", "technicianId": TECHNICIAN_ID})
        db.insert("checklist_instances", {"id": "inst-2", "workOrderId": "wo-1", "templateId": "t", "status": "CANCELLED", "technicianId": TECHNICIAN_ID})
        engine.pull("checklist_answers")
        requests = backend.pulls("/checklist-instances/answers/sync")
        assert [r.url.params["instanceId"] for r in requests] == ["inst-1"]

    def test_pulled_answer_adopts_local_answer_to_same_question(self, engine, backend, db, outbox):
        """A server copy of a locally created answer takes over the local row instead of colliding with it."""
        db.insert("checklist_instances", {"id": "inst-1", "workOrderId": "wo-1", "templateId": "t", "status": "IN_PROGRESS", "technicianId": TECHNICIAN_ID})
        answers = ChecklistAnswerRepository(db)
        answer = answers.create("inst-1", "q1", "TEXT_SHORT", set_answer_value("TEXT_SHORT", "local"))
        attachment = ChecklistAttachmentRepository(db).create("PHOTO", answer_id=answer.id, base64_data="eA==")
        outbox.enqueue("checklist_answers", answer.id, "create", answer.to_row())
        backend.pages["/checklist-instances/answers/sync"] = [_page([{
            "id": "srv-1", "instanceId": "inst-1", "questionId": "q1", "type": "TEXT_SHORT",
            "valueText": "server", "updatedAt": "2024-01-01T00:00:00.000Z",
        }])]

        result = engine.sync_entity("checklist_answers")

        assert result.success
        assert db.count("checklist_answers") == 1
        assert answers.get_by_id(answer.id) is None
        # the queued local edit is replayed over the server copy
        assert answers.get_by_id("srv-1").value_text == "local"
        assert ChecklistAttachmentRepository(db).get_by_id(attachment.id).answer_id == "srv-1"
        [mutation] = backend.pushed_mutations("/checklist-instances/sync")
        assert mutation["mutationId"].startswith("srv-1-create-")
        assert mutation["record"]["id"] == "srv-1"


class TestPush:
    """Draining the outbox to the server."""

    def test_wire_format(self, engine, backend, outbox):
        row = make_work_order_row(notes="bring ladder")
        queue_id = outbox.enqueue("work_orders", "wo-1", "create", row)
        result = engine.push("work_orders")
        assert result.pushed == 1
        [mutation] = backend.pushed_mutations(WO_PUSH)
        assert mutation["mutationId"] == f"wo-1-create-{queue_id}"
        assert mutation["action"] == "create"
        assert mutation["record"]["notes"] == "bring ladder"
        assert mutation["clientUpdatedAt"] == row["updatedAt"]
        # ownership is decided by the server from the auth token
        assert "technicianId" not in mutation["record"]

    def test_delete_sends_only_id(self, engine, backend, outbox):
        outbox.enqueue("work_orders", "wo-1", "delete", {"id": "wo-1", "title": "x"})
        engine.push("work_orders")
        assert backend.pushed_mutations(WO_PUSH)[0]["record"] == {"id": "wo-1"}

    def test_applied_mutation_stamps_synced_at(self, engine, db, outbox):
        db.insert("work_orders", make_work_order_row())
        queue_id = outbox.enqueue("work_orders", "wo-1", "update", {"id": "wo-1", "title": "New"})
        engine.push("work_orders")
        assert outbox.get_by_id(queue_id).status == MutationStatus.COMPLETED.value
        assert db.find_by_id("work_orders", "wo-1")["syncedAt"] is not None

    def test_rejected_mutation_marked_failed(self, engine, backend, outbox):
        backend.push_handler = lambda path, ms: [
            {"mutationId": m["mutationId"], "status": "rejected", "error": "title required"} for m in ms
        ]
        queue_id = outbox.enqueue("work_orders", "wo-1", "update", {"id": "wo-1"})
        result = engine.push("work_orders")
        assert result.failed == 1
        item = outbox.get_by_id(queue_id)
        assert item.status == MutationStatus.FAILED.value
        assert item.error_message == "title required"

    def test_server_error_keeps_mutation_pending(self, engine, backend, outbox):
        backend.fail_with = 500
        queue_id = outbox.enqueue("work_orders", "wo-1", "update", {"id": "wo-1"})
        result = engine.push("work_orders")
        assert result.stopped
        assert outbox.get_by_id(queue_id).status == MutationStatus.PENDING.value

    def test_rate_limited_is_transient(self, engine, backend, outbox):
        backend.fail_with = 429
        queue_id = outbox.enqueue("work_orders", "wo-1", "update", {"id": "wo-1"})
        engine.push("work_orders")
        assert outbox.get_by_id(queue_id).status == MutationStatus.PENDING.value

    def test_bad_request_fails_batch(self, engine, backend, outbox):
        backend.fail_with = 422
        queue_id = outbox.enqueue("work_orders", "wo-1", "update", {"id": "wo-1"})
        engine.push("work_orders")
        assert outbox.get_by_id(queue_id).status == MutationStatus.FAILED.value

    def test_results_matched_by_local_id(self, engine, backend, outbox):
        backend.push_handler = lambda path, ms: [{"localId": m["record"]["id"], "success": True} for m in ms]
        outbox.enqueue("work_orders", "wo-1", "update", {"id": "wo-1"})
        assert engine.push("work_orders").pushed == 1

    def test_pull_only_entity_not_pushed(self, engine, backend, outbox):
        outbox.enqueue("checklist_templates", "t1", "update", {"id": "t1"})
        assert engine.push("checklist_templates").pushed == 0
        assert backend.posts() == []

    def test_server_id_replaces_local_id(self, engine, backend, db, outbox):
        """The answer row, its attachments and later queued edits move to the server id."""
        answers = ChecklistAnswerRepository(db)
        answer = answers.create("inst-1", "q1", "TEXT_SHORT", set_answer_value("TEXT_SHORT", "abc"))
        attachment = ChecklistAttachmentRepository(db).create("PHOTO", answer_id=answer.id, base64_data="eA==")
        outbox.enqueue("checklist_answers", answer.id, "create", answer.to_row())
        backend.push_handler = lambda path, ms: [
            {"mutationId": ms[0]["mutationId"], "status": "applied", "serverId": "srv-answer-1"},
        ]

        assert engine.push("checklist_answers").pushed == 1
        assert answers.get_by_id(answer.id) is None
        synced = answers.get_by_id("srv-answer-1")
        assert synced.sync_status == "SYNCED"
        assert synced.value_text == "abc"
        assert ChecklistAttachmentRepository(db).get_by_id(attachment.id).answer_id == "srv-answer-1"

    def test_instance_server_id_updates_queued_answers(self, engine, backend, db, outbox):
        db.insert("checklist_instances", {"id": "local-inst", "workOrderId": "wo-1", "templateId": "t", "localId": "local-inst"})
        outbox.enqueue("checklist_instances", "local-inst", "create", {"id": "local-inst", "workOrderId": "wo-1"})
        db.insert("checklist_answers", {"id": "a1", "instanceId": "local-inst", "questionId": "q1", "type": "TEXT_SHORT"})
        outbox.enqueue("checklist_answers", "a1", "create", {"id": "a1", "instanceId": "local-inst"})
        backend.push_handler = lambda path, ms: [
            {"mutationId": m["mutationId"], "status": "applied", "serverId": "srv-inst"} for m in ms
        ]

        engine.push("checklist_instances")
        assert db.find_by_id("checklist_instances", "srv-inst")["localId"] == "local-inst"
        assert db.find_by_id("checklist_answers", "a1")["instanceId"] == "srv-inst"
        [queued] = outbox.get_by_entity("checklist_answers", "a1")
        assert queued.payload["instanceId"] == "srv-inst"

    def test_synced_status_waits_for_later_edits(self, engine, backend, db, outbox):
        answers = ChecklistAnswerRepository(db)
        answer = answers.create("inst-1", "q1", "TEXT_SHORT", set_answer_value("TEXT_SHORT", "a"))
        outbox.enqueue("checklist_answers", answer.id, "create", answer.to_row())
        outbox.enqueue("checklist_answers", answer.id, "update", answer.to_row())
        backend.push_handler = lambda path, ms: [
            {"mutationId": ms[0]["mutationId"], "status": "applied"},
            {"mutationId": ms[1]["mutationId"], "status": "retry"},
        ]
        engine.push("checklist_answers")
        assert answers.get_by_id(answer.id).sync_status == "PENDING"


class TestSyncAll:
    """Full cycle."""

    def test_sync_all_success(self, engine, backend, outbox):
        backend.pages[WO_PULL] = [_page([make_work_order_row()])]
        outbox.enqueue("clients", "c1", "update", {"id": "c1", "name": "ACME"})
        events = []
        engine.subscribe(lambda event, data: events.append(event))

        results = engine.sync_all()
        assert all(r.success for r in results)
        assert {r.entity: r.pulled for r in results}["work_orders"] == 1
        assert {r.entity: r.pushed for r in results}["clients"] == 1
        assert events[0] == "sync_start"
        assert events[-1] == "sync_complete"
        assert engine.get_state().status == SyncStatus.IDLE.value

    def test_pull_happens_before_push(self, engine, backend, outbox):
        outbox.enqueue("work_orders", "wo-1", "update", {"id": "wo-1"})
        engine.sync_entity("work_orders")
        methods = [r.method for r in backend.requests]
        assert methods == ["GET", "POST"]

    def test_offline_sync_makes_no_requests(self, engine, backend, network, outbox):
        network.set_online(False)
        queue_id = outbox.enqueue("work_orders", "wo-1", "update", {"id": "wo-1"})
        results = engine.sync_all()
        assert results and all(r.offline and not r.success for r in results)
        assert backend.requests == []
        assert outbox.get_by_id(queue_id).status == MutationStatus.PENDING.value

    def test_unreachable_server_stops_the_cycle(self, engine, backend, outbox):
        backend.raise_network_error = True
        queue_id = outbox.enqueue("work_orders", "wo-1", "update", {"id": "wo-1"})
        results = engine.sync_all()
        assert all(r.offline for r in results)
        # first entity hit the network, the rest were not attempted
        assert len(backend.requests) == 1
        item = outbox.get_by_id(queue_id)
        assert item.status == MutationStatus.PENDING.value
        assert item.attempts == 0
        assert engine.get_state().status == SyncStatus.ERROR.value

    def test_probe_exception_counts_as_offline(self, db, outbox, api_client, backend):
        class BrokenProbe:
            def is_network_online(self):
                raise OSError("no route")

        engine = SyncEngine(db, outbox, api_client, BrokenProbe())
        engine.configure("https://api.test", "t", TECHNICIAN_ID)
        assert not engine.is_online()

    def test_concurrent_sync_returns_empty(self, engine):
        engine._lock.acquire()
        try:
            assert engine.sync_all() == []
        finally:
            engine._lock.release()

    def test_push_only(self, engine, backend, outbox):
        outbox.enqueue("work_orders", "wo-1", "update", {"id": "wo-1"})
        summary = engine.push_only()
        assert summary.pushed == 1
        assert all(r.method == "POST" for r in backend.requests)

    def test_state_counts_pending(self, engine, outbox):
        outbox.enqueue("work_orders", "wo-1", "update", {"id": "wo-1"})
        state = engine.get_state()
        assert state.pending_mutations == 1
        assert state.is_configured
        assert engine.has_pending_data()

    def test_engine_uses_separate_outbox_instance(self, db, engine):
        """Mutations written through any outbox over the same store are pushed."""
        MutationOutbox(db).enqueue("clients", "c1", "update", {"id": "c1"})
        assert engine.push("clients").pushed == 1


def _closed_session(db, work_order_id, session_type, started_at, pause_reason=None):
    sessions = ExecutionSessionRepository(db)
    session = sessions.create(work_order_id, session_type, TECHNICIAN_ID, pause_reason, started_at=started_at)
    return sessions.end_session(session.id)


def _ack_all(path, body):
    return httpx.Response(200, json={"results": [
        {"localId": s["localId"], "serverId": f"srv-{s['localId']}", "success": True} for s in body["sessions"]
    ]})


class TestExecutionSessionPush:
    """Finished WORK/PAUSE sessions sent per work order."""

    def test_closed_sessions_grouped_by_work_order(self, engine, backend, db):
        work = _closed_session(db, "wo-1", "WORK", "2024-03-10T08:00:00.000Z")
        pause = _closed_session(db, "wo-1", "PAUSE", "2024-03-10T09:00:00.000Z", pause_reason="lunch")
        other = _closed_session(db, "wo-2", "WORK", "2024-03-10T10:00:00.000Z")
        ExecutionSessionRepository(db).start_work_session("wo-1", TECHNICIAN_ID)
        backend.post_handler = _ack_all

        result = engine.push_execution_sessions()

        assert result.pushed == 3
        assert [r.url.path for r in backend.posts()] == [
            "/work-orders/wo-1/execution-sessions/sync",
            "/work-orders/wo-2/execution-sessions/sync",
        ]
        body = json.loads(backend.posts()[0].content)
        assert body["workOrderId"] == "wo-1"
        assert [s["localId"] for s in body["sessions"]] == [work.id, pause.id]
        assert body["sessions"][1]["pauseReason"] == "lunch"
        sessions = ExecutionSessionRepository(db)
        assert sessions.get_by_id(other.id).server_id == f"srv-{other.id}"
        # only the still-open session is left
        assert sessions.count_pending_sync() == 1

    def test_rejected_work_order_is_skipped(self, engine, backend, db):
        rejected = _closed_session(db, "wo-1", "WORK", "2024-03-10T08:00:00.000Z")
        accepted = _closed_session(db, "wo-2", "WORK", "2024-03-10T09:00:00.000Z")

        def _handler(path, body):
            if body["workOrderId"] == "wo-1":
                return httpx.Response(404, json={"message": "Work order not found"})
            return _ack_all(path, body)

        backend.post_handler = _handler
        result = engine.push_execution_sessions()

        assert (result.pushed, result.failed) == (1, 1)
        pending = ExecutionSessionRepository(db).get_pending_sync()
        assert [s.id for s in pending] == [rejected.id]
        assert ExecutionSessionRepository(db).get_by_id(accepted.id).synced_at is not None

    def test_unacknowledged_session_stays_pending(self, engine, backend, db):
        session = _closed_session(db, "wo-1", "WORK", "2024-03-10T08:00:00.000Z")
        backend.post_handler = lambda path, body: httpx.Response(200, json={"results": [
            {"localId": session.id, "success": False, "error": "overlapping session"},
        ]})
        result = engine.push_execution_sessions()
        assert result.failed == 1
        assert result.errors[0].message == "overlapping session"
        assert ExecutionSessionRepository(db).count_pending_sync("wo-1") == 1

    def test_unreachable_server_stops_without_raising(self, engine, backend, db):
        _closed_session(db, "wo-1", "WORK", "2024-03-10T08:00:00.000Z")
        _closed_session(db, "wo-2", "WORK", "2024-03-10T09:00:00.000Z")
        backend.raise_network_error = True
        result = engine.push_execution_sessions()
        assert result.stopped
        assert len(backend.requests) == 1
        assert ExecutionSessionRepository(db).count_pending_sync() == 2

    def test_offline_makes_no_requests(self, engine, backend, network, db):
        _closed_session(db, "wo-1", "WORK", "2024-03-10T08:00:00.000Z")
        network.set_online(False)
        result = engine.push_execution_sessions()
        assert result.errors[0].message == "offline"
        assert backend.requests == []

    def test_sync_all_pushes_sessions_last(self, engine, backend, db):
        session = _closed_session(db, "wo-1", "WORK", "2024-03-10T08:00:00.000Z")
        backend.post_handler = _ack_all
        results = engine.sync_all()
        assert all(r.success for r in results)
        assert backend.requests[-1].url.path == "/work-orders/wo-1/execution-sessions/sync"
        assert ExecutionSessionRepository(db).get_by_id(session.id).server_id == f"srv-{session.id}"

    def test_session_failure_does_not_fail_the_cycle(self, engine, backend, db):
        _closed_session(db, "wo-1", "WORK", "2024-03-10T08:00:00.000Z")
        backend.post_handler = lambda path, body: httpx.Response(500, json={"message": "boom"})
        results = engine.sync_all()
        assert all(r.success for r in results)
        assert engine.get_state().status == SyncStatus.IDLE.value
        assert ExecutionSessionRepository(db).count_pending_sync() == 1

    def test_push_only_includes_sessions(self, engine, backend, db, outbox):
        _closed_session(db, "wo-1", "WORK", "2024-03-10T08:00:00.000Z")
        outbox.enqueue("work_orders", "wo-1", "update", {"id": "wo-1"})
        backend.post_handler = _ack_all
        assert engine.push_only().pushed == 2
