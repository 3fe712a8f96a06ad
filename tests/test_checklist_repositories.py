"""Tests for checklist instance, answer and attachment persistence."""
import pytest

from fieldsync.repositories.checklist_answers import ChecklistAnswerRepository
from fieldsync.repositories.checklist_attachments import ChecklistAttachmentRepository
from fieldsync.repositories.checklist_instances import ChecklistInstanceRepository
from fieldsync.services.answer_values import set_answer_value


@pytest.fixture
def instances(db):
    return ChecklistInstanceRepository(db)


@pytest.fixture
def answers(db):
    return ChecklistAnswerRepository(db)


@pytest.fixture
def attachments(db):
    return ChecklistAttachmentRepository(db, max_upload_attempts=3)


class TestInstances:
    """Checklist instances."""

    def test_create_defaults(self, instances):
        instance = instances.create("wo-1", "tpl-1", '{"id":"tpl-1","name":"T"}', "T", "tech-1")
        assert instance.status == "PENDING"
        assert instance.progress == 0
        assert instance.local_id == instance.id
        assert instances.get_by_id(instance.id).snapshot().name == "T"

    def test_status_timestamps(self, instances):
        instance = instances.create("wo-1", "tpl-1")
        started = instances.update_status(instance.id, "IN_PROGRESS")
        assert started.started_at
        completed = instances.update_status(instance.id, "COMPLETED", completed_by="tech-1")
        assert completed.completed_at and completed.completed_by == "tech-1"
        assert completed.progress == 100
        reopened = instances.update_status(instance.id, "IN_PROGRESS")
        assert reopened.completed_at is None
        assert reopened.started_at == started.started_at

    def test_progress_clamped(self, instances):
        instance = instances.create("wo-1", "tpl-1")
        instances.update_progress(instance.id, 140)
        assert instances.get_by_id(instance.id).progress == 100
        instances.update_progress(instance.id, -3)
        assert instances.get_by_id(instance.id).progress == 0

    def test_mark_synced_moves_answers(self, instances, answers):
        instance = instances.create("wo-1", "tpl-1")
        answers.create(instance.id, "q1", "TEXT_SHORT", set_answer_value("TEXT_SHORT", "x"))
        synced = instances.mark_synced(instance.id, "srv-1")
        assert synced.id == "srv-1"
        assert synced.local_id == instance.id
        assert synced.synced_at
        assert instances.get_by_id(instance.id) is None
        assert len(answers.get_by_instance("srv-1")) == 1

    def test_mark_synced_same_id(self, instances):
        instance = instances.create("wo-1", "tpl-1")
        assert instances.mark_synced(instance.id).synced_at

    def test_are_all_completed(self, instances):
        first = instances.create("wo-1", "tpl-1")
        second = instances.create("wo-1", "tpl-2")
        assert not instances.are_all_completed("wo-1")
        instances.update_status(first.id, "CANCELLED")
        instances.update_status(second.id, "IN_PROGRESS")
        instances.update_status(second.id, "COMPLETED")
        assert instances.are_all_completed("wo-1")
        assert instances.are_all_completed("wo-without-checklists")

    def test_delete_cascades_answers(self, instances, answers):
        instance = instances.create("wo-1", "tpl-1")
        answers.create(instance.id, "q1", "TEXT_SHORT")
        assert instances.delete(instance.id)
        assert answers.count_by_instance(instance.id) == 0

    def test_delete_by_work_order(self, instances):
        instances.create("wo-1", "tpl-1")
        instances.create("wo-1", "tpl-2")
        instances.create("wo-2", "tpl-1")
        assert instances.delete_by_work_order("wo-1") == 2
        assert len(instances.get_by_work_order("wo-2")) == 1


class TestAnswers:
    """Checklist answers."""

    def test_upsert_keeps_one_row_per_question(self, answers):
        """Re-answering updates the same row; there is never a second answer for a question."""
        first = answers.upsert("i1", "q1", "TEXT_SHORT", set_answer_value("TEXT_SHORT", "a"))
        second = answers.upsert("i1", "q1", "TEXT_SHORT", set_answer_value("TEXT_SHORT", "b"))
        assert first.id == second.id
        assert answers.count_by_instance("i1") == 1
        assert answers.get_by_question("i1", "q1").value_text == "b"

    def test_upsert_resets_sync_status(self, answers):
        answer = answers.upsert("i1", "q1", "TEXT_SHORT", set_answer_value("TEXT_SHORT", "a"))
        answers.update_sync_status(answer.id, "SYNCED")
        assert answers.get_by_id(answer.id).synced_at
        answers.upsert("i1", "q1", "TEXT_SHORT", set_answer_value("TEXT_SHORT", "b"))
        assert answers.get_by_id(answer.id).sync_status == "PENDING"

    def test_upsert_switching_type_clears_old_slot(self, answers):
        answers.upsert("i1", "q1", "TEXT_SHORT", set_answer_value("TEXT_SHORT", "a"))
        answer = answers.upsert("i1", "q1", "NUMBER", set_answer_value("NUMBER", 4))
        assert answer.value_text is None
        assert answer.value_number == 4.0

    def test_mark_synced_with_server_id_by_local_id(self, answers):
        answer = answers.create("i1", "q1", "CHECKBOX", set_answer_value("CHECKBOX", True))
        synced = answers.mark_synced_with_server_id(answer.local_id, "srv-a")
        assert synced.id == "srv-a"
        assert synced.sync_status == "SYNCED"
        assert synced.value_boolean is True
        assert answers.get_by_id(answer.id) is None

    def test_mark_synced_with_server_id_unknown(self, answers):
        assert answers.mark_synced_with_server_id("nope", "srv") is None

    def test_mark_many_synced_and_counts(self, answers):
        a = answers.create("i1", "q1", "TEXT_SHORT")
        answers.create("i1", "q2", "TEXT_SHORT")
        assert answers.mark_many_synced([a.id]) == 1
        assert answers.count_by_sync_status("i1") == {"PENDING": 1, "SYNCING": 0, "SYNCED": 1, "FAILED": 0}
        assert [x.question_id for x in answers.get_pending_sync("i1")] == ["q2"]

    def test_answered_question_ids(self, answers):
        answers.create("i1", "q1", "TEXT_SHORT")
        answers.create("i1", "q2", "TEXT_SHORT")
        assert sorted(answers.get_answered_question_ids("i1")) == ["q1", "q2"]


class TestAttachments:
    """Attachment upload queue."""

    def test_create_pending(self, attachments):
        attachment = attachments.create("PHOTO", answer_id="a1", work_order_id="wo-1", base64_data="eA==", file_size=1)
        assert attachment.sync_status == "PENDING"
        assert attachment.upload_attempts == 0
        assert attachments.get_by_answer("a1")[0].id == attachment.id

    def test_pending_upload_respects_attempt_limit(self, attachments):
        fresh = attachments.create("PHOTO", work_order_id="wo-1")
        tired = attachments.create("PHOTO", work_order_id="wo-1")
        for _ in range(3):
            attachments.increment_upload_attempts(tired.id, "timeout")
        assert [a.id for a in attachments.get_pending_upload()] == [fresh.id]

    def test_pending_upload_orders_by_attempts(self, attachments):
        first = attachments.create("PHOTO", work_order_id="wo-1")
        second = attachments.create("PHOTO", work_order_id="wo-1")
        attachments.increment_upload_attempts(first.id, "timeout")
        assert [a.id for a in attachments.get_pending_upload()] == [second.id, first.id]

    def test_increment_marks_failed(self, attachments):
        attachment = attachments.create("PHOTO", work_order_id="wo-1")
        attachments.increment_upload_attempts(attachment.id, "HTTP 500")
        stored = attachments.get_by_id(attachment.id)
        assert stored.sync_status == "FAILED"
        assert stored.upload_attempts == 1
        assert stored.last_upload_error == "HTTP 500"

    def test_mark_synced_drops_inline_data(self, attachments):
        attachment = attachments.create("SIGNATURE", work_order_id="wo-1", base64_data="eA==")
        attachments.mark_synced(attachment.id, "uploads/sig.png")
        stored = attachments.get_by_id(attachment.id)
        assert stored.sync_status == "SYNCED"
        assert stored.remote_path == "uploads/sig.png"
        assert stored.base64_data is None
        assert attachments.get_pending_upload() == []

    def test_counts_and_size(self, attachments):
        attachments.create("PHOTO", work_order_id="wo-1", file_size=100, technician_id="tech-1")
        attachments.create("PHOTO", work_order_id="wo-2", file_size=50, technician_id="tech-1")
        done = attachments.create("PHOTO", work_order_id="wo-1", file_size=10, technician_id="tech-1")
        attachments.mark_synced(done.id, "x")
        assert attachments.count_pending_upload("tech-1") == 2
        assert attachments.count_pending_upload(work_order_id="wo-1") == 1
        assert attachments.get_pending_upload_size("tech-1") == 150
        assert attachments.count_by_sync_status("wo-1")["SYNCED"] == 1

    def test_clear_synced_base64(self, db, attachments):
        attachment = attachments.create("PHOTO", work_order_id="wo-1", base64_data="eA==")
        db.update("checklist_attachments", attachment.id, {"syncStatus": "SYNCED"})
        assert attachments.clear_synced_base64() == 1
        assert attachments.get_by_id(attachment.id).base64_data is None

    def test_delete_by_work_order(self, attachments):
        attachments.create("PHOTO", work_order_id="wo-1")
        attachments.create("FILE", work_order_id="wo-1")
        assert attachments.delete_by_work_order("wo-1") == 2
