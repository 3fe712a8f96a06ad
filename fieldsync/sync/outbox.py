"""
Mutation outbox.
Durable queue of local writes waiting to reach the server, drained in creation order per entity.
"""
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from ..config import settings
from ..db import Database
from ..errors import RejectedMutationError, TransientSyncError
from ..events import EventEmitter
from ..schemas.sync import (
    DrainResult,
    MutationOperation,
    MutationQueueItem,
    MutationResult,
    MutationStatus,
    PushOutcome,
    SyncErrorDetail,
)
from ..services.time_rules import now_iso, to_iso, utc_now


logger = structlog.get_logger(__name__)

TABLE = "mutations_queue"

PushFn = Callable[[List[MutationQueueItem]], Sequence[MutationResult]]


class MutationOutbox:
    def __init__(self, db: Database, max_attempts: Optional[int] = None):
        self.db = db
        self.max_attempts = max_attempts or settings.outbox_max_attempts
        self.events = EventEmitter("outbox")

    def subscribe(self, listener) -> Callable[[], None]:
        return self.events.subscribe(listener)

    # ------------------------------------------------------------------ writes

    def enqueue(self, entity: str, entity_id: str, operation: str, payload: Dict[str, Any]) -> int:
        """
        Append a pending mutation.

        Args:
            entity: Entity name as registered with the sync engine (e.g. work_orders)
            entity_id: Local id of the record
            operation: create|update|delete
            payload: Record fields to send (JSON-serializable)

        Returns:
            Queue id
        """
        operation = MutationOperation(operation).value
        queue_id = self.db.insert(TABLE, {
            "entity": entity,
            "entityId": entity_id,
            "operation": operation,
            "payload": payload or {},
            "createdAt": now_iso(),
            "attempts": 0,
            "status": MutationStatus.PENDING.value,
        })
        logger.debug("mutation_enqueued", entity=entity, entity_id=entity_id, operation=operation, queue_id=queue_id)
        self.events.emit("mutation_added", id=queue_id, entity=entity, entity_id=entity_id, operation=operation)
        return queue_id

    def mark_processing(self, queue_id: int) -> None:
        self.db.raw_exec(
            "UPDATE mutations_queue SET status = 'processing', attempts = attempts + 1, lastAttempt = :now "
            "WHERE id = :id",
            {"id": queue_id, "now": now_iso()},
        )

    def mark_pending(self, queue_id: int, error: Optional[str] = None) -> None:
        self.db.update(TABLE, queue_id, {"status": MutationStatus.PENDING.value, "errorMessage": error})

    def mark_completed(self, queue_id: int) -> None:
        self.db.update(TABLE, queue_id, {"status": MutationStatus.COMPLETED.value, "errorMessage": None})
        self.events.emit("mutation_completed", id=queue_id)

    def mark_failed(self, queue_id: int, error: str) -> None:
        self.db.update(TABLE, queue_id, {"status": MutationStatus.FAILED.value, "errorMessage": error})
        self.events.emit("mutation_failed", id=queue_id, error=error)

    def remove(self, queue_id: int) -> None:
        self.db.remove(TABLE, queue_id)
        self.events.emit("mutation_removed", id=queue_id)

    def remove_for_entity(self, entity: str, entity_id: str) -> int:
        """Drop every not-yet-completed mutation of one record (e.g. after a local-only record is discarded)."""
        return self.db.remove_where(TABLE, {
            "entity": entity,
            "entityId": entity_id,
            "status": [MutationStatus.PENDING.value, MutationStatus.FAILED.value],
        })

    def reassign_entity_id(self, entity: str, old_id: str, new_id: str) -> int:
        """Point queued mutations, and the ids inside their payloads, at a server-assigned id."""
        items = self._items(self.db.find_all(TABLE, where={"entity": entity, "entityId": old_id}))
        for item in items:
            changes: Dict[str, Any] = {"entityId": new_id}
            if item.payload.get("id") == old_id:
                changes["payload"] = {**item.payload, "id": new_id}
            self.db.update(TABLE, item.id, changes)
        return len(items)

    def reset_failed(self) -> int:
        count = self.db.raw_exec(
            "UPDATE mutations_queue SET status = 'pending', attempts = 0, errorMessage = NULL WHERE status = 'failed'"
        )
        self.events.emit("mutations_reset", count=count)
        return count

    def delete_failed(self) -> int:
        return self.db.remove_where(TABLE, {"status": MutationStatus.FAILED.value})

    def requeue_stale_processing(self, entity: Optional[str] = None) -> int:
        """Rows left in processing by an interrupted drain go back to pending."""
        where: Dict[str, Any] = {"status": MutationStatus.PROCESSING.value}
        if entity:
            where["entity"] = entity
        return self.db.update_where(TABLE, where, {"status": MutationStatus.PENDING.value})

    def cleanup(self, older_than_days: Optional[int] = None) -> int:
        """Delete completed rows older than the cutoff."""
        if older_than_days is None:
            older_than_days = settings.outbox_cleanup_days
        cutoff = to_iso(utc_now() - timedelta(days=older_than_days))
        count = self.db.raw_exec(
            "DELETE FROM mutations_queue WHERE status = 'completed' AND createdAt < :cutoff",
            {"cutoff": cutoff},
        )
        if count:
            logger.info("mutations_cleanup", removed=count, older_than_days=older_than_days)
        self.events.emit("mutations_cleanup", count=count)
        return count

    # ------------------------------------------------------------------ reads

    def _items(self, rows: List[Dict[str, Any]]) -> List[MutationQueueItem]:
        return [MutationQueueItem.from_row(row) for row in rows]

    def get_by_id(self, queue_id: int) -> Optional[MutationQueueItem]:
        row = self.db.find_by_id(TABLE, queue_id)
        return MutationQueueItem.from_row(row) if row else None

    def get_pending(self, limit: int = 50) -> List[MutationQueueItem]:
        """Pending rows plus failed rows still under the retry ceiling, oldest first."""
        return self._items(self.db.raw_query(
            "SELECT * FROM mutations_queue "
            "WHERE status = 'pending' OR (status = 'failed' AND attempts < :max_attempts) "
            "ORDER BY createdAt, id LIMIT :limit",
            {"max_attempts": self.max_attempts, "limit": limit},
        ))

    def get_pending_for_entity(self, entity: str, limit: int = 50) -> List[MutationQueueItem]:
        return self._items(self.db.find_all(
            TABLE,
            where={"entity": entity, "status": MutationStatus.PENDING.value},
            order_by=["createdAt", "id"],
            limit=limit,
        ))

    def get_by_entity(self, entity: str, entity_id: str, include_completed: bool = False) -> List[MutationQueueItem]:
        where: Dict[str, Any] = {"entity": entity, "entityId": entity_id}
        if not include_completed:
            where["status"] = [
                MutationStatus.PENDING.value,
                MutationStatus.PROCESSING.value,
                MutationStatus.FAILED.value,
            ]
        return self._items(self.db.find_all(TABLE, where=where, order_by=["createdAt", "id"]))

    def get_all(self, status: Optional[str] = None) -> List[MutationQueueItem]:
        where = {"status": status} if status else None
        return self._items(self.db.find_all(TABLE, where=where, order_by=["createdAt", "id"]))

    def count_pending(self, entity: Optional[str] = None) -> int:
        where: Dict[str, Any] = {"status": [MutationStatus.PENDING.value, MutationStatus.PROCESSING.value]}
        if entity:
            where["entity"] = entity
        return self.db.count(TABLE, where)

    def count_failed(self) -> int:
        return self.db.count(TABLE, {"status": MutationStatus.FAILED.value})

    def has_pending_for(self, entity: str, entity_id: str) -> bool:
        return self.db.count(TABLE, {
            "entity": entity,
            "entityId": entity_id,
            "status": [MutationStatus.PENDING.value, MutationStatus.PROCESSING.value],
        }) > 0

    def pending_entities(self) -> List[str]:
        rows = self.db.raw_query(
            "SELECT entity, MIN(id) AS first_id FROM mutations_queue WHERE status = 'pending' "
            "GROUP BY entity ORDER BY first_id"
        )
        return [row["entity"] for row in rows]

    # ------------------------------------------------------------------ drain

    def drain(self, entity: str, push_fn: PushFn, batch_size: int = 50) -> DrainResult:
        """
        Push pending mutations of one entity in creation order.

        push_fn receives a batch and returns one MutationResult per item it got an answer for.
        Applied items are completed, rejected items are failed and skipped, and the first
        transient outcome (or an item the server did not answer) returns it and every later
        item to pending and ends the pass.

        Args:
            entity: Entity name
            push_fn: Sends a batch to the server
            batch_size: Items per push_fn call

        Returns:
            DrainResult with pushed/failed counts and whether the pass stopped early
        """
        result = DrainResult()
        self.requeue_stale_processing(entity)

        while True:
            batch = self.get_pending_for_entity(entity, limit=batch_size)
            if not batch:
                break

            for item in batch:
                self.mark_processing(item.id)

            try:
                outcomes = {r.queue_id: r for r in push_fn(batch)}
            except TransientSyncError as e:
                logger.warning("outbox_drain_transient", entity=entity, error=str(e), batch=len(batch))
                for item in batch:
                    self.mark_pending(item.id, str(e))
                result.stopped = True
                result.errors.append(SyncErrorDetail(entity=entity, operation="push", message=str(e)))
                break
            except RejectedMutationError as e:
                logger.warning("outbox_batch_rejected", entity=entity, error=str(e), batch=len(batch))
                for item in batch:
                    self.mark_failed(item.id, str(e))
                    result.failed += 1
                    result.errors.append(SyncErrorDetail(
                        entity=entity, operation=item.operation, message=str(e), entity_id=item.entity_id,
                    ))
                continue

            for index, item in enumerate(batch):
                outcome = outcomes.get(item.id)
                if outcome is None or outcome.outcome == PushOutcome.TRANSIENT:
                    message = (outcome.error if outcome else None) or "no result from server"
                    for remaining in batch[index:]:
                        self.mark_pending(remaining.id, message)
                    result.stopped = True
                    result.errors.append(SyncErrorDetail(
                        entity=entity, operation=item.operation, message=message, entity_id=item.entity_id,
                    ))
                    break
                if outcome.outcome == PushOutcome.APPLIED:
                    self.mark_completed(item.id)
                    result.pushed += 1
                else:
                    message = outcome.error or "rejected by server"
                    self.mark_failed(item.id, message)
                    result.failed += 1
                    result.errors.append(SyncErrorDetail(
                        entity=entity, operation=item.operation, message=message, entity_id=item.entity_id,
                    ))

            if result.stopped or len(batch) < batch_size:
                break

        if result.pushed or result.failed:
            logger.info("outbox_drained", entity=entity, pushed=result.pushed, failed=result.failed, stopped=result.stopped)
        return result
