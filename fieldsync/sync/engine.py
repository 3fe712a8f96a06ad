"""
Entity sync engine.

Drives delta-pull and delta-push for every registered EntitySyncAdapter.
Scheduling is the caller's job: nothing here runs on a timer.
"""
import threading
import time
from typing import Any, Dict, List, Optional

import structlog

from ..db import Database
from ..errors import NotConfiguredError, RejectedMutationError, TransientSyncError
from ..events import EventEmitter
from ..schemas.sync import (
    DrainResult,
    EngineState,
    MutationQueueItem,
    MutationResult,
    MutationStatus,
    PullResult,
    PushOutcome,
    PushSummary,
    SyncErrorDetail,
    SyncMeta,
    SyncResult,
    SyncStatus,
)
from ..services.time_rules import now_iso
from .adapters.base import EntitySyncAdapter
from .api_client import SyncApiClient
from .execution_sessions import ENTITY as SESSION_ENTITY, ExecutionSessionPusher
from .network import NetworkProbe, StaticNetworkProbe
from .outbox import MutationOutbox


logger = structlog.get_logger(__name__)

APPLIED_STATUSES = {"applied", "success", "ok", "skipped", "duplicate"}
TRANSIENT_STATUSES = {"retry", "transient", "deferred"}


class SyncEngine:
    def __init__(
        self,
        db: Database,
        outbox: MutationOutbox,
        api_client: Optional[SyncApiClient] = None,
        network_probe: Optional[NetworkProbe] = None,
    ):
        self.db = db
        self.outbox = outbox
        self.api = api_client or SyncApiClient()
        self.network_probe = network_probe or StaticNetworkProbe(online=True)
        self.technician_id: Optional[str] = None
        self.events = EventEmitter("sync_engine")
        self._adapters: Dict[str, EntitySyncAdapter] = {}
        self._lock = threading.Lock()
        self._state = EngineState()

    # ------------------------------------------------------------------ setup

    def configure(self, base_url: str, auth_token: str, technician_id: str) -> None:
        self.api.configure(base_url, auth_token)
        self.technician_id = technician_id
        logger.info("sync_engine_configured", base_url=base_url, technician_id=technician_id)

    def is_configured(self) -> bool:
        return bool(self.api.is_configured and self.technician_id)

    def register(self, adapter: EntitySyncAdapter) -> None:
        if not adapter.name or not adapter.table_name:
            raise ValueError("adapter needs a name and a table_name")
        self._adapters[adapter.name] = adapter
        self._ensure_meta(adapter.name)

    def get_adapter(self, entity: str) -> EntitySyncAdapter:
        adapter = self._adapters.get(entity)
        if adapter is None:
            raise KeyError(f"Entity {entity} not registered")
        return adapter

    def adapters(self) -> List[EntitySyncAdapter]:
        """Registered adapters in push order (registration order breaks ties)."""
        return sorted(self._adapters.values(), key=lambda a: a.push_priority)

    def subscribe(self, listener):
        return self.events.subscribe(listener)

    def is_online(self) -> bool:
        try:
            return bool(self.network_probe.is_network_online())
        except Exception as e:
            logger.warning("network_probe_error", error=str(e))
            return False

    # ------------------------------------------------------------------ sync meta

    def _ensure_meta(self, entity: str) -> None:
        if self.db.find_one("sync_meta", {"entity": entity}) is None:
            self.db.insert("sync_meta", {"entity": entity})

    def get_sync_meta(self, entity: str) -> SyncMeta:
        self._ensure_meta(entity)
        return SyncMeta.from_row(self.db.find_one("sync_meta", {"entity": entity}))

    def _set_meta(self, entity: str, **values: Any) -> None:
        self._ensure_meta(entity)
        self.db.update_where("sync_meta", {"entity": entity}, values)

    def reset_sync_meta(self, entity: Optional[str] = None) -> None:
        """Forget cursors so the next pull is a full pull."""
        where = {"entity": entity} if entity else None
        self.db.update_where("sync_meta", where, {
            "lastSyncAt": "1970-01-01T00:00:00.000Z",
            "lastCursor": None,
            "syncStatus": SyncStatus.IDLE.value,
            "errorMessage": None,
        })

    # ------------------------------------------------------------------ state

    def get_state(self) -> EngineState:
        state = self._state.model_copy()
        state.pending_mutations = self.outbox.count_pending()
        state.is_configured = self.is_configured()
        return state

    def has_pending_data(self) -> bool:
        return self.outbox.count_pending() > 0

    def count_pending_sync(self) -> int:
        return self.outbox.count_pending()

    def _gate(self, entity: str) -> Optional[SyncErrorDetail]:
        """None when a network call may proceed, otherwise the reason it may not."""
        if not self.is_configured():
            return SyncErrorDetail(entity=entity, operation="sync", message="sync engine not configured")
        if not self.is_online():
            self.events.emit("offline_detected", entity=entity)
            return SyncErrorDetail(entity=entity, operation="sync", message="offline")
        return None

    # ------------------------------------------------------------------ pull

    def pull(self, entity: str) -> PullResult:
        """
        Fetch server changes newer than the stored cursor and store them locally.

        Pending local mutations of each pulled record are replayed on top of the server copy.
        Never raises for network problems: an unreachable server gives offline=True.
        """
        adapter = self.get_adapter(entity)
        result = PullResult(entity=entity)
        blocked = self._gate(entity)
        if blocked:
            result.offline = blocked.message == "offline"
            result.errors.append(blocked)
            return result

        meta = self.get_sync_meta(entity)
        since = meta.last_cursor
        max_cursor = since
        self._set_meta(entity, syncStatus=SyncStatus.SYNCING.value, errorMessage=None)

        try:
            for scope in adapter.pull_scopes(self.db, self.technician_id):
                page_cursor = None
                while True:
                    params = {
                        "since": since,
                        "cursor": page_cursor,
                        "limit": adapter.batch_size,
                        **scope,
                    }
                    page = self.api.pull(adapter.api_endpoint, params)
                    records = [adapter.transform_from_server(item) for item in page["items"]]
                    self._save(adapter, records)
                    result.pulled += len(records)
                    result.pages += 1

                    for record in records:
                        value = record.get(adapter.cursor_field)
                        if value is not None and (max_cursor is None or str(value) > max_cursor):
                            max_cursor = str(value)

                    page_cursor = page["nextCursor"]
                    if not page["hasMore"] or not page_cursor:
                        break
        except (TransientSyncError, NotConfiguredError) as e:
            result.offline = True
            result.errors.append(SyncErrorDetail(entity=entity, operation="pull", message=str(e)))
            self._set_meta(entity, syncStatus=SyncStatus.ERROR.value, errorMessage=str(e))
            logger.warning("pull_interrupted", entity=entity, pulled=result.pulled, error=str(e))
            return result
        except RejectedMutationError as e:
            result.errors.append(SyncErrorDetail(entity=entity, operation="pull", message=str(e)))
            self._set_meta(entity, syncStatus=SyncStatus.ERROR.value, errorMessage=str(e))
            logger.error("pull_rejected", entity=entity, error=str(e))
            return result

        result.cursor = max_cursor
        self._set_meta(
            entity,
            lastSyncAt=now_iso(),
            lastCursor=max_cursor,
            syncStatus=SyncStatus.IDLE.value,
            errorMessage=None,
        )
        logger.info("pull_complete", entity=entity, pulled=result.pulled, pages=result.pages)
        return result

    def _save(self, adapter: EntitySyncAdapter, records: List[Dict[str, Any]]) -> None:
        if not records:
            return
        if adapter.has_custom_save:
            adapter.custom_save(self.db, records, self.technician_id)
        else:
            columns = set(self.db.columns(adapter.table_name))
            synced_at = now_iso()

            def _upsert_all(tx: Database) -> None:
                for record in records:
                    row = {k: v for k, v in record.items() if k in columns}
                    if "technicianId" in columns and not row.get("technicianId") and adapter.scope_field == "technicianId":
                        row["technicianId"] = self.technician_id
                    if "syncedAt" in columns:
                        row["syncedAt"] = synced_at
                    tx.upsert(adapter.table_name, row, conflict_keys=adapter.primary_keys)

            self.db.transaction(_upsert_all)
        self._replay_pending(adapter, records)

    def _replay_pending(self, adapter: EntitySyncAdapter, records: List[Dict[str, Any]]) -> None:
        key = adapter.primary_keys[0]
        columns = set(self.db.columns(adapter.table_name))
        for record in records:
            record_id = adapter.record_id(record)
            pending = [
                m for m in self.outbox.get_by_entity(adapter.name, record_id)
                if m.status in (MutationStatus.PENDING.value, MutationStatus.PROCESSING.value)
            ]
            if not pending:
                continue
            row = self.db.find_one(adapter.table_name, {key: record_id})
            if row is None:
                continue
            for mutation in pending:
                row = adapter.replay_local(row, mutation)
                if row is None:
                    break
            if row is None:
                self.db.remove_where(adapter.table_name, {key: record_id})
            else:
                row = {k: v for k, v in row.items() if k in columns}
                if "syncedAt" in columns:
                    row["syncedAt"] = None
                if "syncStatus" in columns:
                    row["syncStatus"] = "PENDING"
                self.db.upsert(adapter.table_name, row, conflict_keys=adapter.primary_keys)
            logger.info("pull_replayed_local", entity=adapter.name, entity_id=record_id, mutations=len(pending))

    # ------------------------------------------------------------------ push

    def _to_wire(self, adapter: EntitySyncAdapter, mutation: MutationQueueItem) -> Dict[str, Any]:
        if mutation.operation == "delete":
            record = {"id": mutation.entity_id}
        else:
            record = adapter.transform_to_server(mutation.payload or {})
            record.setdefault("id", mutation.entity_id)
        return {
            "mutationId": f"{mutation.entity_id}-{mutation.operation}-{mutation.id}",
            "action": mutation.operation,
            "record": record,
            "clientUpdatedAt": (mutation.payload or {}).get("updatedAt") or mutation.created_at,
        }

    def push(self, entity: str) -> DrainResult:
        """Drain the outbox of one entity to its mutation endpoint."""
        adapter = self.get_adapter(entity)
        if not adapter.can_push:
            return DrainResult()
        blocked = self._gate(entity)
        if blocked:
            return DrainResult(stopped=True, errors=[blocked])

        acks: List[Dict[str, Any]] = []

        def push_fn(items: List[MutationQueueItem]) -> List[MutationResult]:
            wire = [self._to_wire(adapter, m) for m in items]
            responses = self.api.push(adapter.api_mutation_endpoint, wire)
            by_mutation = {r.get("mutationId"): r for r in responses if r.get("mutationId")}
            by_local = {str(r.get("localId")): r for r in responses if r.get("localId")}
            outcomes = []
            for mutation, payload in zip(items, wire):
                response = by_mutation.get(payload["mutationId"]) or by_local.get(mutation.entity_id)
                if response is None:
                    continue
                outcome = _classify(response)
                outcomes.append(MutationResult(
                    queue_id=mutation.id,
                    outcome=outcome,
                    server_id=response.get("serverId"),
                    error=response.get("error") or response.get("message"),
                ))
                if outcome == PushOutcome.APPLIED:
                    acks.append({"mutation": mutation, "server_id": response.get("serverId")})
                    self.events.emit("mutation_pushed", entity=entity, entity_id=mutation.entity_id, operation=mutation.operation)
                elif outcome == PushOutcome.REJECTED:
                    self.events.emit("mutation_failed", entity=entity, entity_id=mutation.entity_id, error=response.get("error"))
            return outcomes

        result = self.outbox.drain(entity, push_fn, batch_size=adapter.batch_size)

        for ack in acks:
            mutation: MutationQueueItem = ack["mutation"]
            current = self.outbox.get_by_id(mutation.id)
            if current is None or current.status != MutationStatus.COMPLETED.value:
                continue
            self._apply_ack(adapter, mutation, ack["server_id"])
        return result

    def _apply_ack(self, adapter: EntitySyncAdapter, mutation: MutationQueueItem, server_id: Optional[str]) -> None:
        if mutation.operation == "delete":
            return
        key = adapter.primary_keys[0]
        columns = set(self.db.columns(adapter.table_name))
        local_id = mutation.entity_id
        if server_id and server_id != local_id:
            adapter.rekey_local(self.db, local_id, server_id)
            self.outbox.reassign_entity_id(adapter.name, local_id, server_id)
            logger.info("server_id_reconciled", entity=adapter.name, local_id=local_id, server_id=server_id)
            local_id = server_id

        still_pending = self.outbox.has_pending_for(adapter.name, local_id)
        values: Dict[str, Any] = {}
        if "syncedAt" in columns:
            values["syncedAt"] = now_iso()
        if "syncStatus" in columns and not still_pending:
            values["syncStatus"] = "SYNCED"
        if values:
            self.db.update_where(adapter.table_name, {key: local_id}, values)

    def push_only(self) -> PushSummary:
        summary = PushSummary()
        for adapter in self.adapters():
            if not adapter.can_push:
                continue
            result = self.push(adapter.name)
            summary.pushed += result.pushed
            summary.failed += result.failed
            if any(e.message == "offline" for e in result.errors):
                summary.offline = True
                break
        if not summary.offline:
            sessions = self.push_execution_sessions()
            summary.pushed += sessions.pushed
            summary.failed += sessions.failed
        return summary

    def push_execution_sessions(self) -> DrainResult:
        """
        Send finished execution sessions.

        Secondary to the entity sync: failures are logged and returned, never raised.
        """
        blocked = self._gate(SESSION_ENTITY)
        if blocked:
            return DrainResult(stopped=True, errors=[blocked])
        try:
            result = ExecutionSessionPusher(self.db, self.api).push_pending()
        except NotConfiguredError as e:
            return DrainResult(stopped=True, errors=[SyncErrorDetail(entity=SESSION_ENTITY, operation="push", message=str(e))])
        if result.errors:
            logger.warning("execution_sessions_push_incomplete", errors=[e.message for e in result.errors])
        self.events.emit("execution_sessions_pushed", pushed=result.pushed, failed=result.failed)
        return result

    # ------------------------------------------------------------------ full cycle

    def sync_entity(self, entity: str) -> SyncResult:
        """Pull then push one entity."""
        started = time.monotonic()
        self.events.emit("entity_sync_start", entity=entity)

        pulled = self.pull(entity)
        errors = list(pulled.errors)
        pushed = DrainResult()
        if not pulled.offline:
            pushed = self.push(entity)
            errors.extend(pushed.errors)
        offline = pulled.offline or any(e.message == "offline" for e in pushed.errors)

        result = SyncResult(
            entity=entity,
            success=not errors and not offline,
            pulled=pulled.pulled,
            pushed=pushed.pushed,
            failed=pushed.failed,
            offline=offline,
            errors=errors,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        self.events.emit("entity_sync_complete", entity=entity, pulled=result.pulled, pushed=result.pushed, failed=result.failed)
        return result

    def sync_all(self) -> List[SyncResult]:
        """
        Sync every registered entity in push order.

        Returns:
            One SyncResult per entity; [] when another sync is running or the engine is not configured
        """
        if not self._lock.acquire(blocking=False):
            logger.info("sync_already_running")
            return []
        try:
            if not self.is_configured():
                logger.warning("sync_skipped_not_configured")
                return []

            adapters = self.adapters()
            if not self.is_online():
                self.events.emit("offline_detected")
                return [SyncResult(entity=a.name, success=False, offline=True) for a in adapters]

            self._state.status = SyncStatus.SYNCING
            self.events.emit("sync_start", entities=[a.name for a in adapters])
            logger.info("sync_start", entities=len(adapters), pending=self.outbox.count_pending())

            results: List[SyncResult] = []
            went_offline = False
            for adapter in adapters:
                if went_offline:
                    results.append(SyncResult(entity=adapter.name, success=False, offline=True))
                    continue
                result = self.sync_entity(adapter.name)
                results.append(result)
                went_offline = result.offline
            if not went_offline:
                self.push_execution_sessions()

            failed = [r for r in results if not r.success]
            self._state.last_sync_at = now_iso()
            if failed:
                self._state.status = SyncStatus.ERROR
                self._state.last_error = "; ".join(e.message for r in failed for e in r.errors)[:500] or "offline"
                self.events.emit("sync_error", failed=[r.entity for r in failed])
            else:
                self._state.status = SyncStatus.IDLE
                self._state.last_error = None
            self.events.emit("sync_complete", results=[r.model_dump() for r in results])
            logger.info(
                "sync_complete",
                pulled=sum(r.pulled for r in results),
                pushed=sum(r.pushed for r in results),
                failed=sum(r.failed for r in results),
                errors=len(failed),
            )
            return results
        finally:
            self._lock.release()


def _classify(response: Dict[str, Any]) -> PushOutcome:
    status = str(response.get("status") or "").lower()
    if status in APPLIED_STATUSES or response.get("success") is True or response.get("skipped") is True:
        return PushOutcome.APPLIED
    if status in TRANSIENT_STATUSES:
        return PushOutcome.TRANSIENT
    return PushOutcome.REJECTED
