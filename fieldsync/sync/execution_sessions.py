"""
Push of finished WORK/PAUSE sessions.

Sessions are append-only on the device, so they bypass the mutation outbox: every closed
session without syncedAt is sent, grouped by work order, and stamped with the server id
once the server acknowledges it.
"""
from typing import Any, Dict, List

import structlog

from ..db import Database
from ..errors import RejectedMutationError, TransientSyncError
from ..repositories.execution_sessions import ExecutionSessionRepository
from ..schemas.execution import ExecutionSession
from ..schemas.sync import DrainResult, SyncErrorDetail
from .api_client import SyncApiClient


logger = structlog.get_logger(__name__)

ENTITY = "execution_sessions"
SYNC_ENDPOINT = "/work-orders/{work_order_id}/execution-sessions/sync"


def session_to_wire(session: ExecutionSession) -> Dict[str, Any]:
    return {
        "localId": session.id,
        "sessionType": session.session_type,
        "startedAt": session.started_at,
        "endedAt": session.ended_at,
        "duration": session.duration,
        "pauseReason": session.pause_reason,
        "notes": session.notes,
    }


class ExecutionSessionPusher:
    def __init__(self, db: Database, api: SyncApiClient):
        self.db = db
        self.api = api
        self.sessions = ExecutionSessionRepository(db)

    def pending_by_work_order(self) -> Dict[str, List[ExecutionSession]]:
        """Closed, unsynced sessions grouped by work order in start order. Open sessions wait until they end."""
        groups: Dict[str, List[ExecutionSession]] = {}
        for session in self.sessions.get_pending_sync():
            if session.is_open:
                continue
            groups.setdefault(session.work_order_id, []).append(session)
        return groups

    def push_pending(self) -> DrainResult:
        """
        Send every pending session.

        A rejected work order leaves its sessions pending and moves on to the next one.
        A transient failure stops the pass.
        """
        result = DrainResult()
        for work_order_id, sessions in self.pending_by_work_order().items():
            endpoint = SYNC_ENDPOINT.format(work_order_id=work_order_id)
            body = {"workOrderId": work_order_id, "sessions": [session_to_wire(s) for s in sessions]}
            try:
                response = self.api.post(endpoint, body)
            except TransientSyncError as e:
                result.stopped = True
                result.errors.append(SyncErrorDetail(
                    entity=ENTITY, operation="push", message=str(e), entity_id=work_order_id,
                ))
                break
            except RejectedMutationError as e:
                result.failed += len(sessions)
                result.errors.append(SyncErrorDetail(
                    entity=ENTITY, operation="push", message=str(e), entity_id=work_order_id,
                ))
                logger.warning("execution_sessions_rejected", work_order_id=work_order_id, error=str(e))
                continue
            self._apply_results(sessions, response, result)

        logger.info(
            "execution_sessions_pushed",
            pushed=result.pushed,
            failed=result.failed,
            remaining=self.sessions.count_pending_sync(),
        )
        return result

    def _apply_results(self, sessions: List[ExecutionSession], response: Any, result: DrainResult) -> None:
        items = response if isinstance(response, list) else (response or {}).get("results") or []
        by_local_id = {str(item.get("localId")): item for item in items if item.get("localId")}
        for session in sessions:
            item = by_local_id.get(session.id)
            if item is None:
                # not acknowledged: stays pending for the next pass
                continue
            if item.get("success") is False:
                result.failed += 1
                result.errors.append(SyncErrorDetail(
                    entity=ENTITY,
                    operation="push",
                    message=str(item.get("error") or "rejected"),
                    entity_id=session.id,
                ))
                continue
            self.sessions.mark_synced(session.id, item.get("serverId"))
            result.pushed += 1
