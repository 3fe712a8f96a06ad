"""
Work/pause sessions of a work order's execution.
At most one session per work order is open (endedAt NULL) at any time.
"""
import uuid
from typing import List, Optional

import structlog

from ..db import Database
from ..schemas.execution import ExecutionSession, SessionType, TimeSummary
from ..services.time_rules import now_iso, parse_iso, seconds_between


logger = structlog.get_logger(__name__)

TABLE = "work_order_execution_sessions"


class ExecutionSessionRepository:
    def __init__(self, db: Database):
        self.db = db

    def create(
        self,
        work_order_id: str,
        session_type: str,
        technician_id: Optional[str] = None,
        pause_reason: Optional[str] = None,
        started_at: Optional[str] = None,
    ) -> ExecutionSession:
        now = now_iso()
        session = ExecutionSession(
            id=str(uuid.uuid4()),
            work_order_id=work_order_id,
            session_type=session_type,
            started_at=started_at or now,
            pause_reason=pause_reason,
            technician_id=technician_id,
            created_at=now,
            updated_at=now,
        )
        self.db.insert(TABLE, session.to_row())
        return session

    def get_by_id(self, session_id: str) -> Optional[ExecutionSession]:
        row = self.db.find_by_id(TABLE, session_id)
        return ExecutionSession.from_row(row) if row else None

    def get_by_work_order(self, work_order_id: str) -> List[ExecutionSession]:
        rows = self.db.find_all(TABLE, where={"workOrderId": work_order_id}, order_by="startedAt")
        return [ExecutionSession.from_row(row) for row in rows]

    def get_active_session(self, work_order_id: str) -> Optional[ExecutionSession]:
        rows = self.db.find_all(
            TABLE,
            where={"workOrderId": work_order_id, "endedAt": None},
            order_by="startedAt",
            order="DESC",
            limit=1,
        )
        return ExecutionSession.from_row(rows[0]) if rows else None

    def get_last_work_session(self, work_order_id: str) -> Optional[ExecutionSession]:
        rows = self.db.find_all(
            TABLE,
            where={"workOrderId": work_order_id, "sessionType": SessionType.WORK.value},
            order_by="startedAt",
            order="DESC",
            limit=1,
        )
        return ExecutionSession.from_row(rows[0]) if rows else None

    def start_work_session(self, work_order_id: str, technician_id: Optional[str] = None) -> ExecutionSession:
        return self._start(work_order_id, SessionType.WORK.value, technician_id)

    def start_pause_session(
        self, work_order_id: str, technician_id: Optional[str] = None, pause_reason: Optional[str] = None
    ) -> ExecutionSession:
        return self._start(work_order_id, SessionType.PAUSE.value, technician_id, pause_reason)

    def _start(self, work_order_id, session_type, technician_id, pause_reason=None) -> ExecutionSession:
        def _swap(tx: Database) -> ExecutionSession:
            ExecutionSessionRepository(tx).end_all_active_sessions(work_order_id)
            return ExecutionSessionRepository(tx).create(work_order_id, session_type, technician_id, pause_reason)

        session = self.db.transaction(_swap)
        logger.info("execution_session_started", work_order_id=work_order_id, session_type=session_type)
        return session

    def end_session(self, session_id: str, notes: Optional[str] = None) -> Optional[ExecutionSession]:
        """
        Close an open session.

        Returns:
            The closed session, or None when the session is missing or already closed
        """
        session = self.get_by_id(session_id)
        if session is None or not session.is_open:
            return None
        now = now_iso()
        self.db.update(TABLE, session_id, {
            "endedAt": now,
            "duration": seconds_between(session.started_at, parse_iso(now)),
            "notes": notes or session.notes,
            "updatedAt": now,
        })
        return self.get_by_id(session_id)

    def end_all_active_sessions(self, work_order_id: str) -> int:
        now = now_iso()
        end = parse_iso(now)
        open_rows = self.db.find_all(TABLE, where={"workOrderId": work_order_id, "endedAt": None})
        for row in open_rows:
            self.db.update(TABLE, row["id"], {
                "endedAt": now,
                "duration": seconds_between(row["startedAt"], end),
                "updatedAt": now,
            })
        return len(open_rows)

    def _closed_total(self, work_order_id: str, session_type: str) -> int:
        rows = self.db.raw_query(
            f"SELECT COALESCE(SUM(duration), 0) AS total FROM {TABLE} "
            "WHERE workOrderId = :work_order_id AND sessionType = :session_type AND duration IS NOT NULL",
            {"work_order_id": work_order_id, "session_type": session_type},
        )
        return int(rows[0]["total"] or 0) if rows else 0

    def get_total_work_time(self, work_order_id: str) -> int:
        """Seconds of closed WORK sessions."""
        return self._closed_total(work_order_id, SessionType.WORK.value)

    def get_total_pause_time(self, work_order_id: str) -> int:
        """Seconds of closed PAUSE sessions."""
        return self._closed_total(work_order_id, SessionType.PAUSE.value)

    def get_time_summary(self, work_order_id: str) -> TimeSummary:
        """Totals of closed sessions plus the elapsed time of the open one."""
        sessions = self.get_by_work_order(work_order_id)
        active = next((s for s in reversed(sessions) if s.is_open), None)
        work = self.get_total_work_time(work_order_id)
        pause = self.get_total_pause_time(work_order_id)
        if active is not None:
            elapsed = seconds_between(active.started_at)
            if active.session_type == SessionType.WORK.value:
                work += elapsed
            else:
                pause += elapsed
        return TimeSummary(
            total_work_time=work,
            total_pause_time=pause,
            session_count=len(sessions),
            work_session_count=sum(1 for s in sessions if s.session_type == SessionType.WORK.value),
            pause_count=sum(1 for s in sessions if s.session_type == SessionType.PAUSE.value),
            is_active=active is not None,
            active_session_type=active.session_type if active else None,
        )

    def get_pending_sync(self, work_order_id: Optional[str] = None) -> List[ExecutionSession]:
        where = {"syncedAt": None}
        if work_order_id:
            where["workOrderId"] = work_order_id
        return [ExecutionSession.from_row(row) for row in self.db.find_all(TABLE, where=where, order_by="startedAt")]

    def mark_synced(self, session_id: str, server_id: Optional[str] = None) -> None:
        now = now_iso()
        self.db.update(TABLE, session_id, {"syncedAt": now, "serverId": server_id, "updatedAt": now})

    def count_pending_sync(self, work_order_id: Optional[str] = None) -> int:
        where = {"syncedAt": None}
        if work_order_id:
            where["workOrderId"] = work_order_id
        return self.db.count(TABLE, where)

    def get_paused_work_order_ids(self) -> List[str]:
        rows = self.db.raw_query(
            f"SELECT DISTINCT workOrderId FROM {TABLE} WHERE endedAt IS NULL AND sessionType = :pause",
            {"pause": SessionType.PAUSE.value},
        )
        return [row["workOrderId"] for row in rows]

    def delete_by_work_order(self, work_order_id: str) -> int:
        return self.db.remove_where(TABLE, {"workOrderId": work_order_id})
