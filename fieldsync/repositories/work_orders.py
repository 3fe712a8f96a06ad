"""
Work order persistence.
Rows are camelCase dicts in the work_orders table; callers get WorkOrder models back.
"""
from datetime import date
from typing import Any, Dict, List, Optional

import structlog

from ..db import Database
from ..schemas.work_orders import WorkOrder, WorkOrderFilter, WorkOrderStatus
from ..services.time_rules import local_day_bounds, now_iso


logger = structlog.get_logger(__name__)

TABLE = "work_orders"


class WorkOrderRepository:
    def __init__(self, db: Database):
        self.db = db

    def get_by_id(self, work_order_id: str) -> Optional[WorkOrder]:
        row = self.db.find_by_id(TABLE, work_order_id)
        return WorkOrder.from_row(row) if row else None

    def list(self, technician_id: Optional[str], filter: Optional[WorkOrderFilter] = None) -> List[WorkOrder]:
        """
        Work orders of a technician, earliest scheduled first.

        Args:
            technician_id: Owner; None lists every technician
            filter: Status (single or list), client, scheduled date range, isActive, free-text search

        Returns:
            Matching work orders
        """
        filter = filter or WorkOrderFilter()
        clauses: List[str] = []
        params: Dict[str, Any] = {}

        if technician_id:
            clauses.append("technicianId = :technician_id")
            params["technician_id"] = technician_id
        if filter.is_active is not None:
            clauses.append("isActive = :is_active")
            params["is_active"] = filter.is_active
        if filter.status:
            statuses = filter.status if isinstance(filter.status, list) else [filter.status]
            names = []
            for i, status in enumerate(statuses):
                key = f"status_{i}"
                names.append(f":{key}")
                params[key] = status.value if isinstance(status, WorkOrderStatus) else status
            clauses.append(f"status IN ({', '.join(names)})")
        if filter.client_id:
            clauses.append("clientId = :client_id")
            params["client_id"] = filter.client_id
        if filter.start_date:
            clauses.append("scheduledDate >= :start_date")
            params["start_date"] = filter.start_date
        if filter.end_date:
            clauses.append("scheduledDate <= :end_date")
            params["end_date"] = filter.end_date
        if filter.search_query:
            clauses.append(
                "(title LIKE :search OR clientName LIKE :search OR address LIKE :search OR description LIKE :search)"
            )
            params["search"] = f"%{filter.search_query.strip()}%"

        sql = f"SELECT * FROM {TABLE}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY scheduledDate ASC, scheduledStartTime ASC"
        if filter.limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = filter.limit
            if filter.offset:
                sql += " OFFSET :offset"
                params["offset"] = filter.offset
        return [WorkOrder.from_row(row) for row in self.db.raw_query(sql, params)]

    def get_by_date_range(self, technician_id: Optional[str], start_date: str, end_date: str) -> List[WorkOrder]:
        return self.list(technician_id, WorkOrderFilter(start_date=start_date, end_date=end_date))

    def get_by_day(self, technician_id: Optional[str], day: date, timezone_str: Optional[str] = None) -> List[WorkOrder]:
        """Work orders scheduled on a local calendar day."""
        start, end = local_day_bounds(day, timezone_str)
        rows = self.db.raw_query(
            f"SELECT * FROM {TABLE} WHERE isActive = 1 AND scheduledDate >= :start AND scheduledDate < :end"
            + (" AND technicianId = :technician_id" if technician_id else "")
            + " ORDER BY scheduledDate ASC",
            {"start": start, "end": end, "technician_id": technician_id},
        )
        return [WorkOrder.from_row(row) for row in rows]

    def upsert_batch(self, work_orders: List[WorkOrder]) -> int:
        if not work_orders:
            return 0

        def _save(tx: Database) -> None:
            for work_order in work_orders:
                tx.upsert(TABLE, work_order.to_row())

        self.db.transaction(_save)
        return len(work_orders)

    def insert(self, work_order: WorkOrder) -> WorkOrder:
        self.db.insert(TABLE, work_order.to_row())
        return work_order

    def update(self, work_order_id: str, changes: Dict[str, Any]) -> Optional[WorkOrder]:
        """Apply camelCase column changes; updatedAt is stamped unless given."""
        values = {k: v for k, v in changes.items() if k != "id"}
        values.setdefault("updatedAt", now_iso())
        self.db.update(TABLE, work_order_id, values)
        return self.get_by_id(work_order_id)

    def update_status(self, work_order_id: str, status: str) -> Optional[WorkOrder]:
        """
        Set the status.
        executionStart is set on the first move into IN_PROGRESS and never overwritten; executionEnd on DONE.
        """
        current = self.get_by_id(work_order_id)
        if current is None:
            return None
        now = now_iso()
        values: Dict[str, Any] = {"status": status, "updatedAt": now}
        if status == WorkOrderStatus.IN_PROGRESS.value and not current.execution_start:
            values["executionStart"] = now
        if status == WorkOrderStatus.DONE.value:
            values["executionEnd"] = now
        self.db.update(TABLE, work_order_id, values)
        return self.get_by_id(work_order_id)

    def soft_delete(self, work_order_id: str) -> bool:
        now = now_iso()
        return self.db.update(TABLE, work_order_id, {"deletedAt": now, "isActive": 0, "updatedAt": now}) > 0

    def get_pending_sync(self, technician_id: Optional[str] = None) -> List[WorkOrder]:
        """Never synced, or changed after the last sync."""
        sql = f"SELECT * FROM {TABLE} WHERE (syncedAt IS NULL OR updatedAt > syncedAt)"
        params: Dict[str, Any] = {}
        if technician_id:
            sql += " AND technicianId = :technician_id"
            params["technician_id"] = technician_id
        return [WorkOrder.from_row(row) for row in self.db.raw_query(sql + " ORDER BY updatedAt ASC", params)]

    def mark_as_synced(self, work_order_id: str) -> None:
        self.db.update(TABLE, work_order_id, {"syncedAt": now_iso()})

    def count(self, technician_id: Optional[str] = None, status: Optional[str] = None) -> int:
        where: Dict[str, Any] = {"isActive": 1}
        if technician_id:
            where["technicianId"] = technician_id
        if status:
            where["status"] = status
        return self.db.count(TABLE, where)
