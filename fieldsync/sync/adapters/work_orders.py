from typing import Any, Dict, Optional

from ...services.time_rules import rolling_window
from .base import EntitySyncAdapter, to_flag


WORK_ORDER_FIELDS = (
    "id", "clientId", "quoteId", "title", "description", "status",
    "scheduledDate", "scheduledStartTime", "scheduledEndTime",
    "executionStart", "executionEnd", "address", "notes", "totalValue",
    "isActive", "deletedAt", "createdAt", "updatedAt", "technicianId",
    "clientName", "clientPhone", "clientAddress",
)


def get_work_order_sync_scope(
    past_days: Optional[int] = None,
    future_days: Optional[int] = None,
) -> Dict[str, Any]:
    """Rolling window around today; bounds the sync volume of a high-churn entity."""
    start, end = rolling_window(past_days, future_days)
    return {"scope": "date_range", "startDate": start, "endDate": end}


class WorkOrderSyncAdapter(EntitySyncAdapter):
    name = "work_orders"
    table_name = "work_orders"
    api_endpoint = "/work-orders/sync"
    api_mutation_endpoint = "/work-orders/sync/mutations"
    scope_field = "technicianId"
    batch_size = 100
    push_priority = 30
    soft_delete = True

    mutable_fields = (
        "id", "clientId", "title", "description", "status",
        "scheduledDate", "scheduledStartTime", "scheduledEndTime",
        "address", "notes",
    )

    def get_scope_params(self, technician_id: Optional[str]) -> Dict[str, Any]:
        return get_work_order_sync_scope()

    def transform_from_server(self, record: Dict[str, Any]) -> Dict[str, Any]:
        client = record.get("client") or {}
        out = {field: record.get(field) for field in WORK_ORDER_FIELDS}
        out["isActive"] = to_flag(record.get("isActive"))
        out["status"] = record.get("status") or "SCHEDULED"
        if record.get("totalValue") is not None:
            out["totalValue"] = float(record["totalValue"])
        out["clientName"] = record.get("clientName") or client.get("name")
        out["clientPhone"] = record.get("clientPhone") or client.get("phone")
        out["clientAddress"] = record.get("clientAddress") or client.get("address")
        return out
