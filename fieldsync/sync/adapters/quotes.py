from typing import Any, Dict, List, Optional

import structlog

from ...db import Database
from ...services.time_rules import now_iso
from .base import EntitySyncAdapter


logger = structlog.get_logger(__name__)

QUOTE_FIELDS = (
    "id", "clientId", "status", "discountValue", "totalValue", "notes",
    "createdAt", "updatedAt", "technicianId",
)
QUOTE_ITEM_FIELDS = (
    "id", "quoteId", "itemId", "type", "name", "unit", "quantity",
    "unitPrice", "discountValue", "totalPrice", "sortOrder", "createdAt", "updatedAt",
)


class QuoteSyncAdapter(EntitySyncAdapter):
    """Quotes arrive with their line items nested; a quote and its items are saved together."""

    name = "quotes"
    table_name = "quotes"
    api_endpoint = "/quotes/sync"
    api_mutation_endpoint = "/quotes/sync/mutations"
    batch_size = 50
    push_priority = 20

    def transform_from_server(self, record: Dict[str, Any]) -> Dict[str, Any]:
        out = {field: record.get(field) for field in QUOTE_FIELDS}
        out["status"] = record.get("status") or "DRAFT"
        out["discountValue"] = float(record.get("discountValue") or 0)
        out["totalValue"] = float(record.get("totalValue") or 0)
        items = []
        for index, item in enumerate(record.get("items") or []):
            row = {field: item.get(field) for field in QUOTE_ITEM_FIELDS}
            row["id"] = item.get("id") or f"{record['id']}-item-{index}"
            row["quoteId"] = record["id"]
            row["name"] = item.get("name") or ""
            row["quantity"] = float(item.get("quantity") or 0)
            row["unitPrice"] = float(item.get("unitPrice") or 0)
            row["discountValue"] = float(item.get("discountValue") or 0)
            row["totalPrice"] = float(item.get("totalPrice") or 0)
            row["sortOrder"] = item.get("sortOrder") if item.get("sortOrder") is not None else index
            items.append(row)
        out["items"] = items
        return out

    def transform_to_server(self, record: Dict[str, Any]) -> Dict[str, Any]:
        out = super().transform_to_server(record)
        if "items" in record:
            out["items"] = [
                {k: v for k, v in item.items() if k != "quoteId"}
                for item in record.get("items") or []
            ]
        return out

    def custom_save(self, db: Database, records: List[Dict[str, Any]], technician_id: Optional[str]) -> None:
        synced_at = now_iso()

        def _save(tx: Database) -> None:
            for record in records:
                quote = {k: v for k, v in record.items() if k != "items"}
                if not quote.get("technicianId"):
                    quote["technicianId"] = technician_id
                quote["syncedAt"] = synced_at
                tx.upsert("quotes", quote)
                tx.remove_where("quote_items", {"quoteId": quote["id"]})
                for item in record.get("items") or []:
                    tx.insert("quote_items", item)

        db.transaction(_save)
        logger.debug("quotes_saved", count=len(records))
