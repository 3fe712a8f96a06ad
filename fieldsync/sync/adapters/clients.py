from typing import Any, Dict

from .base import EntitySyncAdapter, to_flag


class ClientSyncAdapter(EntitySyncAdapter):
    name = "clients"
    table_name = "clients"
    api_endpoint = "/clients/sync"
    api_mutation_endpoint = "/clients/sync/mutations"
    batch_size = 100
    push_priority = 10
    soft_delete = True

    mutable_fields = ("id", "name", "email", "phone", "address", "notes")

    def transform_from_server(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": record["id"],
            "name": record.get("name") or "",
            "email": record.get("email"),
            "phone": record.get("phone"),
            "address": record.get("address"),
            "notes": record.get("notes"),
            "isActive": to_flag(record.get("isActive")),
            "createdAt": record.get("createdAt"),
            "updatedAt": record.get("updatedAt"),
            "technicianId": record.get("technicianId"),
        }
