from typing import Any, Dict, List, Optional

from ..db import Database
from ..schemas.clients import Client


TABLE = "clients"


class ClientRepository:
    """Read side of the clients pulled from the server."""

    def __init__(self, db: Database):
        self.db = db

    def get_all(self, technician_id: Optional[str]) -> List[Client]:
        where: Dict[str, Any] = {"isActive": 1}
        if technician_id:
            where["technicianId"] = technician_id
        return [Client.from_row(row) for row in self.db.find_all(TABLE, where=where, order_by="name")]

    def get_by_id(self, client_id: str) -> Optional[Client]:
        row = self.db.find_by_id(TABLE, client_id)
        return Client.from_row(row) if row else None

    def get_by_email(self, technician_id: Optional[str], email: str) -> Optional[Client]:
        where: Dict[str, Any] = {"email": email}
        if technician_id:
            where["technicianId"] = technician_id
        row = self.db.find_one(TABLE, where)
        return Client.from_row(row) if row else None

    def search(self, technician_id: Optional[str], query: str, limit: int = 20) -> List[Client]:
        """Active clients whose name, email or phone contains query."""
        sql = (
            f"SELECT * FROM {TABLE} WHERE isActive = 1 "
            "AND (name LIKE :q OR email LIKE :q OR phone LIKE :q)"
        )
        params: Dict[str, Any] = {"q": f"%{query.strip()}%", "limit": limit}
        if technician_id:
            sql += " AND technicianId = :technician_id"
            params["technician_id"] = technician_id
        rows = self.db.raw_query(sql + " ORDER BY name ASC LIMIT :limit", params)
        return [Client.from_row(row) for row in rows]

    def count(self, technician_id: Optional[str] = None) -> int:
        where: Dict[str, Any] = {"isActive": 1}
        if technician_id:
            where["technicianId"] = technician_id
        return self.db.count(TABLE, where)
