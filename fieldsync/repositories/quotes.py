"""
Quotes and their line items, as stored by the quote sync adapter.
"""
from typing import Any, Dict, List, Optional

from ..db import Database
from ..schemas.clients import Quote, QuoteItem


TABLE = "quotes"
ITEMS_TABLE = "quote_items"


class QuoteRepository:
    def __init__(self, db: Database):
        self.db = db

    def get_by_id(self, quote_id: str) -> Optional[Quote]:
        row = self.db.find_by_id(TABLE, quote_id)
        return Quote.from_row(row) if row else None

    def get_items(self, quote_id: str) -> List[QuoteItem]:
        rows = self.db.find_all(ITEMS_TABLE, where={"quoteId": quote_id}, order_by="sortOrder")
        return [QuoteItem.from_row(row) for row in rows]

    def get_by_id_with_items(self, quote_id: str) -> Optional[Quote]:
        quote = self.get_by_id(quote_id)
        if quote is None:
            return None
        quote.items = self.get_items(quote_id)
        return quote

    def get_by_client(self, client_id: str, technician_id: Optional[str] = None) -> List[Quote]:
        where: Dict[str, Any] = {"clientId": client_id}
        if technician_id:
            where["technicianId"] = technician_id
        rows = self.db.find_all(TABLE, where=where, order_by="createdAt", order="DESC")
        return [Quote.from_row(row) for row in rows]

    def get_by_status(self, status: str, technician_id: Optional[str] = None) -> List[Quote]:
        where: Dict[str, Any] = {"status": status}
        if technician_id:
            where["technicianId"] = technician_id
        rows = self.db.find_all(TABLE, where=where, order_by="createdAt", order="DESC")
        return [Quote.from_row(row) for row in rows]
