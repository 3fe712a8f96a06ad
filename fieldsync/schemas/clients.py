from enum import Enum
from typing import List, Optional

from pydantic import Field

from .base import CamelModel


class Client(CamelModel):
    id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    is_active: int = 1
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    synced_at: Optional[str] = None
    technician_id: Optional[str] = None


class QuoteStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class QuoteItem(CamelModel):
    id: str
    quote_id: str
    item_id: Optional[str] = None
    type: Optional[str] = None
    name: str
    unit: Optional[str] = None
    quantity: float = 1
    unit_price: float = 0
    discount_value: float = 0
    total_price: float = 0
    sort_order: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class Quote(CamelModel):
    id: str
    client_id: str
    status: QuoteStatus = QuoteStatus.DRAFT
    discount_value: float = 0
    total_value: float = 0
    notes: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    synced_at: Optional[str] = None
    technician_id: Optional[str] = None
    items: List[QuoteItem] = Field(default_factory=list)
