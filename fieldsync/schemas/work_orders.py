from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel

from .base import CamelModel


class WorkOrderStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    CANCELED = "CANCELED"


ALLOWED_TRANSITIONS: Dict[str, List[str]] = {
    WorkOrderStatus.SCHEDULED.value: [WorkOrderStatus.IN_PROGRESS.value, WorkOrderStatus.CANCELED.value],
    WorkOrderStatus.IN_PROGRESS.value: [WorkOrderStatus.DONE.value, WorkOrderStatus.CANCELED.value],
    WorkOrderStatus.DONE.value: [],
    WorkOrderStatus.CANCELED.value: [],
}

EDITABLE_STATUSES = {WorkOrderStatus.SCHEDULED.value, WorkOrderStatus.IN_PROGRESS.value}
DELETABLE_STATUSES = {WorkOrderStatus.SCHEDULED.value}


def is_valid_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, [])


def can_edit(status: str) -> bool:
    return status in EDITABLE_STATUSES


def can_delete(status: str) -> bool:
    return status in DELETABLE_STATUSES


class WorkOrder(CamelModel):
    id: str
    client_id: str
    quote_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    status: WorkOrderStatus = WorkOrderStatus.SCHEDULED
    scheduled_date: Optional[str] = None
    scheduled_start_time: Optional[str] = None
    scheduled_end_time: Optional[str] = None
    execution_start: Optional[str] = None
    execution_end: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    total_value: Optional[float] = None
    is_active: int = 1
    deleted_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    synced_at: Optional[str] = None
    technician_id: Optional[str] = None
    client_name: Optional[str] = None
    client_phone: Optional[str] = None
    client_address: Optional[str] = None


class WorkOrderCreate(CamelModel):
    client_id: str
    title: str
    quote_id: Optional[str] = None
    description: Optional[str] = None
    scheduled_date: Optional[str] = None
    scheduled_start_time: Optional[str] = None
    scheduled_end_time: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    total_value: Optional[float] = None
    client_name: Optional[str] = None
    client_phone: Optional[str] = None
    client_address: Optional[str] = None


class WorkOrderUpdate(CamelModel):
    client_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    scheduled_date: Optional[str] = None
    scheduled_start_time: Optional[str] = None
    scheduled_end_time: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    total_value: Optional[float] = None


class WorkOrderFilter(BaseModel):
    status: Optional[Union[WorkOrderStatus, List[WorkOrderStatus]]] = None
    client_id: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    is_active: Optional[int] = 1
    search_query: Optional[str] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
