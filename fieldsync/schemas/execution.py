from enum import Enum
from typing import Optional

from pydantic import BaseModel

from .base import CamelModel


class SessionType(str, Enum):
    WORK = "WORK"
    PAUSE = "PAUSE"


class ExecutionSession(CamelModel):
    id: str
    work_order_id: str
    session_type: SessionType
    started_at: str
    ended_at: Optional[str] = None
    duration: Optional[int] = None
    pause_reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    technician_id: Optional[str] = None
    synced_at: Optional[str] = None
    server_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.ended_at is None


class TimeSummary(BaseModel):
    total_work_time: int = 0
    total_pause_time: int = 0
    session_count: int = 0
    work_session_count: int = 0
    pause_count: int = 0
    is_active: bool = False
    active_session_type: Optional[SessionType] = None


class ExecutionState(BaseModel):
    work_order_id: str
    status: str
    is_executing: bool = False
    is_paused: bool = False
    active_session: Optional[ExecutionSession] = None
    total_work_time: int = 0
    total_pause_time: int = 0
    current_session_time: int = 0
    pause_reason: Optional[str] = None


class ExecutionSummary(BaseModel):
    work_order_id: str
    status: str
    first_started_at: Optional[str] = None
    last_ended_at: Optional[str] = None
    total_work_time: int = 0
    total_pause_time: int = 0
    total_work_time_formatted: str = "0s"
    total_pause_time_formatted: str = "0s"
    session_count: int = 0
    pause_count: int = 0


class ExecutionResult(BaseModel):
    success: bool
    new_status: Optional[str] = None
    error: Optional[str] = None
