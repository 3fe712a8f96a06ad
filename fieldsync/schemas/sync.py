import json
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .base import CamelModel


class MutationOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    UPDATE_STATUS = "update_status"
    DELETE = "delete"


class MutationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"
    COMPLETED = "completed"


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class MutationQueueItem(CamelModel):
    id: int
    entity: str
    entity_id: str
    operation: MutationOperation
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: str
    attempts: int = 0
    last_attempt: Optional[str] = None
    status: MutationStatus = MutationStatus.PENDING
    error_message: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MutationQueueItem":
        data = dict(row)
        if isinstance(data.get("payload"), str):
            data["payload"] = json.loads(data["payload"])
        return cls.model_validate(data)


class SyncMeta(CamelModel):
    entity: str
    last_sync_at: str = "1970-01-01T00:00:00.000Z"
    last_cursor: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.IDLE
    error_message: Optional[str] = None


class PushOutcome(str, Enum):
    APPLIED = "applied"
    REJECTED = "rejected"
    TRANSIENT = "transient"


class MutationResult(BaseModel):
    """Outcome of one queued mutation after a push attempt."""

    queue_id: int
    outcome: PushOutcome
    server_id: Optional[str] = None
    error: Optional[str] = None


class SyncErrorDetail(BaseModel):
    entity: str
    operation: str
    message: str
    entity_id: Optional[str] = None


class DrainResult(BaseModel):
    pushed: int = 0
    failed: int = 0
    stopped: bool = False
    errors: List[SyncErrorDetail] = Field(default_factory=list)


class PullResult(BaseModel):
    entity: str
    pulled: int = 0
    pages: int = 0
    offline: bool = False
    cursor: Optional[str] = None
    errors: List[SyncErrorDetail] = Field(default_factory=list)


class SyncResult(BaseModel):
    entity: str
    success: bool
    pulled: int = 0
    pushed: int = 0
    failed: int = 0
    offline: bool = False
    errors: List[SyncErrorDetail] = Field(default_factory=list)
    duration_ms: int = 0


class PushSummary(BaseModel):
    pushed: int = 0
    failed: int = 0
    offline: bool = False


class EngineState(BaseModel):
    status: SyncStatus = SyncStatus.IDLE
    last_sync_at: Optional[str] = None
    last_error: Optional[str] = None
    pending_mutations: int = 0
    is_configured: bool = False
