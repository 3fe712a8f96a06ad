import json
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .base import CamelModel


class QuestionType(str, Enum):
    TEXT_SHORT = "TEXT_SHORT"
    TEXT_LONG = "TEXT_LONG"
    NUMBER = "NUMBER"
    DATE = "DATE"
    TIME = "TIME"
    DATETIME = "DATETIME"
    CHECKBOX = "CHECKBOX"
    SELECT = "SELECT"
    MULTI_SELECT = "MULTI_SELECT"
    PHOTO_REQUIRED = "PHOTO_REQUIRED"
    PHOTO_OPTIONAL = "PHOTO_OPTIONAL"
    FILE_UPLOAD = "FILE_UPLOAD"
    SIGNATURE_TECHNICIAN = "SIGNATURE_TECHNICIAN"
    SIGNATURE_CLIENT = "SIGNATURE_CLIENT"
    SECTION_TITLE = "SECTION_TITLE"
    RATING = "RATING"
    SCALE = "SCALE"


class InstanceStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


INSTANCE_TRANSITIONS: Dict[str, List[str]] = {
    InstanceStatus.PENDING.value: [InstanceStatus.IN_PROGRESS.value, InstanceStatus.CANCELLED.value],
    InstanceStatus.IN_PROGRESS.value: [InstanceStatus.COMPLETED.value, InstanceStatus.CANCELLED.value],
    # reopening a completed checklist is allowed
    InstanceStatus.COMPLETED.value: [InstanceStatus.IN_PROGRESS.value],
    InstanceStatus.CANCELLED.value: [],
}


class AnswerSyncStatus(str, Enum):
    PENDING = "PENDING"
    SYNCING = "SYNCING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class AttachmentType(str, Enum):
    PHOTO = "PHOTO"
    SIGNATURE = "SIGNATURE"
    FILE = "FILE"


class AttachmentSyncStatus(str, Enum):
    PENDING = "PENDING"
    UPLOADING = "UPLOADING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class ConditionOperator(str, Enum):
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    GREATER_THAN_OR_EQUAL = "GREATER_THAN_OR_EQUAL"
    LESS_THAN_OR_EQUAL = "LESS_THAN_OR_EQUAL"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"
    IS_EMPTY = "IS_EMPTY"
    IS_NOT_EMPTY = "IS_NOT_EMPTY"
    IN = "IN"
    NOT_IN = "NOT_IN"


class ConditionAction(str, Enum):
    SHOW = "SHOW"
    HIDE = "HIDE"
    REQUIRE = "REQUIRE"
    SKIP_TO = "SKIP_TO"


# Which of the five value slots a question type writes to.
TEXT_TYPES = {QuestionType.TEXT_SHORT.value, QuestionType.TEXT_LONG.value}
NUMBER_TYPES = {QuestionType.NUMBER.value, QuestionType.RATING.value, QuestionType.SCALE.value}
BOOLEAN_TYPES = {QuestionType.CHECKBOX.value}
DATE_TYPES = {QuestionType.DATE.value, QuestionType.TIME.value, QuestionType.DATETIME.value}
JSON_TYPES = {
    QuestionType.SELECT.value,
    QuestionType.MULTI_SELECT.value,
    QuestionType.PHOTO_REQUIRED.value,
    QuestionType.PHOTO_OPTIONAL.value,
    QuestionType.FILE_UPLOAD.value,
    QuestionType.SIGNATURE_TECHNICIAN.value,
    QuestionType.SIGNATURE_CLIENT.value,
}

VALUE_SLOTS = ("valueText", "valueNumber", "valueBoolean", "valueDate", "valueJson")


# ----------------------------------------------------------------------------- answer values


class TextValue(BaseModel):
    kind: Literal["text"] = "text"
    value: str


class NumberValue(BaseModel):
    kind: Literal["number"] = "number"
    value: float


class BooleanValue(BaseModel):
    kind: Literal["boolean"] = "boolean"
    value: bool


class DateValue(BaseModel):
    kind: Literal["date"] = "date"
    value: str


class JsonValue(BaseModel):
    kind: Literal["json"] = "json"
    value: Any


AnswerValue = Annotated[
    Union[TextValue, NumberValue, BooleanValue, DateValue, JsonValue],
    Field(discriminator="kind"),
]

_SLOT_BY_KIND = {
    "text": "valueText",
    "number": "valueNumber",
    "boolean": "valueBoolean",
    "date": "valueDate",
    "json": "valueJson",
}


def value_kind_for(question_type: str) -> Optional[str]:
    """The AnswerValue kind a question type carries, or None for SECTION_TITLE/unknown."""
    if question_type in TEXT_TYPES:
        return "text"
    if question_type in NUMBER_TYPES:
        return "number"
    if question_type in BOOLEAN_TYPES:
        return "boolean"
    if question_type in DATE_TYPES:
        return "date"
    if question_type in JSON_TYPES:
        return "json"
    return None


def value_to_slots(value: Optional[AnswerValue]) -> Dict[str, Any]:
    """Spread an AnswerValue over the five storage columns; every other slot is cleared."""
    slots: Dict[str, Any] = {slot: None for slot in VALUE_SLOTS}
    if value is None:
        return slots
    slot = _SLOT_BY_KIND[value.kind]
    if value.kind == "json":
        slots[slot] = json.dumps(value.value, separators=(",", ":"))
    elif value.kind == "boolean":
        slots[slot] = 1 if value.value else 0
    else:
        slots[slot] = value.value
    return slots


# ----------------------------------------------------------------------------- templates


class ConditionalRule(CamelModel):
    question_id: str
    operator: ConditionOperator
    value: Any = None
    action: ConditionAction
    target_id: Optional[str] = None


class ConditionalLogic(CamelModel):
    rules: List[ConditionalRule] = Field(default_factory=list)
    logic: Literal["AND", "OR"] = "AND"


class QuestionValidations(CamelModel):
    min: Optional[float] = None
    max: Optional[float] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None


class ChecklistQuestion(CamelModel):
    id: str
    type: QuestionType
    title: str = ""
    description: Optional[str] = None
    is_required: bool = False
    order: int = 0
    section_id: Optional[str] = None
    options: Optional[List[Any]] = None
    validations: Optional[QuestionValidations] = None
    conditional_logic: Optional[ConditionalLogic] = None


class ChecklistSection(CamelModel):
    id: str
    title: str = ""
    order: int = 0


class ChecklistTemplate(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    version: int = 1
    is_active: int = 1
    sections: List[ChecklistSection] = Field(default_factory=list)
    questions: List[ChecklistQuestion] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    synced_at: Optional[str] = None
    technician_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ChecklistTemplate":
        data = dict(row)
        for key in ("sections", "questions"):
            if isinstance(data.get(key), str):
                data[key] = json.loads(data[key])
            elif data.get(key) is None:
                data[key] = []
        return cls.model_validate(data)


# ----------------------------------------------------------------------------- execution records


class ChecklistInstance(CamelModel):
    id: str
    work_order_id: str
    template_id: str
    template_version_snapshot: Optional[str] = None
    template_name: Optional[str] = None
    status: InstanceStatus = InstanceStatus.PENDING
    progress: int = 0
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    completed_by: Optional[str] = None
    local_id: Optional[str] = None
    deleted_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    synced_at: Optional[str] = None
    technician_id: Optional[str] = None

    def snapshot(self) -> Optional[ChecklistTemplate]:
        """The frozen template this instance was created from."""
        if not self.template_version_snapshot:
            return None
        return ChecklistTemplate.from_row(json.loads(self.template_version_snapshot))


class ChecklistAnswer(CamelModel):
    id: str
    instance_id: str
    question_id: str
    type: str
    value_text: Optional[str] = None
    value_number: Optional[float] = None
    value_boolean: Optional[bool] = None
    value_date: Optional[str] = None
    value_json: Optional[str] = None
    answered_at: Optional[str] = None
    answered_by: Optional[str] = None
    device_info: Optional[str] = None
    local_id: Optional[str] = None
    deleted_at: Optional[str] = None
    sync_status: AnswerSyncStatus = AnswerSyncStatus.PENDING
    synced_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def value(self) -> Optional[AnswerValue]:
        """The slot selected by this answer's type, as a tagged value."""
        kind = value_kind_for(self.type)
        if kind == "text" and self.value_text is not None:
            return TextValue(value=self.value_text)
        if kind == "number" and self.value_number is not None:
            return NumberValue(value=self.value_number)
        if kind == "boolean" and self.value_boolean is not None:
            return BooleanValue(value=self.value_boolean)
        if kind == "date" and self.value_date is not None:
            return DateValue(value=self.value_date)
        if kind == "json" and self.value_json is not None:
            try:
                return JsonValue(value=json.loads(self.value_json))
            except ValueError:
                return JsonValue(value=self.value_json)
        return None


class ChecklistAttachment(CamelModel):
    id: str
    answer_id: Optional[str] = None
    work_order_id: Optional[str] = None
    type: AttachmentType
    file_name: Optional[str] = None
    file_size: int = 0
    mime_type: Optional[str] = None
    local_path: Optional[str] = None
    remote_path: Optional[str] = None
    thumbnail_path: Optional[str] = None
    base64_data: Optional[str] = None
    sync_status: AttachmentSyncStatus = AttachmentSyncStatus.PENDING
    upload_attempts: int = 0
    last_upload_error: Optional[str] = None
    local_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    synced_at: Optional[str] = None
    technician_id: Optional[str] = None


class ValidationResult(BaseModel):
    valid: bool
    error: Optional[str] = None


class UploadResult(BaseModel):
    attachment_id: str
    success: bool
    remote_path: Optional[str] = None
    skipped: bool = False
    error: Optional[str] = None


class UploadBatchResult(BaseModel):
    uploaded: int = 0
    failed: int = 0
    skipped: int = 0
    offline: bool = False
    results: List[UploadResult] = Field(default_factory=list)
