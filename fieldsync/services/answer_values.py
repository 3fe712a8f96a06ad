"""
Answer value helpers.

An answer stores its value in exactly one of five slots chosen by the question type:
valueText, valueNumber, valueBoolean, valueDate or valueJson.
"""
import json
import math
from typing import Any, Dict, Optional, Union

from ..schemas.checklists import (
    VALUE_SLOTS,
    BooleanValue,
    ChecklistAnswer,
    DateValue,
    JsonValue,
    NumberValue,
    QuestionType,
    QuestionValidations,
    TextValue,
    ValidationResult,
    value_kind_for,
    value_to_slots,
)
from .time_rules import is_valid_iso, now_iso


REQUIRED_ERROR = "Required field"
NUMBER_ERROR = "Invalid numeric value"
BOOLEAN_ERROR = "Invalid boolean value"
DATE_ERROR = "Invalid date/time"
SELECT_ERROR = "Invalid selection"
MULTI_SELECT_ERROR = "Invalid multiple selection"

_VARIANTS = {
    "text": TextValue,
    "number": NumberValue,
    "boolean": BooleanValue,
    "date": DateValue,
    "json": JsonValue,
}

AnswerLike = Union[ChecklistAnswer, Dict[str, Any]]


def _slots_of(answer: AnswerLike) -> Dict[str, Any]:
    if isinstance(answer, ChecklistAnswer):
        return answer.to_row()
    return answer


def get_answer_value(answer: Optional[AnswerLike]) -> Any:
    """
    Plain value of an answer, read from the slot its type selects.

    JSON-slot types are parsed. SECTION_TITLE has no value. An unknown type falls back
    to the first non-null slot.
    """
    if answer is None:
        return None
    row = _slots_of(answer)
    question_type = row.get("type")
    if question_type == QuestionType.SECTION_TITLE.value:
        return None

    kind = value_kind_for(question_type)
    if kind is None:
        for slot in VALUE_SLOTS:
            if row.get(slot) is not None:
                return _parse_json(row[slot]) if slot == "valueJson" else row[slot]
        return None

    if kind == "text":
        return row.get("valueText")
    if kind == "number":
        return row.get("valueNumber")
    if kind == "boolean":
        value = row.get("valueBoolean")
        return None if value is None else bool(value)
    if kind == "date":
        return row.get("valueDate")
    return _parse_json(row.get("valueJson"))


def _parse_json(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def set_answer_value(question_type: str, value: Any) -> Dict[str, Any]:
    """
    Column values for storing value under question_type.

    Returns:
        Dict with type, answeredAt and all five slots; every slot except the selected one is None
    """
    kind = value_kind_for(question_type)
    tagged = None
    if kind is not None and value is not None:
        if kind == "number":
            value = float(value)
        tagged = _VARIANTS[kind](value=value)
    return {"type": question_type, "answeredAt": now_iso(), **value_to_slots(tagged)}


def is_empty_value(value: Any) -> bool:
    """None, blank strings and empty collections count as unanswered."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return False


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not math.isnan(value)


def validate_answer(
    question_type: str,
    value: Any,
    required: bool = False,
    validations: Optional[QuestionValidations] = None,
) -> ValidationResult:
    """
    Check a value against its question type, requiredness and optional min/max limits.

    Args:
        question_type: Question type
        value: Candidate value
        required: Whether the question must be answered
        validations: min/max for numbers, minLength/maxLength for text

    Returns:
        ValidationResult
    """
    if value is None or value == "":
        if required:
            return ValidationResult(valid=False, error=REQUIRED_ERROR)
        return ValidationResult(valid=True)

    kind = value_kind_for(question_type)
    if question_type in (QuestionType.NUMBER.value, QuestionType.RATING.value, QuestionType.SCALE.value):
        if not _is_number(value):
            return ValidationResult(valid=False, error=NUMBER_ERROR)
        if validations is not None:
            if validations.min is not None and value < validations.min:
                return ValidationResult(valid=False, error=f"Value must be at least {validations.min:g}")
            if validations.max is not None and value > validations.max:
                return ValidationResult(valid=False, error=f"Value must be at most {validations.max:g}")
    elif kind == "boolean":
        if not isinstance(value, bool):
            return ValidationResult(valid=False, error=BOOLEAN_ERROR)
    elif kind == "date":
        if not isinstance(value, str) or not is_valid_iso(value):
            return ValidationResult(valid=False, error=DATE_ERROR)
    elif question_type == QuestionType.SELECT.value:
        if not isinstance(value, str):
            return ValidationResult(valid=False, error=SELECT_ERROR)
    elif question_type == QuestionType.MULTI_SELECT.value:
        if not isinstance(value, list):
            return ValidationResult(valid=False, error=MULTI_SELECT_ERROR)
        if required and not value:
            return ValidationResult(valid=False, error=REQUIRED_ERROR)
    elif kind == "text":
        if not isinstance(value, str):
            return ValidationResult(valid=False, error="Invalid text")
        if validations is not None:
            if validations.min_length is not None and len(value) < validations.min_length:
                return ValidationResult(valid=False, error=f"Must have at least {validations.min_length} characters")
            if validations.max_length is not None and len(value) > validations.max_length:
                return ValidationResult(valid=False, error=f"Must have at most {validations.max_length} characters")

    return ValidationResult(valid=True)
