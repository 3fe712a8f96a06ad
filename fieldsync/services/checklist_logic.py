"""
Conditional logic for checklist questions.

Pure functions: visibility, requiredness, skip targets, completion and progress are all
derived from the question list and the current answers, keyed by question id.
"""
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel

from ..schemas.checklists import (
    ChecklistAnswer,
    ChecklistQuestion,
    ConditionAction,
    ConditionalRule,
    ConditionOperator,
    QuestionType,
)
from .answer_values import get_answer_value, is_empty_value


Answers = Mapping[str, Any]


class QuestionState(BaseModel):
    visible: bool = True
    required: bool = False
    skip_to: Optional[str] = None


def _answer_value(answers: Answers, question_id: str) -> Tuple[bool, Any]:
    """(present, value) for a question; an answer without a stored value is not present."""
    answer = answers.get(question_id)
    if answer is None:
        return False, None
    if isinstance(answer, (ChecklistAnswer, dict)):
        value = get_answer_value(answer)
    else:
        value = answer
    return value is not None, value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _contains(value: Any, expected: Any) -> bool:
    if isinstance(value, (list, tuple)):
        return any(_equals(item, expected) for item in value)
    if isinstance(value, str) and expected is not None:
        return str(expected) in value
    return False


def _in(value: Any, options: Any) -> bool:
    if not isinstance(options, (list, tuple)):
        return False
    if isinstance(value, (list, tuple)):
        return any(_in(item, options) for item in value)
    return any(_equals(value, option) for option in options)


def evaluate_rule(rule: ConditionalRule, answers: Answers) -> bool:
    present, value = _answer_value(answers, rule.question_id)
    operator = rule.operator

    if operator == ConditionOperator.IS_EMPTY.value:
        return not present or is_empty_value(value)
    if not present:
        return False
    if operator == ConditionOperator.IS_NOT_EMPTY.value:
        return not is_empty_value(value)
    if operator == ConditionOperator.EQUALS.value:
        return _equals(value, rule.value)
    if operator == ConditionOperator.NOT_EQUALS.value:
        return not _equals(value, rule.value)
    if operator in (
        ConditionOperator.GREATER_THAN.value,
        ConditionOperator.LESS_THAN.value,
        ConditionOperator.GREATER_THAN_OR_EQUAL.value,
        ConditionOperator.LESS_THAN_OR_EQUAL.value,
    ):
        if not (_is_number(value) and _is_number(rule.value)):
            return False
        if operator == ConditionOperator.GREATER_THAN.value:
            return value > rule.value
        if operator == ConditionOperator.LESS_THAN.value:
            return value < rule.value
        if operator == ConditionOperator.GREATER_THAN_OR_EQUAL.value:
            return value >= rule.value
        return value <= rule.value
    if operator == ConditionOperator.CONTAINS.value:
        return _contains(value, rule.value)
    if operator == ConditionOperator.NOT_CONTAINS.value:
        return not _contains(value, rule.value)
    if operator == ConditionOperator.IN.value:
        return _in(value, rule.value)
    if operator == ConditionOperator.NOT_IN.value:
        return not _in(value, rule.value)
    return False


def evaluate_question_visibility(question: ChecklistQuestion, context: Mapping[str, Any]) -> QuestionState:
    """
    State of one question given the other answers.

    Args:
        question: Question to evaluate
        context: {"questions": [...], "answers": {questionId: answer}}

    Returns:
        QuestionState
    """
    state = QuestionState(visible=True, required=question.is_required)
    logic = question.conditional_logic
    if logic is None or not logic.rules:
        return state

    answers = context.get("answers") or {}
    outcomes = [(rule, evaluate_rule(rule, answers)) for rule in logic.rules]
    if logic.logic == "OR":
        matched = any(hit for _, hit in outcomes)
    else:
        matched = all(hit for _, hit in outcomes)

    if not matched:
        # show-if: a question guarded by SHOW stays hidden until its condition holds
        if any(rule.action == ConditionAction.SHOW.value for rule in logic.rules):
            state.visible = False
            state.required = False
        return state

    applied = [rule for rule, hit in outcomes if hit]
    for rule in applied:
        if rule.action == ConditionAction.SHOW.value:
            state.visible = True
        elif rule.action == ConditionAction.REQUIRE.value:
            state.required = True
        elif rule.action == ConditionAction.SKIP_TO.value:
            state.skip_to = rule.target_id
    if any(rule.action == ConditionAction.HIDE.value for rule in applied):
        state.visible = False
        state.required = False
    return state


def evaluate_all_questions(questions: Sequence[ChecklistQuestion], answers: Answers) -> Dict[str, QuestionState]:
    context = {"questions": questions, "answers": answers}
    return {q.id: evaluate_question_visibility(q, context) for q in questions}


def get_visible_questions(questions: Sequence[ChecklistQuestion], answers: Answers) -> List[ChecklistQuestion]:
    states = evaluate_all_questions(questions, answers)
    return sorted((q for q in questions if states[q.id].visible), key=lambda q: q.order)


def is_answered(question: ChecklistQuestion, answers: Answers) -> bool:
    present, value = _answer_value(answers, question.id)
    if not present:
        return False
    if question.type == QuestionType.CHECKBOX.value:
        return isinstance(value, bool)
    return not is_empty_value(value)


def are_all_required_answered(questions: Sequence[ChecklistQuestion], answers: Answers) -> Tuple[bool, List[str]]:
    """
    Returns:
        (complete, ids of visible required questions still unanswered)
    """
    states = evaluate_all_questions(questions, answers)
    missing = [
        q.id for q in sorted(questions, key=lambda q: q.order)
        if q.type != QuestionType.SECTION_TITLE.value
        and states[q.id].visible
        and states[q.id].required
        and not is_answered(q, answers)
    ]
    return not missing, missing


def calculate_progress(questions: Sequence[ChecklistQuestion], answers: Answers) -> int:
    """Answered share of visible questions (section titles excluded), 0-100."""
    countable = [
        q for q in get_visible_questions(questions, answers)
        if q.type != QuestionType.SECTION_TITLE.value
    ]
    if not countable:
        return 100
    answered = sum(1 for q in countable if is_answered(q, answers))
    return int(answered * 100 / len(countable) + 0.5)
