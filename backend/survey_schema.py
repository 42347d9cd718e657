# Mapping raw submitted answers back onto the questions that produced them
from __future__ import annotations
from typing import Any, Iterable, Optional
import json
import logging

from schemas import Question, QAPair, AssembledResponse

logger = logging.getLogger(__name__)

# Priority lists: the first non-empty field wins.
TITLE_FIELDS = ("title", "questionTitle", "question", "label", "caption", "description")
CHOICE_FIELDS = ("choices", "options")
CHILD_FIELDS = ("elements", "questions")
CHOICE_TYPES = frozenset({"radiogroup", "checkbox", "dropdown", "selectbase"})

NO_ANSWER = "(No answer)"


def _localized(value: Any) -> Any:
    """Collapse a localized string map ({"default": ..., "de": ...}) to one string."""
    if isinstance(value, dict):
        if value.get("default"):
            return value["default"]
        return next((v for v in value.values() if v), None)
    return value


def _first_present(node: dict, fields: Iterable[str]) -> Any:
    for field in fields:
        value = _localized(node.get(field))
        if value:
            return value
    return None


def _resolve_choices(node: dict) -> Optional[list]:
    for field in CHOICE_FIELDS:
        value = node.get(field)
        if isinstance(value, list):
            return value
    if node.get("type") in CHOICE_TYPES:
        return []
    return None


def _walk(nodes: Any, out: list[Question]) -> None:
    if not isinstance(nodes, list):
        return
    for node in nodes:
        if not isinstance(node, dict):
            continue
        name = node.get("name")
        if name:
            question = Question(
                name=str(name),
                title=str(_first_present(node, TITLE_FIELDS) or name),
                type=str(node.get("type") or "text"),
                choices=_resolve_choices(node),
            )
            out.append(question)
            logger.debug("Found question name=%r title=%r type=%r choices=%s",
                         question.name, question.title, question.type, question.choices is not None)
        # named panels are both recorded and walked
        for field in CHILD_FIELDS:
            _walk(node.get(field), out)


def extract_questions(definition: Any) -> list[Question]:
    """Flatten a questionnaire definition into its questions, in reading order.

    Pages are containers only; everything else with a `name` is a question,
    and anything carrying `elements` or `questions` is recursed into.
    Duplicate names are kept. Never raises: malformed input yields [].
    """
    questions: list[Question] = []
    if not isinstance(definition, dict):
        return questions

    pages = definition.get("pages")
    if isinstance(pages, list):
        for page in pages:
            if isinstance(page, dict):
                for field in CHILD_FIELDS:
                    _walk(page.get(field), questions)

    for field in CHILD_FIELDS:
        _walk(definition.get(field), questions)

    logger.debug("Extracted %d questions", len(questions))
    return questions


def _choice_matches(choice: Any, value: Any) -> bool:
    if isinstance(choice, dict):
        if "value" not in choice:
            return False
        return choice["value"] == value or choice["value"] == str(value)
    return choice == value


def _choice_label(choices: list, value: Any) -> Any:
    """Display text of the choice matching `value`, or `value` unchanged."""
    for choice in choices:
        if _choice_matches(choice, value):
            if isinstance(choice, dict):
                return _localized(choice.get("text")) or choice.get("value") or value
            return choice
    return value


def _as_text(value: Any) -> str:
    if value is None:
        return NO_ANSWER
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return str(value)


def format_answers(raw_answers: dict, questions: list[Question]) -> list[QAPair]:
    """Pair each raw field with its question title and decoded answer text.

    Output follows the raw answer map's key order, not the schema's.
    """
    index = {q.name: q for q in questions}   # last occurrence wins
    pairs: list[QAPair] = []
    for field_name, value in raw_answers.items():
        question = index.get(field_name)
        title = question.title if question else field_name
        choices = question.choices if question else None

        if isinstance(value, list):
            if choices is not None:
                shown = ", ".join(_as_text(_choice_label(choices, v)) for v in value)
            else:
                shown = ", ".join(_as_text(v) for v in value)
        elif choices is not None and not isinstance(value, dict):
            shown = _choice_label(choices, value)
        else:
            shown = value

        pairs.append(QAPair(question=title, answer=_as_text(shown), field_name=field_name))
    return pairs


def assemble_responses(definition: Any, responses: Iterable) -> list[AssembledResponse]:
    """Build the review view for stored responses, newest first.

    `responses` are rows carrying `id`, `submitted_at` and `raw_answers`.
    """
    questions = extract_questions(definition)
    ordered = sorted(responses, key=lambda r: (r.submitted_at, r.id), reverse=True)
    return [
        AssembledResponse(
            id=r.id,
            submitted_at=r.submitted_at,
            qa=format_answers(r.raw_answers or {}, questions),
        )
        for r in ordered
    ]
