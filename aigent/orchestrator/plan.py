"""Plan model and the lenient-extract / strict-validate parser.

The model is asked for a JSON plan but routinely wraps it in prose or a
Markdown fence. Extraction tolerates that wrapping; validation then rejects
anything semantically incomplete before a single step runs.

Wire format::

    {
      "thought": "why these steps answer the request",
      "steps": [
        {"action": "tool_call", "parameters": {"tool_name": "calculate", "input": "2+2"},
         "should_continue": false}
      ]
    }
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any

import pydantic
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, JsonValue

from aigent.errors import (
    ExtractionError,
    IrrelevantPlanError,
    ParameterTypeError,
    UnknownActionError,
    ValidationError,
)


class ActionKind(str, Enum):
    TOOL_CALL = "tool_call"
    RETRIEVAL_SEARCH = "retrieval_search"
    REASON = "reason"


REQUIRED_PARAMETERS: dict[ActionKind, tuple[str, ...]] = {
    ActionKind.TOOL_CALL: ("tool_name", "input"),
    ActionKind.RETRIEVAL_SEARCH: ("query",),
    ActionKind.REASON: ("prompt",),
}


def _json_type(value: Any) -> str:
    match value:
        case None:
            return "null"
        case bool():
            return "boolean"
        case int() | float():
            return "number"
        case str():
            return "string"
        case list():
            return "array"
        case dict():
            return "object"
        case _:
            return type(value).__name__


class Step(BaseModel):
    """One action in a plan. Read-only once the plan is validated."""

    model_config = ConfigDict(frozen=True)

    action: ActionKind
    parameters: dict[str, JsonValue] = Field(default_factory=dict)
    should_continue: bool = Field(
        default=False,
        validation_alias=AliasChoices("should_continue", "continue"),
    )

    def get_str(self, key: str) -> str:
        value = self.parameters.get(key)
        if not isinstance(value, str):
            raise ParameterTypeError(
                f"Parameter '{key}' must be a string, got {_json_type(value)}",
                field=key,
            )
        return value

    def get_int(self, key: str, default: int) -> int:
        if key not in self.parameters or self.parameters[key] is None:
            return default
        value = self.parameters[key]
        # JSON numbers decode as float when written "5.0"; accept integral ones.
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ParameterTypeError(
                f"Parameter '{key}' must be an integer, got {_json_type(value)}",
                field=key,
            )
        return value

    def get_text(self, key: str) -> str:
        """String parameter, or a JSON object/array rendered as compact JSON."""
        value = self.parameters.get(key)
        if isinstance(value, str):
            return value
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        raise ParameterTypeError(
            f"Parameter '{key}' must be a string or JSON object, got {_json_type(value)}",
            field=key,
        )


class Plan(BaseModel):
    """A validated plan: non-empty thought, at least one step."""

    model_config = ConfigDict(frozen=True)

    thought: str
    steps: list[Step] = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

_JSON_FENCE = re.compile(r"```json[ \t]*\r?\n?(.*?)(?:```|\Z)", re.DOTALL | re.IGNORECASE)
_ANY_FENCE = re.compile(r"```[\w-]*[ \t]*\r?\n?(.*?)(?:```|\Z)", re.DOTALL)


def extract_json(raw_text: str) -> Any:
    """Decode the plan JSON from a model response.

    Tries the whole response first, then the interior of a ```json fence,
    then any fence. Raises ExtractionError if nothing decodes.
    """
    text = raw_text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError as direct_error:
        match = _JSON_FENCE.search(text) or _ANY_FENCE.search(text)
        if not match:
            raise ExtractionError(
                f"Response is not JSON and contains no fenced code block: {direct_error}"
            ) from direct_error

    interior = match.group(1).strip()
    try:
        return json.loads(interior)
    except json.JSONDecodeError as exc:
        raise ExtractionError(f"Fenced block is not valid JSON: {exc}") from exc


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _validate_structure(data: Any) -> None:
    if not isinstance(data, dict):
        raise ExtractionError(f"Plan must be a JSON object, got {_json_type(data)}")

    thought = data.get("thought")
    if not isinstance(thought, str) or not thought.strip():
        raise ValidationError("Plan is missing a non-empty 'thought'", field="thought")

    steps = data.get("steps")
    if not isinstance(steps, list) or not steps:
        raise ValidationError("Plan must contain at least one step", field="steps")

    known = {kind.value for kind in ActionKind}
    for index, step in enumerate(steps):
        if not isinstance(step, dict):
            raise ValidationError(
                f"steps[{index}]: step must be an object, got {_json_type(step)}",
                step_index=index,
            )

        action = step.get("action")
        if not isinstance(action, str) or action not in known:
            raise UnknownActionError(
                f"steps[{index}]: unknown action {action!r}; "
                f"expected one of {sorted(known)}",
                step_index=index,
                field="action",
            )

        parameters = step.get("parameters")
        if not isinstance(parameters, dict):
            raise ValidationError(
                f"steps[{index}]: missing 'parameters' object",
                step_index=index,
                field="parameters",
            )

        for required in REQUIRED_PARAMETERS[ActionKind(action)]:
            if required not in parameters:
                raise ValidationError(
                    f"steps[{index}]: missing required parameter '{required}' "
                    f"for action '{action}'",
                    step_index=index,
                    field=required,
                )


def parse_plan(raw_text: str) -> Plan:
    """Turn raw model text into a validated Plan.

    Raises ExtractionError when no JSON can be found and ValidationError
    (or a subclass) when the decoded plan is incomplete.
    """
    data = extract_json(raw_text)
    _validate_structure(data)
    try:
        return Plan.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Plan does not match the plan schema: {exc}") from exc


def check_executable(
    plan: Plan,
    tool_names: list[str] | set[str],
    retrieval_enabled: bool,
) -> None:
    """Reject plans the configured backends cannot run.

    Runs before execution so a plan naming an unknown tool never reaches
    any backend.
    """
    available = set(tool_names)
    for index, step in enumerate(plan.steps):
        try:
            match step.action:
                case ActionKind.TOOL_CALL:
                    name = step.get_str("tool_name")
                    if not name.strip():
                        raise ValidationError("'tool_name' must not be empty", field="tool_name")
                    if name not in available:
                        raise ValidationError(
                            f"tool '{name}' is not registered; "
                            f"available: {sorted(available) or 'none'}",
                            field="tool_name",
                        )
                    step.get_text("input")
                case ActionKind.RETRIEVAL_SEARCH:
                    if not retrieval_enabled:
                        raise ValidationError(
                            "retrieval search requested but no retrieval backend is configured",
                            field="query",
                        )
                    if not step.get_str("query").strip():
                        raise ValidationError("'query' must not be empty", field="query")
                    step.get_int("top_k", default=1)
                case ActionKind.REASON:
                    step.get_str("prompt")
        except ValidationError as exc:
            raise type(exc)(
                f"steps[{index}]: {exc}", step_index=index, field=exc.field
            ) from None


# ---------------------------------------------------------------------------
# Relevance gate
# ---------------------------------------------------------------------------

# Function words that carry no topic signal for the overlap heuristic.
STOPWORDS = frozenset(
    """
    about after all also and any are because been before but can could did does
    for from had has have her his how into its may more most not now off one our
    out over she should some such than that the their them then there these they
    this those too very was way were what when where which while who whom why will
    with would you your
    """.split()
)

_WORD = re.compile(r"\w+")


def significant_words(query: str) -> list[str]:
    return [
        word
        for word in _WORD.findall(query.lower())
        if len(word) > 2 and word not in STOPWORDS
    ]


def relevance_score(thought: str, query: str) -> float | None:
    """Fraction of the query's significant words found in the thought.

    Returns None when the query has no significant words. This is a cheap
    lexical proxy for relevance, not a semantic judgement.
    """
    words = significant_words(query)
    if not words:
        return None
    haystack = thought.lower()
    matches = sum(1 for word in words if word in haystack)
    return matches / len(words)


def check_relevance(plan: Plan, query: str, threshold: float) -> None:
    score = relevance_score(plan.thought, query)
    if score is None or score >= threshold:
        return
    raise IrrelevantPlanError(
        f"Plan thought is not relevant to the request "
        f"(word overlap {score:.0%}, required {threshold:.0%})",
        field="thought",
    )
