"""LangGraph run state: flows between the think and execute nodes."""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from typing_extensions import TypedDict

from aigent.broker import EventStatus
from aigent.config import EngineSettings
from aigent.orchestrator.plan import Plan
from aigent.orchestrator.recovery import Recovery
from aigent.registry import Backends


class RunState(TypedDict):
    """State of one Execute call. Created per run, discarded when it returns.

    run_id          identifies the run in events and logs.
    goal            the caller's original goal.
    current_query   what the next plan must answer; the goal at first,
                    then the previous iteration's result.
    iteration       completed think phases so far.
    history         stringified step results, in execution order.
    plan            the plan of the current iteration.
    result          result of the last executed step.
    should_continue the last executed step's continue flag.
    """

    run_id: str
    goal: str
    current_query: str
    iteration: int
    history: list[str]
    plan: Plan | None
    result: str
    should_continue: bool


EmitFn = Callable[[str, str, EventStatus, str, Any], None]


@dataclass(frozen=True)
class RunContext:
    """Shared, read-only collaborators of every run of one engine.

    emit(run_id, key, status, message, payload) publishes an event.
    """

    settings: EngineSettings
    backends: Backends
    recovery: Recovery
    emit: EmitFn
