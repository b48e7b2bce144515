"""LangGraph node functions: the think and execute phases of a run.

``make_think_node`` asks the model for a plan and validates it;
``make_execute_node`` runs the plan's steps in order, recovering failed
steps once. Both are built per engine from a shared ``RunContext``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from langgraph.graph import END

from aigent.broker import EventStatus
from aigent.errors import (
    BackendError,
    EngineError,
    ExtractionError,
    IterationBudgetExceededError,
    ValidationError,
)
from aigent.orchestrator.plan import (
    REQUIRED_PARAMETERS,
    ActionKind,
    Plan,
    Step,
    check_executable,
    check_relevance,
    parse_plan,
)
from aigent.orchestrator.state import RunContext, RunState
from aigent.retrieval import format_results

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

THINK_PROMPT = """\
You are a task-solving agent. Plan how to answer the request below.

Request: {query}
Iteration: {iteration}

{capabilities}

Respond with a single JSON object and nothing else:
{{
  "thought": "how the steps answer the request, using the request's own words",
  "steps": [
    {{"action": "<action>", "parameters": {{...}}, "should_continue": false}}
  ]
}}

Set "should_continue" to true on a step only if the next step needs its result,
or on the last step if its result still needs another round of planning."""

RETRY_PROMPT = """\
Your previous plan for this request was rejected.

Request: {query}
Iteration: {iteration}
Attempt: {attempt} of {attempts}
Problem: {error}

{capabilities}

Return ONLY a JSON object with a non-empty "thought" that restates the request
and a non-empty "steps" list. Use only the actions, parameters and tools listed
above. No prose, no Markdown."""


def describe_capabilities(tool_names: list[str], retrieval_enabled: bool) -> str:
    """The action catalogue shown to the model."""
    lines = ["Available actions (required parameters):"]
    for kind in ActionKind:
        if kind is ActionKind.RETRIEVAL_SEARCH and not retrieval_enabled:
            continue
        params = ", ".join(REQUIRED_PARAMETERS[kind])
        extra = " (optional: top_k)" if kind is ActionKind.RETRIEVAL_SEARCH else ""
        lines.append(f"- {kind.value}: {params}{extra}")

    if tool_names:
        lines.append(f"Registered tools for tool_call: {', '.join(tool_names)}")
    else:
        lines.append("No tools are registered; do not use tool_call.")
    if not retrieval_enabled:
        lines.append("Retrieval search is not available.")
    return "\n".join(lines)


def build_think_prompt(
    query: str, iteration: int, tool_names: list[str], retrieval_enabled: bool
) -> str:
    return THINK_PROMPT.format(
        query=query,
        iteration=iteration,
        capabilities=describe_capabilities(tool_names, retrieval_enabled),
    )


def build_retry_prompt(
    query: str,
    iteration: int,
    tool_names: list[str],
    retrieval_enabled: bool,
    error: EngineError,
    attempt: int,
    attempts: int,
) -> str:
    return RETRY_PROMPT.format(
        query=query,
        iteration=iteration,
        attempt=attempt,
        attempts=attempts,
        error=error,
        capabilities=describe_capabilities(tool_names, retrieval_enabled),
    )


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


async def plan_with_retry(ctx: RunContext, query: str, iteration: int) -> Plan:
    """Ask for a plan until one validates or the attempt ceiling is hit.

    Extraction and validation failures are retried with a stricter prompt;
    model failures propagate immediately.
    """
    tool_names = ctx.backends.tool_names()
    retrieval_enabled = ctx.backends.retriever is not None
    attempts = ctx.settings.plan_attempts
    last_error: EngineError | None = None
    attempt = 0

    while True:
        attempt += 1
        if last_error is None:
            prompt = build_think_prompt(query, iteration, tool_names, retrieval_enabled)
        else:
            prompt = build_retry_prompt(
                query, iteration, tool_names, retrieval_enabled, last_error, attempt, attempts
            )

        raw = await ctx.backends.model.generate(prompt)
        try:
            plan = parse_plan(raw)
            check_executable(plan, tool_names, retrieval_enabled)
            check_relevance(plan, query, ctx.settings.relevance_threshold)
        except (ExtractionError, ValidationError) as e:
            logger.warning(f"Plan attempt {attempt}/{attempts} rejected: {e}")
            if attempt >= attempts:
                raise
            last_error = e
            continue
        return plan


# ---------------------------------------------------------------------------
# Step execution
# ---------------------------------------------------------------------------


async def execute_step(ctx: RunContext, step: Step) -> str:
    backends = ctx.backends
    match step.action:
        case ActionKind.TOOL_CALL:
            if backends.tools is None:
                raise BackendError("no tool backend configured")
            return await backends.tools.execute(step.get_str("tool_name"), step.get_text("input"))
        case ActionKind.RETRIEVAL_SEARCH:
            if backends.retriever is None:
                raise BackendError("no retrieval backend configured")
            top_k = step.get_int("top_k", ctx.settings.default_top_k)
            results = await backends.retriever.search(step.get_str("query"), top_k)
            return format_results(results)
        case ActionKind.REASON:
            return await backends.model.generate(step.get_str("prompt"))
        case _:
            raise ValidationError(f"Unsupported action: {step.action}", field="action")


# ---------------------------------------------------------------------------
# Node factories
# ---------------------------------------------------------------------------


def make_think_node(ctx: RunContext) -> Callable:
    """Create the node that turns the current query into a validated plan."""

    async def think_node(state: RunState) -> dict:
        run_id = state["run_id"]
        iteration = state["iteration"] + 1
        if iteration > ctx.settings.max_iterations:
            raise IterationBudgetExceededError(ctx.settings.max_iterations)

        query = state["current_query"]
        ctx.emit(
            run_id,
            f"think_{iteration}",
            EventStatus.THINKING,
            f"Iteration {iteration}: analyzing the request",
            {"iteration": iteration, "query": query},
        )

        plan = await plan_with_retry(ctx, query, iteration)
        ctx.emit(
            run_id,
            f"plan_{iteration}",
            EventStatus.PLANNING,
            f"Plan ready with {len(plan.steps)} step(s)",
            plan.model_dump(mode="json"),
        )
        return {"iteration": iteration, "plan": plan}

    think_node.__name__ = "think"
    return think_node


def make_execute_node(ctx: RunContext) -> Callable:
    """Create the node that runs the current plan's steps sequentially."""

    async def execute_node(state: RunState) -> dict:
        run_id = state["run_id"]
        iteration = state["iteration"]
        plan = state["plan"]
        history = list(state["history"])

        ctx.emit(
            run_id,
            f"execute_{iteration}",
            EventStatus.EXECUTING,
            f"Executing {len(plan.steps)} step(s)",
            {"iteration": iteration},
        )

        result = ""
        should_continue = False
        for index, step in enumerate(plan.steps):
            number = index + 1
            ctx.emit(
                run_id,
                f"step_{number}_start",
                EventStatus.EXECUTING,
                f"Step {number}: {step.action.value}",
                {"iteration": iteration, "step": step.model_dump(mode="json")},
            )

            try:
                result = await execute_step(ctx, step)
            except EngineError as e:
                logger.error(f"Run {run_id} step {number} failed: {e}")
                ctx.emit(
                    run_id,
                    f"step_{number}_error",
                    EventStatus.ERROR,
                    f"Step {number} failed: {e}",
                    {"iteration": iteration, "kind": e.kind, "error": str(e)},
                )
                result = await ctx.recovery.recover(step, e, history, number)
                ctx.emit(
                    run_id,
                    f"step_{number}_recovered",
                    EventStatus.EXECUTING,
                    f"Step {number} recovered",
                    {"iteration": iteration},
                )

            history.append(result)
            should_continue = step.should_continue
            ctx.emit(
                run_id,
                f"step_{number}_complete",
                EventStatus.EXECUTING,
                f"Step {number} complete",
                {"iteration": iteration, "result": result, "should_continue": should_continue},
            )

            if not should_continue or number == len(plan.steps):
                break

        update = {"history": history, "result": result, "should_continue": should_continue}
        if should_continue:
            # The next iteration plans against this result.
            update["current_query"] = result
        return update

    execute_node.__name__ = "execute"
    return execute_node


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def route_after_execute(state: RunState) -> str:
    """Conditional edge after execute: plan again or finish.

    Returns "think" when the last step asked to continue, END otherwise.
    """
    return "think" if state.get("should_continue") else END
