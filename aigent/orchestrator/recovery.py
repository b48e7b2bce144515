"""Per-action fallback behaviour for failed steps.

Strategies are best-effort and run at most once per failed step: if the
strategy itself fails, the run fails with RecoveryFailedError.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aigent.errors import BackendError, EngineError, RecoveryFailedError
from aigent.orchestrator.plan import ActionKind
from aigent.retrieval import format_results

if TYPE_CHECKING:
    from aigent.config import RecoverySettings
    from aigent.orchestrator.plan import Step
    from aigent.registry import Backends

logger = logging.getLogger(__name__)


REASON_RECOVERY_PROMPT = """\
The previous reasoning step failed. Think again using the results gathered so far.

Execution history:
{history}

Original question:
{prompt}

Give the best answer you can from the information available."""

DEFAULT_RECOVERY_PROMPT = """\
An error occurred while executing a step: {error}

Execution history:
{history}

Give a reasonable answer or solution based on the information available."""


def _format_history(history: list[str]) -> str:
    return "; ".join(history) if history else "(none)"


def alternative_inputs(
    original: str,
    history: list[str],
    fragment_chars: int = 200,
) -> list[str]:
    """Inputs to retry a failed tool call with, in order.

    The original input first (transient failures), then the input enriched
    with what earlier steps produced.
    """
    candidates = [original]
    if history:
        fragment = history[-1].strip()[:fragment_chars]
        if fragment:
            candidates.append(f"{original} {fragment}")
        context = _format_history(history)[:fragment_chars]
        candidates.append(f"{original}\n\nContext from previous steps: {context}")
    return list(dict.fromkeys(candidates))


def alternative_queries(
    query: str,
    history: list[str],
    trim_chars: int = 5,
    min_length: int = 10,
) -> list[str]:
    """Queries to retry a failed retrieval search with, in order."""
    queries = [query]
    if len(query) > min_length:
        trimmed = query[:-trim_chars].strip()
        if trimmed:
            queries.append(trimmed)
    if history:
        words = history[-1].split()
        if words:
            queries.append(f"{query} {words[0]}")
    return list(dict.fromkeys(queries))


class Recovery:
    """Dispatches a failed step to the strategy for its action."""

    def __init__(self, backends: Backends, settings: RecoverySettings) -> None:
        self._backends = backends
        self._settings = settings

    async def recover(
        self,
        step: Step,
        error: EngineError,
        history: list[str],
        step_number: int,
    ) -> str:
        """Return a substitute result for the step or raise RecoveryFailedError."""
        action = step.action if isinstance(error, BackendError) else None
        logger.info(f"Recovering step {step_number} ({step.action.value}) from: {error}")
        try:
            match action:
                case ActionKind.TOOL_CALL:
                    return await self._recover_tool(step, history)
                case ActionKind.RETRIEVAL_SEARCH:
                    return await self._recover_retrieval(step, history)
                case ActionKind.REASON:
                    return await self._recover_reason(step, history)
                case _:
                    return await self._recover_default(error, history)
        except EngineError as e:
            raise RecoveryFailedError(step_number, error, e) from e

    async def _recover_tool(self, step: Step, history: list[str]) -> str:
        tools = self._backends.tools
        if tools is None:
            raise BackendError("no tool backend configured")

        name = step.get_str("tool_name")
        candidates = alternative_inputs(
            step.get_text("input"), history, self._settings.history_fragment_chars
        )
        for attempt, candidate in enumerate(candidates, 1):
            try:
                return await tools.execute(name, candidate)
            except BackendError as e:
                logger.debug(f"Tool '{name}' alternative {attempt}/{len(candidates)} failed: {e}")
        raise BackendError(f"all {len(candidates)} alternative inputs failed for tool '{name}'")

    async def _recover_retrieval(self, step: Step, history: list[str]) -> str:
        retriever = self._backends.retriever
        if retriever is None:
            raise BackendError("no retrieval backend configured")

        candidates = alternative_queries(
            step.get_str("query"),
            history,
            trim_chars=self._settings.query_trim_chars,
            min_length=self._settings.min_query_length,
        )
        for attempt, candidate in enumerate(candidates, 1):
            try:
                results = await retriever.search(candidate, self._settings.retrieval_top_k)
            except BackendError as e:
                logger.debug(f"Retrieval alternative {attempt}/{len(candidates)} failed: {e}")
                continue
            if results:
                return format_results(results)
        raise BackendError(f"all {len(candidates)} alternative queries failed or returned nothing")

    async def _recover_reason(self, step: Step, history: list[str]) -> str:
        prompt = REASON_RECOVERY_PROMPT.format(
            history=_format_history(history),
            prompt=step.get_str("prompt"),
        )
        return await self._backends.model.generate(prompt)

    async def _recover_default(self, error: EngineError, history: list[str]) -> str:
        prompt = DEFAULT_RECOVERY_PROMPT.format(error=error, history=_format_history(history))
        return await self._backends.model.generate(prompt)
