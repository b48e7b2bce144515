"""Engine: runs one goal through the plan/execute graph.

Each ``execute`` call gets its own run state; concurrent calls share only
the backends and the broker. The outcome is either the final answer or a
single ``EngineError``, and exactly one terminal event is emitted.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Any

from langgraph.errors import GraphRecursionError

from aigent.broker import EventStatus
from aigent.config import EngineSettings
from aigent.errors import (
    EngineError,
    ExecutionTimeoutError,
    IterationBudgetExceededError,
    ValidationError,
)
from aigent.orchestrator.builder import build_graph, recursion_limit
from aigent.orchestrator.recovery import Recovery
from aigent.orchestrator.state import RunContext, RunState

if TYPE_CHECKING:
    from aigent.broker import Broker
    from aigent.registry import Backends

logger = logging.getLogger(__name__)


class Engine:
    """Plan-execute engine bound to one set of backends.

    Usage::

        engine = Engine(settings, Backends(model=model, tools=tools), broker)
        answer = await engine.execute("What is 2+2?")
    """

    def __init__(
        self,
        settings: EngineSettings | None,
        backends: Backends,
        broker: Broker | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.backends = backends
        self.broker = broker
        self._ctx = RunContext(
            settings=self.settings,
            backends=backends,
            recovery=Recovery(backends, self.settings.recovery),
            emit=self._emit,
        )
        self._graph = build_graph(self._ctx)

    def _emit(
        self,
        run_id: str,
        key: str,
        status: EventStatus,
        message: str,
        payload: Any = None,
    ) -> None:
        logger.info(f"[{run_id}] {key} ({status.value}): {message}")
        if self.broker is not None:
            self.broker.publish(
                status,
                message,
                payload,
                event_id=f"{run_id}:{key}",
                run_id=run_id,
            )

    async def execute(self, goal: str, *, timeout: float | None = None) -> str:
        """Run a goal to its final answer.

        Raises an ``EngineError`` subclass on failure; non-engine exceptions
        are reported and propagated unchanged.
        """
        if not goal or not goal.strip():
            raise ValidationError("Goal must not be empty", field="goal")

        run_id = uuid.uuid4().hex[:12]
        deadline = self.settings.timeout_seconds if timeout is None else timeout
        self._emit(run_id, "start", EventStatus.THINKING, "Run started", {"goal": goal})

        initial: RunState = {
            "run_id": run_id,
            "goal": goal,
            "current_query": goal,
            "iteration": 0,
            "history": [],
            "plan": None,
            "result": "",
            "should_continue": False,
        }
        config = {"recursion_limit": recursion_limit(self.settings.max_iterations)}

        try:
            try:
                final = await asyncio.wait_for(
                    self._graph.ainvoke(initial, config=config), timeout=deadline
                )
            except asyncio.TimeoutError as e:
                raise ExecutionTimeoutError(deadline) from e
            except GraphRecursionError as e:
                raise IterationBudgetExceededError(self.settings.max_iterations) from e
        except EngineError as e:
            logger.error(f"[{run_id}] run failed: {e.describe()}")
            self._emit(
                run_id,
                "error",
                EventStatus.ERROR,
                str(e),
                {"kind": e.kind, "error": e.describe()},
            )
            raise
        except Exception as e:
            logger.exception(f"[{run_id}] unexpected failure")
            self._emit(
                run_id,
                "error",
                EventStatus.ERROR,
                str(e),
                {"kind": type(e).__name__, "error": str(e)},
            )
            raise

        result = final["result"]
        self._emit(run_id, "complete", EventStatus.COMPLETED, "Run completed", {"result": result})
        return result
