"""Runtime: bridges the HTTP service and the scheduler to engine runs.

Holds the process-wide collaborators (config, model and tool registries,
optional retriever, broker) and builds one Engine per run from them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from aigent.errors import EngineError, RetrievalError
from aigent.orchestrator.engine import Engine
from aigent.registry import Backends, ModelRegistry, default_model_registry
from aigent.schemas import RunResult
from aigent.tools import ToolRegistry, default_registry

if TYPE_CHECKING:
    from aigent.broker import Broker
    from aigent.config import AppConfig, ModelSettings
    from aigent.retrieval import RetrievalBackend, SearchResult

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: AppConfig
    models: ModelRegistry = field(default_factory=default_model_registry)
    tools: ToolRegistry | None = None
    retriever: RetrievalBackend | None = None
    broker: Broker | None = None

    def __post_init__(self) -> None:
        if self.tools is None:
            self.tools = default_registry(self.config.tools)

    def apply_config(self, config: AppConfig) -> None:
        """Swap in a reloaded config: rebuild enabled tools and drop cached models."""
        self.config = config
        self.tools = default_registry(config.tools)
        self.models.invalidate()
        logger.info(f"Runtime reconfigured: tools={config.tools}")

    def register_model(self, settings: ModelSettings) -> None:
        """Add a model at runtime. Raises ValueError for a taken name or unknown provider.

        The model is built eagerly so a bad provider fails here, not on first
        run. Registrations last until the next config reload.
        """
        if any(m.name == settings.name for m in self.config.models):
            raise ValueError(f"Model '{settings.name}' is already configured")
        self.models.create(settings)
        self.config.models.append(settings)
        logger.info(f"Registered model '{settings.name}' (provider={settings.provider})")

    async def search(self, query: str, top_k: int | None = None) -> list[SearchResult]:
        """Query the retrieval backend directly. Raises RetrievalError when none is set."""
        if self.retriever is None:
            raise RetrievalError("no retrieval backend configured")
        return await self.retriever.search(query, top_k or self.config.engine.default_top_k)

    def engine(self, model_name: str | None = None) -> Engine:
        """Build an Engine for the named model. Raises ValueError for unknown models."""
        settings = self.config.get_model(model_name)
        model = self.models.create(settings)
        backends = Backends(model=model, tools=self.tools, retriever=self.retriever)
        return Engine(self.config.engine, backends, self.broker)

    async def run(
        self,
        goal: str,
        model_name: str | None = None,
        timeout: float | None = None,
    ) -> RunResult:
        """Run a goal and fold the outcome into a RunResult.

        Engine failures become an unsuccessful result; anything else
        propagates.
        """
        model = model_name or self.config.default_model
        engine = self.engine(model)
        try:
            answer = await engine.execute(goal, timeout=timeout)
        except EngineError as e:
            return RunResult(
                ok=False,
                query=goal,
                model=model,
                error_kind=e.kind,
                error=e.describe(),
            )
        return RunResult(ok=True, query=goal, model=model, result=answer)

    async def run_and_broadcast(
        self,
        goal: str,
        model_name: str | None = None,
        timeout: float | None = None,
    ) -> RunResult:
        """Background variant: the outcome is also broadcast to subscribers."""
        try:
            outcome = await self.run(goal, model_name, timeout)
        except Exception as e:
            logger.error(f"Background run failed: {e}", exc_info=True)
            outcome = RunResult(
                ok=False,
                query=goal,
                model=model_name or self.config.default_model,
                error_kind=type(e).__name__,
                error=str(e),
            )

        if self.broker is not None:
            if outcome.ok:
                self.broker.broadcast("agent_result", {"result": outcome.result, "query": goal})
            else:
                self.broker.broadcast(
                    "agent_error",
                    {"error": outcome.error, "kind": outcome.error_kind, "query": goal},
                )
        return outcome
