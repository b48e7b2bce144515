"""Graph builder: wires the think and execute nodes into a LangGraph StateGraph.

START → [think] → [execute] → conditional (route_after_execute)
  → "think" → [think]
  → END
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from langgraph.graph import END, StateGraph

from aigent.orchestrator.nodes import make_execute_node, make_think_node, route_after_execute
from aigent.orchestrator.state import RunState

if TYPE_CHECKING:
    from langgraph.graph.state import CompiledStateGraph

    from aigent.orchestrator.state import RunContext

logger = logging.getLogger(__name__)


def recursion_limit(max_iterations: int) -> int:
    """LangGraph super-step limit that still lets the iteration guard fire first."""
    return 2 * max_iterations + 4


def build_graph(ctx: RunContext) -> CompiledStateGraph:
    """Build and compile the think/execute loop for one engine."""
    graph = StateGraph(RunState)

    graph.add_node("think", make_think_node(ctx))
    graph.add_node("execute", make_execute_node(ctx))

    graph.set_entry_point("think")
    graph.add_edge("think", "execute")
    graph.add_conditional_edges(
        "execute",
        route_after_execute,
        {"think": "think", END: END},
    )

    logger.info(
        f"Built plan/execute graph "
        f"(max_iterations={ctx.settings.max_iterations}, "
        f"tools={ctx.backends.tool_names()}, "
        f"retrieval={'on' if ctx.backends.retriever else 'off'})"
    )
    return graph.compile()
