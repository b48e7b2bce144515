import pytest
from langchain_core.tools import tool

from aigent.config import RecoverySettings
from aigent.errors import (
    ModelError,
    ParameterTypeError,
    RecoveryFailedError,
    RetrievalError,
    ToolExecutionError,
)
from aigent.orchestrator.plan import Step
from aigent.orchestrator.recovery import Recovery, alternative_inputs, alternative_queries
from aigent.registry import Backends
from aigent.retrieval import SearchResult
from aigent.tools import ToolRegistry
from tests.helpers import FakeModel, FakeRetriever


def _step(action: str, **parameters) -> Step:
    return Step(action=action, parameters=parameters)


# ---------------------------------------------------------------------------
# Alternative inputs / queries
# ---------------------------------------------------------------------------


def test_alternative_inputs_without_history_is_original_only():
    assert alternative_inputs("2+2", []) == ["2+2"]


def test_alternative_inputs_with_history():
    candidates = alternative_inputs("total", ["first result", "12 apples"], fragment_chars=5)
    assert candidates[0] == "total"
    assert candidates[1] == "total 12 ap"
    assert candidates[2].startswith("total\n\nContext from previous steps: ")
    assert len(candidates) == 3


def test_alternative_queries_trims_long_query():
    queries = alternative_queries("renewable energy policy", [], trim_chars=5, min_length=10)
    assert queries == ["renewable energy policy", "renewable energy p"]


def test_alternative_queries_short_query_not_trimmed():
    assert alternative_queries("solar", [], trim_chars=5, min_length=10) == ["solar"]


def test_alternative_queries_appends_first_history_word():
    queries = alternative_queries("solar", ["Germany leads adoption"])
    assert queries == ["solar", "solar Germany"]


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def _flaky_tool(failures: int):
    calls = []

    @tool
    def lookup(text: str) -> str:
        """Look something up."""
        calls.append(text)
        if len(calls) <= failures:
            raise ValueError("service unavailable")
        return f"found: {text}"

    return lookup, calls


@pytest.mark.asyncio
async def test_tool_recovery_retries_original_input_first():
    lookup, calls = _flaky_tool(failures=0)
    backends = Backends(model=FakeModel([]), tools=ToolRegistry([lookup]))
    recovery = Recovery(backends, RecoverySettings())

    result = await recovery.recover(
        _step("tool_call", tool_name="lookup", input="price"),
        ToolExecutionError("boom"),
        history=[],
        step_number=1,
    )

    assert result == "found: price"
    assert calls == ["price"]


@pytest.mark.asyncio
async def test_tool_recovery_uses_history_enriched_input():
    lookup, calls = _flaky_tool(failures=1)
    backends = Backends(model=FakeModel([]), tools=ToolRegistry([lookup]))
    recovery = Recovery(backends, RecoverySettings())

    result = await recovery.recover(
        _step("tool_call", tool_name="lookup", input="price"),
        ToolExecutionError("boom"),
        history=["widget"],
        step_number=2,
    )

    # The failed first retry consumed the original input.
    assert calls == ["price", "price widget"]
    assert result == "found: price widget"


@pytest.mark.asyncio
async def test_tool_recovery_failure_raises_recovery_failed():
    lookup, calls = _flaky_tool(failures=99)
    backends = Backends(model=FakeModel([]), tools=ToolRegistry([lookup]))
    recovery = Recovery(backends, RecoverySettings())
    original = ToolExecutionError("boom")

    with pytest.raises(RecoveryFailedError) as exc_info:
        await recovery.recover(
            _step("tool_call", tool_name="lookup", input="price"),
            original,
            history=["a", "b"],
            step_number=3,
        )

    err = exc_info.value
    assert err.step_number == 3
    assert err.original is original
    assert str(err).startswith("Step 3 failed: boom; recovery failed:")
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_retrieval_recovery_uses_trimmed_query_with_configured_top_k():
    hit = SearchResult(content="Solar capacity grew 20%", similarity=0.91)
    retriever = FakeRetriever({"renewable energy p": [hit, hit, hit, hit]})
    backends = Backends(model=FakeModel([]), retriever=retriever)
    recovery = Recovery(backends, RecoverySettings(retrieval_top_k=2))

    result = await recovery.recover(
        _step("retrieval_search", query="renewable energy policy"),
        RetrievalError("timeout"),
        history=[],
        step_number=1,
    )

    assert retriever.queries == [("renewable energy policy", 2), ("renewable energy p", 2)]
    assert result.startswith("Retrieved the following relevant information:")
    assert result.count("Solar capacity") == 2


@pytest.mark.asyncio
async def test_retrieval_recovery_all_empty_fails():
    backends = Backends(model=FakeModel([]), retriever=FakeRetriever())
    recovery = Recovery(backends, RecoverySettings())

    with pytest.raises(RecoveryFailedError):
        await recovery.recover(
            _step("retrieval_search", query="solar"),
            RetrievalError("timeout"),
            history=[],
            step_number=1,
        )


@pytest.mark.asyncio
async def test_reason_recovery_restates_prompt_and_history():
    model = FakeModel(["recovered answer"])
    recovery = Recovery(Backends(model=model), RecoverySettings())

    result = await recovery.recover(
        _step("reason", prompt="Summarize the findings"),
        ModelError("overloaded"),
        history=["finding one", "finding two"],
        step_number=2,
    )

    assert result == "recovered answer"
    assert "Summarize the findings" in model.prompts[0]
    assert "finding one; finding two" in model.prompts[0]


@pytest.mark.asyncio
async def test_non_backend_error_uses_default_strategy():
    model = FakeModel(["fallback answer"])
    recovery = Recovery(Backends(model=model), RecoverySettings())

    result = await recovery.recover(
        _step("tool_call", tool_name="calculate", input="1+1"),
        ParameterTypeError("Parameter 'input' must be a string"),
        history=[],
        step_number=1,
    )

    assert result == "fallback answer"
    assert "Parameter 'input' must be a string" in model.prompts[0]


@pytest.mark.asyncio
async def test_model_failure_during_recovery_is_fatal():
    model = FakeModel([ModelError("still overloaded")])
    recovery = Recovery(Backends(model=model), RecoverySettings())

    with pytest.raises(RecoveryFailedError, match="still overloaded"):
        await recovery.recover(
            _step("reason", prompt="p"), ModelError("overloaded"), history=[], step_number=1
        )
