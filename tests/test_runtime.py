from unittest.mock import MagicMock

import pytest

from aigent.config import AppConfig, ModelSettings
from aigent.errors import RetrievalError
from aigent.registry import ModelRegistry
from aigent.runtime import Runtime
from tests.helpers import FakeModel, FakeRetriever, plan_json, tool_step


def _runtime(responder, broker=None) -> Runtime:
    models = ModelRegistry()
    models.register("fake", lambda settings: FakeModel(responder))
    config = AppConfig(models=[ModelSettings(name="fake", provider="fake")])
    return Runtime(config=config, models=models, broker=broker)


def _arithmetic(prompt: str) -> str:
    return plan_json("solve arithmetic", tool_step("calculate", "2+2"))


def test_runtime_enables_configured_tools():
    assert _runtime(_arithmetic).tools.names() == ["calculate"]


def test_engine_for_unknown_model_raises():
    with pytest.raises(ValueError, match="ghost"):
        _runtime(_arithmetic).engine("ghost")


@pytest.mark.asyncio
async def test_run_success():
    outcome = await _runtime(_arithmetic).run("2+2 is what?")
    assert outcome.ok
    assert outcome.result == "2+2 = 4"
    assert outcome.model == "fake"


@pytest.mark.asyncio
async def test_run_folds_engine_error_into_result():
    outcome = await _runtime(lambda prompt: "no plan here").run("2+2 is what?")
    assert not outcome.ok
    assert outcome.error_kind == "ExtractionError"
    assert outcome.error.startswith("ExtractionError: ")


@pytest.mark.asyncio
async def test_run_and_broadcast_publishes_result():
    broker = MagicMock()
    await _runtime(_arithmetic, broker).run_and_broadcast("2+2 is what?")

    broker.broadcast.assert_called_once_with(
        "agent_result", {"result": "2+2 = 4", "query": "2+2 is what?"}
    )


@pytest.mark.asyncio
async def test_run_and_broadcast_publishes_error():
    broker = MagicMock()
    outcome = await _runtime(lambda prompt: "no plan here", broker).run_and_broadcast("2+2")

    assert not outcome.ok
    event_type, data = broker.broadcast.call_args.args
    assert event_type == "agent_error"
    assert data["kind"] == "ExtractionError"
    assert data["query"] == "2+2"


def test_apply_config_rebuilds_tools_and_drops_models():
    runtime = _runtime(_arithmetic)
    runtime.engine()
    assert runtime.models.get("fake") is not None

    runtime.apply_config(
        AppConfig(models=[ModelSettings(name="fake", provider="fake")], tools=["calculate", "tavily_search"])
    )

    assert runtime.tools.names() == ["calculate", "tavily_search"]
    assert runtime.models.get("fake") is None


def test_register_model_makes_it_runnable():
    runtime = _runtime(_arithmetic)
    runtime.register_model(ModelSettings(name="second", provider="fake"))

    assert runtime.config.get_model("second").provider == "fake"
    assert runtime.models.get("second") is not None


def test_register_model_rejects_taken_name_and_unknown_provider():
    runtime = _runtime(_arithmetic)
    with pytest.raises(ValueError, match="already configured"):
        runtime.register_model(ModelSettings(name="fake", provider="fake"))
    with pytest.raises(ValueError, match="Unknown model provider"):
        runtime.register_model(ModelSettings(name="other", provider="ghost"))
    assert [m.name for m in runtime.config.models] == ["fake"]


@pytest.mark.asyncio
async def test_search_uses_default_top_k():
    runtime = _runtime(_arithmetic)
    runtime.retriever = FakeRetriever()

    assert await runtime.search("water") == []
    assert runtime.retriever.queries == [("water", runtime.config.engine.default_top_k)]


@pytest.mark.asyncio
async def test_search_without_retriever_raises():
    with pytest.raises(RetrievalError, match="no retrieval backend"):
        await _runtime(_arithmetic).search("water")
