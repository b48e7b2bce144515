import textwrap
from unittest.mock import AsyncMock, MagicMock

import pydantic
import pytest
from apscheduler.triggers.cron import CronTrigger

import aigent.config as config_module
from aigent.config import AppConfig, ModelSettings, ScheduleConfig, get_config, load_config
from aigent.scheduler import build_trigger, run_scheduled_goal, setup_scheduler
from aigent.schemas import RunResult


def _write(tmp_path, body: str) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(textwrap.dedent(body))
    return str(path)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def test_load_config_from_yaml(tmp_path):
    path = _write(
        tmp_path,
        """
        models:
          - name: fast
            model_id: claude-haiku
            temperature: 0.2
          - name: smart
        default_model: smart
        tools: [calculate]
        engine:
          max_iterations: 4
          recovery:
            retrieval_top_k: 2
        broker:
          client_queue_size: 10
        """,
    )

    config = load_config(path)

    assert config.get_model().name == "smart"
    assert config.get_model("fast").temperature == 0.2
    assert config.engine.max_iterations == 4
    assert config.engine.plan_attempts == 3
    assert config.engine.recovery.retrieval_top_k == 2
    assert config.broker.client_queue_size == 10
    assert config.broker.retry_ms == 5000
    assert get_config() is config


def test_empty_file_uses_defaults(tmp_path):
    config = load_config(_write(tmp_path, ""))
    assert [m.name for m in config.models] == ["default"]
    assert config.default_model == "default"
    assert config.tools == ["calculate"]


def test_config_without_models_key_falls_back_to_default_model(tmp_path):
    config = load_config(_write(tmp_path, "tools: [calculate]\n"))
    assert config.get_model().name == "default"
    assert AppConfig().default_model == "default"


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "absent.yaml"))


def test_get_config_before_load_raises(monkeypatch):
    monkeypatch.setattr(config_module, "_config", None)
    with pytest.raises(RuntimeError, match="Config not loaded"):
        get_config()


# ---------------------------------------------------------------------------
# Cross-reference validation
# ---------------------------------------------------------------------------


def test_default_model_must_exist():
    with pytest.raises(pydantic.ValidationError, match="default_model 'missing'"):
        AppConfig(models=[ModelSettings(name="a")], default_model="missing")


def test_duplicate_model_names_rejected():
    with pytest.raises(pydantic.ValidationError, match="Duplicate model names"):
        AppConfig(models=[ModelSettings(name="a"), ModelSettings(name="a")])


def test_unknown_tool_rejected():
    with pytest.raises(pydantic.ValidationError, match="Unknown tool"):
        AppConfig(tools=["calculate", "teleport"])


def test_scheduled_goal_model_must_exist():
    with pytest.raises(pydantic.ValidationError, match="unknown model 'ghost'"):
        AppConfig(
            scheduled_goals=[
                {
                    "name": "brief",
                    "goal": "Summarize the news",
                    "model": "ghost",
                    "schedule": {"frequency": "daily", "hour": 8},
                }
            ]
        )


def test_engine_limits_are_validated():
    with pytest.raises(pydantic.ValidationError):
        AppConfig(engine={"max_iterations": 0})
    with pytest.raises(pydantic.ValidationError):
        AppConfig(engine={"relevance_threshold": 1.5})


def test_get_model_unknown_raises():
    with pytest.raises(ValueError, match="Model 'nope' not found"):
        AppConfig().get_model("nope")


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------


def test_weekly_schedule_requires_day_of_week():
    with pytest.raises(pydantic.ValidationError, match="day_of_week"):
        ScheduleConfig(frequency="weekly", hour=9)


def test_monthly_schedule_requires_day_of_month():
    with pytest.raises(pydantic.ValidationError, match="day_of_month"):
        ScheduleConfig(frequency="monthly", hour=9)


@pytest.mark.parametrize(
    "schedule",
    [
        ScheduleConfig(frequency="daily", hour=6),
        ScheduleConfig(frequency="weekly", hour=6, day_of_week="mon"),
        ScheduleConfig(frequency="monthly", hour=6, day_of_month=1),
    ],
)
def test_build_trigger(schedule):
    assert isinstance(build_trigger(schedule), CronTrigger)


def test_setup_scheduler_adds_one_job_per_goal():
    config = AppConfig(
        scheduled_goals=[
            {"name": "brief", "goal": "Summarize", "schedule": {"frequency": "daily", "hour": 8}},
            {
                "name": "report",
                "goal": "Weekly report",
                "schedule": {"frequency": "weekly", "hour": 9, "day_of_week": "fri"},
            },
        ]
    )
    scheduler = setup_scheduler(config, MagicMock())
    assert sorted(job.id for job in scheduler.get_jobs()) == ["goal_brief", "goal_report"]


@pytest.mark.asyncio
async def test_run_scheduled_goal_uses_runtime():
    config = AppConfig(
        scheduled_goals=[
            {"name": "brief", "goal": "Summarize", "schedule": {"frequency": "daily", "hour": 8}}
        ]
    )
    runtime = MagicMock()
    runtime.run_and_broadcast = AsyncMock(
        return_value=RunResult(ok=True, query="Summarize", model="default", result="done")
    )

    await run_scheduled_goal(config.scheduled_goals[0], runtime)

    runtime.run_and_broadcast.assert_awaited_once_with("Summarize", None)


@pytest.mark.asyncio
async def test_run_scheduled_goal_swallows_runtime_crash():
    config = AppConfig(
        scheduled_goals=[
            {"name": "brief", "goal": "Summarize", "schedule": {"frequency": "daily", "hour": 8}}
        ]
    )
    runtime = MagicMock()
    runtime.run_and_broadcast = AsyncMock(side_effect=RuntimeError("no API key"))

    await run_scheduled_goal(config.scheduled_goals[0], runtime)
