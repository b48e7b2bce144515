"""Scheduler: runs configured goals on cron schedules using APScheduler."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

if TYPE_CHECKING:
    from aigent.config import AppConfig, ScheduleConfig, ScheduledGoalConfig
    from aigent.runtime import Runtime

logger = logging.getLogger(__name__)


def build_trigger(schedule: ScheduleConfig) -> CronTrigger:
    """Convert a ScheduleConfig into an APScheduler CronTrigger."""
    match schedule.frequency:
        case "daily":
            return CronTrigger(hour=schedule.hour)
        case "weekly":
            return CronTrigger(day_of_week=schedule.day_of_week, hour=schedule.hour)
        case "monthly":
            return CronTrigger(day=schedule.day_of_month, hour=schedule.hour)
        case _:
            raise ValueError(f"Unknown schedule frequency: {schedule.frequency}")


async def run_scheduled_goal(goal: ScheduledGoalConfig, runtime: Runtime) -> None:
    """Run one scheduled goal and log its outcome."""
    logger.info(f"Running scheduled goal '{goal.name}'")

    try:
        outcome = await runtime.run_and_broadcast(goal.goal, goal.model)
    except Exception as e:
        logger.error(f"Scheduled goal '{goal.name}' failed: {e}", exc_info=True)
        return

    if outcome.ok:
        result = outcome.result or ""
        logger.info(
            f"Scheduled goal '{goal.name}' completed. "
            f"Result: {result[:200]}{'...' if len(result) > 200 else ''}"
        )
    else:
        logger.error(f"Scheduled goal '{goal.name}' error: {outcome.error}")


def setup_scheduler(config: AppConfig, runtime: Runtime) -> AsyncIOScheduler:
    """Build and configure the scheduler from the app config."""
    scheduler = AsyncIOScheduler()

    for goal in config.scheduled_goals:
        trigger = build_trigger(goal.schedule)
        scheduler.add_job(
            run_scheduled_goal,
            trigger=trigger,
            args=[goal, runtime],
            id=f"goal_{goal.name}",
            replace_existing=True,
        )
        logger.info(
            f"Scheduled goal: name={goal.name}, "
            f"frequency={goal.schedule.frequency}, hour={goal.schedule.hour}"
        )

    return scheduler
