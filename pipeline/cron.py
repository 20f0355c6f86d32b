"""
Pluggable cron evaluation and next-run computation.

The orchestrator only asks for "the next fire time after T"; cron parsing is
delegated to APScheduler's CronTrigger by default.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol
import logging

from apscheduler.triggers.cron import CronTrigger

from models.base import ScheduleKind
from schemas.job import Schedule

logger = logging.getLogger(__name__)


class CronEvaluator(Protocol):
    def next_fire_time(self, expression: str, after: datetime, tz: str = "UTC") -> Optional[datetime]:
        """First fire time strictly after ``after``, or None if there is none"""
        ...


class CronTriggerEvaluator:
    """Cron evaluator backed by ``apscheduler.triggers.cron.CronTrigger``"""

    def next_fire_time(self, expression: str, after: datetime, tz: str = "UTC") -> Optional[datetime]:
        trigger = CronTrigger.from_crontab(expression, timezone=tz)
        fire_time = trigger.get_next_fire_time(None, after + timedelta(microseconds=1))
        return fire_time.astimezone(timezone.utc) if fire_time else None


def compute_next_run(
    schedule: Schedule,
    after: datetime,
    evaluator: Optional[CronEvaluator] = None
) -> Optional[datetime]:
    """
    Next run for a schedule after a completed run.

    Returns:
        after + interval for interval schedules, the evaluator's next fire
        time for cron schedules, None for once schedules
    """
    if schedule.kind == ScheduleKind.INTERVAL:
        return after + timedelta(minutes=schedule.interval_minutes)
    if schedule.kind == ScheduleKind.CRON:
        evaluator = evaluator or CronTriggerEvaluator()
        return evaluator.next_fire_time(schedule.cron, after, schedule.timezone)
    return None
