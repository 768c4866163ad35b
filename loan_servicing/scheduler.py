"""
Sweep Scheduler

Fires the scanner's sweeps once a day at fixed UTC times. The scheduled run
and the on-demand run (admin and cron endpoints) go through the same job
callables, so both paths behave identically.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import ValidationError

logger = logging.getLogger("loan_servicing.scheduler")

Job = Callable[[], Awaitable[Any]]


def parse_time_of_day(value: str) -> time:
    """Parse ``HH:MM`` (24h clock)"""
    try:
        hours, minutes = value.strip().split(":")
        return time(int(hours), int(minutes), tzinfo=timezone.utc)
    except (AttributeError, ValueError):
        raise ValidationError("time", f"Expected HH:MM, got {value!r}")


@dataclass
class DailyTrigger:
    name: str
    at: time
    job: Job

    @classmethod
    def at_time(cls, name: str, hh_mm: str, job: Job) -> 'DailyTrigger':
        return cls(name=name, at=parse_time_of_day(hh_mm), job=job)

    def next_run(self, now: datetime) -> datetime:
        """Next firing strictly after ``now``"""
        now = now.astimezone(timezone.utc)
        candidate = datetime.combine(now.date(), self.at.replace(tzinfo=None), tzinfo=timezone.utc)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate


class SweepScheduler:
    """Runs each registered trigger in its own asyncio task"""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._triggers: Dict[str, DailyTrigger] = {}
        self._tasks: List[asyncio.Task] = []

    def add(self, trigger: DailyTrigger) -> None:
        if trigger.name in self._triggers:
            raise ValidationError("name", f"Trigger {trigger.name} already registered")
        self._triggers[trigger.name] = trigger

    @property
    def triggers(self) -> List[DailyTrigger]:
        return list(self._triggers.values())

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Start the trigger loops on the running event loop"""
        if self.is_running:
            return
        self._tasks = [
            asyncio.get_running_loop().create_task(self._loop(trigger), name=f"sweep:{trigger.name}")
            for trigger in self._triggers.values()
        ]
        for trigger in self._triggers.values():
            logger.info(f"Scheduled {trigger.name} daily at {trigger.at:%H:%M} UTC")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Sweep scheduler stopped")

    async def trigger(self, name: str) -> Any:
        """Run a registered job now"""
        trigger = self._triggers.get(name)
        if trigger is None:
            raise ValidationError("name", f"Unknown trigger: {name}")
        logger.info(f"Running {name} on demand")
        return await trigger.job()

    async def _loop(self, trigger: DailyTrigger) -> None:
        while True:
            now = self.clock()
            delay = (trigger.next_run(now) - now).total_seconds()
            await asyncio.sleep(max(delay, 0))
            try:
                await trigger.job()
            except Exception as e:
                logger.exception(f"Scheduled {trigger.name} failed: {e}")
