"""
Task scheduler for the engine's periodic background jobs.

Each due task runs as its own asyncio task, so a long expiry run never
delays the persistence job (and the other way round). The jobs coordinate
only through storage locking.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog

logger = structlog.get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ScheduledTask:
    """Represents a scheduled task."""

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: int,
        enabled: bool = True,
        run_immediately: bool = False
    ):
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.enabled = enabled
        self.last_run: Optional[datetime] = None
        self.next_run = _now()
        self.run_count = 0
        self.error_count = 0
        self.last_error: Optional[str] = None
        self.last_result: Any = None
        self.running = False

        if not run_immediately:
            self.next_run = _now() + timedelta(seconds=interval_seconds)

    def should_run(self) -> bool:
        """Check if task should run now."""
        return self.enabled and not self.running and _now() >= self.next_run

    def schedule_next_run(self):
        self.next_run = _now() + timedelta(seconds=self.interval_seconds)

    async def run(self):
        """Execute the task once; failures are counted and re-raised."""
        self.running = True
        start_time = _now()
        try:
            logger.debug("Running scheduled task", task=self.name)
            self.last_result = await self.func()
            self.last_run = start_time
            self.run_count += 1
            logger.debug(
                "Task completed",
                task=self.name,
                duration=(_now() - start_time).total_seconds(),
                run_count=self.run_count
            )
        except Exception as e:
            self.error_count += 1
            self.last_error = str(e)
            logger.error(
                "Task failed",
                task=self.name,
                error=str(e),
                error_count=self.error_count
            )
            raise
        finally:
            self.running = False
            self.schedule_next_run()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat(),
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }


class TaskScheduler:
    """Manages scheduled background tasks."""

    def __init__(self, loop_interval: float = 1.0):
        self.tasks: Dict[str, ScheduledTask] = {}
        self.running = False
        self.loop_interval = loop_interval
        self._inflight: Set[asyncio.Task] = set()

    def register_task(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: int,
        enabled: bool = True,
        run_immediately: bool = False
    ) -> ScheduledTask:
        """Register a new scheduled task."""
        task = ScheduledTask(
            name=name,
            func=func,
            interval_seconds=interval_seconds,
            enabled=enabled,
            run_immediately=run_immediately
        )
        self.tasks[name] = task
        logger.info("Registered task", task=name, interval_seconds=interval_seconds)
        return task

    def enable_task(self, name: str):
        if name in self.tasks:
            self.tasks[name].enabled = True
            logger.info("Enabled task", task=name)

    def disable_task(self, name: str):
        if name in self.tasks:
            self.tasks[name].enabled = False
            logger.info("Disabled task", task=name)

    async def start(self):
        """Run the scheduling loop until stop() is called or the task is cancelled."""
        logger.info("Starting task scheduler", tasks=list(self.tasks))
        self.running = True

        while self.running:
            try:
                self.dispatch_pending()
                await asyncio.sleep(self.loop_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Task scheduler loop error", error=str(e))
                await asyncio.sleep(self.loop_interval)

        await self._cancel_inflight()
        self.running = False
        logger.info("Task scheduler stopped")

    async def stop(self):
        """Stop the task scheduler."""
        logger.info("Stopping task scheduler")
        self.running = False

    def dispatch_pending(self) -> int:
        """Start every due task that is not already running. Returns how many started."""
        started = 0
        for task in self.tasks.values():
            if task.should_run():
                task.running = True
                inflight = asyncio.create_task(self._run_task(task), name=f"scheduled:{task.name}")
                self._inflight.add(inflight)
                inflight.add_done_callback(self._inflight.discard)
                started += 1
        return started

    async def run_task_now(self, name: str) -> Any:
        """Run a registered task immediately, outside the schedule."""
        task = self.tasks[name]
        await task.run()
        return task.last_result

    async def _run_task(self, task: ScheduledTask):
        try:
            await task.run()
        except Exception:
            # already logged and counted by the task
            pass

    async def _cancel_inflight(self):
        for inflight in list(self._inflight):
            inflight.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    def health_check(self) -> Dict[str, Any]:
        """Get health status of task scheduler."""
        total_tasks = len(self.tasks)
        tasks_with_errors = sum(1 for task in self.tasks.values() if task.error_count > 0)
        return {
            "healthy": self.running and tasks_with_errors < max(total_tasks, 1) * 0.5,
            "running": self.running,
            "total_tasks": total_tasks,
            "enabled_tasks": sum(1 for task in self.tasks.values() if task.enabled),
            "tasks_with_errors": tasks_with_errors,
            "tasks": {name: task.to_dict() for name, task in self.tasks.items()},
        }


EXPIRY_TASK = "slot_expiry"
PERSISTENCE_TASK = "accrual_persistence"


def build_engine_scheduler(engine, config=None) -> TaskScheduler:
    """Scheduler running the expiry sweep and the accrual persistence job."""
    config = config or engine.config
    scheduler = TaskScheduler()
    scheduler.register_task(
        EXPIRY_TASK,
        engine.run_expiry_batch_now,
        interval_seconds=config.expiry_interval_seconds,
        enabled=config.scheduler_enabled,
    )
    # startup run recovers virtual earnings accumulated while the process was down
    scheduler.register_task(
        PERSISTENCE_TASK,
        engine.run_persistence_now,
        interval_seconds=config.persistence_interval_seconds,
        enabled=config.scheduler_enabled,
        run_immediately=True,
    )
    return scheduler
