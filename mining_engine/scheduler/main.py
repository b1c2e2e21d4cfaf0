"""
Standalone scheduler service.

Runs the expiry sweep and the accrual persistence job without the HTTP
server, for deployments that keep background processing in its own process.
"""

import asyncio
import signal
from typing import Optional

from mining_engine.cache.cache_service import get_cache_service, reset_cache_service
from mining_engine.cache.redis_client import close_redis_client
from mining_engine.core.database import close_database, init_database
from mining_engine.core.logging import setup_logging
from mining_engine.services.engine import MiningEngine
from .task_scheduler import TaskScheduler, build_engine_scheduler

import structlog

logger = structlog.get_logger(__name__)


class SchedulerMain:
    """Scheduler service coordinator."""

    def __init__(self, health_interval: int = 300):
        self.engine: Optional[MiningEngine] = None
        self.task_scheduler: Optional[TaskScheduler] = None
        self.health_interval = health_interval
        self.running = False
        self.tasks = []

    async def initialize(self):
        logger.info("Initializing scheduler service")
        await init_database()

        try:
            cache = await get_cache_service()
        except Exception as e:
            logger.error("Redis unavailable, running without cache", error=str(e))
            cache = None

        # no websocket clients live in this process
        self.engine = MiningEngine(cache=cache)
        self.task_scheduler = build_engine_scheduler(self.engine)
        logger.info("Scheduler service initialized", tasks=list(self.task_scheduler.tasks))

    async def start(self):
        """Run until stop() is called."""
        logger.info("Starting scheduler service")
        self.running = True
        self.tasks = [
            asyncio.create_task(self.task_scheduler.start()),
            asyncio.create_task(self._periodic_health_check()),
        ]
        await asyncio.gather(*self.tasks, return_exceptions=True)

    async def stop(self):
        logger.info("Stopping scheduler service")
        self.running = False

        if self.task_scheduler:
            await self.task_scheduler.stop()

        for task in self.tasks:
            if not task.done():
                task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []

        logger.info("Scheduler service stopped")

    async def _periodic_health_check(self):
        while self.running:
            try:
                await asyncio.sleep(self.health_interval)
                if not self.running:
                    break
                health = self.task_scheduler.health_check()
                if health["healthy"]:
                    logger.info("Scheduler health check", **{k: v for k, v in health.items() if k != "tasks"})
                else:
                    logger.warning("Scheduler unhealthy", tasks=health["tasks"])
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Health check error", error=str(e))


async def main():
    """Run the scheduler service until SIGINT or SIGTERM."""
    setup_logging()

    scheduler = SchedulerMain()
    loop = asyncio.get_running_loop()

    def signal_handler(signum):
        logger.info("Received signal, shutting down", signal=signum)
        asyncio.ensure_future(scheduler.stop())

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, signal_handler, signum)

    try:
        await scheduler.initialize()
        await scheduler.start()
    finally:
        await scheduler.stop()
        reset_cache_service()
        await close_redis_client()
        await close_database()


if __name__ == "__main__":
    asyncio.run(main())
