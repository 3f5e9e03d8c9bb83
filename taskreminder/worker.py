"""Worker process entry point: queue consumers and periodic triggers."""

import asyncio
import signal
from typing import Awaitable, Callable

from taskreminder.core.config import get_settings
from taskreminder.core.logging import get_logger, setup_logging
from taskreminder.services import AppServices, build_services
from taskreminder.storage.database import close_database, get_session_factory, init_database
from taskreminder.storage.redis_client import close_redis_pool, get_redis, init_redis_pool

logger = get_logger(__name__)


class WorkerManager:
    """Runs the consumers of every configured queue plus the periodic jobs.

    Each queue gets ``concurrency`` consumers. A consumer leases one envelope
    at a time and hands it to the job runner, which settles it. Consumers
    share nothing but the broker and the database.
    """

    def __init__(self, services: AppServices | None = None):
        """Initialize worker manager.

        Args:
            services: Pre-built services; built from settings in ``start`` when omitted
        """
        self._settings = services.settings if services else get_settings()
        self._services = services
        self._owns_resources = services is None
        self._shutdown_event = asyncio.Event()

    @property
    def services(self) -> AppServices:
        if self._services is None:
            raise RuntimeError("Worker not started")
        return self._services

    async def start(self) -> None:
        """Start consumers and periodic triggers; returns after ``stop``."""
        if self._owns_resources:
            setup_logging(self._settings, component="worker")
            await init_database()
            await init_redis_pool(self._settings)
            self._services = build_services(self._settings, get_session_factory(), redis=get_redis())

        logger.info("Starting worker manager", queues=self.services.broker.queue_names)

        tasks = [
            asyncio.create_task(self._consume(queue, index), name=f"consumer:{queue}:{index}")
            for queue in self.services.broker.queue_names
            for index in range(self.services.broker.queue_config(queue).concurrency)
        ]
        tasks += [
            asyncio.create_task(
                self._periodic("dispatch", self._settings.dispatch_interval_seconds, self._dispatch_reminders)
            ),
            asyncio.create_task(
                self._periodic("monitor", self._settings.monitor_interval_seconds, self._monitor)
            ),
            asyncio.create_task(
                self._periodic("failed-cleanup", self._settings.failed_cleanup_interval_seconds, self._clear_failed)
            ),
        ]
        if self._settings.failed_retry_interval_seconds > 0:
            tasks.append(
                asyncio.create_task(
                    self._periodic("failed-retry", self._settings.failed_retry_interval_seconds, self._retry_failed)
                )
            )

        try:
            await self._shutdown_event.wait()
        finally:
            await self._drain(tasks)
            await self._cleanup()

    async def stop(self) -> None:
        """Signal workers to stop.

        Consumers finish the job they hold, so a delivery already handed to a
        sender is settled and acked instead of being redelivered.
        """
        logger.info("Stopping workers")
        self._shutdown_event.set()

    async def _drain(self, tasks: list[asyncio.Task]) -> None:
        # Loops exit on the shutdown event; a job never outlives its queue timeout
        broker = self.services.broker
        grace = max((broker.queue_config(q).timeout for q in broker.queue_names), default=0) + 5
        _, pending = await asyncio.wait(tasks, timeout=grace)
        if pending:
            logger.warning("Cancelling tasks still running after grace period", count=len(pending), grace=grace)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def run_once(self, queue: str) -> bool:
        """Lease and run a single envelope from a queue.

        Returns:
            True if an envelope was processed
        """
        envelope = await self.services.broker.reserve(queue)
        if envelope is None:
            return False
        await self.services.runner.run(envelope)
        return True

    async def _consume(self, queue: str, index: int) -> None:
        log = logger.bind(queue=queue, consumer=index)
        log.info("Consumer started")
        while not self._shutdown_event.is_set():
            try:
                processed = await self.run_once(queue)
            except asyncio.CancelledError:
                log.info("Consumer cancelled")
                raise
            except Exception as e:
                log.error("Consumer error", error=str(e), exc_info=True)
                processed = False
            if not processed:
                await self._sleep(self._settings.worker_poll_interval)

    async def _periodic(self, name: str, interval: float, action: Callable[[], Awaitable[object]]) -> None:
        log = logger.bind(trigger=name, interval=interval)
        log.info("Periodic trigger started")
        while not self._shutdown_event.is_set():
            try:
                await action()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("Periodic trigger failed", error=str(e), exc_info=True)
            await self._sleep(interval)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _dispatch_reminders(self) -> None:
        await self.services.reminders.dispatch_due_notifications()

    async def _monitor(self) -> None:
        await self.services.monitor.monitor_and_alert()

    async def _retry_failed(self) -> None:
        retried = await self.services.monitor.retry_all_failed_jobs(self._settings.failed_retry_window_hours)
        if retried:
            logger.info("Failed jobs re-enqueued", count=retried)

    async def _clear_failed(self) -> None:
        cleared = await self.services.monitor.clear_old_failed_jobs(self._settings.failed_job_retention_hours)
        if cleared:
            logger.info("Old failed jobs cleared", count=cleared)

    async def _cleanup(self) -> None:
        """Clean up resources."""
        logger.info("Cleaning up resources")
        if self._owns_resources and self._services is not None:
            await self._services.close()
            await close_redis_pool()
            await close_database()
        logger.info("Cleanup complete")


async def main() -> None:
    """Main entry point for worker process."""
    manager = WorkerManager()

    # Setup signal handlers
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(manager.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    await manager.start()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
