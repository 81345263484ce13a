"""
Trigger and Sweep

Two independent ways to drive the processor:

- EagerTrigger: fire-and-forget, one cycle right after an enqueue. Its
  failures are logged and never reach the caller.
- Sweeper: bounded batch run by a periodic loop (or the CLI), picking up
  whatever the eager path missed.

Exclusivity comes from the store's claim, not from anything here.
"""

from typing import Optional, Set
import asyncio
import structlog

from .processor import JobProcessor

logger = structlog.get_logger()

DEFAULT_SWEEP_ITERATIONS = 5


class EagerTrigger:
    """Runs one processing cycle in the background."""

    def __init__(self, processor: JobProcessor):
        self.processor = processor
        self._tasks: Set[asyncio.Task] = set()

    async def fire(self, reason: str = "enqueue", job_id: Optional[str] = None) -> None:
        """One supervised cycle; never raises."""
        logger.info("eager_trigger_started", reason=reason, job_id=job_id)
        try:
            result = await self.processor.process_one()
        except Exception as e:
            logger.warning("eager_trigger_failed", reason=reason, job_id=job_id, error=str(e))
            return
        logger.info(
            "eager_trigger_finished",
            reason=reason,
            processed=result.processed,
            processed_job_id=result.job_id,
        )

    def schedule(self, reason: str = "enqueue", job_id: Optional[str] = None) -> asyncio.Task:
        """Start ``fire`` on the running loop, holding a reference until it ends."""
        task = asyncio.get_running_loop().create_task(self.fire(reason, job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)


class Sweeper:
    """Processes queued jobs in bounded batches."""

    def __init__(self, processor: JobProcessor, max_iterations: int = DEFAULT_SWEEP_ITERATIONS):
        self.processor = processor
        self.max_iterations = max_iterations

    async def sweep(self, max_iterations: Optional[int] = None) -> int:
        """Run up to ``max_iterations`` cycles; stop early once the queue is empty."""
        limit = self.max_iterations if max_iterations is None else max_iterations
        processed = 0
        for _ in range(max(0, limit)):
            result = await self.processor.process_one()
            if result.processed == 0:
                break
            processed += result.processed
        logger.info("sweep_finished", processed=processed, limit=limit)
        return processed


async def run_periodic_sweeps(
    sweeper: Sweeper,
    interval_seconds: float,
    stop_event: asyncio.Event,
) -> None:
    """Sweep every ``interval_seconds`` until ``stop_event`` is set."""
    logger.info("sweep_loop_started", interval=interval_seconds)
    while not stop_event.is_set():
        try:
            await sweeper.sweep()
        except Exception as e:
            logger.error("sweep_failed", error=str(e))
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
    logger.info("sweep_loop_stopped")
