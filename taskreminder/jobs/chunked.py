"""Memory-bounded chunked execution for heavy jobs."""

import gc
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, ClassVar

import psutil

from taskreminder.core.logging import get_logger
from taskreminder.jobs.base import Job, JobExecutionContext
from taskreminder.observability.metrics import JOB_MEMORY_YIELDS

logger = get_logger(__name__)

MB = 1024 * 1024


def process_rss_mb() -> float:
    """Resident set size of this process in MB."""
    return psutil.Process().memory_info().rss / MB


class ChunkedProcessor(ABC):
    """Workload executed chunk by chunk.

    ``process_chunk`` may see the same chunk twice when a worker dies between
    processing it and storing the checkpoint.
    """

    @abstractmethod
    async def total_item_count(self) -> int:
        pass

    @abstractmethod
    async def fetch_items(self, offset: int, limit: int) -> list[Any]:
        pass

    @abstractmethod
    async def process_chunk(self, items: list[Any]) -> list[Any]:
        pass

    def accumulate(self, results: list[Any], chunk_results: list[Any]) -> list[Any]:
        """Merge one chunk's output into the running results.

        The running results are written into every checkpoint. Processors
        whose output grows with the workload should override this to fold
        rows together so the checkpoint stays bounded.
        """
        results.extend(chunk_results)
        return results

    async def summarize(self, results: list[Any]) -> Any:
        """Fold the per-chunk results into the final summary."""
        return None


class ChunkedJobEngine:
    """Runs a processor in chunks, checkpointing after each one.

    Before each chunk the process RSS is sampled. At or above the limit the
    engine collects garbage and samples again; if memory is still too high it
    stores its position and yields the job back to the queue. A yield is not
    a failure and does not consume an attempt.
    """

    def __init__(
        self,
        processor: ChunkedProcessor,
        ctx: JobExecutionContext,
        chunk_size: int = 100,
        memory_limit_mb: float = 512,
        release_delay: float = 60,
        memory_sampler: Callable[[], float] | None = None,
    ):
        self._processor = processor
        self._ctx = ctx
        self._chunk_size = chunk_size
        self._memory_limit_mb = memory_limit_mb
        self._release_delay = release_delay
        self._sample = memory_sampler or process_rss_mb

    async def run(self) -> dict[str, Any] | None:
        """Process all remaining items.

        Returns:
            Result with ``total_items``, ``processed_items``, ``results``,
            ``memory_peak_mb`` and ``execution_time``; None when the job
            yielded under memory pressure
        """
        started = time.monotonic()
        state = await self._ctx.load_checkpoint() or {}
        offset = int(state.get("offset", 0))
        chunk_index = int(state.get("chunk_index", 0))
        results: list[Any] = list(state.get("results", []))
        elapsed = float(state.get("elapsed", 0.0))
        peak = float(state.get("memory_peak_mb", 0.0))

        total = await self._processor.total_item_count()
        if offset:
            logger.info("Resuming from checkpoint", offset=offset, chunk_index=chunk_index, total_items=total)

        def snapshot() -> dict[str, Any]:
            return {
                "offset": offset,
                "chunk_index": chunk_index,
                "results": results,
                "elapsed": elapsed + time.monotonic() - started,
                "memory_peak_mb": peak,
            }

        while offset < total:
            memory = self._sample()
            peak = max(peak, memory)
            if memory >= self._memory_limit_mb:
                gc.collect()
                memory = self._sample()
                if memory >= self._memory_limit_mb:
                    logger.warning(
                        "Memory limit reached, releasing job",
                        memory_mb=round(memory, 1),
                        limit_mb=self._memory_limit_mb,
                        offset=offset,
                        release_delay=self._release_delay,
                    )
                    await self._ctx.checkpoint(snapshot())
                    await self._ctx.update_progress(_percent(offset, total))
                    JOB_MEMORY_YIELDS.labels(job_class=self._ctx.envelope.job_type).inc()
                    await self._ctx.release(self._release_delay)
                    return None

            items = await self._processor.fetch_items(offset, self._chunk_size)
            if not items:
                break
            results = self._processor.accumulate(results, await self._processor.process_chunk(items))
            offset += len(items)
            chunk_index += 1

            progress = _percent(offset, total)
            await self._ctx.update_progress(progress)
            logger.info(
                "Chunk processed",
                chunk_index=chunk_index,
                items=len(items),
                offset=offset,
                total_items=total,
                progress=progress,
                memory_mb=round(self._sample(), 1),
            )
            await self._ctx.checkpoint(snapshot())

        return {
            "total_items": total,
            "processed_items": offset,
            "results": results,
            "summary": await self._processor.summarize(results),
            "memory_peak_mb": round(peak, 2),
            "execution_time": round(elapsed + time.monotonic() - started, 3),
        }


def _percent(done: int, total: int) -> int:
    if total <= 0:
        return 100
    return min(100, int(done * 100 / total))


class HeavyJob(Job):
    """Long-running job that runs a named processor through the chunk engine."""

    job_type: ClassVar[str] = "heavy"
    queue: ClassVar[str] = "heavy"
    max_attempts: ClassVar[int | None] = 3
    timeout_seconds: ClassVar[int] = 3600
    backoff: ClassVar[tuple[int, ...]] = (300, 900, 1800)

    def __init__(self, processor: str, params: dict[str, Any] | None = None):
        self.processor = processor
        self.params = params or {}

    def to_payload(self) -> dict[str, Any]:
        return {"processor": self.processor, "params": self.params}

    async def execute(self, ctx: JobExecutionContext) -> dict[str, Any] | None:
        from taskreminder.jobs.report import build_processor

        settings = ctx.resources.settings
        engine = ChunkedJobEngine(
            build_processor(self.processor, self.params, ctx.resources.session_factory),
            ctx,
            chunk_size=settings.heavy_chunk_size,
            memory_limit_mb=settings.heavy_memory_limit_mb,
            release_delay=settings.heavy_memory_release_delay,
            memory_sampler=ctx.resources.memory_sampler,
        )
        return await engine.run()

