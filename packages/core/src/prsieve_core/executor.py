"""Drives file batches through the analyzer, serially or under bounded concurrency."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from prsieve_core.concurrency import Semaphore, TokenBudgetManager, optimal_concurrency
from prsieve_core.exceptions import BatchExecutionError, InsufficientBudgetError
from prsieve_core.models import BatchResult, FileBatch, Violation

logger = logging.getLogger(__name__)

FAILURE_CONTINUE = "continue"
FAILURE_STOP_ALL = "stop-all"


@dataclass
class BatchAnalysis:
    """What one analyzer call produced for a batch."""

    violations: list[Violation] = field(default_factory=list)
    malformed: bool = False


@dataclass
class ExecutorSettings:
    parallel: bool = False
    max_concurrent_batches: int = 3
    failure_handling: str = FAILURE_CONTINUE
    batch_delay_ms: int = 1000
    stagger_delay_ms: int = 200
    token_budget: int | None = None
    timeout_seconds: float | None = None

    @classmethod
    def from_config(cls, config: dict, token_budget: int | None = None) -> ExecutorSettings:
        batch_cfg = config.get("batch_processing", {})
        parallel_cfg = batch_cfg.get("parallel", {})
        failure_handling = parallel_cfg.get("failure_handling", FAILURE_CONTINUE)
        if failure_handling not in (FAILURE_CONTINUE, FAILURE_STOP_ALL):
            raise ValueError(
                f"Unknown failure_handling {failure_handling!r}. Choose '{FAILURE_CONTINUE}' or '{FAILURE_STOP_ALL}'."
            )
        return cls(
            parallel=parallel_cfg.get("enabled", False),
            max_concurrent_batches=parallel_cfg.get("max_concurrent_batches", 3),
            failure_handling=failure_handling,
            batch_delay_ms=batch_cfg.get("batch_delay_ms", 1000),
            stagger_delay_ms=parallel_cfg.get("stagger_delay_ms", 200),
            token_budget=token_budget if parallel_cfg.get("enable_token_budget", True) else None,
            timeout_seconds=config.get("analysis_timeout_seconds"),
        )


class BatchExecutor:
    """Runs ``analyze_batch`` for each batch and collects one BatchResult per batch.

    ``analyze_batch`` is synchronous (the provider SDKs are) and runs in a worker
    thread. Results come back in input order regardless of completion order.
    """

    def __init__(
        self,
        analyze_batch: Callable[[FileBatch], BatchAnalysis],
        settings: ExecutorSettings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.analyze_batch = analyze_batch
        self.settings = settings
        self._sleep = sleep
        self.semaphore: Semaphore | None = None
        self.budget: TokenBudgetManager | None = None

    @property
    def stop_on_failure(self) -> bool:
        return self.settings.failure_handling == FAILURE_STOP_ALL

    async def run(self, batches: list[FileBatch]) -> list[BatchResult]:
        if not batches:
            return []
        if not self.settings.parallel or len(batches) == 1:
            return await self._run_serial(batches)
        return await self._run_parallel(batches)

    async def _execute(self, batch: FileBatch) -> BatchResult:
        start = time.monotonic()
        call = asyncio.ensure_future(asyncio.to_thread(self.analyze_batch, batch))
        try:
            if self.settings.timeout_seconds:
                analysis = await asyncio.wait_for(asyncio.shield(call), self.settings.timeout_seconds)
            else:
                analysis = await call
        except asyncio.TimeoutError:
            error = f"Analysis timed out after {self.settings.timeout_seconds}s"
            # A worker thread cannot be interrupted. The caller keeps its permit
            # and token reservation until the call really returns.
            await asyncio.gather(call, return_exceptions=True)
        except Exception as e:
            error = str(e) or e.__class__.__name__
        else:
            return BatchResult(
                batch_index=batch.batch_index,
                files=batch.paths,
                violations=list(analysis.violations),
                processing_time_ms=int((time.monotonic() - start) * 1000),
                malformed=analysis.malformed,
            )

        logger.error("Batch %d failed: %s", batch.batch_index + 1, error)
        return BatchResult(
            batch_index=batch.batch_index,
            files=batch.paths,
            processing_time_ms=int((time.monotonic() - start) * 1000),
            error=error,
        )

    def _check(self, result: BatchResult) -> BatchResult:
        if result.error is not None and self.stop_on_failure:
            raise BatchExecutionError(result.batch_index, result.error)
        return result

    async def _run_serial(self, batches: list[FileBatch]) -> list[BatchResult]:
        results: list[BatchResult] = []
        for position, batch in enumerate(batches):
            logger.info(
                "Processing batch %d/%d (%d files, %s priority)",
                position + 1,
                len(batches),
                len(batch.files),
                batch.priority,
            )
            results.append(self._check(await self._execute(batch)))
            if position < len(batches) - 1 and self.settings.batch_delay_ms > 0:
                await self._sleep(self.settings.batch_delay_ms / 1000)
        return results

    async def _run_parallel(self, batches: list[FileBatch]) -> list[BatchResult]:
        budget_total = self.settings.token_budget
        average = sum(b.estimated_tokens for b in batches) / len(batches)
        concurrency = optimal_concurrency(
            len(batches),
            self.settings.max_concurrent_batches,
            average if budget_total else 0,
            budget_total or 0,
        )
        self.semaphore = Semaphore(concurrency)
        self.budget = TokenBudgetManager(budget_total) if budget_total else None
        logger.info("Processing %d batches in parallel (concurrency %d)", len(batches), concurrency)

        started: set[int] = set()

        async def worker(position: int, batch: FileBatch) -> BatchResult:
            stagger = min(position, concurrency - 1) * self.settings.stagger_delay_ms
            if stagger > 0:
                await self._sleep(stagger / 1000)
            async with self.semaphore:
                if self.budget is not None and not self.budget.allocate(batch.batch_index, batch.estimated_tokens):
                    error = InsufficientBudgetError(batch.batch_index, batch.estimated_tokens, self.budget.available)
                    logger.error("%s", error)
                    return BatchResult(batch_index=batch.batch_index, files=batch.paths, error=str(error))
                started.add(position)
                try:
                    return await self._execute(batch)
                finally:
                    if self.budget is not None:
                        self.budget.release(batch.batch_index)

        tasks = [asyncio.create_task(worker(position, batch)) for position, batch in enumerate(batches)]
        results: list[BatchResult | None] = [None] * len(batches)
        pending = set(tasks)
        failure: BatchResult | None = None

        while pending and failure is None:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                position = tasks.index(task)
                results[position] = task.result()
                if results[position].error is not None and self.stop_on_failure and failure is None:
                    failure = results[position]

        if failure is not None:
            # Only batches that never reached the analyzer are cancelled.
            for position, task in enumerate(tasks):
                if position not in started and not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise BatchExecutionError(failure.batch_index, failure.error or "unknown error")

        return [r for r in results if r is not None]
