"""Concurrent job graph scheduler.

Jobs are dispatched from a ready queue as soon as every job they require
has succeeded, up to ``max_parallel`` at a time.  Job bodies run in a
thread pool driven by an asyncio loop (``run_in_executor``), the same
arrangement the executors use for subprocess-heavy work.

A failed job blocks all of its transitive dependents; independent
branches keep going.  ``cancel()`` sets a shared abort flag: running
processes are terminated, in-flight jobs get a grace period to return
their partial reports, and everything else is marked cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable

from ci_orchestrator.errors import PipelineError
from ci_orchestrator.execution.actions import DEFAULT_GRACE_PERIOD
from ci_orchestrator.execution.dag import Job, JobGraph
from ci_orchestrator.execution.job_runner import (
    JOB_BLOCKED,
    JOB_CANCELLED,
    JOB_FAILED,
    JobOutcome,
    run_job,
    write_job_reports,
)
from ci_orchestrator.execution.steps import RunOptions

logger = logging.getLogger(__name__)

# How often the dispatch loop checks the abort flag while jobs run.
_POLL_INTERVAL = 0.1

JobRunner = Callable[[Job, threading.Event], JobOutcome]


class Scheduler:
    """Executes every job of a ``JobGraph`` exactly once.

    Args:
        graph: Validated job graph.
        runner: Callable running one job; defaults to ``run_job``.
        max_parallel: Maximum concurrently running jobs (default: CPU
            count).
        grace_period: Seconds in-flight jobs get after cancellation.
        options: Run-wide options passed to the default runner.  When
            ``options.report_dir`` is set, each accepted job report is
            written there.
    """

    def __init__(
        self,
        graph: JobGraph,
        runner: JobRunner | None = None,
        max_parallel: int | None = None,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        options: RunOptions | None = None,
    ) -> None:
        self.graph = graph
        self.options = options or RunOptions()
        self.runner = runner or self._run_job
        self.max_parallel = max_parallel or os.cpu_count() or 4
        self.grace_period = grace_period
        self.outcomes: dict[str, JobOutcome] = {}
        self._cancel_event = threading.Event()
        self._start_order: list[str] = []

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def start_order(self) -> list[str]:
        """Job names in the order they were dispatched."""
        return list(self._start_order)

    def cancel(self) -> None:
        """Request an abort; safe to call from a signal handler."""
        self._cancel_event.set()

    def run(self) -> dict[str, JobOutcome]:
        """Run the whole graph.

        Returns:
            Outcome per job, in topological order.

        Raises:
            CycleError: If the graph has a cycle; no job is started.
        """
        order = self.graph.topological_order()
        if not self.graph.jobs:
            return {}
        asyncio.run(self._run_async(order))
        return {name: self.outcomes[name] for name in order}

    def _run_job(self, job: Job, cancel_event: threading.Event) -> JobOutcome:
        # Processes get half the grace period so the job can still flush.
        return run_job(job, self.options, cancel_event, self.grace_period / 2)

    def _run_one(self, job: Job) -> JobOutcome:
        start_time = time.monotonic()
        try:
            return self.runner(job, self._cancel_event)
        except Exception as e:
            logger.exception("[%s] job runner raised", job.name)
            return JobOutcome(
                name=job.name,
                status=JOB_FAILED,
                errors=[PipelineError(f"Unexpected error: {e}", job=job.name)],
                duration=time.monotonic() - start_time,
            )

    async def _run_async(self, order: list[str]) -> None:
        loop = asyncio.get_running_loop()
        jobs = self.graph.jobs
        remaining = self.graph.in_degrees()
        ready: deque[str] = deque(name for name in order if remaining[name] == 0)
        running: dict[asyncio.Future[JobOutcome], str] = {}
        held: set[str] = set()

        pool = ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix="job")
        try:
            while (ready or running) and not self.cancelled:
                deferred: list[str] = []
                while ready and len(running) < self.max_parallel:
                    name = ready.popleft()
                    job = jobs[name]
                    if job.resources & held:
                        deferred.append(name)
                        continue
                    held |= job.resources
                    logger.info("Starting job %s", name)
                    self._start_order.append(name)
                    future = loop.run_in_executor(pool, self._run_one, job)
                    running[future] = name
                ready.extendleft(reversed(deferred))

                done, _ = await asyncio.wait(
                    running, timeout=_POLL_INTERVAL, return_when=asyncio.FIRST_COMPLETED,
                )
                for future in done:
                    name = running.pop(future)
                    held -= jobs[name].resources
                    outcome = future.result()
                    self._accept(outcome)
                    if outcome.succeeded:
                        for dependent in self.graph.dependents(name):
                            remaining[dependent] -= 1
                            if remaining[dependent] == 0:
                                ready.append(dependent)
                    elif outcome.status == JOB_FAILED:
                        self._block_dependents(name)

            if self.cancelled:
                await self._drain(running)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        for name in order:
            if name not in self.outcomes:
                self.outcomes[name] = JobOutcome(name=name, status=JOB_CANCELLED)

    async def _drain(self, running: dict[asyncio.Future[JobOutcome], str]) -> None:
        """Give in-flight jobs the grace period, then discard stragglers."""
        logger.warning(
            "Run cancelled; waiting up to %.1fs for %d running job(s)",
            self.grace_period, len(running),
        )
        if running:
            done, _ = await asyncio.wait(running, timeout=self.grace_period)
            for future in done:
                outcome = future.result()
                outcome.status = JOB_CANCELLED
                self._accept(outcome)
        for future, name in running.items():
            if name not in self.outcomes:
                future.cancel()
                logger.warning("[%s] did not stop within the grace period", name)
                self.outcomes[name] = JobOutcome(name=name, status=JOB_CANCELLED)

    def _accept(self, outcome: JobOutcome) -> None:
        self.outcomes[outcome.name] = outcome
        if outcome.report is not None and self.options.report_dir is not None:
            write_job_reports(outcome.report, Path(self.options.report_dir))
        logger.info("Job %s %s", outcome.name, outcome.status)

    def _block_dependents(self, failed: str) -> None:
        for name in self.graph.transitive_dependents(failed):
            if name in self.outcomes:
                continue
            logger.info("Job %s blocked by %s", name, failed)
            self.outcomes[name] = JobOutcome(name=name, status=JOB_BLOCKED, blocked_by=failed)
