"""Runs the steps of a single job and produces its outcome.

A job's steps run strictly in order inside one ``JobContext``.  Fatal
errors stop the job; ``TestFailure`` marks it failed but lets the
remaining steps run.  Every attempted job returns a ``Report``,
failed and cancelled ones included.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ci_orchestrator.errors import Cancelled, PipelineError, SetupFailure
from ci_orchestrator.execution.actions import DEFAULT_GRACE_PERIOD, JobContext
from ci_orchestrator.execution.dag import Job
from ci_orchestrator.execution.steps import RunOptions, Step
from ci_orchestrator.reporting.reporter import Report, StepRecord, tail

logger = logging.getLogger(__name__)

JOB_SUCCEEDED = "succeeded"
JOB_FAILED = "failed"
JOB_BLOCKED = "blocked"
JOB_CANCELLED = "cancelled"

STEP_PASSED = "passed"
STEP_FAILED = "failed"
STEP_CANCELLED = "cancelled"


@dataclass
class JobOutcome:
    """Final state of one job in a run."""

    name: str
    status: str
    report: Report | None = None
    errors: list[PipelineError] = field(default_factory=list)
    duration: float = 0.0
    # Failed job that caused this one to be blocked.
    blocked_by: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == JOB_SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status,
            "duration_seconds": round(self.duration, 3),
        }
        if self.blocked_by:
            data["blocked_by"] = self.blocked_by
        if self.errors:
            data["errors"] = [str(e) for e in self.errors]
        if self.report is not None:
            data["tests"] = self.report.counts()
            if self.report.warnings:
                data["warnings"] = list(self.report.warnings)
        return data


def run_job(
    job: Job,
    options: RunOptions | None = None,
    cancel_event: threading.Event | None = None,
    grace_period: float = DEFAULT_GRACE_PERIOD,
) -> JobOutcome:
    """Run every step of ``job`` sequentially.

    Args:
        job: The job to run.
        options: Run-wide options (timings, report location).
        cancel_event: Shared abort flag; when set, the running step's
            process is terminated and no further steps start.
        grace_period: Seconds a terminated process gets before SIGKILL.

    Returns:
        A ``JobOutcome`` carrying the job's report.
    """
    options = options or RunOptions()
    report = Report(job.name)
    errors: list[PipelineError] = []
    cancelled = False
    start_time = time.monotonic()
    logger.info("[%s] starting (%d steps)", job.name, len(job.steps))

    with JobContext(
        job=job.name,
        working_directory=job.working_directory,
        environment=job.environment,
        cancel_event=cancel_event,
        grace_period=grace_period,
    ) as context:
        for step in job.steps:
            if context.cancelled:
                cancelled = True
                break
            step_start = time.monotonic()
            try:
                details = step.run(context, job, report, options) or {}
            except PipelineError as e:
                if isinstance(e, Cancelled) or context.cancelled:
                    cancelled = True
                    report.add_step(_record(step, STEP_CANCELLED, step_start, e.details))
                    break
                _attach(e, job, step)
                errors.append(e)
                report.add_error(e.to_dict())
                report.add_step(_record(step, STEP_FAILED, step_start, e.details))
                logger.error("%s", e)
                if e.fatal:
                    break
                continue
            except OSError as e:
                err = SetupFailure(f"OS error: {e}", job=job.name, step=step.name)
                errors.append(err)
                report.add_error(err.to_dict())
                report.add_step(_record(step, STEP_FAILED, step_start, {}))
                logger.error("%s", err)
                break
            report.add_step(_record(step, STEP_PASSED, step_start, details))

    if cancelled:
        status = JOB_CANCELLED
    elif errors or not report.passed:
        status = JOB_FAILED
    else:
        status = JOB_SUCCEEDED
    duration = time.monotonic() - start_time
    logger.info("[%s] %s in %.1fs", job.name, status, duration)
    return JobOutcome(
        name=job.name,
        status=status,
        report=report,
        errors=errors,
        duration=duration,
    )


def write_job_reports(report: Report, report_dir: Path) -> list[Path]:
    """Write ``<job>.json`` and ``<job>.xml`` under ``report_dir``."""
    json_path = report_dir / f"{report.job}.json"
    xml_path = report_dir / f"{report.job}.xml"
    report.write_json(json_path)
    report.write_junit(xml_path)
    return [json_path, xml_path]


def _attach(error: PipelineError, job: Job, step: Step) -> None:
    if error.job is None:
        error.job = job.name
    if error.step is None:
        error.step = step.name


def _record(
    step: Step, status: str, start_time: float, details: dict[str, Any],
) -> StepRecord:
    details = dict(details)
    exit_code = details.pop("exit_code", None)
    output = details.pop("output_tail", "")
    return StepRecord(
        name=step.name,
        kind=step.kind,
        status=status,
        exit_code=exit_code,
        duration=time.monotonic() - start_time,
        output_tail=tail(output),
        details=details,
    )
