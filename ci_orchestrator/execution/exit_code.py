"""Run exit code computation.

Maps the outcome of every selected job to one process exit code:

    +--------------------------------+-----+
    | outcome                        | exit|
    +--------------------------------+-----+
    | every job succeeded            |   0 |
    | any job cancelled              | 130 |
    | SetupFailure                   |   4 |
    | BuildFailure                   |   2 |
    | DeterminismViolation           |   3 |
    | TestFailure / failed report    |   1 |
    +--------------------------------+-----+

When several failure classes occur the first matching row wins, so a
setup failure in one job is never hidden by test failures in another.
Blocked jobs never determine the code themselves; the failure that
blocked them does.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from ci_orchestrator.errors import (
    EXIT_CANCELLED,
    EXIT_SUCCESS,
    EXIT_TEST_FAILURE,
    SEVERITY_ORDER,
    PipelineError,
)
from ci_orchestrator.execution.job_runner import (
    JOB_BLOCKED,
    JOB_CANCELLED,
    JOB_FAILED,
    JOB_SUCCEEDED,
    JobOutcome,
)


@dataclass
class ExitCodeSummary:
    """Exit code plus the job names behind it."""

    exit_code: int
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def exit_code_for_errors(errors: Iterable[PipelineError]) -> int:
    """Most severe exit code among ``errors``.

    Errors outside the severity order (e.g. an unexpected runner error)
    use their own exit code when nothing ranked is present.
    """
    errors = list(errors)
    for cls in SEVERITY_ORDER:
        if any(isinstance(e, cls) for e in errors):
            return cls.exit_code
    if errors:
        return max(e.exit_code for e in errors)
    return EXIT_SUCCESS


def compute_exit_code(outcomes: Iterable[JobOutcome]) -> ExitCodeSummary:
    """Compute the run's exit code from per-job outcomes.

    Args:
        outcomes: One outcome per selected job.

    Returns:
        ``ExitCodeSummary`` with exit code, per-status job lists and the
        warnings recorded in job reports.
    """
    summary = ExitCodeSummary(exit_code=EXIT_SUCCESS)
    errors: list[PipelineError] = []
    failed_without_error = False

    for outcome in outcomes:
        if outcome.status == JOB_SUCCEEDED:
            summary.succeeded.append(outcome.name)
        elif outcome.status == JOB_BLOCKED:
            summary.blocked.append(outcome.name)
        elif outcome.status == JOB_CANCELLED:
            summary.cancelled.append(outcome.name)
        elif outcome.status == JOB_FAILED:
            summary.failed.append(outcome.name)
            errors.extend(outcome.errors)
            if not outcome.errors:
                failed_without_error = True
        if outcome.report is not None:
            summary.warnings.extend(
                f"{outcome.name}: {w}" for w in outcome.report.warnings
            )

    if summary.cancelled:
        summary.exit_code = EXIT_CANCELLED
    elif errors:
        summary.exit_code = exit_code_for_errors(errors)
    elif failed_without_error:
        summary.exit_code = EXIT_TEST_FAILURE
    return summary
