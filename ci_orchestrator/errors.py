"""Error taxonomy for pipeline runs.

Each fatal class maps to a distinct process exit code so callers can tell
a broken build from failing tests or a determinism regression.  The
structural classes (``ConfigError``, ``CycleError``) are raised while the
pipeline is being constructed, before any job starts.
"""

from __future__ import annotations

from typing import Any

# Process exit codes, one per failure class.
EXIT_SUCCESS = 0
EXIT_TEST_FAILURE = 1
EXIT_BUILD_FAILURE = 2
EXIT_DETERMINISM_VIOLATION = 3
EXIT_SETUP_FAILURE = 4
EXIT_CONFIG_ERROR = 5
EXIT_CANCELLED = 130


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    kind = "pipeline_error"
    exit_code = 1
    # Fatal errors stop the owning job immediately.
    fatal = True

    def __init__(
        self,
        message: str,
        job: str | None = None,
        step: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.job = job
        self.step = step
        self.details: dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        prefix = ""
        if self.job and self.step:
            prefix = f"[{self.job}] step '{self.step}': "
        elif self.job:
            prefix = f"[{self.job}] "
        return f"{prefix}{self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for inclusion in a report."""
        data: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.job:
            data["job"] = self.job
        if self.step:
            data["step"] = self.step
        if self.details:
            data["details"] = self.details
        return data


class ConfigError(PipelineError):
    """The pipeline definition, settings, or a referenced file is invalid."""

    kind = "config_error"
    exit_code = EXIT_CONFIG_ERROR


class CycleError(ConfigError):
    """The job dependency graph is not a DAG."""

    kind = "cycle_error"

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Cycle detected in job graph: {' -> '.join(cycle)}")
        self.cycle = cycle


class SetupFailure(PipelineError):
    """A provisioning step failed; the job aborts without running further steps."""

    kind = "setup_failure"
    exit_code = EXIT_SETUP_FAILURE


class BuildFailure(PipelineError):
    """A build step exited nonzero."""

    kind = "build_failure"
    exit_code = EXIT_BUILD_FAILURE


class TestFailure(PipelineError):
    """One or more test results failed.

    Non-fatal: the report is still generated and later steps still run,
    but the job's final status is failure.
    """

    __test__ = False

    kind = "test_failure"
    exit_code = EXIT_TEST_FAILURE
    fatal = False


class DeterminismViolation(PipelineError):
    """Two builds of identical inputs differ after normalization."""

    kind = "determinism_violation"
    exit_code = EXIT_DETERMINISM_VIOLATION

    def __init__(
        self,
        message: str,
        diff: Any,
        job: str | None = None,
        step: str | None = None,
    ) -> None:
        super().__init__(message, job=job, step=step)
        self.diff = diff

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["diff"] = self.diff.to_dict()
        return data


class Cancelled(PipelineError):
    """The run was aborted externally while the job was in flight."""

    kind = "cancelled"
    exit_code = EXIT_CANCELLED


class PartitionImbalance(UserWarning):
    """Shard weights are skewed beyond the advisory threshold.

    Only ever logged and recorded; never raised as an error.
    """

    def __init__(self, max_weight: float, mean_weight: float, threshold: float) -> None:
        self.max_weight = max_weight
        self.mean_weight = mean_weight
        self.threshold = threshold
        skew = (max_weight - mean_weight) / mean_weight if mean_weight else 0.0
        self.skew = skew
        super().__init__(
            f"Shard imbalance: heaviest shard {max_weight:.2f}s is "
            f"{skew:.0%} above the mean {mean_weight:.2f}s "
            f"(threshold {threshold:.0%})"
        )


# Severity order used when several failure classes occur in one run.
SEVERITY_ORDER: tuple[type[PipelineError], ...] = (
    SetupFailure,
    BuildFailure,
    DeterminismViolation,
    TestFailure,
)
