"""Unit tests for run exit code computation."""

from ci_orchestrator.errors import (
    BuildFailure,
    DeterminismViolation,
    PipelineError,
    SetupFailure,
    TestFailure,
)
from ci_orchestrator.execution.exit_code import compute_exit_code, exit_code_for_errors
from ci_orchestrator.execution.job_runner import (
    JOB_BLOCKED,
    JOB_CANCELLED,
    JOB_FAILED,
    JOB_SUCCEEDED,
    JobOutcome,
)
from ci_orchestrator.reporting.reporter import Report
from ci_orchestrator.verification.determinism import compare_artifacts


def _failed(name, *errors):
    return JobOutcome(name=name, status=JOB_FAILED, errors=list(errors))


def _ok(name):
    return JobOutcome(name=name, status=JOB_SUCCEEDED)


class TestExitCodeForErrors:
    """Severity order across failure classes."""

    def test_empty(self):
        assert exit_code_for_errors([]) == 0

    def test_setup_beats_everything(self):
        errors = [TestFailure("t"), BuildFailure("b"), SetupFailure("s")]
        assert exit_code_for_errors(errors) == 4

    def test_build_beats_determinism_and_tests(self):
        diff = compare_artifacts(b"a", b"b")
        errors = [TestFailure("t"), DeterminismViolation("d", diff), BuildFailure("b")]
        assert exit_code_for_errors(errors) == 2

    def test_determinism_beats_tests(self):
        diff = compare_artifacts(b"a", b"b")
        assert exit_code_for_errors([TestFailure("t"), DeterminismViolation("d", diff)]) == 3

    def test_unranked_error_uses_own_code(self):
        assert exit_code_for_errors([PipelineError("boom")]) == 1


class TestComputeExitCode:
    """Job outcomes to process exit code."""

    def test_all_succeeded(self):
        summary = compute_exit_code([_ok("a"), _ok("b")])
        assert summary.exit_code == 0
        assert summary.succeeded == ["a", "b"]

    def test_test_failure(self):
        summary = compute_exit_code([_ok("a"), _failed("b", TestFailure("1 failed"))])
        assert summary.exit_code == 1
        assert summary.failed == ["b"]

    def test_build_failure_with_blocked_dependents(self):
        outcomes = [
            _failed("build", BuildFailure("exit 2")),
            JobOutcome(name="test", status=JOB_BLOCKED, blocked_by="build"),
        ]
        summary = compute_exit_code(outcomes)
        assert summary.exit_code == 2
        assert summary.blocked == ["test"]

    def test_setup_failure_not_masked_by_tests(self):
        outcomes = [
            _failed("unit", TestFailure("3 failed")),
            _failed("integration", SetupFailure("docker missing")),
        ]
        assert compute_exit_code(outcomes).exit_code == 4

    def test_cancelled_wins(self):
        outcomes = [
            _failed("a", SetupFailure("x")),
            JobOutcome(name="b", status=JOB_CANCELLED),
        ]
        summary = compute_exit_code(outcomes)
        assert summary.exit_code == 130
        assert summary.cancelled == ["b"]

    def test_failed_report_without_error_is_test_failure(self):
        """A failed job always yields a nonzero code."""
        assert compute_exit_code([_failed("a")]).exit_code == 1

    def test_warnings_collected_from_reports(self):
        report = Report("unit")
        report.add_warning("Shard imbalance")
        outcome = JobOutcome(name="unit", status=JOB_SUCCEEDED, report=report)
        summary = compute_exit_code([outcome])
        assert summary.exit_code == 0
        assert summary.warnings == ["unit: Shard imbalance"]
