"""Step kinds executed sequentially inside a job.

``CommandStep`` runs a single action (``setup`` or ``run``).  ``TestStep``
expands a candidate list through the exclusion filter and the
partitioner, runs every shard concurrently, and merges the shard reports
after all of them finish.  ``DeterminismStep`` delegates to a
``DeterminismVerifier``.

Each ``run()`` returns a dict of step details for the job's step record,
or raises a ``PipelineError`` subclass describing the failure.
"""

from __future__ import annotations

import abc
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ci_orchestrator.analysis.log_parser import ParsedOutput, parse_test_output
from ci_orchestrator.errors import (
    BuildFailure,
    Cancelled,
    SetupFailure,
    TestFailure,
)
from ci_orchestrator.execution.actions import Action, ActionOutcome, JobContext
from ci_orchestrator.reporting.reporter import Report, tail
from ci_orchestrator.sharding.exclusion import ExclusionFilter
from ci_orchestrator.sharding.partitioner import (
    DEFAULT_IMBALANCE_THRESHOLD,
    PartitionPlan,
    Shard,
    partition,
)
from ci_orchestrator.sharding.timings import TimingTable
from ci_orchestrator.verification.determinism import DeterminismVerifier

if TYPE_CHECKING:
    from ci_orchestrator.execution.dag import Job

logger = logging.getLogger(__name__)

KIND_SETUP = "setup"
KIND_RUN = "run"
KIND_TEST = "test"
KIND_VERIFY = "verify_determinism"

# Environment seen by shard workers.
SHARD_INDEX_VAR = "SHARD_INDEX"
SHARD_TOTAL_VAR = "SHARD_TOTAL"
SHARD_TESTS_VAR = "SHARD_TESTS"
SHARD_TESTS_FILE_VAR = "SHARD_TESTS_FILE"

# Failed identifiers listed in a TestFailure's details.
_MAX_LISTED_FAILURES = 50


@dataclass
class RunOptions:
    """Run-wide inputs shared by every job."""

    timings: TimingTable = field(default_factory=TimingTable)
    imbalance_threshold: float = DEFAULT_IMBALANCE_THRESHOLD
    report_dir: Path | None = None


class Step(abc.ABC):
    """One unit of a job's sequential step list."""

    kind = KIND_RUN

    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"

    @abc.abstractmethod
    def run(
        self,
        context: JobContext,
        job: Job,
        report: Report,
        options: RunOptions,
    ) -> dict[str, Any]:
        """Execute the step, adding its output to ``report``."""


class CommandStep(Step):
    """Runs one action; a nonzero exit is a setup or build failure.

    Test output printed by the command is still classified, and a
    ``run`` step whose output contains failed tests fails with
    ``TestFailure`` rather than ``BuildFailure``.
    """

    def __init__(self, name: str, action: Action, kind: str = KIND_RUN) -> None:
        super().__init__(name)
        if kind not in (KIND_SETUP, KIND_RUN):
            raise ValueError(f"CommandStep kind must be setup or run, got {kind!r}")
        self.action = action
        self.kind = kind

    def run(
        self,
        context: JobContext,
        job: Job,
        report: Report,
        options: RunOptions,
    ) -> dict[str, Any]:
        outcome = self.action.execute(context)
        context.absorb_env_file()
        if outcome.cancelled:
            raise Cancelled(f"Step '{self.name}' was cancelled")

        parsed = parse_test_output(outcome.stdout)
        if parsed.results:
            report.add_parsed(parsed, exit_code=outcome.exit_code)
        else:
            report.record_exit_code(outcome.exit_code)

        details: dict[str, Any] = {
            "exit_code": outcome.exit_code,
            "output_tail": tail(outcome.stdout + outcome.stderr),
        }
        if outcome.succeeded:
            return details

        details["stderr"] = tail(outcome.stderr)
        if outcome.timed_out:
            details["timed_out"] = True
        message = f"Command exited {outcome.exit_code}"
        if self.kind == KIND_SETUP:
            raise SetupFailure(message, details=details)
        if parsed.has_failures:
            raise TestFailure(
                f"{len([r for r in parsed.results if r.failed])} test(s) failed",
                details=details,
            )
        raise BuildFailure(message, details=details)


class TestStep(Step):
    """Sharded test execution.

    Candidates come from ``list_action`` stdout (one identifier per
    whitespace-separated token) or the inline ``tests`` list.  With
    neither, the command runs once as shard 0 of 1 and selects its own
    tests.

    Args:
        name: Step name.
        action: Runs one shard; it reads its identifiers from
            ``$SHARD_TESTS`` or ``$SHARD_TESTS_FILE``.
        list_action: Optional action printing the candidate identifiers.
        tests: Optional inline candidate list.
        exclusions: Denylist applied before partitioning.
        parallelism: Shard count; defaults to the job's parallelism.
        default_classname: Classname for results outside any package
            summary.
    """

    __test__ = False

    kind = KIND_TEST

    def __init__(
        self,
        name: str,
        action: Action,
        list_action: Action | None = None,
        tests: list[str] | None = None,
        exclusions: ExclusionFilter | None = None,
        parallelism: int | None = None,
        default_classname: str = "",
    ) -> None:
        super().__init__(name)
        self.action = action
        self.list_action = list_action
        self.tests = tests
        self.exclusions = exclusions
        self.parallelism = parallelism
        self.default_classname = default_classname

    def candidates(self, context: JobContext) -> list[str] | None:
        """Resolve the candidate list, or None when the command selects tests.

        Raises:
            SetupFailure: If the listing command fails.
            Cancelled: If the run was cancelled while listing.
        """
        if self.list_action is not None:
            outcome = self.list_action.execute(context)
            if outcome.cancelled:
                raise Cancelled(f"Step '{self.name}' was cancelled")
            if not outcome.succeeded:
                raise SetupFailure(
                    f"Test listing exited {outcome.exit_code}",
                    details={
                        "exit_code": outcome.exit_code,
                        "stderr": tail(outcome.stderr),
                    },
                )
            return outcome.stdout.split()
        if self.tests is not None:
            return list(self.tests)
        return None

    def plan(self, candidates: list[str], job: Job, options: RunOptions) -> PartitionPlan:
        shard_count = self.parallelism or job.parallelism
        return partition(candidates, options.timings, shard_count)

    def run(
        self,
        context: JobContext,
        job: Job,
        report: Report,
        options: RunOptions,
    ) -> dict[str, Any]:
        candidates = self.candidates(context)
        details: dict[str, Any] = {}

        if candidates is None:
            shards = [Shard(index=0, total=1, tests=[])]
        else:
            excluded = 0
            if self.exclusions is not None:
                filtered = self.exclusions.apply(candidates)
                candidates = filtered.kept
                excluded = filtered.removed_count
                if excluded:
                    logger.info(
                        "[%s] excluded %d of %d test identifiers",
                        job.name, excluded, excluded + len(candidates),
                    )
            plan = self.plan(candidates, job, options)
            warning = plan.imbalance(options.imbalance_threshold)
            if warning is not None:
                logger.warning("[%s] %s", job.name, warning)
                report.add_warning(str(warning))
            shards = plan.shards
            details.update({
                "tests": len(plan.assignment()),
                "excluded": excluded,
                "max_shard_weight": round(plan.max_shard_weight, 3),
            })

        details["shards"] = len(shards)
        report.shard_count = max(report.shard_count, len(shards))

        results = self._run_shards(shards, candidates is None, context, job)
        cancelled = context.cancelled or any(
            outcome is not None and outcome.cancelled for _, outcome, _ in results
        )

        failed_shards: list[int] = []
        failed_tests: list[str] = []
        for shard, (partial, outcome, parsed) in zip(shards, results):
            report.merge(partial)
            failed_tests.extend(r.identifier for r in partial.failed_results)
            if parsed is not None:
                report.observed_timings.update(parsed.observed_timings())
            if outcome is not None and not outcome.succeeded:
                failed_shards.append(shard.index)
            if options.report_dir is not None and outcome is not None and not cancelled:
                partial.write_junit(options.report_dir / f"{job.name}-{shard.index}.xml")

        if cancelled:
            raise Cancelled(f"Step '{self.name}' was cancelled")

        if failed_shards or failed_tests:
            details["failed_shards"] = failed_shards
            details["failed_tests"] = failed_tests[:_MAX_LISTED_FAILURES]
            raise TestFailure(
                f"{len(failed_tests)} test(s) failed in {len(failed_shards)} shard(s)",
                details=details,
            )
        return details

    def _run_shards(
        self,
        shards: list[Shard],
        unpartitioned: bool,
        context: JobContext,
        job: Job,
    ) -> list[tuple[Report, ActionOutcome | None, ParsedOutput | None]]:
        """Run every shard concurrently and wait for all of them."""
        workers = max(1, sum(1 for s in shards if unpartitioned or not s.is_empty))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"{job.name}-shard",
        ) as pool:
            futures = [
                pool.submit(self._run_shard, shard, unpartitioned, context, job)
                for shard in shards
            ]
            wait(futures)
        return [f.result() for f in futures]

    def _run_shard(
        self,
        shard: Shard,
        unpartitioned: bool,
        context: JobContext,
        job: Job,
    ) -> tuple[Report, ActionOutcome | None, ParsedOutput | None]:
        partial = Report(f"{job.name}-{shard.index}")
        if shard.is_empty and not unpartitioned:
            logger.info("[%s] shard %d/%d has no tests", job.name, shard.index, shard.total)
            return partial, None, None

        tests_file = context.scratch_dir(f"{self.name}-shard-{shard.index}") / "tests.txt"
        tests_file.write_text("".join(f"{t}\n" for t in shard.tests))
        env = {
            SHARD_INDEX_VAR: str(shard.index),
            SHARD_TOTAL_VAR: str(shard.total),
            SHARD_TESTS_VAR: " ".join(shard.tests),
            SHARD_TESTS_FILE_VAR: str(tests_file),
        }
        logger.info(
            "[%s] shard %d/%d: %d tests (weight %.2f)",
            job.name, shard.index, shard.total, len(shard.tests), shard.weight,
        )
        outcome = self.action.execute(context.derive(env))
        parsed = parse_test_output(outcome.stdout, self.default_classname)
        partial.add_parsed(parsed, exit_code=outcome.exit_code)
        if outcome.timed_out:
            partial.add_warning(f"shard {shard.index} timed out")
        return partial, outcome, parsed


class DeterminismStep(Step):
    """Builds under two configurations and requires identical artifacts."""

    kind = KIND_VERIFY

    def __init__(self, name: str, verifier: DeterminismVerifier) -> None:
        super().__init__(name)
        self.verifier = verifier

    def run(
        self,
        context: JobContext,
        job: Job,
        report: Report,
        options: RunOptions,
    ) -> dict[str, Any]:
        result = self.verifier.verify(context)
        for outcome in result.outcomes.values():
            report.record_exit_code(outcome.exit_code)
        return {
            "configurations": list(result.outcomes),
            "artifact_size": result.diff.size_a,
        }
