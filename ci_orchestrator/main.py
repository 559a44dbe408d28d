"""Command line entry point.

Subcommands:

    run      Run a pipeline (optionally one workflow) and write reports.
    split    Print one shard of the identifiers read from stdin.
    compare  Check two build artifacts for equality after normalization.
    report   Convert raw test output into JSON/JUnit, keeping its exit status.
    timings  Build a timing snapshot from JUnit XML reports.
"""

from __future__ import annotations

import argparse
import contextlib
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Iterator

from ci_orchestrator.analysis.log_parser import parse_test_output
from ci_orchestrator.config.pipeline import Pipeline
from ci_orchestrator.config.settings import DEFAULT_SETTINGS_FILE, PipelineSettings
from ci_orchestrator.errors import (
    EXIT_BUILD_FAILURE,
    EXIT_CONFIG_ERROR,
    EXIT_DETERMINISM_VIOLATION,
    EXIT_SUCCESS,
    EXIT_TEST_FAILURE,
    ConfigError,
    PipelineError,
)
from ci_orchestrator.execution.exit_code import compute_exit_code
from ci_orchestrator.execution.job_runner import JobOutcome
from ci_orchestrator.execution.scheduler import Scheduler
from ci_orchestrator.execution.steps import RunOptions
from ci_orchestrator.reporting.reporter import Report, write_summary_yaml
from ci_orchestrator.sharding.exclusion import ExclusionFilter
from ci_orchestrator.sharding.partitioner import partition
from ci_orchestrator.sharding.timings import TimingTable
from ci_orchestrator.verification.determinism import (
    DEFAULT_PLACEHOLDER,
    BuildArtifact,
    compare_artifacts,
)

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ci-orchestrator",
        description="Test orchestration and build verification pipeline runner",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (-v info, -vv debug)",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # run subcommand
    run_parser = subparsers.add_parser("run", help="Run a pipeline")
    run_parser.add_argument(
        "--pipeline",
        type=Path,
        default=Path("pipeline.yml"),
        help="Path to the pipeline definition (default: pipeline.yml)",
    )
    run_parser.add_argument(
        "--workflow",
        default=None,
        help="Workflow to run (default: the only workflow, or all jobs)",
    )
    run_parser.add_argument(
        "--job",
        action="append",
        default=[],
        metavar="NAME",
        help="Only run this job and the jobs it requires (repeatable)",
    )
    run_parser.add_argument(
        "--param",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Override a pipeline parameter (repeatable)",
    )
    run_parser.add_argument(
        "--timings",
        type=Path,
        default=None,
        help="Timing snapshot used to balance test shards",
    )
    run_parser.add_argument(
        "--update-timings",
        action="store_true",
        help="Write observed durations back to the --timings snapshot",
    )
    run_parser.add_argument(
        "--report-dir",
        type=Path,
        default=None,
        help="Directory for reports (default: from settings, test-reports)",
    )
    run_parser.add_argument(
        "--max-parallel",
        type=int,
        default=None,
        help="Maximum concurrently running jobs (default: CPU count)",
    )
    run_parser.add_argument(
        "--grace-period",
        type=float,
        default=None,
        help="Seconds running jobs get to stop after cancellation",
    )
    run_parser.add_argument(
        "--config-file",
        type=Path,
        default=DEFAULT_SETTINGS_FILE,
        help=f"Settings file (default: {DEFAULT_SETTINGS_FILE})",
    )

    # split subcommand
    split_parser = subparsers.add_parser(
        "split",
        help="Print the identifiers of one shard (identifiers read from stdin)",
    )
    split_parser.add_argument("--total", type=int, required=True, help="Number of shards")
    split_parser.add_argument("--index", type=int, required=True, help="Shard to print (0-based)")
    split_parser.add_argument("--timings", type=Path, default=None, help="Timing snapshot")
    split_parser.add_argument("--exclusions", type=Path, default=None, help="Denylist file")
    split_parser.add_argument(
        "--fallback-weight",
        type=float,
        default=None,
        help="Weight for identifiers missing from the snapshot (default: 1.0)",
    )

    # compare subcommand
    compare_parser = subparsers.add_parser(
        "compare",
        help="Compare two build artifacts after normalizing ignorable regions",
    )
    compare_parser.add_argument("first", type=Path, help="First artifact")
    compare_parser.add_argument("second", type=Path, help="Second artifact")
    compare_parser.add_argument(
        "--ignore-a", action="append", default=[], metavar="TEXT",
        help="Ignorable substring in the first artifact (repeatable)",
    )
    compare_parser.add_argument(
        "--ignore-b", action="append", default=[], metavar="TEXT",
        help="Ignorable substring in the second artifact (repeatable)",
    )
    compare_parser.add_argument(
        "--placeholder", default=None, help="Replacement for ignorable regions",
    )
    compare_parser.add_argument(
        "--context", type=int, default=3, help="Context lines in the diff (default: 3)",
    )

    # report subcommand
    report_parser = subparsers.add_parser(
        "report",
        help="Convert raw go test -v output into JSON and JUnit reports",
    )
    report_parser.add_argument(
        "input", type=Path, nargs="?", default=None,
        help="Raw output file (default: stdin)",
    )
    report_parser.add_argument("--job", default="tests", help="Report name (default: tests)")
    report_parser.add_argument("--json", type=Path, default=None, help="JSON report path")
    report_parser.add_argument("--junit", type=Path, default=None, help="JUnit XML path")
    report_parser.add_argument(
        "--classname", default="",
        help="Classname for results outside any package summary",
    )
    report_parser.add_argument(
        "--exit-code", type=int, default=None,
        help="Exit status of the test command; returned unchanged when nonzero",
    )

    # timings subcommand
    timings_parser = subparsers.add_parser(
        "timings",
        help="Build a timing snapshot from JUnit XML reports",
    )
    timings_parser.add_argument("reports", type=Path, nargs="+", help="JUnit XML files")
    timings_parser.add_argument(
        "--output", type=Path, required=True, help="Snapshot path to write",
    )
    timings_parser.add_argument(
        "--merge", action="store_true",
        help="Update an existing snapshot instead of replacing it",
    )

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    return build_parser().parse_args(argv)


def parse_params(pairs: list[str]) -> dict[str, str]:
    """Parse ``NAME=VALUE`` overrides.

    Raises:
        ConfigError: If a pair has no ``=``.
    """
    params: dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name.strip():
            raise ConfigError(f"Invalid parameter override (expected NAME=VALUE): {pair}")
        params[name.strip()] = value
    return params


def cmd_run(args: argparse.Namespace) -> int:
    """Handle run subcommand."""
    settings = PipelineSettings(args.config_file)
    settings.set_settings(
        max_parallel=args.max_parallel,
        grace_period=args.grace_period,
        report_dir=str(args.report_dir) if args.report_dir else None,
    )
    if args.update_timings and args.timings is None:
        print("Error: --update-timings requires --timings", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        params = parse_params(args.param)
        pipeline = Pipeline.load(args.pipeline)
        graph = pipeline.construct(args.workflow, params, settings)
        if args.job:
            graph = graph.subgraph(args.job)
        if args.timings is not None:
            timings = TimingTable.load(args.timings, settings.fallback_weight)
        else:
            timings = TimingTable(fallback_weight=settings.fallback_weight)
    except PipelineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code

    options = RunOptions(
        timings=timings,
        imbalance_threshold=settings.imbalance_threshold,
        report_dir=settings.report_dir,
    )
    scheduler = Scheduler(
        graph,
        max_parallel=settings.max_parallel,
        grace_period=settings.grace_period,
        options=options,
    )

    print(f"Running {len(graph)} job(s) from {args.pipeline}")
    with _cancel_on_signals(scheduler):
        outcomes = scheduler.run()

    summary = compute_exit_code(outcomes.values())
    write_summary_yaml(
        _summary_dict(outcomes, summary.exit_code, args.workflow),
        settings.report_dir / "summary.yaml",
    )
    _print_outcomes(outcomes)
    for warning in summary.warnings:
        print(f"Warning: {warning}", file=sys.stderr)

    if args.update_timings and not scheduler.cancelled:
        observed: dict[str, float] = {}
        for outcome in outcomes.values():
            if outcome.report is not None:
                observed.update(outcome.report.observed_timings)
        if observed:
            timings.updated(observed).save(args.timings)
            print(f"Updated {len(observed)} timing(s) in {args.timings}")

    print(f"Exit code: {summary.exit_code}")
    return summary.exit_code


def cmd_split(args: argparse.Namespace) -> int:
    """Handle split subcommand."""
    if not 0 <= args.index < max(args.total, 1):
        print(
            f"Error: --index must be in [0, {args.total}), got {args.index}",
            file=sys.stderr,
        )
        return EXIT_CONFIG_ERROR

    try:
        fallback = args.fallback_weight
        if args.timings is not None:
            timings = TimingTable.load(args.timings)
        else:
            timings = TimingTable()
        if fallback is not None:
            timings = timings.with_fallback(fallback)
        identifiers = sys.stdin.read().split()
        if args.exclusions is not None:
            identifiers = ExclusionFilter.from_file(args.exclusions).apply(identifiers).kept
        plan = partition(identifiers, timings, args.total)
    except PipelineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code

    for identifier in plan.shards[args.index].tests:
        print(identifier)
    return EXIT_SUCCESS


def cmd_compare(args: argparse.Namespace) -> int:
    """Handle compare subcommand."""
    try:
        first = BuildArtifact(args.first.read_bytes(), tuple(args.ignore_a), str(args.first))
        second = BuildArtifact(args.second.read_bytes(), tuple(args.ignore_b), str(args.second))
    except OSError as e:
        print(f"Error: Cannot read artifact: {e}", file=sys.stderr)
        return EXIT_BUILD_FAILURE

    placeholder = args.placeholder or DEFAULT_PLACEHOLDER
    diff = compare_artifacts(
        first.normalized(placeholder),
        second.normalized(placeholder),
        label_a=first.label,
        label_b=second.label,
        context_lines=args.context,
    )
    if diff.identical:
        print(f"Artifacts are identical ({diff.size_a} bytes after normalization)")
        return EXIT_SUCCESS

    print(
        f"Artifacts differ at byte {diff.first_offset} "
        f"({len(diff.hunks)} divergent hunk(s))",
        file=sys.stderr,
    )
    sys.stdout.write(diff.unified)
    return EXIT_DETERMINISM_VIOLATION


def cmd_report(args: argparse.Namespace) -> int:
    """Handle report subcommand."""
    try:
        text = args.input.read_text() if args.input else sys.stdin.read()
    except OSError as e:
        print(f"Error: Cannot read test output: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    report = Report(args.job)
    report.add_parsed(parse_test_output(text, args.classname), exit_code=args.exit_code)
    if args.json:
        report.write_json(args.json)
    if args.junit:
        report.write_junit(args.junit)

    counts = report.counts()
    print(
        f"{args.job}: {report.status} ({counts['pass']} passed, "
        f"{counts['fail']} failed, {counts['skip']} skipped)"
    )
    if args.exit_code:
        return args.exit_code
    return EXIT_SUCCESS if report.passed else EXIT_TEST_FAILURE


def cmd_timings(args: argparse.Namespace) -> int:
    """Handle timings subcommand."""
    try:
        observed = TimingTable.from_junit(args.reports)
        if args.merge:
            snapshot = TimingTable.load(args.output).updated(observed.as_dict())
        else:
            snapshot = observed
    except PipelineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code

    snapshot.save(args.output)
    print(f"Wrote {len(snapshot)} timing(s) to {args.output} (version {snapshot.version})")
    return EXIT_SUCCESS


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.command is None:
        parser.print_help(sys.stderr)
        return 1

    if args.command == "run":
        return cmd_run(args)
    elif args.command == "split":
        return cmd_split(args)
    elif args.command == "compare":
        return cmd_compare(args)
    elif args.command == "report":
        return cmd_report(args)
    elif args.command == "timings":
        return cmd_timings(args)
    else:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@contextlib.contextmanager
def _cancel_on_signals(scheduler: Scheduler) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``scheduler.cancel()`` while running."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handle(signum: int, frame: Any) -> None:
        print(f"Received signal {signum}, cancelling run", file=sys.stderr)
        scheduler.cancel()

    previous = {sig: signal.signal(sig, handle) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _summary_dict(
    outcomes: dict[str, JobOutcome], exit_code: int, workflow: str | None,
) -> dict[str, Any]:
    return {
        "summary": {
            "workflow": workflow,
            "exit_code": exit_code,
            "jobs": {name: outcome.to_dict() for name, outcome in outcomes.items()},
        }
    }


def _print_outcomes(outcomes: dict[str, JobOutcome]) -> None:
    print()
    print("Results:")
    for name, outcome in outcomes.items():
        line = f"  {name}: {outcome.status}"
        if outcome.blocked_by:
            line += f" (blocked by {outcome.blocked_by})"
        elif outcome.report is not None:
            counts = outcome.report.counts()
            if counts["total"]:
                line += f" ({counts['pass']} passed, {counts['fail']} failed)"
        print(line)
        for error in outcome.errors:
            print(f"    {error}")


if __name__ == "__main__":
    sys.exit(main())
