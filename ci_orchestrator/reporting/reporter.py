"""Per-job test reports and their on-disk formats.

A ``Report`` collects classified results from one or more streams (a
sequential run, or the shards of a test step) plus step records, warnings
and errors.  Appends are serialized by a lock, so shard workers may add
results concurrently in any order without lost updates.

Status fidelity: a report is failed if any result failed *or* any
recorded exit signal was nonzero.  Converting raw output into a report
never turns a failed execution into a passing one.

Reports are written as JSON (the structured report), JUnit XML (for
external CI collection, one ``testsuite`` per classname in the style of
go-junit-report ``--full-class-name``), and a YAML run summary.
"""

from __future__ import annotations

import datetime
import json
import threading
import xml.etree.ElementTree as ET
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterable

import yaml

from ci_orchestrator.analysis.log_parser import (
    STATUS_FAIL,
    STATUS_PASS,
    STATUS_SKIP,
    ParsedOutput,
    TestResult,
    worse_status,
)

REPORT_PASSED = "passed"
REPORT_FAILED = "failed"

# Trailing characters of step output kept in step records.
OUTPUT_TAIL_CHARS = 4000

# Unparsed lines kept per report; the rest are only counted.
MAX_DIAGNOSTIC_LINES = 2000


@dataclass
class StepRecord:
    """Outcome of a single step within a job."""

    name: str
    kind: str
    status: str
    exit_code: int | None = None
    duration: float = 0.0
    output_tail: str = ""
    details: dict[str, Any] = field(default_factory=dict)


def tail(text: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    """Last ``limit`` characters of ``text``."""
    return text if len(text) <= limit else text[-limit:]


class Report:
    """Merged results for one job, independent of shard count."""

    def __init__(self, job: str) -> None:
        self.job = job
        self.results: list[TestResult] = []
        self.diagnostics: list[str] = []
        self.warnings: list[str] = []
        self.steps: list[StepRecord] = []
        self.errors: list[dict[str, Any]] = []
        self.exit_codes: list[int] = []
        self.shard_count = 0
        self.diagnostics_dropped = 0
        self.observed_timings: dict[str, float] = {}
        self._by_identifier: dict[str, TestResult] = {}
        self._lock = threading.Lock()

    # -- appends -----------------------------------------------------------

    def add_result(self, result: TestResult) -> None:
        """Add one result; a repeated identifier keeps the worst status."""
        with self._lock:
            self._add_result_locked(result)

    def _add_result_locked(self, result: TestResult) -> None:
        existing = self._by_identifier.get(result.identifier)
        if existing is None:
            self._by_identifier[result.identifier] = result
            self.results.append(result)
            return
        existing.status = worse_status(existing.status, result.status)
        existing.duration += result.duration
        self._add_diagnostics_locked(
            [f"duplicate result for {result.identifier} merged (status {existing.status})"]
        )

    def _add_diagnostics_locked(self, lines: list[str]) -> None:
        room = max(MAX_DIAGNOSTIC_LINES - len(self.diagnostics), 0)
        self.diagnostics.extend(lines[:room])
        self.diagnostics_dropped += max(len(lines) - room, 0)

    def add_parsed(self, parsed: ParsedOutput, exit_code: int | None = None) -> None:
        """Merge one parsed stream, with the exit signal of its process."""
        with self._lock:
            for result in parsed.results:
                self._add_result_locked(result)
            self._add_diagnostics_locked(parsed.diagnostics)
            if exit_code is not None:
                self.exit_codes.append(exit_code)

    def merge(self, other: Report) -> None:
        """Union another report (e.g. one shard's partial report) into this one."""
        with other._lock:
            results = list(other.results)
            diagnostics = list(other.diagnostics)
            warnings = list(other.warnings)
            exit_codes = list(other.exit_codes)
            errors = list(other.errors)
        with self._lock:
            for result in results:
                self._add_result_locked(result)
            self._add_diagnostics_locked(diagnostics)
            self.diagnostics_dropped += other.diagnostics_dropped
            self.warnings.extend(warnings)
            self.exit_codes.extend(exit_codes)
            self.errors.extend(errors)

    def add_step(self, record: StepRecord) -> None:
        with self._lock:
            self.steps.append(record)

    def add_warning(self, message: str) -> None:
        with self._lock:
            self.warnings.append(message)

    def add_error(self, error: dict[str, Any]) -> None:
        with self._lock:
            self.errors.append(error)

    def record_exit_code(self, exit_code: int) -> None:
        with self._lock:
            self.exit_codes.append(exit_code)

    # -- status ------------------------------------------------------------

    @property
    def failed_results(self) -> list[TestResult]:
        return [r for r in self.results if r.failed]

    @property
    def execution_failed(self) -> bool:
        """True if any recorded exit signal was nonzero."""
        return any(code != 0 for code in self.exit_codes)

    @property
    def status(self) -> str:
        if self.failed_results or self.execution_failed or self.errors:
            return REPORT_FAILED
        return REPORT_PASSED

    @property
    def passed(self) -> bool:
        return self.status == REPORT_PASSED

    def counts(self) -> dict[str, int]:
        counts = {STATUS_PASS: 0, STATUS_FAIL: 0, STATUS_SKIP: 0}
        for result in self.results:
            counts[result.status] += 1
        counts["total"] = len(self.results)
        return counts

    # -- serialization -----------------------------------------------------

    def generate_report(self) -> dict[str, Any]:
        """Build the report data structure, suitable for JSON."""
        now = datetime.datetime.now(tz=datetime.timezone.utc).isoformat()
        report: dict[str, Any] = {
            "job": self.job,
            "generated_at": now,
            "status": self.status,
            "summary": self.counts(),
            "exit_codes": list(self.exit_codes),
            "tests": [
                {
                    "identifier": r.identifier,
                    "classname": r.classname,
                    "name": r.name,
                    "status": r.status,
                    "duration_seconds": round(r.duration, 3),
                    "output": r.output,
                }
                for r in self.results
            ],
        }
        if self.shard_count:
            report["shard_count"] = self.shard_count
        if self.steps:
            report["steps"] = [asdict(s) for s in self.steps]
        if self.warnings:
            report["warnings"] = list(self.warnings)
        if self.errors:
            report["errors"] = list(self.errors)
        if self.diagnostics:
            report["diagnostics"] = list(self.diagnostics)
        if self.diagnostics_dropped:
            report["diagnostics_dropped"] = self.diagnostics_dropped
        return {"report": report}

    def write_json(self, path: Path) -> None:
        """Write the report as a JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.generate_report(), f, indent=2)
            f.write("\n")

    def write_junit(self, path: Path) -> None:
        """Write the results as JUnit XML."""
        path.parent.mkdir(parents=True, exist_ok=True)
        tree = ET.ElementTree(junit_element(self.job, self.results))
        ET.indent(tree)
        tree.write(path, encoding="utf-8", xml_declaration=True)


def junit_element(suite_name: str, results: Iterable[TestResult]) -> ET.Element:
    """Build a ``testsuites`` element with one suite per classname."""
    suites: dict[str, list[TestResult]] = {}
    for result in results:
        suites.setdefault(result.classname or suite_name, []).append(result)

    root = ET.Element("testsuites", name=suite_name)
    for classname, members in suites.items():
        suite = ET.SubElement(
            root,
            "testsuite",
            name=classname,
            tests=str(len(members)),
            failures=str(sum(1 for r in members if r.status == STATUS_FAIL)),
            skipped=str(sum(1 for r in members if r.status == STATUS_SKIP)),
            time=f"{sum(r.duration for r in members):.3f}",
        )
        for result in members:
            case = ET.SubElement(
                suite,
                "testcase",
                classname=classname,
                name=result.name or classname,
                time=f"{result.duration:.3f}",
            )
            if result.status == STATUS_FAIL:
                failure = ET.SubElement(case, "failure", message="Failed")
                failure.text = result.output
            elif result.status == STATUS_SKIP:
                ET.SubElement(case, "skipped", message=result.output or "Skipped")
            elif result.output:
                out = ET.SubElement(case, "system-out")
                out.text = result.output
    return root


def write_summary_yaml(summary: dict[str, Any], path: Path) -> None:
    """Write the run summary as YAML."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(
            summary,
            f,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
        )
