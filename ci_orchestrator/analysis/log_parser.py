"""Parser for ``go test -v`` style test runner output.

Both ``go test`` and ``gopherjs test`` emit the same line protocol::

    === RUN   TestFoo
        foo_test.go:12: some log line
    --- FAIL: TestFoo (0.01s)
    FAIL
    FAIL    example.com/pkg 0.013s
    ok      example.com/other       0.200s
    ?       example.com/empty       [no test files]

Test results are buffered until their package summary line arrives,
which supplies the classname (package path) for each of them.  Every
test identifier is classified exactly once; when an identifier is
reported more than once the worst status wins.

Lines that are not part of the protocol are attached to the test that
was active when they were printed, or kept as diagnostics when no test
was active.  Unparseable lines never prevent classification of the
parseable ones.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

STATUS_PASS = "pass"
STATUS_FAIL = "fail"
STATUS_SKIP = "skip"

# Higher rank wins when the same identifier is reported twice.
_STATUS_RANK = {STATUS_SKIP: 0, STATUS_PASS: 1, STATUS_FAIL: 2}

_GO_STATUS = {"PASS": STATUS_PASS, "FAIL": STATUS_FAIL, "SKIP": STATUS_SKIP}

_EVENT_RE = re.compile(r"^=== (RUN|PAUSE|CONT|NAME)\s+(\S+)\s*$")
_RESULT_RE = re.compile(
    r"^(\s*)--- (PASS|FAIL|SKIP): (\S+)(?: \((\d+(?:\.\d+)?)\s*(?:s|seconds)\))?"
)
_PKG_OK_RE = re.compile(r"^ok\s+(\S+)(?:\s+(\d+(?:\.\d+)?)s)?")
_PKG_FAIL_RE = re.compile(r"^FAIL\s+(\S+)(?:\s+(\d+(?:\.\d+)?)s|\s+\[([^\]]+)\])?\s*$")
_PKG_NO_TESTS_RE = re.compile(r"^\?\s+(\S+)\s+\[no test files\]")
_BARE_SUMMARY_RE = re.compile(r"^(PASS|FAIL)\s*$")

# Marker attached to tests that started but never reported a result.
INCOMPLETE_MESSAGE = "test did not complete"


@dataclass
class TestResult:
    """Outcome of one test identifier."""

    __test__ = False

    name: str
    status: str
    duration: float = 0.0
    output: str = ""
    classname: str = ""

    @property
    def identifier(self) -> str:
        """``<classname>.<name>``, or whichever part is present."""
        return ".".join(part for part in (self.classname, self.name) if part)

    @property
    def failed(self) -> bool:
        return self.status == STATUS_FAIL


@dataclass
class ParsedOutput:
    """Classified results and leftover diagnostic text from one stream."""

    results: list[TestResult] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)
    # Wall-clock duration per package, from the package summary lines.
    package_durations: dict[str, float] = field(default_factory=dict)

    @property
    def has_failures(self) -> bool:
        return any(r.failed for r in self.results)

    def observed_timings(self) -> dict[str, float]:
        """Per-package durations for refreshing a timing snapshot.

        Package summary durations are preferred; packages without a
        summary fall back to the sum of their test durations.
        """
        timings = dict(self.package_durations)
        sums: dict[str, float] = {}
        for result in self.results:
            if result.classname and result.classname not in timings:
                sums[result.classname] = sums.get(result.classname, 0.0) + result.duration
        timings.update(sums)
        return timings


def worse_status(a: str, b: str) -> str:
    """Return the more severe of two statuses."""
    return a if _STATUS_RANK[a] >= _STATUS_RANK[b] else b


class _PendingPackage:
    """Results seen since the last package summary line."""

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.order: list[str] = []
        self.status: dict[str, str] = {}
        self.duration: dict[str, float] = {}
        self.output: dict[str, list[str]] = {}
        self.started: list[str] = []

    def touch(self, name: str) -> None:
        if name not in self.output:
            self.output[name] = []
            self.started.append(name)

    def record(self, name: str, status: str, duration: float) -> None:
        self.touch(name)
        if name in self.status:
            self.status[name] = worse_status(self.status[name], status)
            self.duration[name] += duration
        else:
            self.order.append(name)
            self.status[name] = status
            self.duration[name] = duration

    def append_output(self, name: str, line: str) -> None:
        self.touch(name)
        self.output[name].append(line)

    def flush(self, classname: str) -> list[TestResult]:
        results = [
            TestResult(
                name=name,
                status=self.status[name],
                duration=self.duration[name],
                output="\n".join(self.output.get(name, [])),
                classname=classname,
            )
            for name in self.order
        ]
        # Started without a result line: a crash or timeout killed it.
        for name in self.started:
            if name not in self.status:
                lines = self.output.get(name, []) + [INCOMPLETE_MESSAGE]
                results.append(TestResult(
                    name=name,
                    status=STATUS_FAIL,
                    output="\n".join(lines),
                    classname=classname,
                ))
        self.reset()
        return results


class GoTestParser:
    """Incremental parser; feed lines, then call ``finish()``."""

    def __init__(self, default_classname: str = "") -> None:
        self.default_classname = default_classname
        self._pending = _PendingPackage()
        self._active: str | None = None
        self._parsed = ParsedOutput()
        self._seen: dict[str, TestResult] = {}

    def feed(self, line: str) -> None:
        line = line.rstrip("\r\n")

        match = _EVENT_RE.match(line)
        if match:
            self._active = match.group(2)
            self._pending.touch(self._active)
            return

        match = _RESULT_RE.match(line)
        if match:
            name = match.group(3)
            duration = float(match.group(4) or 0.0)
            self._pending.record(name, _GO_STATUS[match.group(2)], duration)
            self._active = name
            return

        if _BARE_SUMMARY_RE.match(line):
            self._active = None
            return

        match = _PKG_NO_TESTS_RE.match(line)
        if match:
            self._close_package(match.group(1), STATUS_SKIP, 0.0, None)
            return

        match = _PKG_OK_RE.match(line)
        if match:
            self._close_package(match.group(1), STATUS_PASS, float(match.group(2) or 0.0), None)
            return

        match = _PKG_FAIL_RE.match(line)
        if match:
            self._close_package(
                match.group(1), STATUS_FAIL, float(match.group(2) or 0.0), match.group(3),
            )
            return

        if self._active is not None:
            self._pending.append_output(self._active, line)
        elif line.strip():
            self._parsed.diagnostics.append(line)

    def feed_text(self, text: str) -> None:
        for line in text.splitlines():
            self.feed(line)

    def finish(self) -> ParsedOutput:
        """Flush results that never saw a package summary."""
        for result in self._pending.flush(self.default_classname):
            self._add(result)
        self._active = None
        return self._parsed

    def _close_package(
        self, package: str, status: str, duration: float, reason: str | None,
    ) -> None:
        results = self._pending.flush(package)
        self._active = None
        if status != STATUS_SKIP:
            self._parsed.package_durations[package] = duration

        has_failed_test = any(r.failed for r in results)
        if not results or (status == STATUS_FAIL and not has_failed_test):
            # Keep package outcome visible when no test result carries it.
            results.append(TestResult(
                name="",
                status=status,
                duration=duration,
                output=reason or "",
                classname=package,
            ))
        for result in results:
            self._add(result)

    def _add(self, result: TestResult) -> None:
        existing = self._seen.get(result.identifier)
        if existing is None:
            self._seen[result.identifier] = result
            self._parsed.results.append(result)
            return
        existing.status = worse_status(existing.status, result.status)
        existing.duration += result.duration
        if result.output:
            existing.output = "\n".join(o for o in (existing.output, result.output) if o)


def parse_test_output(text: str, default_classname: str = "") -> ParsedOutput:
    """Parse a complete raw output stream.

    Args:
        text: Raw stdout of a test run (may interleave several packages).
        default_classname: Classname for results that never saw a
            package summary line.

    Returns:
        ParsedOutput with one result per identifier.
    """
    parser = GoTestParser(default_classname)
    parser.feed_text(text)
    return parser.finish()
