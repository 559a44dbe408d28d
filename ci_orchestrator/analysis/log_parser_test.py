"""Unit tests for the go test -v output parser."""

from __future__ import annotations

from ci_orchestrator.analysis.log_parser import (
    INCOMPLETE_MESSAGE,
    STATUS_FAIL,
    STATUS_PASS,
    STATUS_SKIP,
    GoTestParser,
    parse_test_output,
    worse_status,
)

SAMPLE_OUTPUT = """\
=== RUN   TestFormat
--- PASS: TestFormat (0.10s)
=== RUN   TestParse
    parse_test.go:42: unexpected token
--- FAIL: TestParse (0.20s)
=== RUN   TestSkipped
    skip_test.go:7: needs network
--- SKIP: TestSkipped (0.00s)
FAIL
FAIL\texample.com/pkg/parser\t0.35s
=== RUN   TestOther
--- PASS: TestOther (0.01s)
PASS
ok  \texample.com/pkg/other\t0.05s
?   \texample.com/pkg/empty\t[no test files]
"""


def _by_id(parsed):
    return {r.identifier: r for r in parsed.results}


class TestClassification:
    """Tests for classifying individual results."""

    def test_statuses_and_identifiers(self):
        results = _by_id(parse_test_output(SAMPLE_OUTPUT))
        assert results["example.com/pkg/parser.TestFormat"].status == STATUS_PASS
        assert results["example.com/pkg/parser.TestParse"].status == STATUS_FAIL
        assert results["example.com/pkg/parser.TestSkipped"].status == STATUS_SKIP
        assert results["example.com/pkg/other.TestOther"].status == STATUS_PASS
        assert results["example.com/pkg/empty"].status == STATUS_SKIP

    def test_each_identifier_once(self):
        parsed = parse_test_output(SAMPLE_OUTPUT)
        identifiers = [r.identifier for r in parsed.results]
        assert len(identifiers) == len(set(identifiers)) == 5

    def test_durations(self):
        results = _by_id(parse_test_output(SAMPLE_OUTPUT))
        assert results["example.com/pkg/parser.TestParse"].duration == 0.20

    def test_output_captured_for_active_test(self):
        """Log lines between RUN and the result belong to that test."""
        results = _by_id(parse_test_output(SAMPLE_OUTPUT))
        assert "unexpected token" in results["example.com/pkg/parser.TestParse"].output
        assert "needs network" in results["example.com/pkg/parser.TestSkipped"].output

    def test_package_durations(self):
        parsed = parse_test_output(SAMPLE_OUTPUT)
        assert parsed.package_durations == {
            "example.com/pkg/parser": 0.35,
            "example.com/pkg/other": 0.05,
        }
        assert parsed.observed_timings()["example.com/pkg/parser"] == 0.35

    def test_has_failures(self):
        assert parse_test_output(SAMPLE_OUTPUT).has_failures


class TestSubtests:
    """Tests for indented subtest results."""

    def test_subtests_classified(self):
        output = (
            "=== RUN   TestTable\n"
            "=== RUN   TestTable/case_1\n"
            "=== RUN   TestTable/case_2\n"
            "--- FAIL: TestTable (0.02s)\n"
            "    --- PASS: TestTable/case_1 (0.01s)\n"
            "    --- FAIL: TestTable/case_2 (0.01s)\n"
            "FAIL\n"
            "FAIL\tpkg\t0.03s\n"
        )
        results = _by_id(parse_test_output(output))
        assert results["pkg.TestTable"].status == STATUS_FAIL
        assert results["pkg.TestTable/case_1"].status == STATUS_PASS
        assert results["pkg.TestTable/case_2"].status == STATUS_FAIL

    def test_parallel_pause_cont(self):
        """PAUSE/CONT events switch the active test without results."""
        output = (
            "=== RUN   TestA\n"
            "=== PAUSE TestA\n"
            "=== RUN   TestB\n"
            "--- PASS: TestB (0.00s)\n"
            "=== CONT  TestA\n"
            "    a_test.go:3: from A\n"
            "--- PASS: TestA (0.01s)\n"
            "ok  \tpkg\t0.02s\n"
        )
        results = _by_id(parse_test_output(output))
        assert set(results) == {"pkg.TestA", "pkg.TestB"}
        assert "from A" in results["pkg.TestA"].output


class TestPackageLevelResults:
    """Tests for packages without test-level failures."""

    def test_build_failed_package(self):
        """A package that failed to build yields a package-level failure."""
        output = (
            "# example.com/broken\n"
            "broken.go:3:1: syntax error\n"
            "FAIL\texample.com/broken [build failed]\n"
        )
        parsed = parse_test_output(output)
        results = _by_id(parsed)
        assert results["example.com/broken"].status == STATUS_FAIL
        assert results["example.com/broken"].output == "build failed"
        assert "broken.go:3:1: syntax error" in parsed.diagnostics

    def test_failing_package_without_failed_test(self):
        """A panic after all tests passed still fails the package."""
        output = (
            "=== RUN   TestA\n"
            "--- PASS: TestA (0.00s)\n"
            "FAIL\tpkg\t0.10s\n"
        )
        results = _by_id(parse_test_output(output))
        assert results["pkg.TestA"].status == STATUS_PASS
        assert results["pkg"].status == STATUS_FAIL

    def test_incomplete_test_is_failure(self):
        """A test that started but never reported a result failed."""
        output = (
            "=== RUN   TestHang\n"
            "panic: test timed out after 10m0s\n"
            "FAIL\tpkg\t600.00s\n"
        )
        results = _by_id(parse_test_output(output))
        assert results["pkg.TestHang"].status == STATUS_FAIL
        assert INCOMPLETE_MESSAGE in results["pkg.TestHang"].output


class TestDiagnostics:
    """Tests for lines that belong to no test."""

    def test_unrecognized_lines_kept(self):
        output = "go: downloading example.com/dep v1.0.0\nok  \tpkg\t0.01s\n"
        parsed = parse_test_output(output)
        assert parsed.diagnostics == ["go: downloading example.com/dep v1.0.0"]
        assert [r.identifier for r in parsed.results] == ["pkg"]

    def test_results_without_package_summary(self):
        """Results flushed at end of stream use the default classname."""
        parsed = parse_test_output("--- PASS: TestA (0.01s)\n", default_classname="shard")
        assert [r.identifier for r in parsed.results] == ["shard.TestA"]

    def test_empty_output(self):
        parsed = parse_test_output("")
        assert parsed.results == []
        assert not parsed.has_failures


class TestRepeatedResults:
    """The worst status wins when an identifier repeats."""

    def test_worse_status_order(self):
        assert worse_status(STATUS_PASS, STATUS_FAIL) == STATUS_FAIL
        assert worse_status(STATUS_SKIP, STATUS_PASS) == STATUS_PASS
        assert worse_status(STATUS_FAIL, STATUS_SKIP) == STATUS_FAIL

    def test_repeated_run_keeps_failure(self):
        """-count=2 style output: one failure taints the identifier."""
        parser = GoTestParser()
        parser.feed_text(
            "--- PASS: TestFlaky (0.01s)\n"
            "--- FAIL: TestFlaky (0.01s)\n"
            "FAIL\tpkg\t0.02s\n"
        )
        parsed = parser.finish()
        assert len(parsed.results) == 1
        assert parsed.results[0].status == STATUS_FAIL
