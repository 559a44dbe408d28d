"""Unit tests for job reports and their serialized forms."""

from __future__ import annotations

import json
import tempfile
import threading
import xml.etree.ElementTree as ET
from pathlib import Path

import yaml

from ci_orchestrator.analysis.log_parser import (
    STATUS_FAIL,
    STATUS_PASS,
    STATUS_SKIP,
    TestResult,
    parse_test_output,
)
from ci_orchestrator.reporting.reporter import (
    MAX_DIAGNOSTIC_LINES,
    REPORT_FAILED,
    REPORT_PASSED,
    Report,
    StepRecord,
    tail,
    write_summary_yaml,
)

PASSING_OUTPUT = "=== RUN   TestA\n--- PASS: TestA (0.01s)\nPASS\nok  \tpkg\t0.02s\n"


class TestStatusFidelity:
    """Report status never hides a failed execution."""

    def test_empty_report_passes(self):
        report = Report("build")
        assert report.status == REPORT_PASSED
        assert report.passed

    def test_failed_result_fails_report(self):
        report = Report("build")
        report.add_result(TestResult(name="TestA", status=STATUS_FAIL, classname="pkg"))
        assert report.status == REPORT_FAILED

    def test_nonzero_exit_with_passing_output_fails(self):
        """Passing-looking output does not mask a nonzero exit signal."""
        report = Report("build")
        report.add_parsed(parse_test_output(PASSING_OUTPUT), exit_code=1)
        assert report.counts()[STATUS_PASS] == 1
        assert report.execution_failed
        assert report.status == REPORT_FAILED

    def test_zero_exit_with_failed_result_fails(self):
        report = Report("build")
        output = "--- FAIL: TestA (0.01s)\nFAIL\tpkg\t0.01s\n"
        report.add_parsed(parse_test_output(output), exit_code=0)
        assert report.status == REPORT_FAILED

    def test_recorded_error_fails_report(self):
        report = Report("build")
        report.add_error({"kind": "build_failure", "message": "boom"})
        assert report.status == REPORT_FAILED

    def test_skips_do_not_fail(self):
        report = Report("build")
        report.add_result(TestResult(name="TestA", status=STATUS_SKIP, classname="pkg"))
        report.record_exit_code(0)
        assert report.passed


class TestMerge:
    """Tests for combining shard reports."""

    def test_union_of_shards(self):
        job = Report("tests")
        for index in range(3):
            shard = Report(f"tests-{index}")
            shard.add_result(TestResult(name=f"Test{index}", status=STATUS_PASS, classname="pkg"))
            shard.record_exit_code(0)
            shard.add_warning(f"warning {index}")
            job.merge(shard)
        assert sorted(r.identifier for r in job.results) == ["pkg.Test0", "pkg.Test1", "pkg.Test2"]
        assert job.exit_codes == [0, 0, 0]
        assert len(job.warnings) == 3
        assert job.passed

    def test_repeated_identifier_keeps_worst(self):
        job = Report("tests")
        job.add_result(TestResult(name="TestA", status=STATUS_PASS, classname="pkg"))
        job.add_result(TestResult(name="TestA", status=STATUS_FAIL, classname="pkg"))
        assert len(job.results) == 1
        assert job.results[0].status == STATUS_FAIL
        assert any("duplicate result" in line for line in job.diagnostics)

    def test_concurrent_appends_lose_nothing(self):
        """Many threads adding results concurrently: every result lands."""
        report = Report("tests")
        workers = 8
        per_worker = 200

        def add(worker: int) -> None:
            for i in range(per_worker):
                report.add_result(
                    TestResult(name=f"Test{i}", status=STATUS_PASS, classname=f"pkg{worker}")
                )

        threads = [threading.Thread(target=add, args=(w,)) for w in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(report.results) == workers * per_worker
        assert report.counts()["total"] == workers * per_worker

    def test_diagnostics_capped(self):
        report = Report("tests")
        noise = "\n".join(f"noise {i}" for i in range(MAX_DIAGNOSTIC_LINES + 10))
        report.add_parsed(parse_test_output(noise))
        assert len(report.diagnostics) == MAX_DIAGNOSTIC_LINES
        assert report.diagnostics_dropped == 10
        assert report.generate_report()["report"]["diagnostics_dropped"] == 10


class TestSerialization:
    """Tests for JSON, JUnit and YAML output."""

    def _report(self) -> Report:
        report = Report("gopherjs_tests")
        output = (
            "=== RUN   TestA\n--- PASS: TestA (0.50s)\n"
            "=== RUN   TestB\n    b_test.go:1: broken\n--- FAIL: TestB (0.25s)\n"
            "FAIL\nFAIL\texample.com/pkg\t0.80s\n"
            "?   \texample.com/none\t[no test files]\n"
        )
        report.add_parsed(parse_test_output(output), exit_code=1)
        report.add_step(StepRecord(name="Run tests", kind="test", status="failed", exit_code=1))
        return report

    def test_generate_report(self):
        data = self._report().generate_report()["report"]
        assert data["job"] == "gopherjs_tests"
        assert data["status"] == REPORT_FAILED
        assert data["summary"] == {"pass": 1, "fail": 1, "skip": 1, "total": 3}
        assert data["exit_codes"] == [1]
        assert data["steps"][0]["name"] == "Run tests"
        assert {t["identifier"] for t in data["tests"]} == {
            "example.com/pkg.TestA", "example.com/pkg.TestB", "example.com/none",
        }

    def test_write_json(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "reports" / "gopherjs_tests.json"
            self._report().write_json(path)
            loaded = json.loads(path.read_text())
            assert loaded["report"]["status"] == REPORT_FAILED

    def test_write_junit(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "gopherjs_tests.xml"
            self._report().write_junit(path)
            root = ET.parse(path).getroot()
            assert root.tag == "testsuites"
            suites = {s.get("name"): s for s in root.findall("testsuite")}
            assert set(suites) == {"example.com/pkg", "example.com/none"}
            pkg = suites["example.com/pkg"]
            assert pkg.get("tests") == "2"
            assert pkg.get("failures") == "1"
            failed = [c for c in pkg.findall("testcase") if c.find("failure") is not None]
            assert [c.get("name") for c in failed] == ["TestB"]
            assert "broken" in failed[0].find("failure").text
            skipped = suites["example.com/none"].find("testcase")
            assert skipped.find("skipped") is not None

    def test_write_summary_yaml(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "summary.yaml"
            write_summary_yaml({"summary": {"exit_code": 1, "jobs": {"build": {"status": "failed"}}}}, path)
            loaded = yaml.safe_load(path.read_text())
            assert loaded["summary"]["jobs"]["build"]["status"] == "failed"


class TestTail:
    def test_short_text_unchanged(self):
        assert tail("abc", 10) == "abc"

    def test_long_text_truncated_from_the_front(self):
        assert tail("abcdef", 3) == "def"
