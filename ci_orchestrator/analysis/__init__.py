"""Test output analysis: parsing raw runner output into classified results."""

from ci_orchestrator.analysis.log_parser import (
    STATUS_FAIL,
    STATUS_PASS,
    STATUS_SKIP,
    GoTestParser,
    ParsedOutput,
    TestResult,
    parse_test_output,
)

__all__ = [
    "GoTestParser",
    "ParsedOutput",
    "STATUS_FAIL",
    "STATUS_PASS",
    "STATUS_SKIP",
    "TestResult",
    "parse_test_output",
]
