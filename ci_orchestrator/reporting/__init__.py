"""Test result reporting: JSON, JUnit XML and YAML summary generation."""

from ci_orchestrator.reporting.reporter import Report, StepRecord, junit_element, write_summary_yaml

__all__ = [
    "Report",
    "StepRecord",
    "junit_element",
    "write_summary_yaml",
]
