"""Pipeline definitions and run settings."""

from ci_orchestrator.config.pipeline import Parameter, Pipeline, parse_duration
from ci_orchestrator.config.settings import DEFAULT_SETTINGS, PipelineSettings

__all__ = [
    "DEFAULT_SETTINGS",
    "Parameter",
    "Pipeline",
    "PipelineSettings",
    "parse_duration",
]
