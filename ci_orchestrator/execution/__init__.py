"""Job graph construction, actions and exit code computation.

The step, job runner and scheduler modules are imported directly from
their submodules.
"""

from ci_orchestrator.execution.actions import (
    Action,
    ActionOutcome,
    CallableAction,
    JobContext,
    ShellAction,
)
from ci_orchestrator.execution.dag import Job, JobGraph

__all__ = [
    "Action",
    "ActionOutcome",
    "CallableAction",
    "Job",
    "JobContext",
    "JobGraph",
    "ShellAction",
]
