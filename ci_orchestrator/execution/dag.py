"""Job graph data structures and algorithms.

Provides Job (a named, ordered list of steps with ``requires`` edges) and
JobGraph (validation, cycle detection with path reporting, in-degree
counters for the scheduler, and dependency closure for workflow
selection).  All traversals are iterative.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from ci_orchestrator.errors import ConfigError, CycleError

if TYPE_CHECKING:
    from ci_orchestrator.execution.steps import Step


@dataclass
class Job:
    """A named unit of work: steps executed sequentially."""

    name: str
    steps: list[Step] = field(default_factory=list)
    requires: list[str] = field(default_factory=list)
    parallelism: int = 1
    working_directory: Path | None = None
    environment: dict[str, str] = field(default_factory=dict)
    # Jobs sharing a resource name never run at the same time.
    resources: frozenset[str] = frozenset()

    # Computed graph edges (populated during graph construction)
    dependents: list[str] = field(default_factory=list)


class JobGraph:
    """Directed acyclic graph of jobs keyed by name."""

    def __init__(self) -> None:
        self.jobs: dict[str, Job] = {}

    def __len__(self) -> int:
        return len(self.jobs)

    def __contains__(self, name: object) -> bool:
        return name in self.jobs

    @classmethod
    def from_jobs(cls, jobs: Iterable[Job]) -> JobGraph:
        """Build and validate a graph.

        Raises:
            ConfigError: On duplicate names, unknown ``requires`` entries,
                or a parallelism below 1.
            CycleError: If the dependency relation has a cycle.
        """
        graph = cls()
        for job in jobs:
            if job.name in graph.jobs:
                raise ConfigError(f"Duplicate job name: {job.name}")
            if job.parallelism < 1:
                raise ConfigError(
                    f"Job '{job.name}' parallelism must be >= 1, got {job.parallelism}"
                )
            job.dependents = []
            graph.jobs[job.name] = job

        for job in graph.jobs.values():
            seen: set[str] = set()
            for dep in job.requires:
                if dep not in graph.jobs:
                    raise ConfigError(
                        f"Job '{job.name}' requires unknown job '{dep}'. "
                        f"Known jobs: {sorted(graph.jobs)}"
                    )
                if dep in seen:
                    continue
                seen.add(dep)
                graph.jobs[dep].dependents.append(job.name)
            job.requires = list(dict.fromkeys(job.requires))

        graph.check_acyclic()
        return graph

    def in_degrees(self) -> dict[str, int]:
        """Number of unsatisfied dependencies per job."""
        return {name: len(job.requires) for name, job in self.jobs.items()}

    def dependents(self, name: str) -> list[str]:
        return list(self.jobs[name].dependents)

    def topological_order(self) -> list[str]:
        """Kahn's algorithm; dependencies before dependents.

        Raises:
            CycleError: If the graph contains a cycle.
        """
        remaining = self.in_degrees()
        queue: deque[str] = deque(name for name, deg in remaining.items() if deg == 0)
        order: list[str] = []
        while queue:
            name = queue.popleft()
            order.append(name)
            for dependent in self.jobs[name].dependents:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    queue.append(dependent)

        if len(order) != len(self.jobs):
            stuck = {name for name, deg in remaining.items() if deg > 0}
            raise CycleError(self._find_cycle(stuck))
        return order

    def check_acyclic(self) -> None:
        """Raise ``CycleError`` if the graph is not a DAG."""
        self.topological_order()

    def _find_cycle(self, stuck: set[str]) -> list[str]:
        """Walk ``requires`` edges among stuck nodes until one repeats.

        Every stuck node has at least one stuck dependency, so the walk
        always closes a cycle.
        """
        start = min(stuck)
        path: list[str] = []
        index: dict[str, int] = {}
        node = start
        while node not in index:
            index[node] = len(path)
            path.append(node)
            node = min(d for d in self.jobs[node].requires if d in stuck)
        return path[index[node]:] + [node]

    def closure(self, names: Iterable[str]) -> set[str]:
        """The given jobs plus everything they transitively require.

        Raises:
            ConfigError: If a name is not a known job.
        """
        result: set[str] = set()
        queue: deque[str] = deque()
        for name in names:
            if name not in self.jobs:
                raise ConfigError(f"Unknown job: {name}")
            queue.append(name)
        while queue:
            name = queue.popleft()
            if name in result:
                continue
            result.add(name)
            queue.extend(self.jobs[name].requires)
        return result

    def transitive_dependents(self, name: str) -> list[str]:
        """All jobs that directly or indirectly require ``name``."""
        result: list[str] = []
        seen: set[str] = {name}
        queue: deque[str] = deque(self.jobs[name].dependents)
        while queue:
            dependent = queue.popleft()
            if dependent in seen:
                continue
            seen.add(dependent)
            result.append(dependent)
            queue.extend(self.jobs[dependent].dependents)
        return result

    def subgraph(self, names: Iterable[str]) -> JobGraph:
        """Graph restricted to ``names`` and their dependency closure."""
        keep = self.closure(names)
        return JobGraph.from_jobs(
            Job(
                name=job.name,
                steps=job.steps,
                requires=list(job.requires),
                parallelism=job.parallelism,
                working_directory=job.working_directory,
                environment=dict(job.environment),
                resources=job.resources,
            )
            for job in self.jobs.values()
            if job.name in keep
        )
