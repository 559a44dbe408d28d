"""Unit tests for the job graph."""

from __future__ import annotations

import pytest

from ci_orchestrator.errors import ConfigError, CycleError
from ci_orchestrator.execution.dag import Job, JobGraph


def _graph(edges: dict[str, list[str]]) -> JobGraph:
    return JobGraph.from_jobs(Job(name=name, requires=deps) for name, deps in edges.items())


# --- Construction Tests ---

class TestConstruction:
    """Tests for JobGraph.from_jobs()."""

    def test_dependents_computed(self):
        graph = _graph({"build": [], "gopherjs_tests": ["build"], "gorepo_tests": ["build"]})
        assert sorted(graph.dependents("build")) == ["gopherjs_tests", "gorepo_tests"]
        assert graph.in_degrees() == {"build": 0, "gopherjs_tests": 1, "gorepo_tests": 1}
        assert len(graph) == 3
        assert "build" in graph

    def test_duplicate_requires_collapsed(self):
        graph = _graph({"a": [], "b": ["a", "a"]})
        assert graph.jobs["b"].requires == ["a"]
        assert graph.dependents("a") == ["b"]

    def test_duplicate_job_name(self):
        with pytest.raises(ConfigError, match="Duplicate job name"):
            JobGraph.from_jobs([Job(name="a"), Job(name="a")])

    def test_unknown_requires(self):
        with pytest.raises(ConfigError, match="unknown job 'missing'"):
            _graph({"a": ["missing"]})

    def test_parallelism_below_one(self):
        with pytest.raises(ConfigError, match="parallelism"):
            JobGraph.from_jobs([Job(name="a", parallelism=0)])


# --- Cycle Detection Tests ---

class TestCycles:
    """Tests for cycle detection with path reporting."""

    def test_two_node_cycle(self):
        with pytest.raises(CycleError) as exc_info:
            _graph({"a": ["b"], "b": ["a"]})
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b"}
        assert "Cycle detected" in str(exc_info.value)

    def test_self_loop(self):
        with pytest.raises(CycleError) as exc_info:
            _graph({"a": ["a"]})
        assert exc_info.value.cycle == ["a", "a"]

    def test_cycle_path_excludes_upstream_nodes(self):
        """Jobs that merely depend on the cycle are not part of the path."""
        with pytest.raises(CycleError) as exc_info:
            _graph({"root": [], "x": ["root", "z"], "y": ["x"], "z": ["y"], "tail": ["x"]})
        cycle = exc_info.value.cycle
        assert set(cycle) == {"x", "y", "z"}
        assert len(cycle) == 4

    def test_cycle_is_config_error(self):
        """Cycles map to the configuration exit code."""
        assert issubclass(CycleError, ConfigError)

    def test_long_chain_no_recursion_limit(self):
        """Deep graphs are handled iteratively."""
        edges = {"j0": []}
        for i in range(1, 5000):
            edges[f"j{i}"] = [f"j{i - 1}"]
        graph = _graph(edges)
        order = graph.topological_order()
        assert order[0] == "j0"
        assert order[-1] == "j4999"


# --- Traversal Tests ---

class TestTraversal:
    """Tests for ordering, closure and dependents."""

    def test_topological_order(self):
        graph = _graph({"c": ["b"], "b": ["a"], "a": []})
        assert graph.topological_order() == ["a", "b", "c"]

    def test_closure(self):
        graph = _graph({"a": [], "b": ["a"], "c": ["b"], "d": []})
        assert graph.closure(["c"]) == {"a", "b", "c"}
        assert graph.closure(["d"]) == {"d"}

    def test_closure_unknown(self):
        with pytest.raises(ConfigError):
            _graph({"a": []}).closure(["nope"])

    def test_transitive_dependents(self):
        graph = _graph({"a": [], "b": ["a"], "c": ["b"], "d": ["a", "c"], "e": []})
        assert sorted(graph.transitive_dependents("a")) == ["b", "c", "d"]
        assert graph.transitive_dependents("e") == []

    def test_subgraph(self):
        graph = _graph({"a": [], "b": ["a"], "c": []})
        sub = graph.subgraph(["b"])
        assert set(sub.jobs) == {"a", "b"}
        assert sub.dependents("a") == ["b"]
