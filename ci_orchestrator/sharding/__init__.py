"""Test selection and sharding: exclusion lists, timings, and partitioning."""

from ci_orchestrator.sharding.exclusion import ExclusionFilter, FilterResult
from ci_orchestrator.sharding.partitioner import PartitionPlan, Shard, dedupe, partition
from ci_orchestrator.sharding.timings import DEFAULT_FALLBACK_WEIGHT, TimingTable

__all__ = [
    "DEFAULT_FALLBACK_WEIGHT",
    "ExclusionFilter",
    "FilterResult",
    "PartitionPlan",
    "Shard",
    "TimingTable",
    "dedupe",
    "partition",
]
