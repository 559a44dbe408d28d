"""Timing-balanced test partitioning.

Splits an ordered identifier list into N shards with the greedy
longest-processing-time heuristic: identifiers are sorted by descending
weight and each one goes to the shard with the least accumulated weight.

Given the same identifiers (in the same order), the same timing snapshot,
and the same N, the assignment is always identical.  Ties are broken by
input position for items and by shard index for shards.

The heaviest shard never exceeds ``total / N + heaviest_item``.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from typing import Iterable

from ci_orchestrator.errors import ConfigError, PartitionImbalance
from ci_orchestrator.sharding.timings import TimingTable

logger = logging.getLogger(__name__)

# Advisory skew of the heaviest shard over the mean before warning.
DEFAULT_IMBALANCE_THRESHOLD = 0.25


@dataclass
class Shard:
    """One partition of the identifier set, run by a single worker."""

    index: int
    total: int
    tests: list[str] = field(default_factory=list)
    weight: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.tests


@dataclass
class PartitionPlan:
    """All shards for one test step, plus balance diagnostics."""

    shards: list[Shard]
    total_weight: float
    max_item_weight: float

    @property
    def shard_count(self) -> int:
        return len(self.shards)

    @property
    def max_shard_weight(self) -> float:
        return max((s.weight for s in self.shards), default=0.0)

    @property
    def mean_shard_weight(self) -> float:
        if not self.shards:
            return 0.0
        return self.total_weight / len(self.shards)

    @property
    def balance_bound(self) -> float:
        """Upper bound on any shard's weight guaranteed by greedy LPT."""
        return self.mean_shard_weight + self.max_item_weight

    def assignment(self) -> dict[str, int]:
        """Map each identifier to its shard index."""
        return {test: shard.index for shard in self.shards for test in shard.tests}

    def imbalance(
        self, threshold: float = DEFAULT_IMBALANCE_THRESHOLD,
    ) -> PartitionImbalance | None:
        """Return an advisory warning when skew exceeds the threshold.

        Only shards that received work count toward the mean, since
        empty excess shards are expected whenever N exceeds the number
        of identifiers.
        """
        loaded = [s.weight for s in self.shards if not s.is_empty]
        if len(loaded) < 2:
            return None
        mean = sum(loaded) / len(loaded)
        if mean <= 0:
            return None
        heaviest = max(loaded)
        if (heaviest - mean) / mean > threshold:
            return PartitionImbalance(heaviest, mean, threshold)
        return None


def dedupe(identifiers: Iterable[str]) -> list[str]:
    """Drop repeated identifiers, keeping the first occurrence."""
    seen: set[str] = set()
    result: list[str] = []
    for identifier in identifiers:
        if identifier not in seen:
            seen.add(identifier)
            result.append(identifier)
    return result


def partition(
    identifiers: Iterable[str],
    timings: TimingTable,
    shard_count: int,
) -> PartitionPlan:
    """Assign each identifier to exactly one of ``shard_count`` shards.

    Args:
        identifiers: Ordered test identifiers.  Duplicates are dropped.
        timings: Timing snapshot; unknown identifiers get its fallback
            weight.
        shard_count: Number of shards (N >= 1).  Shards beyond the number
            of identifiers come back empty.

    Returns:
        A ``PartitionPlan`` with shards in index order.  Within a shard,
        identifiers keep their original relative order.

    Raises:
        ConfigError: If ``shard_count`` is less than 1.
    """
    if shard_count < 1:
        raise ConfigError(f"Shard count must be >= 1, got {shard_count}")

    ordered = dedupe(identifiers)
    position = {identifier: i for i, identifier in enumerate(ordered)}
    weights = {identifier: timings.weight(identifier) for identifier in ordered}

    # sorted() is stable, so equal weights keep input order.
    by_weight = sorted(ordered, key=lambda ident: -weights[ident])

    shards = [Shard(index=i, total=shard_count) for i in range(shard_count)]
    heap: list[tuple[float, int]] = [(0.0, i) for i in range(shard_count)]
    heapq.heapify(heap)

    for identifier in by_weight:
        load, index = heapq.heappop(heap)
        shard = shards[index]
        shard.tests.append(identifier)
        shard.weight = load + weights[identifier]
        heapq.heappush(heap, (shard.weight, index))

    for shard in shards:
        shard.tests.sort(key=position.__getitem__)

    plan = PartitionPlan(
        shards=shards,
        total_weight=sum(weights.values()),
        max_item_weight=max(weights.values(), default=0.0),
    )
    logger.debug(
        "Partitioned %d identifiers into %d shards (max %.2f, bound %.2f)",
        len(ordered), shard_count, plan.max_shard_weight, plan.balance_bound,
    )
    return plan
