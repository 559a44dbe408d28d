"""Historical timing snapshots used to weight test identifiers.

A snapshot is a JSON document::

    {"version": 3, "timings": {"fmt": 1.25, "math/big": 48.0}}

A bare ``{identifier: seconds}`` mapping is also accepted.  Snapshots can
be rebuilt from JUnit XML reports, summing testcase durations per
classname the way ``--timings-type=classname`` splitting does.
"""

from __future__ import annotations

import json
import logging
import xml.etree.ElementTree as ET
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from ci_orchestrator.errors import ConfigError

logger = logging.getLogger(__name__)

# Weight given to identifiers that have no recorded timing.
DEFAULT_FALLBACK_WEIGHT = 1.0


class TimingTable:
    """Read-only mapping of identifier to last-observed duration."""

    def __init__(
        self,
        timings: Mapping[str, float] | None = None,
        fallback_weight: float = DEFAULT_FALLBACK_WEIGHT,
        version: int = 0,
    ) -> None:
        if fallback_weight < 0:
            raise ConfigError(f"fallback_weight must be >= 0, got {fallback_weight}")
        self._timings: dict[str, float] = {
            str(k): float(v) for k, v in (timings or {}).items()
        }
        self.fallback_weight = float(fallback_weight)
        self.version = version

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._timings

    def __len__(self) -> int:
        return len(self._timings)

    def weight(self, identifier: str) -> float:
        """Duration for an identifier, or the fallback weight when unknown."""
        return self._timings.get(identifier, self.fallback_weight)

    def as_dict(self) -> dict[str, float]:
        return dict(self._timings)

    def with_fallback(self, fallback_weight: float) -> TimingTable:
        """Copy of this snapshot with a different fallback weight."""
        return TimingTable(self._timings, fallback_weight, self.version)

    @classmethod
    def load(
        cls, path: Path, fallback_weight: float = DEFAULT_FALLBACK_WEIGHT,
    ) -> TimingTable:
        """Load a timing snapshot.

        A missing file yields an empty table: every identifier then gets
        the fallback weight.

        Raises:
            ConfigError: If the file exists but is not a valid snapshot.
        """
        if not path.exists():
            logger.info("No timing snapshot at %s; using fallback weights", path)
            return cls(fallback_weight=fallback_weight)

        try:
            data = json.loads(path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            raise ConfigError(f"Invalid timing snapshot {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Timing snapshot {path} must be a JSON object")

        version = 0
        timings: Any = data
        if "timings" in data and isinstance(data["timings"], dict):
            timings = data["timings"]
            version = int(data.get("version", 0))

        try:
            parsed = {str(k): float(v) for k, v in timings.items()}
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Non-numeric duration in {path}: {e}") from e

        return cls(parsed, fallback_weight=fallback_weight, version=version)

    def save(self, path: Path) -> None:
        """Write this snapshot as JSON."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(
                {"version": self.version, "timings": self._timings},
                f,
                indent=2,
                sort_keys=True,
            )
            f.write("\n")

    def updated(self, observed: Mapping[str, float]) -> TimingTable:
        """New snapshot with observed durations overriding old ones.

        The version is bumped so stale caches can be told apart.
        """
        merged = dict(self._timings)
        merged.update({k: float(v) for k, v in observed.items()})
        return TimingTable(merged, self.fallback_weight, self.version + 1)

    @classmethod
    def from_junit(
        cls,
        paths: Iterable[Path],
        fallback_weight: float = DEFAULT_FALLBACK_WEIGHT,
    ) -> TimingTable:
        """Sum testcase durations per classname across JUnit XML files.

        Raises:
            ConfigError: If a report cannot be parsed.
        """
        totals: dict[str, float] = {}
        for path in paths:
            try:
                root = ET.parse(path).getroot()
            except (ET.ParseError, OSError) as e:
                raise ConfigError(f"Cannot read JUnit report {path}: {e}") from e
            for case in root.iter("testcase"):
                classname = case.get("classname") or case.get("name") or ""
                if not classname:
                    continue
                try:
                    duration = float(case.get("time") or 0.0)
                except ValueError:
                    duration = 0.0
                totals[classname] = totals.get(classname, 0.0) + duration
        return cls(totals, fallback_weight=fallback_weight)
