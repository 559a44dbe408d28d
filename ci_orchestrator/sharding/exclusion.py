"""Exclusion filter for known-incompatible test identifiers.

The denylist file holds one identifier per line and is matched exactly,
the same way ``grep -v -x -f <file>`` treats it.  Blank lines and ``#``
comments are ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from ci_orchestrator.errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class FilterResult:
    """Identifiers that survived filtering, plus what was removed."""

    kept: list[str]
    removed: list[str] = field(default_factory=list)

    @property
    def removed_count(self) -> int:
        return len(self.removed)


class ExclusionFilter:
    """Removes denylisted identifiers from a candidate list."""

    def __init__(self, denylist: Iterable[str] = ()) -> None:
        self.denylist: frozenset[str] = frozenset(
            entry.strip() for entry in denylist if entry.strip()
        )

    @classmethod
    def from_file(cls, path: Path) -> ExclusionFilter:
        """Load a denylist file.

        Raises:
            ConfigError: If the file cannot be read.
        """
        try:
            text = path.read_text()
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(
                f"Cannot load exclusion list {path}: {e}",
                details={"path": str(path)},
            ) from e

        entries = []
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            entries.append(line)

        logger.debug("Loaded %d exclusions from %s", len(entries), path)
        return cls(entries)

    def apply(self, candidates: Iterable[str]) -> FilterResult:
        """Drop every candidate that appears in the denylist.

        Order of the kept identifiers is preserved.
        """
        kept: list[str] = []
        removed: list[str] = []
        for identifier in candidates:
            if identifier in self.denylist:
                removed.append(identifier)
            else:
                kept.append(identifier)

        if removed:
            logger.info("Excluded %d of %d candidates", len(removed), len(kept) + len(removed))
        return FilterResult(kept=kept, removed=removed)
