"""Pipeline settings file management.

Reads and writes the ``.pipeline_config`` JSON file that holds execution
tuning parameters (concurrency, sharding fallback weight, cancellation
grace period, report location), separate from the pipeline definition.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

# Default configuration values
DEFAULT_SETTINGS: dict[str, Any] = {
    "max_parallel": None,
    "fallback_weight": 1.0,
    "imbalance_threshold": 0.25,
    "grace_period": 10.0,
    "step_timeout": None,
    "report_dir": "test-reports",
    "placeholder": "<ignored>",
    "diff_context_lines": 3,
}

DEFAULT_SETTINGS_FILE = Path(".pipeline_config")


class PipelineSettings:
    """Manages the .pipeline_config JSON settings file."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._data: dict[str, Any] = dict(DEFAULT_SETTINGS)
        if path is not None and path.exists():
            self._load()

    def _load(self) -> None:
        """Load settings from the file."""
        assert self.path is not None
        try:
            text = self.path.read_text()
            data = json.loads(text)
            if isinstance(data, dict):
                self._data = {**DEFAULT_SETTINGS, **data}
        except (json.JSONDecodeError, OSError):
            self._data = dict(DEFAULT_SETTINGS)

    def save(self) -> None:
        """Write settings to the file."""
        if self.path is None:
            raise ValueError("No settings file path specified")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(self._data, f, indent=2)
            f.write("\n")

    @property
    def settings(self) -> dict[str, Any]:
        """Get the full settings dict."""
        return dict(self._data)

    @property
    def max_parallel(self) -> int | None:
        """Max concurrently running jobs (None = CPU count)."""
        val = self._data.get("max_parallel", DEFAULT_SETTINGS["max_parallel"])
        return int(val) if val is not None else None

    @property
    def fallback_weight(self) -> float:
        """Weight for test identifiers missing from the timing snapshot."""
        return float(
            self._data.get("fallback_weight", DEFAULT_SETTINGS["fallback_weight"])
        )

    @property
    def imbalance_threshold(self) -> float:
        """Advisory shard skew above which a warning is recorded."""
        return float(
            self._data.get(
                "imbalance_threshold", DEFAULT_SETTINGS["imbalance_threshold"],
            )
        )

    @property
    def grace_period(self) -> float:
        """Seconds in-flight jobs get to flush after cancellation."""
        return float(
            self._data.get("grace_period", DEFAULT_SETTINGS["grace_period"])
        )

    @property
    def step_timeout(self) -> float | None:
        """Default per-step timeout in seconds (None = unlimited)."""
        val = self._data.get("step_timeout", DEFAULT_SETTINGS["step_timeout"])
        return float(val) if val is not None else None

    @property
    def report_dir(self) -> Path:
        """Directory report artifacts are written to."""
        return Path(self._data.get("report_dir", DEFAULT_SETTINGS["report_dir"]))

    @property
    def placeholder(self) -> str:
        """Token substituted for ignorable regions in determinism checks."""
        return str(self._data.get("placeholder", DEFAULT_SETTINGS["placeholder"]))

    @property
    def diff_context_lines(self) -> int:
        """Context lines in determinism diffs."""
        return int(
            self._data.get(
                "diff_context_lines", DEFAULT_SETTINGS["diff_context_lines"],
            )
        )

    def set_settings(self, **overrides: Any) -> None:
        """Update settings values; ``None`` values are ignored."""
        for key, value in overrides.items():
            if key not in DEFAULT_SETTINGS:
                raise KeyError(f"Unknown setting: {key}")
            if value is not None:
                self._data[key] = value
