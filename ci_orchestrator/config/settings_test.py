"""Unit tests for the settings module."""

from __future__ import annotations

import json
import tempfile
from pathlib import Path

import pytest

from ci_orchestrator.config.settings import DEFAULT_SETTINGS, PipelineSettings


class TestPipelineSettingsCreate:
    """Tests for creating PipelineSettings instances."""

    def test_no_path_uses_defaults(self):
        """No path gives default settings values."""
        settings = PipelineSettings(None)
        assert settings.max_parallel is None
        assert settings.fallback_weight == DEFAULT_SETTINGS["fallback_weight"]
        assert settings.imbalance_threshold == 0.25
        assert settings.grace_period == 10.0
        assert settings.step_timeout is None
        assert settings.report_dir == Path("test-reports")
        assert settings.placeholder == "<ignored>"
        assert settings.diff_context_lines == 3

    def test_nonexistent_path_uses_defaults(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            settings = PipelineSettings(Path(tmpdir) / "missing.json")
            assert settings.settings == DEFAULT_SETTINGS

    def test_partial_file_fills_defaults(self):
        """Missing keys in the file are filled from defaults."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / ".pipeline_config"
            path.write_text(json.dumps({"max_parallel": 3, "step_timeout": 600}))
            settings = PipelineSettings(path)
            assert settings.max_parallel == 3
            assert settings.step_timeout == 600.0
            assert settings.grace_period == 10.0  # default

    def test_corrupted_file_uses_defaults(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / ".pipeline_config"
            path.write_text("{ invalid json }")
            settings = PipelineSettings(path)
            assert settings.settings == DEFAULT_SETTINGS


class TestPipelineSettingsSave:
    """Tests for saving and updating settings."""

    def test_save_round_trip(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "nested" / ".pipeline_config"
            settings = PipelineSettings(path)
            settings.set_settings(fallback_weight=2.5, report_dir="out")
            settings.save()

            reloaded = PipelineSettings(path)
            assert reloaded.fallback_weight == 2.5
            assert reloaded.report_dir == Path("out")

    def test_save_without_path(self):
        with pytest.raises(ValueError):
            PipelineSettings(None).save()

    def test_none_values_ignored(self):
        settings = PipelineSettings(None)
        settings.set_settings(grace_period=None, max_parallel=2)
        assert settings.grace_period == 10.0
        assert settings.max_parallel == 2

    def test_unknown_key(self):
        with pytest.raises(KeyError):
            PipelineSettings(None).set_settings(colour="blue")
