"""Unit tests for the exclusion filter."""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from ci_orchestrator.errors import ConfigError
from ci_orchestrator.sharding.exclusion import ExclusionFilter


class TestApply:
    """Tests for ExclusionFilter.apply()."""

    def test_removes_exact_matches_only(self):
        """Entries are matched as whole identifiers, not prefixes."""
        exclusions = ExclusionFilter(["net/http", "os/exec"])
        result = exclusions.apply(["net", "net/http", "net/http/httptest", "os/exec"])
        assert result.kept == ["net", "net/http/httptest"]
        assert result.removed == ["net/http", "os/exec"]
        assert result.removed_count == 2

    def test_preserves_order(self):
        """Kept identifiers keep their input order."""
        exclusions = ExclusionFilter(["b"])
        result = exclusions.apply(["d", "b", "a", "c"])
        assert result.kept == ["d", "a", "c"]

    def test_no_matches_is_not_an_error(self):
        """A denylist that matches nothing leaves the input unchanged."""
        exclusions = ExclusionFilter(["missing"])
        result = exclusions.apply(["a", "b"])
        assert result.kept == ["a", "b"]
        assert result.removed_count == 0

    def test_empty_denylist(self):
        """An empty denylist removes nothing."""
        result = ExclusionFilter().apply(["a"])
        assert result.kept == ["a"]

    def test_removes_every_occurrence(self):
        """Repeated denylisted identifiers are all removed."""
        result = ExclusionFilter(["x"]).apply(["x", "a", "x"])
        assert result.kept == ["a"]
        assert result.removed_count == 2


class TestFromFile:
    """Tests for loading denylist files."""

    def test_skips_blank_lines_and_comments(self):
        """Blank lines and # comments are ignored, whitespace stripped."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / ".std_test_pkg_exclusions"
            path.write_text("# flaky under js\nnet/http\n\n  os/exec  \n")
            exclusions = ExclusionFilter.from_file(path)
            assert exclusions.denylist == frozenset({"net/http", "os/exec"})

    def test_unreadable_file_raises_config_error(self):
        """A missing denylist file is a configuration error."""
        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(ConfigError, match="Cannot load exclusion list"):
                ExclusionFilter.from_file(Path(tmpdir) / "missing")

    def test_directory_raises_config_error(self):
        """A path that is not a regular file cannot be read."""
        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(ConfigError):
                ExclusionFilter.from_file(Path(tmpdir))
