"""Build determinism verification.

Runs one build definition under two environment configurations and
checks that the produced artifacts are byte-identical once each
configuration's ignorable regions (substrings expected to differ, such
as generated file names) are replaced by a shared placeholder.

Normalization and comparison are pure functions over bytes, kept apart
from build execution so each can be used and tested on its own.
"""

from __future__ import annotations

import difflib
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from ci_orchestrator.errors import BuildFailure, ConfigError, DeterminismViolation
from ci_orchestrator.execution.actions import (
    DEFAULT_SHELL,
    ActionOutcome,
    JobContext,
    ShellAction,
)
from ci_orchestrator.reporting.reporter import tail

logger = logging.getLogger(__name__)

DEFAULT_PLACEHOLDER = "<ignored>"

# Upper bound on unified diff lines carried in a violation.
MAX_DIFF_LINES = 200

_CHUNK = 4096


@dataclass
class BuildArtifact:
    """Artifact bytes plus the regions allowed to differ."""

    data: bytes
    ignorable: tuple[str, ...] = ()
    label: str = ""

    def normalized(self, placeholder: str = DEFAULT_PLACEHOLDER) -> bytes:
        return normalize(self.data, self.ignorable, placeholder)


@dataclass
class LineRange:
    """1-based, inclusive line span; empty when ``count`` is 0."""

    start: int
    count: int

    def to_dict(self) -> dict[str, int]:
        return {"start": self.start, "count": self.count}


@dataclass
class DiffHunk:
    tag: str  # replace, delete, insert
    a: LineRange
    b: LineRange

    def to_dict(self) -> dict[str, Any]:
        return {"tag": self.tag, "a": self.a.to_dict(), "b": self.b.to_dict()}


@dataclass
class ArtifactDiff:
    """Where two normalized artifacts diverge."""

    label_a: str = "a"
    label_b: str = "b"
    first_offset: int | None = None
    size_a: int = 0
    size_b: int = 0
    hunks: list[DiffHunk] = field(default_factory=list)
    unified: str = ""

    @property
    def identical(self) -> bool:
        return self.first_offset is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "a": self.label_a,
            "b": self.label_b,
            "first_offset": self.first_offset,
            "size_a": self.size_a,
            "size_b": self.size_b,
            "hunks": [h.to_dict() for h in self.hunks],
            "unified": self.unified,
        }


def normalize(
    data: bytes,
    regions: Iterable[str | bytes],
    placeholder: str | bytes = DEFAULT_PLACEHOLDER,
) -> bytes:
    """Replace every occurrence of every region with ``placeholder``.

    Regions are matched literally in a single pass, longest first, so a
    region that contains another is replaced whole.
    """
    encoded = {r.encode() if isinstance(r, str) else r for r in regions}
    encoded.discard(b"")
    if not encoded:
        return data
    if isinstance(placeholder, str):
        placeholder = placeholder.encode()
    pattern = re.compile(
        b"|".join(re.escape(r) for r in sorted(encoded, key=lambda r: (-len(r), r)))
    )
    return pattern.sub(lambda _m: placeholder, data)


def first_difference(a: bytes, b: bytes) -> int | None:
    """Offset of the first differing byte, or None if equal."""
    if a == b:
        return None
    limit = min(len(a), len(b))
    offset = 0
    while offset < limit:
        end = min(offset + _CHUNK, limit)
        if a[offset:end] != b[offset:end]:
            for i in range(offset, end):
                if a[i] != b[i]:
                    return i
        offset = end
    return limit


def compare_artifacts(
    a: bytes,
    b: bytes,
    label_a: str = "a",
    label_b: str = "b",
    context_lines: int = 3,
    max_diff_lines: int = MAX_DIFF_LINES,
) -> ArtifactDiff:
    """Compare two byte sequences and describe where they diverge."""
    diff = ArtifactDiff(label_a=label_a, label_b=label_b, size_a=len(a), size_b=len(b))
    diff.first_offset = first_difference(a, b)
    if diff.first_offset is None:
        return diff

    a_lines = a.splitlines(keepends=True)
    b_lines = b.splitlines(keepends=True)
    matcher = difflib.SequenceMatcher(None, a_lines, b_lines, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            continue
        diff.hunks.append(DiffHunk(
            tag=tag,
            a=LineRange(start=i1 + 1, count=i2 - i1),
            b=LineRange(start=j1 + 1, count=j2 - j1),
        ))

    lines = list(difflib.diff_bytes(
        difflib.unified_diff,
        a_lines,
        b_lines,
        fromfile=label_a.encode(),
        tofile=label_b.encode(),
        n=context_lines,
    ))
    if len(lines) > max_diff_lines:
        omitted = len(lines) - max_diff_lines
        lines = lines[:max_diff_lines] + [f"... {omitted} more diff lines\n".encode()]
    diff.unified = b"".join(
        line if line.endswith(b"\n") else line + b"\n" for line in lines
    ).decode("utf-8", errors="replace")
    return diff


def verify_artifacts(
    first: BuildArtifact,
    second: BuildArtifact,
    placeholder: str = DEFAULT_PLACEHOLDER,
    context_lines: int = 3,
) -> ArtifactDiff:
    """Normalize both artifacts and require them to be identical.

    Raises:
        DeterminismViolation: If the normalized bytes differ.
    """
    diff = compare_artifacts(
        first.normalized(placeholder),
        second.normalized(placeholder),
        label_a=first.label or "a",
        label_b=second.label or "b",
        context_lines=context_lines,
    )
    if not diff.identical:
        raise DeterminismViolation(
            f"Artifacts from '{diff.label_a}' and '{diff.label_b}' differ "
            f"at byte {diff.first_offset} ({len(diff.hunks)} divergent hunk(s))",
            diff=diff,
        )
    return diff


@dataclass
class BuildConfiguration:
    """One environment a build is run under."""

    name: str
    environment: dict[str, str] = field(default_factory=dict)
    ignore: list[str] = field(default_factory=list)
    command: str | None = None
    artifact: str | None = None


@dataclass
class VerificationResult:
    diff: ArtifactDiff
    outcomes: dict[str, ActionOutcome]


class DeterminismVerifier:
    """Builds twice under two configurations and diffs the artifacts.

    The build command writes its artifact to ``$ARTIFACT``, which points
    into a scratch directory private to each configuration unless the
    configuration names its own artifact path (relative paths resolve
    against the job's working directory).
    """

    def __init__(
        self,
        command: str,
        configurations: list[BuildConfiguration],
        artifact: str = "artifact",
        shell: str = DEFAULT_SHELL,
        timeout: float | None = None,
        no_output_timeout: float | None = None,
        placeholder: str = DEFAULT_PLACEHOLDER,
        context_lines: int = 3,
    ) -> None:
        if len(configurations) != 2:
            raise ConfigError(
                f"Determinism check needs exactly two configurations, got {len(configurations)}"
            )
        if configurations[0].name == configurations[1].name:
            raise ConfigError(
                f"Determinism configurations must be distinct, both are '{configurations[0].name}'"
            )
        self.command = command
        self.configurations = configurations
        self.artifact = artifact
        self.shell = shell
        self.timeout = timeout
        self.no_output_timeout = no_output_timeout
        self.placeholder = placeholder
        self.context_lines = context_lines

    def _artifact_path(self, config: BuildConfiguration, context: JobContext) -> Path:
        if config.artifact:
            path = Path(config.artifact).expanduser()
            if not path.is_absolute():
                path = context.working_directory / path
            return path
        return context.scratch_dir(f"determinism-{config.name}") / self.artifact

    def build(
        self, config: BuildConfiguration, context: JobContext,
    ) -> tuple[BuildArtifact, ActionOutcome]:
        """Run the build under one configuration and read its artifact.

        Raises:
            BuildFailure: If the build exits nonzero or leaves no artifact.
        """
        artifact_path = self._artifact_path(config, context)
        env = {
            **config.environment,
            "ARTIFACT": str(artifact_path),
            "BUILD_CONFIGURATION": config.name,
        }
        action = ShellAction(
            config.command or self.command,
            shell=self.shell,
            timeout=self.timeout,
            no_output_timeout=self.no_output_timeout,
        )
        logger.info("[%s] building under configuration '%s'", context.job, config.name)
        outcome = action.execute(context.derive(env))

        if not outcome.succeeded:
            raise BuildFailure(
                f"Build under configuration '{config.name}' exited {outcome.exit_code}",
                details={
                    "configuration": config.name,
                    "exit_code": outcome.exit_code,
                    "stderr": tail(outcome.stderr),
                },
            )
        try:
            data = artifact_path.read_bytes()
        except OSError as e:
            raise BuildFailure(
                f"Build under configuration '{config.name}' produced no artifact at {artifact_path}",
                details={"configuration": config.name, "error": str(e)},
            ) from e

        return BuildArtifact(data=data, ignorable=tuple(config.ignore), label=config.name), outcome

    def verify(self, context: JobContext) -> VerificationResult:
        """Build under both configurations, then compare.

        Raises:
            BuildFailure: If either build fails; no comparison is made.
            DeterminismViolation: If the normalized artifacts differ.
        """
        outcomes: dict[str, ActionOutcome] = {}
        artifacts: list[BuildArtifact] = []
        for config in self.configurations:
            artifact, outcome = self.build(config, context)
            artifacts.append(artifact)
            outcomes[config.name] = outcome

        diff = verify_artifacts(
            artifacts[0], artifacts[1], self.placeholder, self.context_lines,
        )
        logger.info(
            "[%s] artifacts from '%s' and '%s' are identical (%d bytes)",
            context.job, diff.label_a, diff.label_b, diff.size_a,
        )
        return VerificationResult(diff=diff, outcomes=outcomes)
