"""Opaque executable actions and the job-scoped context they run in.

Every step ultimately runs an ``Action``: something with a single
``execute(context) -> ActionOutcome`` method honouring a
stdin/stdout/exit-code contract.  ``ShellAction`` runs a shell command in
a subprocess; ``CallableAction`` wraps a Python callable.

A ``JobContext`` is created when a job starts and closed when it ends.
It owns the job's temporary directory and its environment map.  Steps
publish values to later steps of the same job by appending ``KEY=VALUE``
lines to the file named by ``$PIPELINE_ENV``.
"""

from __future__ import annotations

import abc
import logging
import os
import shlex
import signal
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Callable

logger = logging.getLogger(__name__)

# Same default as CircleCI's ``run`` steps.
DEFAULT_SHELL = "/bin/bash -eo pipefail"

ENV_FILE_VAR = "PIPELINE_ENV"
TMPDIR_VAR = "PIPELINE_TMPDIR"

# How often a running process is checked for cancellation or timeout.
_POLL_INTERVAL = 0.1
_READ_SIZE = 65536

DEFAULT_GRACE_PERIOD = 10.0


@dataclass
class ActionOutcome:
    """Exit code and captured streams of one action execution."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    cancelled: bool = False
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.cancelled


class JobContext:
    """Mutable state shared by the sequential steps of one job.

    Use as a context manager; the temporary directory is removed on every
    exit path.  ``derive()`` returns a view with extra environment for a
    single worker (e.g. one shard) that shares the parent's directory and
    cancellation flag but not its environment map.
    """

    def __init__(
        self,
        job: str,
        working_directory: Path | None = None,
        environment: dict[str, str] | None = None,
        cancel_event: threading.Event | None = None,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        tmpdir: Path | None = None,
    ) -> None:
        self.job = job
        self.working_directory = working_directory or Path.cwd()
        self.env: dict[str, str] = dict(environment or {})
        self.cancel_event = cancel_event or threading.Event()
        self.grace_period = grace_period
        self._tmp: tempfile.TemporaryDirectory[str] | None = None
        if tmpdir is None:
            self._tmp = tempfile.TemporaryDirectory(prefix=f"ci-{_slug(job)}-")
            tmpdir = Path(self._tmp.name)
        self.tmpdir = tmpdir
        self.env_file = self.tmpdir / "pipeline_env"
        if self._tmp is not None:
            self.env_file.touch()

    def __enter__(self) -> JobContext:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        """Release the job's temporary directory (owning context only)."""
        if self._tmp is not None:
            self._tmp.cleanup()
            self._tmp = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def derive(self, environment: dict[str, str] | None = None) -> JobContext:
        """A non-owning view with additional environment variables."""
        return JobContext(
            job=self.job,
            working_directory=self.working_directory,
            environment={**self.env, **(environment or {})},
            cancel_event=self.cancel_event,
            grace_period=self.grace_period,
            tmpdir=self.tmpdir,
        )

    def scratch_dir(self, name: str) -> Path:
        """Create (if needed) a named subdirectory of the job's tmpdir."""
        path = self.tmpdir / _slug(name)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def process_env(self) -> dict[str, str]:
        """Environment for a child process."""
        env = os.environ.copy()
        env.update(self.env)
        env[ENV_FILE_VAR] = str(self.env_file)
        env[TMPDIR_VAR] = str(self.tmpdir)
        return env

    def absorb_env_file(self) -> dict[str, str]:
        """Fold ``KEY=VALUE`` lines written by a step into the job env.

        Lines may carry a leading ``export``.  The file is truncated so
        each value is applied once.

        Returns:
            The variables that were applied.
        """
        if not self.env_file.exists():
            return {}
        applied: dict[str, str] = {}
        for line in self.env_file.read_text().splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[len("export "):].strip()
            key, sep, value = line.partition("=")
            if not sep or not key:
                continue
            if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
                value = value[1:-1]
            applied[key] = value
        self.env.update(applied)
        self.env_file.write_text("")
        if applied:
            logger.debug("[%s] environment updated: %s", self.job, sorted(applied))
        return applied


class Action(abc.ABC):
    """An opaque executable with an exit-code contract."""

    @abc.abstractmethod
    def execute(self, context: JobContext) -> ActionOutcome:
        """Run the action and return its outcome."""


class ShellAction(Action):
    """Runs a command through a shell in the job's working directory.

    ``timeout`` bounds the total run time.  ``no_output_timeout`` bounds
    the time between two chunks of output on stdout or stderr, so a long
    but chatty command keeps running.  Output is decoded as UTF-8 with
    undecodable bytes replaced.
    """

    def __init__(
        self,
        command: str,
        shell: str = DEFAULT_SHELL,
        timeout: float | None = None,
        stdin: str | None = None,
        no_output_timeout: float | None = None,
    ) -> None:
        self.command = command
        self.shell = shell
        self.timeout = timeout
        self.stdin = stdin
        self.no_output_timeout = no_output_timeout

    def __repr__(self) -> str:
        return f"ShellAction({self.command!r})"

    def argv(self) -> list[str]:
        return shlex.split(self.shell) + ["-c", self.command]

    def execute(self, context: JobContext) -> ActionOutcome:
        argv = self.argv()
        start_time = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(context.working_directory),
                env=context.process_env(),
                stdin=subprocess.PIPE if self.stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError:
            return ActionOutcome(
                exit_code=-1,
                stderr=f"Executable not found: {argv[0]}",
                duration=time.monotonic() - start_time,
            )
        except OSError as e:
            return ActionOutcome(
                exit_code=-1,
                stderr=f"OS error running command: {e}",
                duration=time.monotonic() - start_time,
            )

        output = _OutputCollector(proc, self.stdin)
        deadline = start_time + self.timeout if self.timeout else None
        while True:
            try:
                proc.wait(timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                pass
            now = time.monotonic()
            if context.cancelled:
                _terminate(proc, context.grace_period)
                stdout, stderr = output.finish()
                return ActionOutcome(
                    exit_code=proc.returncode if proc.returncode is not None else -1,
                    stdout=stdout,
                    stderr=stderr + "\nCancelled",
                    duration=time.monotonic() - start_time,
                    cancelled=True,
                )
            if deadline is not None and now > deadline:
                message = f"Command timed out after {self.timeout} seconds"
            elif (
                self.no_output_timeout
                and now - output.last_activity > self.no_output_timeout
            ):
                message = f"Command produced no output for {self.no_output_timeout} seconds"
            else:
                continue
            _terminate(proc, context.grace_period)
            stdout, stderr = output.finish()
            return ActionOutcome(
                exit_code=-1,
                stdout=stdout,
                stderr=stderr + f"\n{message}",
                duration=time.monotonic() - start_time,
                timed_out=True,
            )

        stdout, stderr = output.finish()
        return ActionOutcome(
            exit_code=proc.returncode,
            stdout=stdout,
            stderr=stderr,
            duration=time.monotonic() - start_time,
        )


class _OutputCollector:
    """Drains a process's pipes on background threads.

    ``last_activity`` is the monotonic time of the latest chunk read from
    either stream (or of process start).
    """

    def __init__(self, proc: subprocess.Popen[bytes], stdin: str | None) -> None:
        self.last_activity = time.monotonic()
        self._chunks: dict[str, list[bytes]] = {"stdout": [], "stderr": []}
        self._threads = [
            threading.Thread(target=self._drain, args=(proc.stdout, "stdout"), daemon=True),
            threading.Thread(target=self._drain, args=(proc.stderr, "stderr"), daemon=True),
        ]
        if stdin is not None:
            self._threads.append(
                threading.Thread(target=_feed, args=(proc.stdin, stdin), daemon=True)
            )
        for thread in self._threads:
            thread.start()

    def _drain(self, stream: IO[bytes], key: str) -> None:
        with stream:
            for chunk in iter(lambda: stream.read1(_READ_SIZE), b""):
                self._chunks[key].append(chunk)
                self.last_activity = time.monotonic()

    def finish(self) -> tuple[str, str]:
        """Wait for both streams to close and return the decoded text."""
        for thread in self._threads:
            thread.join()
        return (
            b"".join(self._chunks["stdout"]).decode("utf-8", errors="replace"),
            b"".join(self._chunks["stderr"]).decode("utf-8", errors="replace"),
        )


def _feed(stream: IO[bytes], text: str) -> None:
    try:
        with stream:
            stream.write(text.encode("utf-8"))
    except BrokenPipeError:
        pass


class CallableAction(Action):
    """Wraps ``fn(context)`` returning an ``ActionOutcome``, an int, or None."""

    def __init__(self, fn: Callable[[JobContext], ActionOutcome | int | None]) -> None:
        self.fn = fn

    def execute(self, context: JobContext) -> ActionOutcome:
        start_time = time.monotonic()
        outcome = self.fn(context)
        duration = time.monotonic() - start_time
        if isinstance(outcome, ActionOutcome):
            if not outcome.duration:
                outcome.duration = duration
            return outcome
        return ActionOutcome(exit_code=int(outcome or 0), duration=duration)


def _terminate(proc: subprocess.Popen[bytes], grace_period: float) -> None:
    """SIGTERM the process group, then SIGKILL after the grace period."""
    _signal_group(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=grace_period)
    except subprocess.TimeoutExpired:
        _signal_group(proc, signal.SIGKILL)
        proc.wait()


def _signal_group(proc: subprocess.Popen[bytes], sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


def _slug(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in name) or "job"
