"""Pipeline definition loader.

Reads a CircleCI-shaped YAML file and constructs a ``JobGraph`` for one
run::

    parameters:
      go_version:
        type: string
        default: "1.17.3"
    executors:
      default:
        working_directory: .
        environment: {GO111MODULE: "on"}
        shell: /bin/bash -eo pipefail
    commands:
      install:
        steps:
          - run: go install -v
    jobs:
      build:
        executor: default
        steps:
          - install
          - run:
              name: Unit tests
              command: go test -v ./...
      package_tests:
        executor: default
        parallelism: 4
        requires: [build]
        steps:
          - test:
              list: go list ./...
              exclusions: .test_exclusions
              command: go test -v $SHARD_TESTS
              no_output_timeout: 1h
    workflows:
      build_and_test:
        jobs:
          - build
          - package_tests:
              requires: [build]

``<< pipeline.parameters.NAME >>`` references are substituted in every
step string when the run is constructed.  Everything the run needs
from disk (denylist files included) is read during construction, so
configuration errors surface before any job starts.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from ci_orchestrator.config.settings import PipelineSettings
from ci_orchestrator.errors import ConfigError
from ci_orchestrator.execution.actions import DEFAULT_SHELL, ShellAction
from ci_orchestrator.execution.dag import Job, JobGraph
from ci_orchestrator.execution.steps import (
    KIND_RUN,
    KIND_SETUP,
    CommandStep,
    DeterminismStep,
    Step,
    TestStep,
)
from ci_orchestrator.sharding.exclusion import ExclusionFilter
from ci_orchestrator.verification.determinism import (
    BuildConfiguration,
    DeterminismVerifier,
)

logger = logging.getLogger(__name__)

PARAM_STRING = "string"
PARAM_INTEGER = "integer"
PARAM_BOOLEAN = "boolean"
PARAM_ENUM = "enum"
PARAM_TYPES = frozenset({PARAM_STRING, PARAM_INTEGER, PARAM_BOOLEAN, PARAM_ENUM})

_PARAM_REF_RE = re.compile(r"<<\s*pipeline\.parameters\.([A-Za-z_][\w-]*)\s*>>")
_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([smh]?)$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}

_TRUE_STRINGS = frozenset({"true", "yes", "on", "1"})
_FALSE_STRINGS = frozenset({"false", "no", "off", "0"})

# Keys that are not workflow names under ``workflows``.
_WORKFLOW_META_KEYS = frozenset({"version"})

# Step names longer than this are derived from a truncated command.
_MAX_DERIVED_NAME = 60


@dataclass
class Parameter:
    """A typed pipeline parameter."""

    name: str
    type: str = PARAM_STRING
    default: Any = None
    enum: list[str] = field(default_factory=list)
    description: str = ""

    def coerce(self, value: Any) -> Any:
        """Convert ``value`` to this parameter's type.

        Strings (as given on the command line) are parsed; other values
        must already have the declared type.

        Raises:
            ConfigError: If the value does not fit the type.
        """
        if self.type == PARAM_INTEGER:
            if isinstance(value, bool):
                raise self._type_error(value)
            if isinstance(value, int):
                return value
            if isinstance(value, str):
                try:
                    return int(value.strip())
                except ValueError:
                    raise self._type_error(value) from None
            raise self._type_error(value)
        if self.type == PARAM_BOOLEAN:
            if isinstance(value, bool):
                return value
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in _TRUE_STRINGS:
                    return True
                if lowered in _FALSE_STRINGS:
                    return False
            raise self._type_error(value)
        if not isinstance(value, str):
            raise self._type_error(value)
        if self.type == PARAM_ENUM and value not in self.enum:
            raise ConfigError(
                f"Parameter '{self.name}' must be one of {self.enum}, got {value!r}"
            )
        return value

    def _type_error(self, value: Any) -> ConfigError:
        return ConfigError(
            f"Parameter '{self.name}' expects a {self.type}, got {value!r}"
        )


@dataclass
class Executor:
    """Shared execution context for jobs."""

    name: str
    working_directory: Path | None = None
    environment: dict[str, str] = field(default_factory=dict)
    shell: str = DEFAULT_SHELL


def parse_duration(value: Any) -> float | None:
    """Parse ``"1h"``, ``"10m"``, ``"30s"`` or a number of seconds.

    Raises:
        ConfigError: If the value is not a duration.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value).strip())
    if not match:
        raise ConfigError(f"Invalid duration: {value!r}")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


def substitute(value: Any, parameters: Mapping[str, Any]) -> Any:
    """Replace parameter references in every string inside ``value``.

    Raises:
        ConfigError: If a referenced parameter does not exist.
    """
    if isinstance(value, str):
        # A value that is exactly one non-boolean reference keeps the
        # parameter's type; booleans always render as true/false.
        whole = _PARAM_REF_RE.fullmatch(value.strip())
        if whole and whole.group(1) in parameters:
            resolved = parameters[whole.group(1)]
            if not isinstance(resolved, bool):
                return resolved

        def replace(match: re.Match[str]) -> str:
            name = match.group(1)
            if name not in parameters:
                raise ConfigError(f"Unknown pipeline parameter: {name}")
            return _env_value(parameters[name])

        return _PARAM_REF_RE.sub(replace, value)
    if isinstance(value, list):
        return [substitute(item, parameters) for item in value]
    if isinstance(value, dict):
        return {key: substitute(item, parameters) for key, item in value.items()}
    return value


class Pipeline:
    """A parsed pipeline definition.

    Args:
        data: The YAML document as a mapping.
        base_dir: Directory relative paths resolve against (the
            pipeline file's directory).
    """

    def __init__(self, data: Any, base_dir: Path | None = None) -> None:
        if not isinstance(data, dict):
            raise ConfigError("Pipeline definition must be a mapping")
        self.base_dir = base_dir or Path.cwd()
        self.parameters = self._parse_parameters(data.get("parameters") or {})
        self.executors = self._parse_executors(data.get("executors") or {})
        self.commands = self._parse_commands(data.get("commands") or {})
        self.jobs = self._parse_jobs(data.get("jobs") or {})
        self.workflows = self._parse_workflows(data.get("workflows") or {})

    @classmethod
    def load(cls, path: Path) -> Pipeline:
        """Load a pipeline file.

        Raises:
            ConfigError: If the file cannot be read or is not valid YAML.
        """
        try:
            text = path.read_text()
        except OSError as e:
            raise ConfigError(f"Cannot read pipeline {path}: {e}") from e
        return cls.from_string(text, path.resolve().parent)

    @classmethod
    def from_string(cls, text: str, base_dir: Path | None = None) -> Pipeline:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid pipeline YAML: {e}") from e
        return cls(data, base_dir)

    # -- top-level sections --------------------------------------------------

    def _parse_parameters(self, raw: Any) -> dict[str, Parameter]:
        if not isinstance(raw, dict):
            raise ConfigError("'parameters' must be a mapping")
        parameters: dict[str, Parameter] = {}
        for name, spec in raw.items():
            if not isinstance(spec, dict):
                raise ConfigError(f"Parameter '{name}' must be a mapping")
            param_type = spec.get("type", PARAM_STRING)
            if param_type not in PARAM_TYPES:
                raise ConfigError(
                    f"Parameter '{name}' has unknown type '{param_type}'. "
                    f"Valid types: {sorted(PARAM_TYPES)}"
                )
            param = Parameter(
                name=name,
                type=param_type,
                enum=[str(v) for v in spec.get("enum") or []],
                description=str(spec.get("description", "")),
            )
            if param_type == PARAM_ENUM and not param.enum:
                raise ConfigError(f"Enum parameter '{name}' needs an 'enum' list")
            if "default" in spec:
                param.default = param.coerce(spec["default"])
            parameters[name] = param
        return parameters

    def _parse_executors(self, raw: Any) -> dict[str, Executor]:
        if not isinstance(raw, dict):
            raise ConfigError("'executors' must be a mapping")
        executors: dict[str, Executor] = {}
        for name, spec in raw.items():
            spec = spec or {}
            if not isinstance(spec, dict):
                raise ConfigError(f"Executor '{name}' must be a mapping")
            workdir = spec.get("working_directory")
            executors[name] = Executor(
                name=name,
                working_directory=self._resolve_path(workdir) if workdir else None,
                environment=_environment(spec.get("environment"), f"executor '{name}'"),
                shell=str(spec.get("shell", DEFAULT_SHELL)),
            )
        return executors

    def _parse_commands(self, raw: Any) -> dict[str, list[Any]]:
        if not isinstance(raw, dict):
            raise ConfigError("'commands' must be a mapping")
        commands: dict[str, list[Any]] = {}
        for name, spec in raw.items():
            steps = spec.get("steps") if isinstance(spec, dict) else None
            if not isinstance(steps, list):
                raise ConfigError(f"Command '{name}' needs a 'steps' list")
            commands[name] = steps
        return commands

    def _parse_jobs(self, raw: Any) -> dict[str, dict[str, Any]]:
        if not isinstance(raw, dict):
            raise ConfigError("'jobs' must be a mapping")
        jobs: dict[str, dict[str, Any]] = {}
        for name, spec in raw.items():
            if not isinstance(spec, dict):
                raise ConfigError(f"Job '{name}' must be a mapping")
            if not isinstance(spec.get("steps"), list):
                raise ConfigError(f"Job '{name}' needs a 'steps' list")
            executor = spec.get("executor")
            if executor is not None and executor not in self.executors:
                raise ConfigError(f"Job '{name}' uses unknown executor '{executor}'")
            jobs[name] = spec
        return jobs

    def _parse_workflows(self, raw: Any) -> dict[str, list[tuple[str, list[str]]]]:
        if not isinstance(raw, dict):
            raise ConfigError("'workflows' must be a mapping")
        workflows: dict[str, list[tuple[str, list[str]]]] = {}
        for name, spec in raw.items():
            if name in _WORKFLOW_META_KEYS:
                continue
            entries = spec.get("jobs") if isinstance(spec, dict) else None
            if not isinstance(entries, list):
                raise ConfigError(f"Workflow '{name}' needs a 'jobs' list")
            parsed: list[tuple[str, list[str]]] = []
            for entry in entries:
                if isinstance(entry, str):
                    job_name, requires = entry, []
                elif isinstance(entry, dict) and len(entry) == 1:
                    job_name, options = next(iter(entry.items()))
                    requires = _string_list((options or {}).get("requires"), f"workflow '{name}'")
                else:
                    raise ConfigError(f"Invalid job entry in workflow '{name}': {entry!r}")
                if job_name not in self.jobs:
                    raise ConfigError(f"Workflow '{name}' references unknown job '{job_name}'")
                parsed.append((job_name, requires))
            workflows[name] = parsed
        return workflows

    # -- run construction ----------------------------------------------------

    def resolve_parameters(self, overrides: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Parameter values for one run: defaults updated by ``overrides``.

        Raises:
            ConfigError: On unknown or wrongly typed overrides, or a
                parameter left without a value.
        """
        values: dict[str, Any] = {}
        overrides = dict(overrides or {})
        for name in overrides:
            if name not in self.parameters:
                raise ConfigError(
                    f"Unknown parameter: {name}. Known parameters: {sorted(self.parameters)}"
                )
        for name, param in self.parameters.items():
            if name in overrides:
                values[name] = param.coerce(overrides[name])
            elif param.default is not None:
                values[name] = param.default
            else:
                raise ConfigError(f"Parameter '{name}' has no default and no value was given")
        return values

    def select(self, workflow: str | None = None) -> tuple[set[str], dict[str, list[str]]]:
        """Jobs selected for a run, and each job's full ``requires`` list.

        With no workflow named, the only workflow is used; with none
        defined, every job is selected.

        Raises:
            ConfigError: On an unknown workflow, or when several workflows
                exist and none was named.
        """
        requires = {
            name: _string_list(spec.get("requires"), f"job '{name}'")
            for name, spec in self.jobs.items()
        }
        if workflow is None:
            if len(self.workflows) > 1:
                raise ConfigError(
                    f"Several workflows defined, choose one of {sorted(self.workflows)}"
                )
            workflow = next(iter(self.workflows), None)
        if workflow is None:
            return set(self.jobs), requires
        if workflow not in self.workflows:
            raise ConfigError(
                f"Unknown workflow: {workflow}. Known workflows: {sorted(self.workflows)}"
            )

        roots: list[str] = []
        for job_name, extra in self.workflows[workflow]:
            roots.append(job_name)
            requires[job_name] = list(dict.fromkeys(requires[job_name] + extra))

        selected: set[str] = set()
        queue: deque[str] = deque(roots)
        while queue:
            name = queue.popleft()
            if name in selected:
                continue
            if name not in self.jobs:
                raise ConfigError(f"Unknown job in requires: {name}")
            selected.add(name)
            queue.extend(requires[name])
        return selected, requires

    def construct(
        self,
        workflow: str | None = None,
        params: Mapping[str, Any] | None = None,
        settings: PipelineSettings | None = None,
    ) -> JobGraph:
        """Build the validated job graph for one run.

        Raises:
            ConfigError: On any definition error.
            CycleError: If the selected jobs' requirements form a cycle.
        """
        settings = settings or PipelineSettings()
        values = self.resolve_parameters(params)
        selected, requires = self.select(workflow)
        jobs = [
            self._build_job(name, requires[name], values, settings)
            for name in self.jobs
            if name in selected
        ]
        graph = JobGraph.from_jobs(jobs)
        logger.info(
            "Constructed %d job(s) for workflow %s", len(graph), workflow or "<default>",
        )
        return graph

    def _build_job(
        self,
        name: str,
        requires: list[str],
        parameters: Mapping[str, Any],
        settings: PipelineSettings,
    ) -> Job:
        spec = self.jobs[name]
        executor = self.executors.get(spec.get("executor") or "") or Executor(name="default")
        workdir = executor.working_directory
        if spec.get("working_directory"):
            workdir = self._resolve_path(spec["working_directory"])

        parallelism = substitute(spec.get("parallelism", 1), parameters)
        if not isinstance(parallelism, int) or isinstance(parallelism, bool):
            raise ConfigError(f"Job '{name}' parallelism must be an integer")

        job_env = spec.get("environment")
        if job_env is not None and not isinstance(job_env, dict):
            raise ConfigError(f"'environment' of job '{name}' must be a mapping")
        environment = _environment(
            substitute({**executor.environment, **(job_env or {})}, parameters),
            f"job '{name}'",
        )
        steps = [
            self._build_step(raw, executor.shell, settings, f"job '{name}'")
            for raw in self._expand(spec["steps"], parameters, [])
        ]
        return Job(
            name=name,
            steps=steps,
            requires=requires,
            parallelism=parallelism,
            working_directory=workdir or self.base_dir,
            environment=environment,
            resources=frozenset(_string_list(spec.get("resources"), f"job '{name}'")),
        )

    def _expand(
        self, steps: list[Any], parameters: Mapping[str, Any], stack: list[str],
    ) -> list[Any]:
        """Inline command references and substitute parameters."""
        expanded: list[Any] = []
        for raw in steps:
            if isinstance(raw, str):
                if raw not in self.commands:
                    raise ConfigError(f"Unknown command: {raw}")
                if raw in stack:
                    raise ConfigError(
                        f"Command '{raw}' references itself: {' -> '.join(stack + [raw])}"
                    )
                expanded.extend(self._expand(self.commands[raw], parameters, stack + [raw]))
            else:
                expanded.append(substitute(raw, parameters))
        return expanded

    def _build_step(
        self, raw: Any, shell: str, settings: PipelineSettings, where: str,
    ) -> Step:
        if not isinstance(raw, dict) or len(raw) != 1:
            raise ConfigError(f"Invalid step in {where}: {raw!r}")
        kind, body = next(iter(raw.items()))

        if kind in (KIND_RUN, KIND_SETUP):
            if isinstance(body, str):
                body = {"command": body}
            command = _required(body, "command", f"{kind} step in {where}")
            action = ShellAction(
                command,
                shell=str(body.get("shell", shell)),
                timeout=_step_timeout(body, settings),
                no_output_timeout=parse_duration(body.get("no_output_timeout")),
            )
            return CommandStep(_step_name(body, command), action, kind=kind)

        if kind == "test":
            if not isinstance(body, dict):
                raise ConfigError(f"test step in {where} must be a mapping")
            command = _required(body, "command", f"test step in {where}")
            step_shell = str(body.get("shell", shell))
            timeout = _step_timeout(body, settings)
            no_output_timeout = parse_duration(body.get("no_output_timeout"))
            list_command = body.get("list")
            tests = body.get("tests")
            if tests is not None:
                tests = _string_list(tests, f"test step in {where}")
            exclusions = None
            if body.get("exclusions"):
                exclusions = ExclusionFilter.from_file(self._resolve_path(body["exclusions"]))
            parallelism = body.get("parallelism")
            if parallelism is not None and (
                not isinstance(parallelism, int) or isinstance(parallelism, bool) or parallelism < 1
            ):
                raise ConfigError(f"test step parallelism in {where} must be an integer >= 1")
            return TestStep(
                _step_name(body, command),
                ShellAction(
                    command,
                    shell=step_shell,
                    timeout=timeout,
                    no_output_timeout=no_output_timeout,
                ),
                list_action=(
                    ShellAction(
                        str(list_command),
                        shell=step_shell,
                        timeout=timeout,
                        no_output_timeout=no_output_timeout,
                    )
                    if list_command else None
                ),
                tests=tests,
                exclusions=exclusions,
                parallelism=parallelism,
                default_classname=str(body.get("classname", "")),
            )

        if kind == "verify_determinism":
            if not isinstance(body, dict):
                raise ConfigError(f"verify_determinism step in {where} must be a mapping")
            command = _required(body, "command", f"verify_determinism step in {where}")
            configurations = body.get("configurations")
            if not isinstance(configurations, dict):
                raise ConfigError(
                    f"verify_determinism step in {where} needs a 'configurations' mapping"
                )
            verifier = DeterminismVerifier(
                command,
                [
                    _build_configuration(config_name, config, where)
                    for config_name, config in configurations.items()
                ],
                artifact=str(body.get("artifact", "artifact")),
                shell=str(body.get("shell", shell)),
                timeout=_step_timeout(body, settings),
                no_output_timeout=parse_duration(body.get("no_output_timeout")),
                placeholder=settings.placeholder,
                context_lines=settings.diff_context_lines,
            )
            return DeterminismStep(str(body.get("name", "Verify determinism")), verifier)

        raise ConfigError(
            f"Unknown step type '{kind}' in {where}. "
            "Valid types: run, setup, test, verify_determinism"
        )

    def _resolve_path(self, value: Any) -> Path:
        path = Path(str(value)).expanduser()
        if not path.is_absolute():
            path = self.base_dir / path
        return path


def _build_configuration(name: str, raw: Any, where: str) -> BuildConfiguration:
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Determinism configuration '{name}' in {where} must be a mapping")
    return BuildConfiguration(
        name=str(name),
        environment=_environment(raw.get("environment"), f"configuration '{name}'"),
        ignore=_string_list(raw.get("ignore"), f"configuration '{name}'"),
        command=raw.get("command"),
        artifact=raw.get("artifact"),
    )


def _required(body: Any, key: str, where: str) -> str:
    if not isinstance(body, dict) or not body.get(key):
        raise ConfigError(f"Missing '{key}' in {where}")
    return str(body[key])


def _step_name(body: dict[str, Any], command: str) -> str:
    if body.get("name"):
        return str(body["name"])
    first_line = command.strip().splitlines()[0] if command.strip() else command
    if len(first_line) > _MAX_DERIVED_NAME:
        first_line = first_line[:_MAX_DERIVED_NAME - 3] + "..."
    return first_line


def _step_timeout(body: dict[str, Any], settings: PipelineSettings) -> float | None:
    if body.get("timeout") is not None:
        return parse_duration(body["timeout"])
    return settings.step_timeout


def _environment(raw: Any, where: str) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"'environment' of {where} must be a mapping")
    return {str(k): _env_value(v) for k, v in raw.items()}


def _env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _string_list(raw: Any, where: str) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw]
    if not isinstance(raw, list):
        raise ConfigError(f"Expected a list of names in {where}, got {raw!r}")
    return [str(item) for item in raw]
