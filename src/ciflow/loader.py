# loader.py
from __future__ import annotations

import json
import runpy
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Union

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .conditions import compile_condition
from .errors import ConfigError
from .model import CacheDirective, Job, PipelineConfig, Step
from .trigger import TriggerPolicy

# ----------------------------------------------------------------------
# Descriptor schemas
# ----------------------------------------------------------------------
# Accepts the plain descriptor
#   {id, platform, env, steps: [{id, command, cacheKey?, runIf?}]}
# and the familiar workflow spelling (name / runs-on / run / if / on:).

EnvValue = Union[str, int, float, bool]


def _env_str(value: EnvValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class CacheSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    key: str
    paths: List[str] = Field(default_factory=list, validation_alias=AliasChoices("paths", "path"))
    inputs: List[str] = Field(default_factory=list, validation_alias=AliasChoices("inputs", "hash-files", "hash_files"))
    tools: List[str] = Field(default_factory=list)
    salt: str = ""
    restore_only: bool = Field(False, validation_alias=AliasChoices("restore_only", "restore-only", "restoreOnly"))

    @field_validator("paths", "inputs", mode="before")
    @classmethod
    def _one_or_many(cls, v: Any) -> Any:
        return [v] if isinstance(v, str) else v


class StepSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: Optional[str] = Field(None, validation_alias=AliasChoices("id", "name"))
    command: Optional[str] = Field(None, validation_alias=AliasChoices("command", "run"))
    uses: Optional[str] = None
    with_: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("with"))
    run_if: Optional[Union[bool, str]] = Field(None, validation_alias=AliasChoices("runIf", "run_if", "if"))
    env: Dict[str, EnvValue] = Field(default_factory=dict)
    cwd: Optional[str] = Field(None, validation_alias=AliasChoices("cwd", "working-directory"))
    cache_key: Optional[str] = Field(None, validation_alias=AliasChoices("cacheKey", "cache_key"))
    cache: Optional[CacheSpec] = None
    timeout: Optional[float] = Field(None, gt=0)
    timeout_minutes: Optional[float] = Field(None, gt=0, validation_alias=AliasChoices("timeout-minutes", "timeout_minutes"))
    setup: bool = False


class JobSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: Optional[str] = Field(None, validation_alias=AliasChoices("id", "name"))
    platform: str = Field("linux", validation_alias=AliasChoices("platform", "runs-on", "runs_on"))
    env: Dict[str, EnvValue] = Field(default_factory=dict)
    steps: List[StepSpec] = Field(min_length=1)
    needs: Optional[Any] = None
    timeout_minutes: Optional[float] = Field(None, gt=0, validation_alias=AliasChoices("timeout-minutes", "timeout_minutes"))


class WorkflowSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = "ci"
    on: Optional[Any] = None
    env: Dict[str, EnvValue] = Field(default_factory=dict)
    jobs: Union[Dict[str, JobSpec], List[JobSpec]]


# ----------------------------------------------------------------------
# Conversion
# ----------------------------------------------------------------------

def _trigger_from(on: Any) -> TriggerPolicy:
    if on is None:
        return TriggerPolicy()
    if isinstance(on, str):
        return TriggerPolicy({on: frozenset()})
    if isinstance(on, list):
        return TriggerPolicy({str(k): frozenset() for k in on})
    if isinstance(on, Mapping):
        branches: Dict[str, FrozenSet[str]] = {}
        for kind, spec in on.items():
            if spec is None:
                branches[str(kind)] = frozenset()
            elif isinstance(spec, Mapping):
                unknown = sorted(str(k) for k in spec if k != "branches")
                if unknown:
                    raise ConfigError(
                        message=f"Unsupported trigger filter for {kind!r}: {', '.join(unknown)} (only 'branches' is supported)"
                    )
                value = spec.get("branches") or []
                if isinstance(value, str):
                    value = [value]
                branches[str(kind)] = frozenset(str(b) for b in value)
            else:
                raise ConfigError(message=f"Invalid trigger for {kind!r}: expected a mapping")
        return TriggerPolicy(branches)
    raise ConfigError(message=f"Invalid 'on' block: {on!r}")


def _step_from(spec: StepSpec, job_name: str, index: int) -> Step:
    name = spec.id
    if spec.uses is not None:
        raise ConfigError(
            message=f"'uses: {spec.uses}' actions are not supported; give the step a 'run' command instead",
            job=job_name,
            step=name or f"#{index + 1}",
        )
    if not spec.command:
        raise ConfigError(message="Step has no command", job=job_name, step=name or f"#{index + 1}")
    if not name:
        name = "Run " + spec.command.strip().splitlines()[0][:60]

    directive: Optional[CacheDirective] = None
    if spec.cache is not None:
        c = spec.cache
        directive = CacheDirective(
            key=c.key, paths=tuple(c.paths), inputs=tuple(c.inputs), tools=tuple(c.tools),
            salt=c.salt, restore_only=c.restore_only,
        )
    elif spec.cache_key:
        directive = CacheDirective(key=spec.cache_key)

    run_if = None
    if spec.run_if is not None:
        source = _env_str(spec.run_if) if isinstance(spec.run_if, bool) else spec.run_if
        try:
            run_if = compile_condition(source)
        except ConfigError as e:
            e.job, e.step = job_name, name
            raise

    timeout = spec.timeout
    if timeout is None and spec.timeout_minutes is not None:
        timeout = spec.timeout_minutes * 60

    return Step(
        name=name,
        run=spec.command,
        cwd=spec.cwd,
        run_if=run_if,
        env={k: _env_str(v) for k, v in spec.env.items()},
        cache=directive,
        timeout=timeout,
        setup=spec.setup,
    )


def _job_from(spec: JobSpec, name: str) -> Job:
    if spec.needs:
        raise ConfigError(
            message="Job dependencies ('needs') are not supported; jobs are independent",
            job=name,
        )
    return Job(
        name=name,
        steps=tuple(_step_from(s, name, i) for i, s in enumerate(spec.steps)),
        platform=spec.platform,
        env={k: _env_str(v) for k, v in spec.env.items()},
        timeout=spec.timeout_minutes * 60 if spec.timeout_minutes is not None else None,
    )


def _format_validation(e: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
    )


def parse_descriptor(data: Any, *, name: str = "ci") -> PipelineConfig:
    """Build a PipelineConfig from a descriptor mapping (already parsed YAML/JSON)."""
    if not isinstance(data, Mapping):
        raise ConfigError(message="Workflow descriptor must be a mapping")
    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data and "on" not in data:
        data["on"] = data.pop(True)
    data.setdefault("name", name)

    try:
        spec = WorkflowSpec.model_validate(data)
    except ValidationError as e:
        raise ConfigError(message="Invalid workflow descriptor", details={"errors": _format_validation(e)}) from e

    jobs: List[Job] = []
    if isinstance(spec.jobs, dict):
        for job_id, js in spec.jobs.items():
            jobs.append(_job_from(js, job_id))
    else:
        for i, js in enumerate(spec.jobs):
            if not js.id:
                raise ConfigError(message=f"Job #{i + 1} has no id")
            jobs.append(_job_from(js, js.id))

    return PipelineConfig(
        name=spec.name,
        jobs=tuple(jobs),
        env={k: _env_str(v) for k, v in spec.env.items()},
        trigger=_trigger_from(spec.on),
    )


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def _load_python(wf_path: Path) -> PipelineConfig:
    """
    The file must define one of:
      - workflow() -> PipelineConfig | List[Job]
      - PIPELINE = PipelineConfig
      - JOBS = [Job, ...]
    """
    module_name = f"ciflow_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    obj = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        obj = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        obj = globals_dict["PIPELINE"]
    elif "JOBS" in globals_dict:
        obj = globals_dict["JOBS"]

    if isinstance(obj, PipelineConfig):
        return obj
    if isinstance(obj, (list, tuple)) and obj and all(isinstance(j, Job) for j in obj):
        return PipelineConfig(name=wf_path.stem, jobs=tuple(obj), trigger=TriggerPolicy())

    raise ConfigError(
        message="Workflow must return/define a PipelineConfig or a list of Jobs",
        details={"file": str(wf_path), "expected": "workflow() / PIPELINE / JOBS"},
    )


def load_workflow(path: str | Path) -> PipelineConfig:
    """Load a workflow from a .py, .yml/.yaml or .json file."""
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigError(message=f"Workflow file not found: {wf_path}")

    suffix = wf_path.suffix.lower()
    if suffix == ".py":
        return _load_python(wf_path)

    try:
        text = wf_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(message=f"Cannot read workflow file: {e}") from e

    if suffix in (".yml", ".yaml"):
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(message=f"Invalid YAML in {wf_path.name}", details={"error": str(e)}) from e
    elif suffix == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigError(message=f"Invalid JSON in {wf_path.name}", details={"error": str(e)}) from e
    else:
        raise ConfigError(message=f"Unsupported workflow file type: {wf_path.name}",
                          details={"supported": ".py, .yml, .yaml, .json"})

    return parse_descriptor(data, name=wf_path.stem)
