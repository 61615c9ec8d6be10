# model.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .errors import ConfigError

PLATFORMS = ("linux", "macos", "windows")

# A step predicate is either an expression string ("runner.os == 'linux'")
# or a callable taking the ExecutionContext.
Predicate = Union[str, Callable[["ExecutionContext"], bool]]


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"
    CACHED = "cached"
    CANCELLED = "cancelled"
    ERROR = "error"  # could not run at all (spawn failure, missing cwd)


class JobStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    INFRASTRUCTURE_FAILURE = "infrastructure_failure"
    CANCELLED = "cancelled"


class FailureKind(str, Enum):
    VERIFICATION = "verification_failure"
    TIMEOUT = "timeout"
    INFRASTRUCTURE = "infrastructure_failure"
    CANCELLED = "cancelled"


def normalize_platform(value: str) -> str:
    """Map runner labels such as ``ubuntu-latest`` onto a platform name."""
    v = (value or "").strip().lower()
    if v in PLATFORMS:
        return v
    if v.startswith(("ubuntu", "linux", "debian", "fedora")):
        return "linux"
    if v.startswith(("macos", "mac", "darwin", "osx")):
        return "macos"
    if v.startswith(("windows", "win")):
        return "windows"
    raise ConfigError(message=f"Unknown platform: {value!r}", details={"known": ", ".join(PLATFORMS)})


# ---------------------------------------------------------------------
# Definitions (read-only after load)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CacheDirective:
    """
    Cache settings attached to a step.

    key:          template rendered with {job}, {platform} and {env[NAME]}
    paths:        files/dirs (relative to the job workdir, or ~/...) to archive
    inputs:       globs whose contents are fingerprinted into the key
    tools:        tools whose --version output is fingerprinted into the key
    salt:         rotate to invalidate
    restore_only: a hit satisfies the step and the command is not run
    """
    key: str
    paths: Tuple[str, ...] = ()
    inputs: Tuple[str, ...] = ()
    tools: Tuple[str, ...] = ()
    salt: str = ""
    restore_only: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "paths", tuple(self.paths))
        object.__setattr__(self, "inputs", tuple(self.inputs))
        object.__setattr__(self, "tools", tuple(self.tools))


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None
    run_if: Optional[Predicate] = None
    env: Mapping[str, str] = field(default_factory=dict)
    cache: Optional[CacheDirective] = None
    timeout: float | None = None
    setup: bool = False  # failure means the pipeline is broken, not the code


@dataclass(frozen=True)
class Job:
    """A CI job: an ordered list of steps run on one platform."""
    name: str
    steps: Tuple[Step, ...]
    platform: str = "linux"
    env: Mapping[str, str] = field(default_factory=dict)
    timeout: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "platform", normalize_platform(self.platform))
        if not self.steps:
            raise ConfigError(message=f"Job {self.name!r} has no steps", job=self.name)


@dataclass(frozen=True)
class PipelineConfig:
    name: str
    jobs: Tuple[Job, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    trigger: Any = None  # TriggerPolicy; None means the default (push/pull_request on main)

    def __post_init__(self) -> None:
        object.__setattr__(self, "jobs", tuple(self.jobs))
        seen = set()
        for j in self.jobs:
            if j.name in seen:
                raise ConfigError(message=f"Duplicate job name: {j.name}", job=j.name)
            seen.add(j.name)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


# ---------------------------------------------------------------------
# Execution context
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ExecutionContext:
    """
    Resolved environment for one job's steps.

    Owned by a single JobRunner; `for_step` derives a new context rather than
    mutating this one.
    """
    job: str
    platform: str
    env: Mapping[str, str]
    workdir: Path
    timeout: float | None = None
    scratch: Path | None = None

    @classmethod
    def create(
        cls,
        job: Job,
        base_env: Mapping[str, str],
        workdir: Path,
        *,
        scratch: Path | None = None,
    ) -> "ExecutionContext":
        env: Dict[str, str] = dict(base_env)
        env.update(job.env)
        if scratch is not None:
            env["CIFLOW_TEMP"] = str(scratch)
        env["CIFLOW_JOB"] = job.name
        env["CIFLOW_PLATFORM"] = job.platform
        return cls(
            job=job.name,
            platform=job.platform,
            env=MappingProxyType(env),
            workdir=workdir,
            timeout=job.timeout,
            scratch=scratch,
        )

    def for_step(self, step: Step) -> "ExecutionContext":
        env = self.env
        if step.env:
            merged = dict(self.env)
            merged.update(step.env)
            env = MappingProxyType(merged)
        workdir = (self.workdir / step.cwd) if step.cwd else self.workdir
        timeout = step.timeout if step.timeout is not None else self.timeout
        return replace(self, env=env, workdir=workdir, timeout=timeout)


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StepResult:
    name: str
    status: StepStatus
    exit_code: int | None = None
    output: str = ""
    duration: float = 0.0
    cache: str | None = None  # short human note: "hit", "miss", "saved", ...
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in (StepStatus.SUCCESS, StepStatus.SKIPPED, StepStatus.CACHED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "cache": self.cache,
            "reason": self.reason,
            "output": self.output,
        }


@dataclass(frozen=True)
class JobResult:
    job: str
    status: JobStatus
    steps: Tuple[StepResult, ...] = ()
    failure: FailureKind | None = None
    failed_step: str | None = None
    message: str | None = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is JobStatus.SUCCESS

    @property
    def output(self) -> str:
        """Captured output of the failing step (empty on success)."""
        for s in self.steps:
            if s.name == self.failed_step:
                return s.output
        return ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "status": self.status.value,
            "failure": self.failure.value if self.failure else None,
            "failed_step": self.failed_step,
            "message": self.message,
            "duration": round(self.duration, 3),
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass(frozen=True)
class RunResult:
    """Terminal, immutable outcome of one pipeline run."""
    run_id: str
    pipeline: str
    jobs: Tuple[JobResult, ...]
    cancelled: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return all(j.ok for j in self.jobs)

    @property
    def status(self) -> str:
        if self.ok:
            return "success"
        if self.cancelled:
            return "cancelled"
        return "failed"

    @property
    def exit_code(self) -> int:
        if self.ok:
            return 0
        return 130 if self.cancelled else 1

    def job(self, name: str) -> JobResult:
        for j in self.jobs:
            if j.job == name:
                return j
        raise KeyError(name)

    @property
    def verification_failures(self) -> List[JobResult]:
        return [j for j in self.jobs if j.status is JobStatus.FAILED]

    @property
    def infrastructure_failures(self) -> List[JobResult]:
        return [j for j in self.jobs if j.status is JobStatus.INFRASTRUCTURE_FAILURE]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "status": self.status,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "summary": {
                "jobs": len(self.jobs),
                "succeeded": sum(1 for j in self.jobs if j.ok),
                "verification_failures": [j.job for j in self.verification_failures],
                "infrastructure_failures": [j.job for j in self.infrastructure_failures],
                "cancelled": [j.job for j in self.jobs if j.status is JobStatus.CANCELLED],
            },
            "jobs": [j.to_dict() for j in self.jobs],
        }
