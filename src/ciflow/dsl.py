# src/ciflow/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .conditions import compile_condition, only_on
from .model import CacheDirective, Job, PipelineConfig, Predicate, Step
from .trigger import TriggerPolicy

__all__ = ["sh", "setup", "cache", "job", "pipeline", "only_on"]


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    run_if: Optional[Predicate] = None,
    env: Optional[Dict[str, str]] = None,
    cache: Optional[CacheDirective] = None,
    timeout: float | None = None,
    setup: bool = False,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        run_if=compile_condition(run_if) if run_if is not None else None,
        # force values to str for stable hashing + env compatibility
        env={k: str(v) for k, v in (env or {}).items()},
        cache=cache,
        timeout=timeout,
        setup=setup,
    )


def setup(name: str, cmd: str, **kwargs) -> Step:
    """A setup step (checkout, toolchain, system packages): failure is infrastructure."""
    return sh(name, cmd, setup=True, **kwargs)


def cache(
    key: str,
    *paths: str,
    inputs: Iterable[str] = (),
    tools: Iterable[str] = (),
    salt: str = "",
    restore_only: bool = False,
) -> CacheDirective:
    """
    Cache directive for a step.

        sh("Build", "cargo build", cache=cache("cargo-{platform}", "target", "~/.cargo/registry",
                                                inputs=["Cargo.lock"], tools=["cargo"]))
    """
    return CacheDirective(
        key=key,
        paths=tuple(paths),
        inputs=tuple(inputs),
        tools=tuple(tools),
        salt=salt,
        restore_only=restore_only,
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    platform: str = "linux",
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=tuple(steps_final),
        platform=platform,
        env={k: str(v) for k, v in (env or {}).items()},
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipeline(
    *jobs: Job,
    name: str = "ci",
    env: Optional[Dict[str, str]] = None,
    on: Optional[Dict[str, Iterable[str]]] = None,
) -> PipelineConfig:
    """
    Pipeline definition helper.

        from ciflow.dsl import pipeline, job, sh

        PIPELINE = pipeline(
            job("lints", sh("CI job", "cargo run -p ci -- lints")),
            on={"push": ["main"], "pull_request": ["main"]},
        )
    """
    trigger = TriggerPolicy({k: frozenset(v) for k, v in on.items()}) if on is not None else TriggerPolicy()
    return PipelineConfig(
        name=name,
        jobs=tuple(jobs),
        env={k: str(v) for k, v in (env or {}).items()},
        trigger=trigger,
    )
