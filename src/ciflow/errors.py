# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - JSON reports
      - debugging without full tracebacks
    """
    message: str
    kind: str = "ci_error"
    job: str | None = None
    step: str | None = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass(eq=False)
class ConfigError(CIError):
    """Workflow descriptor could not be loaded or is inconsistent."""
    kind: str = "config_error"


@dataclass(eq=False)
class MalformedTrigger(CIError):
    """Incoming event payload is unusable; no run is started."""
    kind: str = "malformed_trigger"


@dataclass(eq=False)
class CacheError(CIError):
    """Cache backend failure. Always recovered by the job runner."""
    kind: str = "cache_error"


@dataclass(eq=False)
class InfrastructureFailure(CIError):
    """The pipeline itself could not proceed (workspace, spawn, setup)."""
    kind: str = "infrastructure_failure"
