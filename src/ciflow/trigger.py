# trigger.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, FrozenSet, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import MalformedTrigger

DEFAULT_KINDS = ("push", "pull_request")
DEFAULT_BRANCHES = frozenset({"main"})


class TriggerEvent(BaseModel):
    """An incoming repository event: `{kind: push|pull_request, branch}`."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    kind: str = Field(min_length=1, validation_alias=AliasChoices("kind", "event"))
    branch: str = Field(min_length=1, validation_alias=AliasChoices("branch", "ref", "base_ref"))

    @field_validator("kind")
    @classmethod
    def _normalize_kind(cls, v: str) -> str:
        v = v.strip().lower().replace("-", "_")
        if not v:
            raise ValueError("kind must not be empty")
        return v

    @field_validator("branch")
    @classmethod
    def _normalize_branch(cls, v: str) -> str:
        v = v.strip()
        if v.startswith("refs/heads/"):
            v = v[len("refs/heads/"):]
        if not v:
            raise ValueError("branch must not be empty")
        return v


@dataclass(frozen=True)
class TriggerPolicy:
    """
    Which events start a run: kind -> exact-match branch set.

    An empty branch set for a kind admits every branch of that kind.
    """
    branches: Mapping[str, FrozenSet[str]] = field(
        default_factory=lambda: {k: DEFAULT_BRANCHES for k in DEFAULT_KINDS}
    )

    @classmethod
    def for_kinds(cls, kinds=DEFAULT_KINDS, branches=DEFAULT_BRANCHES) -> "TriggerPolicy":
        return cls({k: frozenset(branches) for k in kinds})

    @property
    def kinds(self) -> FrozenSet[str]:
        return frozenset(self.branches)

    def admits(self, event: TriggerEvent) -> bool:
        if event.kind not in self.branches:
            return False
        allowed = self.branches[event.kind]
        return not allowed or event.branch in allowed


def parse_event(payload: Any) -> TriggerEvent:
    """Validate a raw event payload. Raises MalformedTrigger; no run is started."""
    if isinstance(payload, TriggerEvent):
        return payload
    if not isinstance(payload, Mapping):
        raise MalformedTrigger(message=f"Event payload must be an object, got {type(payload).__name__}")
    try:
        return TriggerEvent.model_validate(dict(payload))
    except ValidationError as e:
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors())
        raise MalformedTrigger(message="Invalid event payload", details={"errors": problems}) from e


def evaluate(event: Any, policy: Optional[TriggerPolicy] = None) -> bool:
    """Admit or ignore an event. No side effects."""
    ev = parse_event(event)
    return (policy or TriggerPolicy()).admits(ev)
