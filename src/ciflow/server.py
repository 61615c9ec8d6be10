from __future__ import annotations

import threading
from typing import Any

from fastapi import Body, FastAPI, HTTPException
from pydantic import BaseModel

from . import settings
from .errors import MalformedTrigger
from .model import PipelineConfig
from .scheduler import PipelineScheduler, RunHandle
from .trigger import TriggerPolicy, parse_event

# -------------------- Schemas --------------------

class EventResponse(BaseModel):
    admitted: bool
    kind: str
    branch: str
    run_id: str | None = None

class RunStatusResponse(BaseModel):
    run_id: str
    pipeline: str
    status: str  # running|cancelling|success|failed|cancelled
    result: dict[str, Any] | None = None

class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool


class RunRegistry:
    """
    In-memory index of runs started by this process.

    Running runs are always kept. Finished runs beyond the `keep` most
    recent are dropped whenever a new run is added.
    """

    def __init__(self, keep: int = settings.RUN_HISTORY) -> None:
        self.keep = keep
        self._lock = threading.Lock()
        self._runs: dict[str, RunHandle] = {}  # insertion order = start order

    def add(self, handle: RunHandle) -> None:
        with self._lock:
            self._runs[handle.run_id] = handle
            finished = [run_id for run_id, h in self._runs.items() if h.done]
            for run_id in finished[: max(0, len(finished) - self.keep)]:
                del self._runs[run_id]

    def get(self, run_id: str) -> RunHandle | None:
        with self._lock:
            return self._runs.get(run_id)

    def handles(self) -> list[RunHandle]:
        with self._lock:
            return list(self._runs.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)


def _status_of(handle: RunHandle) -> RunStatusResponse:
    if not handle.done:
        status = "cancelling" if handle.cancelled else "running"
        return RunStatusResponse(run_id=handle.run_id, pipeline=handle.config.name, status=status)
    result = handle.result
    if result is None:
        # the run thread itself crashed
        return RunStatusResponse(run_id=handle.run_id, pipeline=handle.config.name, status="failed")
    return RunStatusResponse(
        run_id=handle.run_id,
        pipeline=handle.config.name,
        status=result.status,
        result=result.to_dict(),
    )


def create_app(config: PipelineConfig, scheduler: PipelineScheduler, *, history: int = settings.RUN_HISTORY) -> FastAPI:
    app = FastAPI(title="ciflow")
    policy = config.trigger if config.trigger is not None else TriggerPolicy()
    runs = RunRegistry(keep=history)
    app.state.runs = runs

    # -------------------- Endpoints --------------------

    @app.post("/events", response_model=EventResponse)
    async def receive_event(payload: Any = Body(...)):
        try:
            event = parse_event(payload)
        except MalformedTrigger as e:
            raise HTTPException(status_code=400, detail=str(e))

        if not policy.admits(event):
            return EventResponse(admitted=False, kind=event.kind, branch=event.branch)

        handle = scheduler.submit(config)
        runs.add(handle)
        return EventResponse(admitted=True, kind=event.kind, branch=event.branch, run_id=handle.run_id)

    @app.get("/runs/{run_id}", response_model=RunStatusResponse)
    async def get_run(run_id: str):
        handle = runs.get(run_id)
        if handle is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return _status_of(handle)

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    async def cancel_run(run_id: str):
        handle = runs.get(run_id)
        if handle is None:
            raise HTTPException(status_code=404, detail="Run not found")
        if handle.done:
            raise HTTPException(status_code=409, detail="Run already finished")
        handle.cancel()
        return CancelResponse(run_id=run_id, cancelled=True)

    return app
