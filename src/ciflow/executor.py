# executor.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from typing import Optional

from .model import ExecutionContext, StepResult, StepStatus
from .settings import GRACE_SECONDS

POLL_INTERVAL = 0.1

TOOL_HINTS = {
    "cargo": "Install the Rust toolchain (rustup) or fix PATH.",
    "rustup": "Install rustup from https://rustup.rs or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}

# exit status reported by POSIX shells when the command is not found
_COMMAND_NOT_FOUND = 127


def hint_for(command: str) -> str | None:
    """Best-effort install hint for the first word of a command."""
    words = command.strip().split()
    if not words:
        return None
    return TOOL_HINTS.get(os.path.basename(words[0]))


def _signal_group(proc: subprocess.Popen, *, hard: bool) -> None:
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL if hard else signal.SIGTERM)
        elif proc.poll() is None:
            if hard:
                proc.kill()
            else:
                proc.terminate()
    except ProcessLookupError:
        # nothing left in the group
        pass
    except PermissionError:
        # macOS reports EPERM for a group holding only zombies
        pass


def _terminate(proc: subprocess.Popen) -> None:
    """
    Stop the whole process group started for a step: SIGTERM, then SIGKILL
    once GRACE_SECONDS have passed.

    Commands run through a shell, so killing only the shell would leave its
    children holding the output pipe open.
    """
    _signal_group(proc, hard=False)
    try:
        proc.wait(timeout=GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        _signal_group(proc, hard=True)
        proc.wait()


def _release(proc: subprocess.Popen) -> None:
    """Make sure nothing the step spawned outlives it, shell or children."""
    if proc.poll() is None:
        _terminate(proc)
    _signal_group(proc, hard=True)


def execute(
    command: str,
    context: ExecutionContext,
    *,
    name: str = "",
    cancel: Optional[threading.Event] = None,
) -> StepResult:
    """
    Run one shell command under `context` and capture status and output.

    stdout and stderr are merged into a single captured stream. There is no
    timeout unless `context.timeout` is set. Setting `cancel` terminates the
    command; the returned result is then CANCELLED. The step ends when its
    shell exits: background children left behind are killed with it.

    Never raises for command failures: spawn errors and a missing working
    directory come back as StepStatus.ERROR.
    """
    started = time.monotonic()
    cwd = context.workdir

    if not cwd.is_dir():
        return StepResult(
            name=name,
            status=StepStatus.ERROR,
            output="",
            duration=time.monotonic() - started,
            reason=f"working directory not found: {cwd}",
        )

    try:
        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=str(cwd),
            env=dict(context.env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            start_new_session=(os.name == "posix"),
        )
    except OSError as e:
        return StepResult(
            name=name,
            status=StepStatus.ERROR,
            duration=time.monotonic() - started,
            reason=f"could not start command: {e}",
        )

    deadline = started + context.timeout if context.timeout is not None else None
    chunks: list[str] = []
    status: StepStatus | None = None
    reason: str | None = None
    drained = False

    try:
        while True:
            wait_for = POLL_INTERVAL
            if deadline is not None:
                wait_for = max(0.0, min(wait_for, deadline - time.monotonic()))
            try:
                out, _ = proc.communicate(timeout=wait_for)
                chunks.append(out or "")
                drained = True
                break
            except subprocess.TimeoutExpired:
                pass

            if proc.poll() is not None:
                # the shell is done; a background child still holds the pipe
                break
            if cancel is not None and cancel.is_set():
                status, reason = StepStatus.CANCELLED, "cancelled"
            elif deadline is not None and time.monotonic() >= deadline:
                status, reason = StepStatus.TIMEOUT, f"timed out after {context.timeout:g}s"
            else:
                continue

            _terminate(proc)
            break
    finally:
        # any exit path (including KeyboardInterrupt) releases the whole group
        _release(proc)
        if not drained:
            # output is not lost across TimeoutExpired retries
            out, _ = proc.communicate()
            chunks.append(out or "")

    exit_code = proc.returncode
    if status is None:
        if exit_code == 0:
            status = StepStatus.SUCCESS
        else:
            status = StepStatus.FAILED
            reason = f"exit code {exit_code}"
            if exit_code == _COMMAND_NOT_FOUND:
                hint = hint_for(command)
                if hint:
                    reason = f"{reason} (command not found? {hint})"

    return StepResult(
        name=name,
        status=status,
        exit_code=exit_code,
        output="".join(chunks),
        duration=time.monotonic() - started,
        reason=reason,
    )
