from __future__ import annotations

import os
import threading
import time
from dataclasses import replace
from pathlib import Path

from ciflow.executor import execute, hint_for
from ciflow.model import StepStatus


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return True
    # a killed orphan may linger as a zombie until init reaps it
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


class TestExecute:
    def test_success(self, make_ctx):
        result = execute("echo hello", make_ctx(), name="greet")
        assert result.status is StepStatus.SUCCESS
        assert result.exit_code == 0
        assert result.output.strip() == "hello"
        assert result.name == "greet"

    def test_nonzero_exit_is_failure(self, make_ctx):
        result = execute("echo broken; exit 3", make_ctx())
        assert result.status is StepStatus.FAILED
        assert result.exit_code == 3
        assert "broken" in result.output
        assert result.reason == "exit code 3"

    def test_stdout_and_stderr_are_combined(self, make_ctx):
        result = execute("echo out; echo err 1>&2", make_ctx())
        assert "out" in result.output
        assert "err" in result.output

    def test_runs_in_context_env_and_cwd(self, make_ctx, workdir):
        result = execute('echo "$FLAGS"; pwd', make_ctx(env={"FLAGS": "-C debuginfo=0"}))
        lines = result.output.splitlines()
        assert lines[0] == "-C debuginfo=0"
        assert lines[1] == str(workdir)

    def test_timeout(self, make_ctx):
        started = time.monotonic()
        result = execute("echo before; sleep 30", make_ctx(timeout=0.5))
        assert result.status is StepStatus.TIMEOUT
        assert time.monotonic() - started < 10
        assert "before" in result.output

    def test_cancel_terminates_command(self, make_ctx):
        cancel = threading.Event()
        threading.Timer(0.3, cancel.set).start()
        started = time.monotonic()
        result = execute("sleep 30", make_ctx(), cancel=cancel)
        assert result.status is StepStatus.CANCELLED
        assert time.monotonic() - started < 10

    def test_background_children_do_not_hang_the_step(self, make_ctx):
        started = time.monotonic()
        result = execute("sleep 30 & sleep 30", make_ctx(timeout=0.5))
        assert result.status is StepStatus.TIMEOUT
        assert time.monotonic() - started < 10

    def test_step_ends_when_its_shell_exits(self, make_ctx):
        started = time.monotonic()
        result = execute("sleep 30 & echo hi", make_ctx())
        assert result.status is StepStatus.SUCCESS
        assert result.output.strip() == "hi"
        assert time.monotonic() - started < 10

    def test_background_children_are_killed_with_the_step(self, make_ctx, workdir):
        result = execute("sleep 30 >/dev/null 2>&1 & echo $! > bg.pid", make_ctx())
        assert result.status is StepStatus.SUCCESS
        pid = int((workdir / "bg.pid").read_text())
        deadline = time.monotonic() + 5
        while _alive(pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert not _alive(pid)

    def test_missing_cwd_is_an_error(self, make_ctx, workdir):
        result = execute("true", replace(make_ctx(), workdir=workdir / "nope"))
        assert result.status is StepStatus.ERROR
        assert "working directory not found" in result.reason

    def test_command_not_found_hint(self, make_ctx):
        result = execute("cargo-does-not-exist-xyz build", make_ctx())
        assert result.exit_code == 127
        assert result.status is StepStatus.FAILED


class TestHints:
    def test_known_tool(self):
        assert "rustup" in hint_for("cargo run -p ci -- lints")

    def test_unknown_tool(self):
        assert hint_for("frobnicate") is None
        assert hint_for("   ") is None
