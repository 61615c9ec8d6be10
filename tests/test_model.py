from __future__ import annotations

import pytest

from ciflow.dsl import job, sh
from ciflow.errors import ConfigError
from ciflow.model import (
    ExecutionContext,
    JobResult,
    JobStatus,
    PipelineConfig,
    RunResult,
    normalize_platform,
)


class TestDefinitions:
    @pytest.mark.parametrize(
        "label,expected",
        [("ubuntu-latest", "linux"), ("Linux", "linux"), ("macos-14", "macos"), ("windows-2022", "windows")],
    )
    def test_platform_labels(self, label, expected):
        assert normalize_platform(label) == expected

    def test_job_needs_steps(self):
        with pytest.raises(ConfigError):
            job("empty")

    def test_duplicate_job_names(self):
        with pytest.raises(ConfigError):
            PipelineConfig(name="ci", jobs=(job("a", sh("s", "true")), job("a", sh("s", "true"))))

    def test_job_cwd_applies_to_steps_without_one(self):
        j = job("x", sh("a", "true"), sh("b", "true", cwd="docs"), cwd="crates")
        assert [s.cwd for s in j.steps] == ["crates", "docs"]


class TestExecutionContext:
    def test_env_layers(self, workdir):
        j = job("tests", sh("s", "true", env={"RUSTFLAGS": "-D warnings"}), env={"A": "job", "B": "job"})
        ctx = ExecutionContext.create(j, {"A": "base", "C": "base"}, workdir)
        assert (ctx.env["A"], ctx.env["B"], ctx.env["C"]) == ("job", "job", "base")
        assert ctx.env["CIFLOW_JOB"] == "tests"

        step_ctx = ctx.for_step(j.steps[0])
        assert step_ctx.env["RUSTFLAGS"] == "-D warnings"
        assert "RUSTFLAGS" not in ctx.env

    def test_env_is_read_only(self, workdir):
        ctx = ExecutionContext.create(job("x", sh("s", "true")), {}, workdir)
        with pytest.raises(TypeError):
            ctx.env["X"] = "1"

    def test_step_timeout_overrides_job_timeout(self, workdir):
        j = job("x", sh("a", "true"), sh("b", "true", timeout=5), timeout=60)
        ctx = ExecutionContext.create(j, {}, workdir)
        assert ctx.for_step(j.steps[0]).timeout == 60
        assert ctx.for_step(j.steps[1]).timeout == 5


class TestRunResult:
    def make(self, *statuses, cancelled=False):
        jobs = tuple(JobResult(job=f"j{i}", status=s) for i, s in enumerate(statuses))
        return RunResult(run_id="r", pipeline="ci", jobs=jobs, cancelled=cancelled)

    def test_all_success(self):
        run = self.make(JobStatus.SUCCESS, JobStatus.SUCCESS)
        assert (run.ok, run.status, run.exit_code) == (True, "success", 0)

    def test_any_failure_fails_the_run(self):
        run = self.make(JobStatus.SUCCESS, JobStatus.INFRASTRUCTURE_FAILURE)
        assert (run.ok, run.status, run.exit_code) == (False, "failed", 1)

    def test_cancelled(self):
        run = self.make(JobStatus.SUCCESS, JobStatus.CANCELLED, cancelled=True)
        assert (run.status, run.exit_code) == ("cancelled", 130)

    def test_job_lookup(self):
        run = self.make(JobStatus.SUCCESS)
        assert run.job("j0").ok
        with pytest.raises(KeyError):
            run.job("missing")
