from __future__ import annotations

import json
import textwrap
from pathlib import Path

import pytest

from ciflow.errors import ConfigError
from ciflow.loader import load_workflow, parse_descriptor
from ciflow.trigger import TriggerEvent

WORKFLOW_YAML = """
name: ci
on:
  push:
    branches: [main]
  pull_request:
    branches: [main]
env:
  CARGO_TERM_COLOR: always
jobs:
  check-tests:
    runs-on: ubuntu-latest
    steps:
      - name: Install toolchain
        run: rustup show
        setup: true
      - name: Install alsa and udev
        run: sudo apt-get install libasound2-dev
        if: runner.os == 'linux'
      - name: CI job
        run: cargo run -p ci -- test
        env:
          RUSTFLAGS: "-C debuginfo=0 -D warnings"
        cache:
          key: cargo-{platform}
          path: target
          hash-files: ["**/Cargo.lock"]
  check-doc:
    runs-on: macos-latest
    timeout-minutes: 2
    steps:
      - run: cargo run -p ci -- doc
"""


def write(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(textwrap.dedent(text))
    return path


class TestYaml:
    def test_workflow_file(self, tmp_path):
        config = load_workflow(write(tmp_path, "ci.yml", WORKFLOW_YAML))
        assert config.name == "ci"
        assert [j.name for j in config.jobs] == ["check-tests", "check-doc"]
        assert config.env == {"CARGO_TERM_COLOR": "always"}

        tests = config.job("check-tests")
        assert tests.platform == "linux"
        setup_step, apt, ci = tests.steps
        assert setup_step.setup
        assert apt.run_if.source == "runner.os == 'linux'"
        assert ci.env == {"RUSTFLAGS": "-C debuginfo=0 -D warnings"}
        assert ci.cache.paths == ("target",)
        assert ci.cache.inputs == ("**/Cargo.lock",)

        doc = config.job("check-doc")
        assert doc.platform == "macos"
        assert doc.timeout == 120
        assert doc.steps[0].name == "Run cargo run -p ci -- doc"

    def test_on_block_becomes_trigger_policy(self, tmp_path):
        config = load_workflow(write(tmp_path, "ci.yml", WORKFLOW_YAML))
        assert config.trigger.admits(TriggerEvent(kind="push", branch="main"))
        assert not config.trigger.admits(TriggerEvent(kind="push", branch="feature/x"))

    def test_on_list(self):
        config = parse_descriptor({"on": ["push"], "jobs": {"a": {"steps": [{"run": "true"}]}}})
        assert config.trigger.admits(TriggerEvent(kind="push", branch="anything"))
        assert not config.trigger.admits(TriggerEvent(kind="pull_request", branch="main"))

    def test_missing_on_uses_default_policy(self):
        config = parse_descriptor({"jobs": {"a": {"steps": [{"run": "true"}]}}})
        assert config.trigger.kinds == {"push", "pull_request"}


class TestShippedRustWorkflow:
    @pytest.fixture
    def config(self):
        return load_workflow(Path(__file__).parent.parent / "workflows" / "rust.yml")

    def test_jobs_and_commands(self, config):
        assert [j.name for j in config.jobs] == ["check-lints", "check-tests", "check-compiles", "check-doc"]
        assert [j.steps[-1].run for j in config.jobs] == [
            f"cargo run -p ci -- {arg}" for arg in ("lints", "test", "compile", "doc")
        ]
        assert config.env == {"CARGO_TERM_COLOR": "always"}
        assert all(j.timeout is None for j in config.jobs)

    def test_system_packages(self, config):
        apt = {j.name: j.steps[2] for j in config.jobs}
        assert [name for name, step in apt.items() if step.run_if is not None] == ["check-doc"]
        for name in ("check-lints", "check-doc"):
            assert apt[name].run.endswith("libasound2-dev libudev-dev libwayland-dev libxkbcommon-dev")
        for name in ("check-tests", "check-compiles"):
            assert apt[name].run.endswith("libasound2-dev libudev-dev")
        assert all(step.run.startswith("sudo apt-get update; ") for step in apt.values())


class TestPlainDescriptor:
    def test_json_job_list(self, tmp_path):
        data = {
            "jobs": [
                {
                    "id": "lints",
                    "platform": "linux",
                    "env": {"RETRIES": 3, "CI": True},
                    "steps": [
                        {"id": "lint", "command": "cargo clippy", "cacheKey": "clippy", "runIf": "platform == 'linux'"},
                    ],
                }
            ]
        }
        path = tmp_path / "ci.json"
        path.write_text(json.dumps(data))
        config = load_workflow(path)
        lints = config.job("lints")
        assert lints.env == {"RETRIES": "3", "CI": "true"}
        step = lints.steps[0]
        assert step.cache.key == "clippy"
        assert step.run_if.source == "platform == 'linux'"


class TestRejected:
    @pytest.mark.parametrize(
        "data",
        [
            {"jobs": {"a": {"steps": [{"uses": "actions/checkout@v4"}]}}},
            {"jobs": {"a": {"needs": ["b"], "steps": [{"run": "true"}]}}},
            {"jobs": {"a": {"steps": []}}},
            {"jobs": {"a": {"steps": [{"name": "no command"}]}}},
            {"jobs": {"a": {"steps": [{"run": "true", "bogus": 1}]}}},
            {"jobs": {"a": {"runs-on": "solaris", "steps": [{"run": "true"}]}}},
            {"jobs": {"a": {"steps": [{"run": "true", "if": "runner.os =="}]}}},
            {"jobs": [{"steps": [{"run": "true"}]}]},
            {"jobs": [{"id": "a", "steps": [{"run": "true"}]}, {"id": "a", "steps": [{"run": "true"}]}]},
            {"on": 5, "jobs": {"a": {"steps": [{"run": "true"}]}}},
            [],
        ],
    )
    def test_invalid_descriptors(self, data):
        with pytest.raises(ConfigError):
            parse_descriptor(data)

    @pytest.mark.parametrize(
        "on",
        [
            {"push": {"branches-ignore": ["wip/*"]}},
            {"push": {"paths": ["src/**"]}},
            {"pull_request": {"branches": ["main"], "types": ["opened"]}},
        ],
    )
    def test_unsupported_trigger_filters(self, on):
        with pytest.raises(ConfigError, match="only 'branches'"):
            parse_descriptor({"on": on, "jobs": {"a": {"steps": [{"run": "true"}]}}})

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigError):
            load_workflow(write(tmp_path, "ci.yml", "jobs: [unclosed"))

    def test_unsupported_suffix(self, tmp_path):
        with pytest.raises(ConfigError):
            load_workflow(write(tmp_path, "ci.toml", "x = 1"))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_workflow(tmp_path / "nope.yml")


class TestPythonWorkflow:
    def test_workflow_function(self, tmp_path):
        path = write(
            tmp_path,
            "demo_workflow.py",
            """
            from ciflow.dsl import job, pipeline, sh, only_on

            def workflow():
                return pipeline(
                    job("lints", sh("lint", "true", run_if=only_on("linux"))),
                    on={"push": ["main"]},
                )
            """,
        )
        config = load_workflow(path)
        assert [j.name for j in config.jobs] == ["lints"]
        assert config.trigger.kinds == {"push"}

    def test_jobs_list(self, tmp_path):
        path = write(
            tmp_path,
            "jobs_workflow.py",
            """
            from ciflow.dsl import job, sh

            JOBS = [job("a", sh("s", "true")), job("b", sh("s", "true"))]
            """,
        )
        config = load_workflow(path)
        assert config.name == "jobs_workflow"
        assert len(config.jobs) == 2

    def test_nothing_defined(self, tmp_path):
        with pytest.raises(ConfigError):
            load_workflow(write(tmp_path, "empty_workflow.py", "X = 1\n"))
