# ciflow_workflow.py
# Workflow for checking ciflow itself: tests and compile checks
from __future__ import annotations

from ciflow.dsl import cache, job, only_on, pipeline, setup, sh


def workflow():
    pip_cache = cache("pip-{platform}", ".venv", inputs=["pyproject.toml"], tools=["python3"])

    return pipeline(
        job(
            "test",
            setup("Create venv", "python3 -m venv .venv", cache=pip_cache),
            setup("Install package", ".venv/bin/pip install -q -e '.[test]'"),
            sh("Run pytest", ".venv/bin/pytest -q"),
        ),
        job(
            "compile",
            sh("Byte-compile", "python3 -m compileall -q src/ciflow"),
        ),
        job(
            "git-facts",
            sh("Show HEAD", "git log -1 --oneline", run_if=only_on("linux", "macos")),
        ),
        name="ciflow",
        on={"push": ["main"], "pull_request": ["main"]},
    )
