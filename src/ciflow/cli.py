# cli.py
from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import click

from ciflow import settings
from ciflow.cache import open_store
from ciflow.errors import CIError, MalformedTrigger
from ciflow.git_facts.git import current_branch
from ciflow.loader import load_workflow
from ciflow.model import PipelineConfig, RunResult
from ciflow.scheduler import PipelineScheduler
from ciflow.trigger import TriggerPolicy, parse_event
from ciflow.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOWS = ("ciflow.yml", "ciflow.yaml", "ciflow_workflow.py")
WORKFLOW_GLOB = "*_workflow.py"


def workflow_candidates(root: Path = Path(".")) -> list[Path]:
    """Default workflow files present in `root`, in a stable order."""
    found = {root / name for name in DEFAULT_WORKFLOWS if (root / name).is_file()}
    found.update(p for p in root.glob(WORKFLOW_GLOB) if p.is_file())
    return sorted(found)


def discover_workflow(explicit: str | None) -> Path:
    """
    Resolve the workflow to load: the `--workflow` value when given,
    otherwise the single default workflow in the current directory.

    Exits with status 1 (after printing why) when nothing or more than one
    candidate is found.
    """
    console = get_console()

    if explicit:
        path = Path(explicit)
        if path.is_file():
            return path
        console.print_error(
            "Workflow file not found",
            f"No such file: {explicit}",
            suggestion="Pass an existing file:\n  ciflow run --workflow workflows/rust.yml",
        )
        sys.exit(1)

    candidates = workflow_candidates()
    if len(candidates) == 1:
        return candidates[0]

    if not candidates:
        console.print_error(
            "No workflow file found",
            "Nothing to run in this directory.",
            details=["Looked for:", *(f"  {name}" for name in (*DEFAULT_WORKFLOWS, WORKFLOW_GLOB))],
            suggestion="Add a ciflow.yml here, or pass one explicitly:\n  ciflow run --workflow path/to/ci.yml",
        )
    else:
        console.print_error(
            "Multiple workflow files found",
            "Pick one with --workflow:",
            details=[f"  {p}" for p in candidates],
        )
    sys.exit(1)


def _load(workflow: str | None) -> tuple[Path, PipelineConfig]:
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        return workflow_path, load_workflow(workflow_path)
    except CIError as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=str(e).splitlines(),
        )
        sys.exit(1)


def _resolve_branch(branch: str | None) -> str:
    if branch:
        return branch
    try:
        found = current_branch()
    except (subprocess.CalledProcessError, FileNotFoundError):
        found = None
    if not found:
        get_console().print_error(
            "Could not determine branch",
            "No --branch given and the current git branch is unknown.",
            suggestion="Specify --branch explicitly:\n  ciflow run --event push --branch main",
        )
        sys.exit(2)
    return found


def _policy(config: PipelineConfig) -> TriggerPolicy:
    return config.trigger if config.trigger is not None else TriggerPolicy()


def _write_report(path: str, result: RunResult) -> None:
    Path(path).write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and full step output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print the final report")
@click.pass_context
def cli(ctx, debug, quiet):
    """ciflow: concurrent, cache-aware CI pipeline runner."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to ciflow.yml / *_workflow.py if present)")
@click.option("--workers", default=settings.WORKERS, type=int, help="Concurrent job limit (default: one per job)")
@click.option("--cache", "cache_url", default=settings.CACHE_URL, show_default=True,
              help="Cache directory, memory:// or redis:// URL")
@click.option("--no-cache", is_flag=True, default=False, help="Disable the cache store")
@click.option("--workdir", default=".", show_default=True, help="Source tree each job gets a private copy of")
@click.option("--event", "kind", default=None, help="Evaluate the trigger for this event kind (push, pull_request)")
@click.option("--branch", default=None, help="Target branch for --event (defaults to the current git branch)")
@click.option("--report", default=None, help="Write a JSON run report to this file")
def run(workflow, workers, cache_url, no_cache, workdir, kind, branch, report):
    """Run a ciflow workflow."""
    console = get_console()
    workflow_path, config = _load(workflow)

    trigger_desc = None
    if kind is not None:
        try:
            event = parse_event({"kind": kind, "branch": _resolve_branch(branch)})
        except MalformedTrigger as e:
            console.print_error("Malformed trigger", str(e))
            sys.exit(2)
        admitted = _policy(config).admits(event)
        console.print_trigger(event.kind, event.branch, admitted)
        if not admitted:
            console.print_info("No run started.")
            return
        trigger_desc = f"{event.kind} on {event.branch}"

    scheduler = PipelineScheduler(
        None if no_cache else open_store(cache_url),
        workdir=workdir,
        max_workers=workers,
        console=console,
    )
    handle = scheduler.submit(config)
    console.print_run_started(handle.run_id, f"{config.name} ({workflow_path.name})", len(config.jobs), trigger_desc)

    try:
        result = None
        while result is None:
            try:
                result = handle.wait(0.2)
            except KeyboardInterrupt:
                console.print_info("\nInterrupted by user, cancelling jobs...")
                handle.cancel()
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_results(result)
    if report:
        _write_report(report, result)
    sys.exit(result.exit_code)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file")
@click.option("--event", "kind", required=True, help="Event kind (push, pull_request)")
@click.option("--branch", default=None, help="Target branch (defaults to the current git branch)")
def trigger(workflow, kind, branch):
    """Check whether an event would start a run (exit 0 = admit, 1 = ignore)."""
    console = get_console()
    _, config = _load(workflow)
    try:
        event = parse_event({"kind": kind, "branch": _resolve_branch(branch)})
    except MalformedTrigger as e:
        console.print_error("Malformed trigger", str(e))
        sys.exit(2)
    admitted = _policy(config).admits(event)
    console.print_trigger(event.kind, event.branch, admitted)
    sys.exit(0 if admitted else 1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--workers", default=settings.WORKERS, type=int, help="Concurrent job limit per run")
@click.option("--cache", "cache_url", default=settings.CACHE_URL, show_default=True,
              help="Cache directory, memory:// or redis:// URL")
@click.option("--workdir", default=".", show_default=True, help="Source tree each job gets a private copy of")
def serve(workflow, host, port, workers, cache_url, workdir):
    """Serve the webhook endpoint that starts runs on repository events."""
    import uvicorn

    from ciflow.server import create_app

    _, config = _load(workflow)
    scheduler = PipelineScheduler(open_store(cache_url), workdir=workdir, max_workers=workers)
    uvicorn.run(create_app(config, scheduler), host=host, port=port)


@cli.group(name="cache")
def cache_group():
    """Cache store maintenance."""


@cache_group.command()
@click.option("--cache", "cache_url", default=settings.CACHE_URL, show_default=True, help="Cache directory")
@click.option("--keep", default=settings.CACHE_KEEP, type=int, show_default=True,
              help="Entries to keep per job (most recently used first)")
def prune(cache_url, keep):
    """Evict least recently used cache entries."""
    removed = open_store(cache_url).prune(keep)
    get_console().print_info(f"Removed {removed} cache entr{'y' if removed == 1 else 'ies'}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
