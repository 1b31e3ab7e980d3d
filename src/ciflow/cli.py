# cli.py
from __future__ import annotations

import logging
import subprocess
import sys
from dataclasses import replace
from pathlib import Path

import click

from ciflow.config import load_workflow
from ciflow.engine import Engine
from ciflow.errors import CIError
from ciflow.events import ingest
from ciflow.git_facts.git import current_branch, head_sha
from ciflow.matrix import expand
from ciflow.model import EXIT_CANCELLED, EXIT_FAILURE
from ciflow.settings import load_settings
from ciflow.ui.console import Console, get_console, set_console


def find_workflow_files() -> list[Path]:
    """Find ci_workflow.py and any other *_workflow.py in the current directory."""
    current_dir = Path(".")
    default_workflow = current_dir / "ci_workflow.py"
    workflow_files = [default_workflow] if default_workflow.exists() else []
    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)
    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  ciflow run --workflow my_workflow.py",
            )
            sys.exit(EXIT_FAILURE)
        return workflow_path

    workflow_files = find_workflow_files()
    if not workflow_files:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", "  ci_workflow.py", "  *_workflow.py"],
            suggestion="Create ci_workflow.py or pass --workflow.",
        )
        sys.exit(EXIT_FAILURE)
    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[f"  {f}" for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  ciflow run --workflow ci_workflow.py",
        )
        sys.exit(EXIT_FAILURE)
    return workflow_files[0]


def _event_payload(event: str, branch, pr, sha, ref) -> dict:
    """Fill in branch/sha from the local git checkout when not given."""
    if sha is None:
        try:
            sha = head_sha()
        except (subprocess.CalledProcessError, FileNotFoundError):
            sha = "0" * 40
    if event == "push" and not branch and not ref:
        try:
            branch = current_branch() or "main"
        except (subprocess.CalledProcessError, FileNotFoundError):
            branch = "main"

    payload = {"sha": sha}
    if branch:
        payload["branch"] = branch
    if ref:
        payload["ref"] = ref
    if pr is not None:
        payload["number"] = pr
    return payload


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Enable debug mode (stack traces and debug logging)")
@click.pass_context
def cli(ctx, debug):
    """ciflow: matrix-aware CI workflow engine."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (defaults to ci_workflow.py if present)")
@click.option(
    "--event",
    type=click.Choice(["push", "pull_request", "workflow_dispatch"]),
    default="push",
    show_default=True,
    help="Trigger to simulate",
)
@click.option("--branch", default=None, help="Branch for push events (defaults to current git branch)")
@click.option("--ref", default=None, help="Full git ref (overrides --branch)")
@click.option("--pr", type=int, default=None, help="Pull request number for pull_request events")
@click.option("--sha", default=None, help="Commit SHA (defaults to git HEAD)")
@click.option("--agents", default=None, help='Agents as "id:label,label;id2:label" (env CIFLOW_AGENTS)')
@click.option("--cache-dir", default=None, help="Cache directory (env CIFLOW_CACHE_DIR)")
@click.option("--timeout", type=float, default=None, help="Default per-step timeout in seconds")
@click.pass_context
def run(ctx, workflow, event, branch, ref, pr, sha, agents, cache_dir, timeout):
    """Run a workflow locally for one trigger event."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    settings = load_settings()
    if agents:
        settings = replace(settings, agents=agents)
    if cache_dir:
        settings = replace(settings, cache_dir=Path(cache_dir))
    if timeout is not None:
        settings = replace(settings, step_timeout=timeout)

    try:
        wf = load_workflow(workflow_path)
        engine = Engine.from_settings(wf, settings)
        request = ingest(event, _event_payload(event, branch, pr, sha, ref))

        handle = engine.submit(request)
        if handle is None:
            console.print_info(f"Workflow '{wf.name}' is not triggered by {event} on {request.ref}")
            return

        console.print_run_started(
            workflow=wf.name,
            run_id=handle.run_id,
            group=handle.group_key,
            job_count=len(engine.plan()),
        )
        try:
            result = handle.wait()
        except KeyboardInterrupt:
            console.print_info("\nInterrupted by user; cancelling run...")
            handle.cancel("interrupted")
            result = handle.wait()

        console.print_results(result)
        sys.exit(result.exit_code)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_CANCELLED)
    except CIError as e:
        console.print_error(type(e).__name__, e.message, details=[f"{k}={v}" for k, v in e.details.items()])
        sys.exit(EXIT_FAILURE)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILURE)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (defaults to ci_workflow.py if present)")
def plan(workflow):
    """Show the job instances a workflow expands to."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        wf = load_workflow(workflow_path)
        instances = [inst for t in wf.templates for inst in expand(t)]
    except CIError as e:
        console.print_error(type(e).__name__, e.message, details=[f"{k}={v}" for k, v in e.details.items()])
        sys.exit(EXIT_FAILURE)

    console.print_info(f"Workflow: {wf.name}")
    console.print_plan(instances)


if __name__ == "__main__":
    cli()
