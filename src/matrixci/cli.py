# cli.py
from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from matrixci.cache_store import compute_cache_key
from matrixci.companion import fetch_companion
from matrixci.dag import validate
from matrixci.errors import ConfigurationError, PublishError
from matrixci.publish import Publisher, resolve_destination, transfer_from_env
from matrixci.runner import load_workflow, run_dag, select_jobs
from matrixci.trigger import DEFAULT_CREDENTIAL_VAR, TriggerContext
from matrixci.ui.console import Console, get_console, set_console

EXIT_JOB_FAILED = 1
EXIT_CONFIG = 2
EXIT_PUBLISH_FAILED = 3
EXIT_INTERRUPTED = 130


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / "matrixci_workflow.py"
    if default_workflow.exists():
        workflow_files.append(default_workflow)

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
                suggestion="Create a workflow file or specify a different path:\n  matrixci run --workflow release_workflow.py",
            )
            sys.exit(EXIT_CONFIG)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  matrixci_workflow.py",
                "  *_workflow.py",
            ],
            suggestion="Specify a workflow explicitly:\n  matrixci run --workflow release_workflow.py",
        )
        sys.exit(EXIT_CONFIG)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  matrixci run --workflow release_workflow.py",
        )
        sys.exit(EXIT_CONFIG)

    return workflow_files[0]


def _load(ctx, workflow, only=()):
    """Load + validate; configuration problems exit before anything runs."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        jobs = load_workflow(workflow_path)
        jobs = select_jobs(jobs, only)
        levels = validate(jobs)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_CONFIG)
    return workflow_path, jobs, levels


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: multi-target release build orchestrator."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (defaults to matrixci_workflow.py if present)")
@click.option("--workers", default=None, type=int, envvar="MATRIXCI_WORKERS", help="Number of parallel workers")
@click.option("--cache-dir", default=".matrixci/cache", envvar="MATRIXCI_CACHE_DIR", show_default=True, help="Cache directory")
@click.option("--workspace-dir", default=".matrixci/workspace", envvar="MATRIXCI_WORKSPACE_DIR", show_default=True, help="Artifact workspace directory")
@click.option("--only", multiple=True, help="Run only these jobs/targets (plus what they need). Repeatable.")
@click.option("--publish/--no-publish", default=True, show_default=True, help="Upload artifacts of succeeded jobs when a credential is configured")
@click.option("--credential-var", default=DEFAULT_CREDENTIAL_VAR, show_default=True, help="Env var whose presence enables publishing")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print the job stages before running")
@click.pass_context
def run(ctx, workflow, workers, cache_dir, workspace_dir, only, publish, credential_var, print_plan):
    """Run a matrixci workflow."""
    console = get_console()
    trigger = TriggerContext.from_env(credential_var=credential_var)

    selection = list(only) or ([trigger.job_filter] if trigger.job_filter else [])
    workflow_path, jobs, _levels = _load(ctx, workflow, selection)

    publisher = None
    if publish:
        transfer = transfer_from_env()
        if transfer is not None:
            publisher = Publisher(transfer)
        elif trigger.credential_present:
            console.print_warning("publishing credential set but no transfer configured (MATRIXCI_SSH_HOST / MATRIXCI_PUBLISH_DIR)")

    try:
        destination = resolve_destination(trigger)
    except PublishError:
        destination = None

    console.print_run_started(
        repository=Path(".").resolve().name,
        workflow=workflow_path.name,
        job_count=len(jobs),
        destination=destination,
        revision=trigger.short_revision or None,
    )

    try:
        report = run_dag(
            jobs,
            trigger=trigger,
            repo_root=".",
            cache_root=cache_dir,
            workspace_root=workspace_dir,
            publisher=publisher,
            max_workers=workers,
            print_plan=print_plan,
        )
    except ConfigurationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_CONFIG)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_JOB_FAILED)

    console.print_results(report)

    if report.cancelled:
        sys.exit(EXIT_INTERRUPTED)
    if report.failed:
        sys.exit(EXIT_JOB_FAILED)
    if report.publish_failed:
        sys.exit(EXIT_PUBLISH_FAILED)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path")
@click.option("--only", multiple=True, help="Restrict to these jobs/targets (plus what they need)")
@click.pass_context
def plan(ctx, workflow, only):
    """Expand the matrix and print the job stages without running anything."""
    console = get_console()
    _path, jobs, levels = _load(ctx, workflow, only)
    console.print_plan(levels)
    console.print_header("JOBS")
    for j in jobs:
        flags = []
        if j.is_reference:
            flags.append("reference")
        if j.package_format:
            flags.append(j.package_format)
        if j.image:
            flags.append(f"image={j.image}")
        needs = f" needs={','.join(j.needs)}" if j.needs else ""
        extra = f" [{', '.join(flags)}]" if flags else ""
        console.print_info(f"  {j.name}{extra}{needs}")


@cli.command("cache-key")
@click.argument("job_name")
@click.option("--workflow", default=None, help="Workflow file path")
@click.pass_context
def cache_key(ctx, job_name, workflow):
    """Print the cache key a job would use right now."""
    console = get_console()
    _path, jobs, _levels = _load(ctx, workflow)
    job = next((j for j in jobs if j.name == job_name), None)
    if job is None:
        console.print_error("Unknown job", f"No job named '{job_name}'")
        sys.exit(EXIT_CONFIG)
    if job.cache is None:
        console.print_error("No cache", f"Job '{job_name}' declares no cache")
        sys.exit(EXIT_CONFIG)
    key, _manifest = compute_cache_key(job, repo_root=".")
    console.print_info(key)


@cli.command("fetch-companion")
@click.option("--root", "root_url", required=True, help="Base URL hosting <branch>/<file>")
@click.option("--file", "filename", required=True, help="Asset bundle file name")
@click.option("--dest", required=True, help="Directory to unpack into (emptied first)")
@click.option("--branch", envvar="MATRIXCI_BRANCH", default=None, help="Branch to try first")
@click.option("--fallback", "fallbacks", multiple=True, default=("development", "master"), show_default=True, help="Fallback sources, in order")
def fetch_companion_cmd(root_url, filename, dest, branch, fallbacks):
    """Download an optional companion asset bundle; never fails the job when absent."""
    console = get_console()
    result = fetch_companion(root_url, filename, dest, branch=branch or None, fallbacks=fallbacks)
    if result.found:
        console.print_info(f"Using the {result.source} build of {filename}")
        return
    console.print_warning(f"{filename} not available ({result.reason}); continuing without it")
    for url in result.probed:
        console.print_debug(f"probed {url}")


if __name__ == "__main__":
    cli()
