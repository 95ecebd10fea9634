# runner.py
from __future__ import annotations

import logging
import os
import runpy
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .cache_store import DEFAULT_CACHE_DIR, CacheStore
from .dag import build_dag, descendants, topo_levels, with_dependencies
from .errors import ConfigurationError
from .executor import ExecutionContext, run_job
from .model import Job, JobResult, JobState, RunReport
from .publish import Publisher
from .trigger import TriggerContext
from .ui.console import Console, get_console
from .workspace import DEFAULT_WORKSPACE_DIR, ArtifactWorkspace

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = ".matrixci/logs"
DEFAULT_WORK_DIR = ".matrixci/work"


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> List[Job]:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> List[Job]
      - JOBS = [Job, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ConfigurationError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"matrixci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    jobs = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        jobs = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise ConfigurationError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...]."
        )

    return jobs


def select_jobs(jobs: List[Job], only: Iterable[str]) -> List[Job]:
    """
    Keep jobs named in `only` (job names or target names) plus their
    transitive needs.
    """
    only = [o for o in only if o]
    if not only:
        return list(jobs)
    wanted: List[str] = []
    for name in only:
        matches = [j.name for j in jobs if j.name == name or (j.target is not None and j.target.name == name)]
        if not matches:
            raise ConfigurationError(f"No job or target named '{name}'")
        wanted.extend(matches)
    return with_dependencies(jobs, wanted)


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

def _skip_downstream(
    failed: str,
    adj,
    report: RunReport,
    console: Console,
) -> None:
    for name in sorted(descendants(adj, failed)):
        if name in report.results:
            continue
        report.results[name] = JobResult(
            name=name,
            state=JobState.SKIPPED,
            reason=f"upstream '{failed}' did not succeed",
        )
        console.print_job_skipped(name, f"upstream '{failed}' did not succeed")


def run_dag(
    jobs: List[Job],
    *,
    trigger: TriggerContext,
    repo_root: str | Path = ".",
    cache_root: str | Path = DEFAULT_CACHE_DIR,
    workspace_root: str | Path = DEFAULT_WORKSPACE_DIR,
    log_root: str | Path = DEFAULT_LOG_DIR,
    work_root: str | Path = DEFAULT_WORK_DIR,
    publisher: Optional[Publisher] = None,
    max_workers: int | None = None,
    cancel_event: Optional[threading.Event] = None,
    console: Optional[Console] = None,
    print_plan: bool = True,
) -> RunReport:
    """
    Execute the job graph.

    - The graph is validated up front (duplicates, unknown needs, cycles).
    - A job is submitted exactly when every job it needs has Succeeded.
    - A failure skips all transitive consumers; unrelated branches keep going.
    - On cancellation (cancel_event set or Ctrl-C) running jobs are terminated
      and everything not yet started is Skipped.
    """
    console = console or get_console()
    jobs = list(jobs)
    by_name: Dict[str, Job] = {j.name: j for j in jobs}

    adj, indeg = build_dag(jobs)
    levels = topo_levels(adj, indeg)
    if print_plan:
        console.print_plan(levels)

    cancel = cancel_event or threading.Event()
    repo_root_p = Path(repo_root).resolve()
    ctx = ExecutionContext(
        repo_root=repo_root_p,
        trigger=trigger,
        log_dir=repo_root_p / log_root,
        work_root=repo_root_p / work_root,
        cache=CacheStore(repo_root_p / cache_root),
        workspace=ArtifactWorkspace(repo_root_p / workspace_root, revision=trigger.revision or "local"),
        publisher=publisher,
        cancel_event=cancel,
        console=console,
    )

    if max_workers is None:
        c = os.cpu_count() or 2
        max_workers = max(1, c - 1)

    indeg = dict(indeg)
    ready: List[str] = [j.name for j in jobs if indeg[j.name] == 0]
    report = RunReport()
    in_flight: Dict[Future, str] = {}

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        while ready or in_flight:
            # schedule all currently ready
            while ready and not cancel.is_set():
                name = ready.pop(0)
                fut = pool.submit(run_job, by_name[name], ctx)
                in_flight[fut] = name

            if not in_flight:
                break

            try:
                done, _ = wait(list(in_flight), timeout=0.5, return_when=FIRST_COMPLETED)
            except KeyboardInterrupt:
                console.print_info("\nInterrupted: cancelling running jobs")
                cancel.set()
                continue

            for fut in done:
                name = in_flight.pop(fut)
                try:
                    result = fut.result()
                except Exception as e:
                    logger.exception("job %s crashed", name)
                    result = JobResult(name=name, state=JobState.FAILED, reason=f"{type(e).__name__}: {e}")
                report.results[name] = result

                # unlock dependents only on success
                if result.state is JobState.SUCCEEDED:
                    for nxt in sorted(adj[name]):
                        indeg[nxt] -= 1
                        if indeg[nxt] == 0 and nxt not in report.results:
                            ready.append(nxt)
                else:
                    _skip_downstream(name, adj, report, console)

    report.cancelled = cancel.is_set()
    for j in jobs:
        if j.name not in report.results:
            report.results[j.name] = JobResult(name=j.name, state=JobState.SKIPPED, reason="run cancelled")

    # declaration order for stable reporting
    report.results = {j.name: report.results[j.name] for j in jobs}
    return report
