# executor.py
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, IO, List, Optional

from .cache_store import CacheStore, compute_cache_key, safe_name
from .errors import CancelledError, CIError, MatrixCIError, StepFailure
from .guards import StepContext, describe
from .model import Job, JobResult, JobState, Step, StepResult, StepStatus
from .publish import Publisher
from .step_workflows.docker import check_docker_available, docker_argv
from .trigger import TriggerContext
from .ui.console import Console, get_console
from .workspace import ArtifactWorkspace, resolve_patterns

logger = logging.getLogger(__name__)

_BASH = shutil.which("bash")
_POLL_SECONDS = 0.1

# step kinds that always run on the host, even for containerised jobs
HOST_KINDS = ("fetch",)


@dataclass
class ExecutionContext:
    """Everything a job needs from the run, shared read-only across workers."""
    repo_root: Path
    trigger: TriggerContext
    log_dir: Path
    work_root: Path
    cache: Optional[CacheStore] = None
    workspace: Optional[ArtifactWorkspace] = None
    publisher: Optional[Publisher] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    console: Optional[Console] = None
    grace_period: float = 5.0

    def __post_init__(self) -> None:
        self.repo_root = Path(self.repo_root).resolve()
        self.log_dir = Path(self.log_dir).resolve()
        self.work_root = Path(self.work_root).resolve()
        if self.console is None:
            self.console = get_console()

    def workdir_for(self, job: Job) -> Path:
        """
        Jobs that consume workspace artifacts run in their own directory,
        populated only from the workspace, like a fresh worker would be.
        Everything else runs in the repository checkout.
        """
        if job.consumes is None:
            return self.repo_root
        d = self.work_root / safe_name(job.name)
        if d.exists():
            shutil.rmtree(d)
        d.mkdir(parents=True)
        return d


def job_env(job: Job, trigger: TriggerContext, *, inherit: bool = True) -> Dict[str, str]:
    env: Dict[str, str] = dict(os.environ) if inherit else {}
    env.update(trigger.as_env())
    env.update(job.env or {})
    return env


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _terminate(proc: subprocess.Popen, grace: float) -> None:
    """Best-effort: SIGTERM, then SIGKILL after the grace period."""
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def _run_step(job: Job, step: Step, workdir: Path, env: Dict[str, str], log: IO[str], ctx: ExecutionContext) -> int:
    cwd = (workdir / (step.cwd or ".")).resolve()
    if not cwd.exists():
        raise CIError(
            kind="cwd_missing",
            job=job.name,
            step=step.name,
            message=f"step cwd not found: {cwd}",
        )

    log.write(f"\n### {step.name}\n$ {step.run}\n")
    log.flush()

    if job.image and step.kind not in HOST_KINDS:
        check_docker_available(job.name)
        docker_env = job_env(job, ctx.trigger, inherit=False)
        argv = docker_argv(job.image, step.run, repo_root=workdir, cwd=step.cwd, env=docker_env)
        proc = subprocess.Popen(argv, stdout=log, stderr=subprocess.STDOUT, text=True)
    else:
        proc = subprocess.Popen(
            step.run,
            shell=True,
            executable=_BASH,
            cwd=str(cwd),
            env=env,
            stdout=log,
            stderr=subprocess.STDOUT,
            text=True,
        )

    started = time.monotonic()
    while True:
        try:
            return proc.wait(timeout=_POLL_SECONDS)
        except subprocess.TimeoutExpired:
            pass
        if ctx.cancel_event.is_set():
            _terminate(proc, ctx.grace_period)
            log.write(f"\n### {step.name}: cancelled\n")
            raise CancelledError(f"[{job.name}] cancelled during step '{step.name}'")
        if step.timeout is not None and time.monotonic() - started > step.timeout:
            _terminate(proc, ctx.grace_period)
            log.write(f"\n### {step.name}: timed out after {step.timeout}s\n")
            raise StepFailure(
                job=job.name,
                step=step.name,
                cmd=f"{step.run} (timed out after {step.timeout}s)",
                exit_code=proc.returncode if proc.returncode is not None else -1,
            )


def _fetch_inputs(job: Job, workdir: Path, ctx: ExecutionContext) -> List[str]:
    """Materialize the artifacts of every producer this job needs."""
    fetched: List[str] = []
    if ctx.workspace is None:
        return fetched
    for producer in job.needs:
        if ctx.workspace.published(producer):
            fetched += [str(p) for p in ctx.workspace.fetch(producer, workdir)]
    if job.consumes is not None:
        # strict: every declared input must now be present
        resolve_patterns(workdir, job.consumes.paths)
    return fetched


def run_steps(job: Job, workdir: Path, log: IO[str], ctx: ExecutionContext) -> List[StepResult]:
    """
    Run steps strictly in order. Guards are evaluated right before each step;
    the first non-zero exit stops the job (remaining steps are NOT_RUN) and
    raises StepFailure with the results collected so far attached.
    """
    console = ctx.console
    env = job_env(job, ctx.trigger)
    sctx = StepContext(job=job, trigger=ctx.trigger, env=env)
    results: List[StepResult] = []

    for idx, step in enumerate(job.steps):
        if ctx.cancel_event.is_set():
            raise CancelledError(f"[{job.name}] cancelled before step '{step.name}'")

        if step.when is not None:
            try:
                allowed = bool(step.when(sctx))
            except Exception as e:
                raise CIError(
                    kind="guard_error",
                    job=job.name,
                    step=step.name,
                    message=f"guard {describe(step.when)} raised {type(e).__name__}: {e}",
                ) from e
            if not allowed:
                console.print_step_skipped(job.name, step.name, describe(step.when))
                results.append(StepResult(step.name, StepStatus.SKIPPED, reason=f"guard {describe(step.when)}"))
                continue

        console.print_step(job.name, step.name)
        started = time.monotonic()
        try:
            code = _run_step(job, step, workdir, env, log, ctx)
        except (StepFailure, CancelledError) as e:
            results.append(StepResult(step.name, StepStatus.FAILED, duration=time.monotonic() - started, reason=str(e)))
            results += [StepResult(s.name, StepStatus.NOT_RUN) for s in job.steps[idx + 1:]]
            e.step_results = results
            raise
        duration = time.monotonic() - started

        if code == 0:
            results.append(StepResult(step.name, StepStatus.OK, exit_code=0, duration=duration))
            continue

        results.append(StepResult(step.name, StepStatus.FAILED, exit_code=code, duration=duration))
        if step.allow_failure:
            console.print_info(f"[{job.name}] step '{step.name}' failed (exit={code}), allowed to fail")
            continue

        results += [StepResult(s.name, StepStatus.NOT_RUN) for s in job.steps[idx + 1:]]
        failure = StepFailure(job=job.name, step=step.name, cmd=step.run, exit_code=code, log_path=log.name)
        failure.step_results = results
        raise failure

    return results


def run_job(job: Job, ctx: ExecutionContext) -> JobResult:
    """
    Execute one job instance end to end:
      cache restore -> fetch inputs -> steps -> cache save -> export -> publish

    Never raises for job-level problems; they are reported in the JobResult.
    """
    console = ctx.console
    ctx.log_dir.mkdir(parents=True, exist_ok=True)
    log_path = ctx.log_dir / f"{safe_name(job.name)}.log"
    result = JobResult(name=job.name, state=JobState.RUNNING, log_path=str(log_path))
    console.print_job_start(job.name)
    started = time.monotonic()

    try:
        workdir = ctx.workdir_for(job)
        log_path.write_text("", encoding="utf-8")
        # append mode: step processes share the descriptor with our headers
        with log_path.open("a", encoding="utf-8") as log:
            key = manifest = None
            if job.cache is not None and ctx.cache is not None:
                key, manifest = compute_cache_key(job, repo_root=workdir)
                hit = ctx.cache.restore(key, repo_root=workdir)
                result.cache = hit.reason
                console.print_cache(job.name, f"{hit.reason} ({key})")

            _fetch_inputs(job, workdir, ctx)

            result.steps = run_steps(job, workdir, log, ctx)

            if key is not None:
                saved = ctx.cache.save(key, job.cache.dirs, repo_root=workdir, manifest=manifest)
                if saved.saved:
                    ctx.cache.prune(job.name, keep=job.cache.keep)
                result.cache = f"{result.cache}; {saved.reason}"
                console.print_cache(job.name, saved.reason)

            if job.exports is not None and ctx.workspace is not None:
                result.artifacts = ctx.workspace.publish(job.name, job.exports.paths, repo_root=workdir)

        result.state = JobState.SUCCEEDED
    except CancelledError as e:
        result.state = JobState.FAILED
        result.reason = "cancelled"
        result.steps = getattr(e, "step_results", result.steps)
    except StepFailure as e:
        result.state = JobState.FAILED
        result.reason = str(e)
        result.steps = getattr(e, "step_results", result.steps)
        console.print_failure(f"{job.name} / {e.step}", str(e), exit_code=e.exit_code, is_job=True)
    except (MatrixCIError, OSError) as e:
        result.state = JobState.FAILED
        result.reason = str(e)
        console.print_failure(job.name, str(e), is_job=True)

    if result.state is JobState.SUCCEEDED:
        console.print_success(job.name, time.monotonic() - started)
        if ctx.publisher is not None:
            result.publish = ctx.publisher.publish(
                job,
                ctx.trigger,
                repo_root=workdir,
                staging_dir=ctx.work_root / "publish" / safe_name(job.name),
            )
            console.print_publish(job.name, result.publish)

    return result
