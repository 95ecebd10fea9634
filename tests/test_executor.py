from __future__ import annotations

import tarfile
import threading
import time
from pathlib import Path

import pytest

from matrixci.cache_store import CacheStore
from matrixci.dsl import cache, job, sh, template
from matrixci.executor import ExecutionContext, run_job
from matrixci.guards import reference_only
from matrixci.matrix import expand
from matrixci.model import JobState, StepStatus


def make_ctx(tmp_path: Path, trigger, **kw) -> ExecutionContext:
    repo = tmp_path / "repo"
    repo.mkdir(exist_ok=True)
    return ExecutionContext(
        repo_root=repo,
        trigger=trigger,
        log_dir=tmp_path / "logs",
        work_root=tmp_path / "work",
        grace_period=1.0,
        **kw,
    )


def test_false_guard_skips_without_running(tmp_path, trigger, targets):
    tpl = template("{{ name }}", sh("Lint", "touch linted", when=reference_only))
    armhf, x86 = expand(tpl, targets)
    ctx = make_ctx(tmp_path, trigger)

    result = run_job(armhf, ctx)

    assert result.state is JobState.SUCCEEDED
    assert result.steps[0].status is StepStatus.SKIPPED
    assert not (ctx.repo_root / "linted").exists()

    result = run_job(x86, ctx)
    assert result.steps[0].status is StepStatus.OK
    assert (ctx.repo_root / "linted").exists()


def test_first_failure_stops_the_job(tmp_path, trigger):
    j = job(
        "build",
        sh("One", "echo one > one.txt"),
        sh("Two", "echo boom && exit 3"),
        sh("Three", "touch three.txt"),
    )
    ctx = make_ctx(tmp_path, trigger)

    result = run_job(j, ctx)

    assert result.state is JobState.FAILED
    assert [s.status for s in result.steps] == [StepStatus.OK, StepStatus.FAILED, StepStatus.NOT_RUN]
    assert result.steps[1].exit_code == 3
    assert "exit=3" in result.reason
    assert not (ctx.repo_root / "three.txt").exists()

    log = Path(result.log_path).read_text()
    assert "### Two" in log
    assert "boom" in log


def test_allowed_failure_keeps_going(tmp_path, trigger):
    j = job(
        "build",
        sh("Flaky", "exit 1", allow_failure=True),
        sh("After", "touch after.txt"),
    )
    ctx = make_ctx(tmp_path, trigger)

    result = run_job(j, ctx)

    assert result.state is JobState.SUCCEEDED
    assert result.steps[0].status is StepStatus.FAILED
    assert (ctx.repo_root / "after.txt").exists()


def test_guard_error_fails_the_job(tmp_path, trigger):
    def broken(ctx):
        raise ValueError("bad guard")

    j = job("build", sh("Guarded", "true", when=broken))
    result = run_job(j, make_ctx(tmp_path, trigger))

    assert result.state is JobState.FAILED
    assert "guard_error" in result.reason


def test_target_and_trigger_are_in_step_env(tmp_path, trigger, targets):
    tpl = template("{{ name }}", sh("Env", 'echo "$TARGET $BIN_NAME $MATRIXCI_BRANCH" > env.txt'))
    armhf = expand(tpl, targets)[0]
    ctx = make_ctx(tmp_path, trigger)

    assert run_job(armhf, ctx).state is JobState.SUCCEEDED
    out = (ctx.repo_root / "env.txt").read_text().split()
    assert out == ["armv7-unknown-linux-gnueabihf", "app-arm-linux-gnueabihf", "development"]


def test_cancellation_terminates_running_step(tmp_path, trigger):
    j = job("slow", sh("Sleep", "sleep 30"), sh("Never", "touch never.txt"))
    ctx = make_ctx(tmp_path, trigger)

    timer = threading.Timer(0.5, ctx.cancel_event.set)
    timer.start()
    started = time.monotonic()
    try:
        result = run_job(j, ctx)
    finally:
        timer.cancel()

    assert time.monotonic() - started < 15
    assert result.state is JobState.FAILED
    assert result.reason == "cancelled"
    assert result.steps[-1].status is StepStatus.NOT_RUN
    assert not (ctx.repo_root / "never.txt").exists()


def test_step_timeout(tmp_path, trigger):
    j = job("slow", sh("Sleep", "sleep 30", timeout=0.5))

    result = run_job(j, make_ctx(tmp_path, trigger))

    assert result.state is JobState.FAILED
    assert "timed out" in result.reason


def test_cache_saved_and_restored(tmp_path, trigger):
    j = job(
        "build",
        sh("Build", "mkdir -p target && (test -f target/out && echo warm > state.txt || echo cold > state.txt); echo x > target/out"),
        cache=cache("target"),
    )
    store = CacheStore(tmp_path / "cache")
    ctx = make_ctx(tmp_path, trigger, cache=store)

    first = run_job(j, ctx)
    assert first.state is JobState.SUCCEEDED
    assert "cache miss" in first.cache
    assert (ctx.repo_root / "state.txt").read_text().strip() == "cold"

    (ctx.repo_root / "target" / "out").unlink()
    second = run_job(j, ctx)
    assert "cache hit" in second.cache
    assert (ctx.repo_root / "state.txt").read_text().strip() == "warm"


def test_cache_save_failure_does_not_fail_job(tmp_path, trigger, monkeypatch):
    def boom(*args, **kwargs):
        raise tarfile.TarError("disk full")

    monkeypatch.setattr("matrixci.cache_store.tarfile.open", boom)
    j = job("build", sh("Build", "mkdir -p target && echo x > target/out"), cache=cache("target"))

    result = run_job(j, make_ctx(tmp_path, trigger, cache=CacheStore(tmp_path / "cache")))

    assert result.state is JobState.SUCCEEDED
    assert "save failed" in result.cache


def test_missing_cwd_fails_the_job(tmp_path, trigger):
    j = job("build", sh("Build", "true", cwd="does-not-exist"))

    result = run_job(j, make_ctx(tmp_path, trigger))

    assert result.state is JobState.FAILED
    assert "cwd_missing" in result.reason


def test_fetch_steps_run_on_host_for_container_jobs(tmp_path, trigger, monkeypatch):
    containerised = []

    def fake_docker_argv(image, cmd, **kwargs):
        containerised.append(cmd)
        # an image that lacks the host tooling
        return ["bash", "-c", "exit 127"]

    monkeypatch.setattr("matrixci.executor.check_docker_available", lambda job="": None)
    monkeypatch.setattr("matrixci.executor.docker_argv", fake_docker_argv)
    j = job(
        "armhf",
        sh("Download Web", "touch fetched", kind="fetch"),
        sh("Build", "cargo build"),
        image="azuremarker/pihole-api-build:v4-armhf",
    )
    ctx = make_ctx(tmp_path, trigger)

    result = run_job(j, ctx)

    assert (ctx.repo_root / "fetched").exists()
    assert containerised == ["cargo build"]
    assert result.steps[0].status is StepStatus.OK
    assert result.steps[1].exit_code == 127
