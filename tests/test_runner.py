from __future__ import annotations

import threading
from pathlib import Path

import pytest

from matrixci.dsl import job, sh
from matrixci.errors import ConfigurationError
from matrixci.model import JobState
from matrixci.runner import load_workflow, run_dag, select_jobs


def run(jobs, tmp_path, trigger, **kw):
    return run_dag(jobs, trigger=trigger, repo_root=tmp_path, print_plan=False, **kw)


def test_failed_producer_skips_consumer(tmp_path, trigger):
    jobs = [
        job("armhf", sh("Build", "exit 1")),
        job("armhf-rpm", sh("Package", "touch rpm-built"), needs=["armhf"]),
    ]

    report = run(jobs, tmp_path, trigger)

    assert report.states() == {"armhf": "failed", "armhf-rpm": "skipped"}
    assert not (tmp_path / "rpm-built").exists()
    assert report.failed


def test_independent_branches_keep_running(tmp_path, trigger):
    jobs = [
        job("armhf", sh("Build", "exit 1")),
        job("x86_64", sh("Build", "touch x86")),
        job("armhf-rpm", sh("Package", "true"), needs=["armhf"]),
        job("x86_64-rpm", sh("Package", "touch x86-rpm"), needs=["x86_64"]),
    ]

    report = run(jobs, tmp_path, trigger, max_workers=2)

    assert report.state_of("x86_64") is JobState.SUCCEEDED
    assert report.state_of("x86_64-rpm") is JobState.SUCCEEDED
    assert report.state_of("armhf-rpm") is JobState.SKIPPED
    assert (tmp_path / "x86-rpm").exists()


def test_skip_is_transitive(tmp_path, trigger):
    jobs = [
        job("a", sh("A", "exit 2")),
        job("b", sh("B", "true"), needs=["a"]),
        job("c", sh("C", "true"), needs=["b"]),
    ]

    report = run(jobs, tmp_path, trigger)

    assert report.states() == {"a": "failed", "b": "skipped", "c": "skipped"}
    assert "'a'" in report.results["c"].reason


def test_consumer_starts_after_producer(tmp_path, trigger):
    jobs = [
        job("rpm", sh("Package", "test -f built && echo ok > order.txt"), needs=["build"]),
        job("build", sh("Build", "sleep 0.3 && touch built")),
    ]

    report = run(jobs, tmp_path, trigger, max_workers=4)

    assert not report.failed
    assert (tmp_path / "order.txt").read_text().strip() == "ok"
    # declaration order, not completion order
    assert list(report.results) == ["rpm", "build"]


def test_cycle_rejected_before_anything_runs(tmp_path, trigger):
    jobs = [
        job("a", sh("A", "touch ran-a"), needs=["b"]),
        job("b", sh("B", "touch ran-b"), needs=["a"]),
    ]

    with pytest.raises(ConfigurationError, match="cycle"):
        run(jobs, tmp_path, trigger)
    assert not (tmp_path / "ran-a").exists()
    assert not (tmp_path / "ran-b").exists()


def test_unknown_need_rejected(tmp_path, trigger):
    jobs = [job("rpm", sh("Package", "true"), needs=["armhf"])]

    with pytest.raises(ConfigurationError, match="armhf"):
        run(jobs, tmp_path, trigger)


def test_cancelled_run_skips_everything_pending(tmp_path, trigger):
    cancel = threading.Event()
    cancel.set()
    jobs = [job("a", sh("A", "touch ran")), job("b", sh("B", "true"), needs=["a"])]

    report = run(jobs, tmp_path, trigger, cancel_event=cancel)

    assert report.cancelled
    assert report.states() == {"a": "skipped", "b": "skipped"}
    assert report.results["a"].reason == "run cancelled"
    assert not (tmp_path / "ran").exists()


def test_exports_reach_consumer_workdir(tmp_path, trigger):
    jobs = [
        job("build", sh("Build", "mkdir -p out && echo bin > out/app"), exports=["out/app"]),
        job("package", sh("Package", "cat out/app > ../packaged.txt"), needs=["build"], consumes=["out/app"]),
    ]

    report = run(jobs, tmp_path, trigger)

    assert not report.failed, report.results
    assert report.results["build"].artifacts == ["out/app"]
    packaged = tmp_path / ".matrixci" / "work" / "packaged.txt"
    assert packaged.read_text().strip() == "bin"


def test_consumer_fails_when_inputs_missing(tmp_path, trigger):
    jobs = [
        job("build", sh("Build", "mkdir -p out && touch out/app"), exports=["out/app"]),
        job("package", sh("Package", "true"), needs=["build"], consumes=["out/app", "LICENSE"]),
    ]

    report = run(jobs, tmp_path, trigger)

    assert report.state_of("package") is JobState.FAILED
    assert "LICENSE" in report.results["package"].reason


def test_select_jobs_pulls_in_needs(targets):
    jobs = [
        job("armhf", sh("Build", "true")),
        job("armhf-rpm", sh("Package", "true"), needs=["armhf"]),
        job("x86_64", sh("Build", "true")),
    ]

    assert [j.name for j in select_jobs(jobs, ["armhf-rpm"])] == ["armhf", "armhf-rpm"]
    assert [j.name for j in select_jobs(jobs, [])] == ["armhf", "armhf-rpm", "x86_64"]
    with pytest.raises(ConfigurationError):
        select_jobs(jobs, ["mips"])


def test_load_workflow(tmp_path):
    wf = tmp_path / "demo_workflow.py"
    wf.write_text(
        "from matrixci import job, sh\n"
        "def workflow():\n"
        "    return [job('hello', sh('Say', 'echo hi'))]\n"
    )

    jobs = load_workflow(wf)

    assert [j.name for j in jobs] == ["hello"]


def test_load_workflow_rejects_wrong_shape(tmp_path):
    wf = tmp_path / "bad_workflow.py"
    wf.write_text("JOBS = ['not a job']\n")

    with pytest.raises(ConfigurationError):
        load_workflow(wf)
