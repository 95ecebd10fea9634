"""
A small release pipeline run for real: two targets, checks that only run on
the reference target, a two-phase packaging job fed through the workspace,
and publishing into a local directory.
"""
from __future__ import annotations

from pathlib import Path

from matrixci import cache, matrix, sh, template, wf
from matrixci.cache_store import CacheStore
from matrixci.model import JobState, StepStatus
from matrixci.publish import LocalTransfer, Publisher
from matrixci.runner import run_dag
from matrixci.step_workflows import coverage_step, lint_check, style_check
from matrixci.trigger import TriggerContext

INPUTS = ["out/{{ triple }}/app", "LICENSE"]


def pipeline(targets):
    build = template(
        "{{ name }}",
        style_check("echo style >> ../checks.log", cwd="."),
        lint_check("echo lint >> ../checks.log"),
        sh("Build", "mkdir -p out/$TARGET && echo {{ arch }} > out/$TARGET/app && cp out/$TARGET/app $BIN_NAME"),
        coverage_step("echo coverage >> ../checks.log"),
        exports=INPUTS,
        publish=["{{ bin_name }}"],
        revision_marker=True,
        cache=cache("out", prefix="v5-cargo"),
    )
    rpm = template(
        "{{ name }}-rpm",
        sh("Package", "cat out/{{ triple }}/app LICENSE > app-{{ rpm_arch }}.rpm && cp app-{{ rpm_arch }}.rpm ../../../"),
        needs=["{{ name }}"],
        package_format="rpm",
        consumes=INPUTS,
    )
    return wf(matrix(build, targets), matrix(rpm, targets))


def test_release_pipeline(tmp_path: Path, targets):
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / "LICENSE").write_text("EUPL-1.2\n")
    downloads = tmp_path / "downloads"
    trigger = TriggerContext(revision="89abcdef01234567", tag="v5.1", credential_present=True)

    report = run_dag(
        pipeline(targets),
        trigger=trigger,
        repo_root=repo,
        cache_root=tmp_path / "cache",
        publisher=Publisher(LocalTransfer(downloads)),
        print_plan=False,
    )

    assert report.states() == {
        "armhf": "succeeded",
        "x86_64": "succeeded",
        "armhf-rpm": "succeeded",
        "x86_64-rpm": "succeeded",
    }

    # checks run once for the whole matrix
    assert sorted((tmp_path / "checks.log").read_text().split()) == ["coverage", "lint", "style"]
    skipped = [s.name for s in report.results["armhf"].steps if s.status is StepStatus.SKIPPED]
    assert skipped == ["Code Style Check", "Code Lint Check", "Generate Code Coverage"]

    # the rpm jobs packaged exactly what their producer exported
    assert (repo / "app-armhfp.rpm").read_text() == "armv7\nEUPL-1.2\n"
    assert (repo / "app-x86_64.rpm").read_text() == "x86_64\nEUPL-1.2\n"

    published = sorted(p.name for p in (downloads / "v5.1").iterdir())
    assert published == [
        "API_HASH",
        "app-arm-linux-gnueabihf",
        "app-arm-linux-gnueabihf.sha1",
        "app-linux-x86_64",
        "app-linux-x86_64.sha1",
    ]
    assert (downloads / "v5.1" / "API_HASH").read_text().strip() == "89abcde"

    store = CacheStore(tmp_path / "cache")
    assert len(store.entries_for("armhf")) == 1
    assert report.results["x86_64"].state is JobState.SUCCEEDED
