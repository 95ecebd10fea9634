from __future__ import annotations

import shutil
import subprocess

import pytest

from matrixci.trigger import TriggerContext


def test_from_env_reads_provider_variables():
    trigger = TriggerContext.from_env(
        {
            "MATRIXCI_REVISION": "deadbeefcafef00d",
            "MATRIXCI_BRANCH": "development",
            "MATRIXCI_TAG": "",
            "MATRIXCI_PR_NUMBER": "",
            "MATRIXCI_JOB": "x86_64-musl",
            "MATRIXCI_PUBLISH_SECRET": "s3cr3t",
        },
        use_git=False,
    )

    assert trigger.revision == "deadbeefcafef00d"
    assert trigger.branch == "development"
    assert trigger.tag is None
    assert trigger.pull_request is False
    assert trigger.job_filter == "x86_64-musl"
    assert trigger.credential_present is True


def test_pull_request_and_missing_credential():
    trigger = TriggerContext.from_env({"MATRIXCI_PR_NUMBER": "42"}, use_git=False)

    assert trigger.pull_request is True
    assert trigger.credential_present is False


def test_custom_credential_variable():
    trigger = TriggerContext.from_env({"FTL_SECRET": "x"}, credential_var="FTL_SECRET", use_git=False)

    assert trigger.credential_present is True
    assert trigger.credential_var == "FTL_SECRET"


def test_version_and_short_revision():
    dev = TriggerContext(revision="0123456789", branch="development")
    release = TriggerContext(revision="0123456789", tag="v1.2.3")

    assert dev.short_revision == "0123456"
    assert dev.version == "vDev-0123456"
    assert release.version == "v1.2.3"


def test_blank_values_become_none():
    trigger = TriggerContext(branch="  ", tag="")

    assert trigger.branch is None
    assert trigger.tag is None


def test_exported_environment():
    env = TriggerContext(revision="abc", branch="master", pull_request=True).as_env()

    assert env["MATRIXCI_BRANCH"] == "master"
    assert env["MATRIXCI_TAG"] == ""
    assert env["MATRIXCI_PULL_REQUEST"] == "1"
    assert env["MATRIXCI_VERSION"] == "vDev-abc"


@pytest.fixture
def git_repo(tmp_path):
    if shutil.which("git") is None:
        pytest.skip("git not installed")

    def git(*args):
        subprocess.run(["git", *args], cwd=tmp_path, check=True, capture_output=True)

    git("init", "-q")
    git("config", "user.email", "ci@example.org")
    git("config", "user.name", "ci")
    (tmp_path / "README").write_text("x\n")
    git("add", "README")
    git("commit", "-q", "-m", "init")
    git("tag", "v5.0")
    git("checkout", "-q", "--detach")
    return tmp_path


def test_tagged_detached_head_reports_master(git_repo):
    trigger = TriggerContext.from_env({}, repo_root=git_repo)

    assert trigger.tag == "v5.0"
    assert trigger.branch == "master"
    assert len(trigger.revision) == 40
