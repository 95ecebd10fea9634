# step_workflows/checks.py
from __future__ import annotations

import shlex
import sys

from ..guards import Guard, reference_only
from ..model import Step


# ---------------------------------------------------------------------
# Once-per-run checks
# ---------------------------------------------------------------------
# Style, lint, test and coverage default to the reference target so the
# whole matrix runs each of them exactly once. Pass when=None to run them
# on every target.

def style_check(
    cmd: str = "cargo fmt -- --check",
    *,
    name: str = "Code Style Check",
    cwd: str | None = None,
    when: Guard | None = reference_only,
) -> Step:
    return Step(name=name, run=cmd, cwd=cwd, when=when, kind="style")


def lint_check(
    cmd: str = "cargo clippy --all-targets --all-features -- -D clippy::all",
    *,
    name: str = "Code Lint Check",
    cwd: str | None = None,
    when: Guard | None = reference_only,
) -> Step:
    return Step(name=name, run=cmd, cwd=cwd, when=when, kind="lint")


def test_step(
    cmd: str = "cargo test",
    *,
    name: str = "Test",
    cwd: str | None = None,
    when: Guard | None = reference_only,
) -> Step:
    return Step(name=name, run=cmd, cwd=cwd, when=when, kind="test")


def coverage_step(
    cmd: str = "cargo tarpaulin --out Xml",
    *,
    name: str = "Generate Code Coverage",
    cwd: str | None = None,
    when: Guard | None = reference_only,
) -> Step:
    return Step(name=name, run=cmd, cwd=cwd, when=when, kind="coverage")


# ---------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------

def build_step(
    binary: str,
    *,
    name: str = "Build",
    profile: str = "release",
    cwd: str | None = None,
) -> Step:
    """
    Cross-compile for the job's target triple and copy the binary to the
    target-specific output name ($BIN_NAME).
    """
    flag = "--release" if profile == "release" else f"--profile {profile}"
    cmd = (
        f"cargo build {flag} --target \"$TARGET\"\n"
        f"cp \"target/$TARGET/{profile}/{binary}\" \"$BIN_NAME\""
    )
    return Step(name=name, run=cmd, cwd=cwd, kind="build")


def companion_fetch_step(
    root_url: str,
    filename: str,
    dest: str,
    *,
    name: str = "Download Companion Assets",
    fallbacks: tuple[str, ...] = ("development", "master"),
) -> Step:
    """
    Fetch an optional pre-built asset bundle. The step runs on the host with
    the interpreter that loaded the workflow, also for containerised jobs,
    and never fails the job.
    """
    parts = [
        sys.executable, "-m", "matrixci", "fetch-companion",
        "--root", root_url,
        "--file", filename,
        "--dest", dest,
    ]
    for fb in fallbacks:
        parts += ["--fallback", fb]
    return Step(
        name=name,
        run=" ".join(shlex.quote(p) for p in parts),
        kind="fetch",
        allow_failure=True,
    )
