# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed; callers that treat git
    facts as optional catch both.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def exact_tag(cwd: Optional[str | Path] = None) -> Optional[str]:
    """
    Tag pointing exactly at HEAD, or None.

    `git describe --exact-match` exits non-zero when HEAD is not tagged, which
    is the normal case for branch builds.
    """
    try:
        tag = _git(["describe", "--tags", "--abbrev=0", "--exact-match"], cwd=cwd)
    except subprocess.CalledProcessError:
        return None
    return tag or None


def current_branch(cwd: Optional[str | Path] = None) -> Optional[str]:
    """
    Branch name for HEAD; "HEAD" (detached) is returned as-is so the caller
    can decide what a detached build means.
    """
    branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return branch or None
