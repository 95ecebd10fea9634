# trigger.py
from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from .git_facts import git

logger = logging.getLogger(__name__)

DEFAULT_CREDENTIAL_VAR = "MATRIXCI_PUBLISH_SECRET"


class TriggerContext(BaseModel):
    """
    Facts about the source-revision event that triggered this run.

    Every job sees the same trigger; it is exported to steps as MATRIXCI_*
    environment variables.
    """
    revision: str = ""
    branch: Optional[str] = None
    tag: Optional[str] = None
    pull_request: bool = False
    job_filter: Optional[str] = None
    credential_present: bool = False
    credential_var: str = DEFAULT_CREDENTIAL_VAR
    extra: dict[str, str] = Field(default_factory=dict)

    @field_validator("branch", "tag", "job_filter", mode="before")
    @classmethod
    def _blank_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def short_revision(self) -> str:
        return self.revision[:7]

    @property
    def version(self) -> str:
        if self.tag:
            return self.tag
        return f"vDev-{self.short_revision}"

    def as_env(self) -> dict[str, str]:
        env = {
            "MATRIXCI_REVISION": self.revision,
            "MATRIXCI_BRANCH": self.branch or "",
            "MATRIXCI_TAG": self.tag or "",
            "MATRIXCI_PULL_REQUEST": "1" if self.pull_request else "",
            "MATRIXCI_VERSION": self.version,
        }
        env.update(self.extra)
        return env

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        repo_root: str | Path | None = None,
        credential_var: str = DEFAULT_CREDENTIAL_VAR,
        use_git: bool = True,
    ) -> "TriggerContext":
        """
        Build the trigger from the environment, falling back to git for
        anything the CI provider did not set.

        A tag build on a detached HEAD reports branch "master".
        """
        env = os.environ if environ is None else environ

        revision = env.get("MATRIXCI_REVISION", "")
        branch = env.get("MATRIXCI_BRANCH") or None
        tag = env.get("MATRIXCI_TAG") or None

        if use_git:
            try:
                if not revision:
                    revision = git.head_sha(cwd=repo_root)
                if tag is None:
                    tag = git.exact_tag(cwd=repo_root)
                if branch is None:
                    branch = git.current_branch(cwd=repo_root)
                    if branch == "HEAD":
                        branch = "master" if tag else None
            except (subprocess.CalledProcessError, FileNotFoundError) as e:
                logger.debug("git facts unavailable: %s", e)

        return cls(
            revision=revision,
            branch=branch,
            tag=tag,
            pull_request=bool(env.get("MATRIXCI_PR_NUMBER")),
            job_filter=env.get("MATRIXCI_JOB"),
            credential_present=bool(env.get(credential_var)),
            credential_var=credential_var,
        )
