# step_workflows/docker.py
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Dict, List

from ..errors import CIError

CONTAINER_WORKDIR = "/workspace"


def check_docker_available(job: str = "") -> None:
    """Check if Docker is available, raise helpful error if not."""
    try:
        subprocess.run(
            ["docker", "--version"],
            capture_output=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        raise CIError(
            kind="docker_unavailable",
            job=job,
            step=None,
            message="Docker is not available",
            details={"hint": "Install Docker and ensure the daemon is running."},
        )


def docker_argv(
    image: str,
    cmd: str,
    *,
    repo_root: Path,
    cwd: str | None,
    env: Dict[str, str],
    volumes: List[str] | None = None,
    user: str | None = None,
) -> List[str]:
    """
    Build a `docker run` invocation that executes `cmd` inside `image` with
    the repository mounted at /workspace.

    Only the job's own bindings are forwarded, not the host environment.
    """
    argv = ["docker", "run", "--rm"]
    argv.extend(["-v", f"{repo_root.resolve()}:{CONTAINER_WORKDIR}"])
    for vol in volumes or []:
        argv.extend(["-v", vol])

    container_cwd = f"{CONTAINER_WORKDIR}/{cwd or '.'}".replace("//", "/")
    argv.extend(["-w", container_cwd])

    for key, value in sorted(env.items()):
        argv.extend(["-e", f"{key}={value}"])

    if user:
        argv.extend(["--user", user])

    argv.append(image)
    argv.extend(["bash", "-c", cmd])
    return argv
