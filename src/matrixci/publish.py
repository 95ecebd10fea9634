# publish.py
from __future__ import annotations

import hashlib
import logging
import os
import shutil
import subprocess
import threading
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from .errors import ArtifactError, PublishError, TransferError
from .model import Job, PublishResult
from .trigger import TriggerContext
from .workspace import resolve_patterns

logger = logging.getLogger(__name__)

REVISION_MARKER = "API_HASH"
CHECKSUM_SUFFIX = ".sha1"


# ---------------------------------------------------------------------
# Transfer abstraction
# ---------------------------------------------------------------------

class Transfer(Protocol):
    def upload(self, files: Sequence[Path], destination: str) -> None:
        """Upload files into `destination`, creating it if absent."""
        ...


class LocalTransfer:
    """Copies into a directory tree; used for dry runs, mirrors and tests."""

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def upload(self, files: Sequence[Path], destination: str) -> None:
        dest = self.root / destination
        try:
            dest.mkdir(parents=True, exist_ok=True)
            for f in files:
                shutil.copy2(f, dest / Path(f).name)
        except OSError as e:
            raise TransferError(f"local upload to {dest} failed: {e}") from e


def _batch_quote(value: str) -> str:
    """Double-quote an argument for an sftp batch file."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class SftpTransfer:
    """
    Batch-mode sftp over ssh. Host keys are added with ssh-keyscan before the
    first upload; authentication relies on the agent/key configured for the
    user running the build.
    """

    def __init__(
        self,
        host: str,
        user: str,
        *,
        known_hosts: str | Path = "~/.ssh/known_hosts",
        timeout: float = 300,
    ):
        self.host = host
        self.user = user
        self.known_hosts = Path(known_hosts).expanduser()
        self.timeout = timeout
        self._scanned = False
        # jobs publish from several worker threads
        self._scan_lock = threading.Lock()

    def _ensure_host_key(self) -> None:
        with self._scan_lock:
            if not self._scanned:
                self._scan_host_key()
                self._scanned = True

    def _scan_host_key(self) -> None:
        try:
            keys = subprocess.run(
                ["ssh-keyscan", "-H", self.host],
                text=True,
                capture_output=True,
                timeout=60,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise TransferError(f"ssh-keyscan {self.host} failed: {e}") from e
        if keys.returncode != 0 or not keys.stdout.strip():
            raise TransferError(f"ssh-keyscan {self.host} returned no host keys: {keys.stderr.strip()}")

        self.known_hosts.parent.mkdir(parents=True, exist_ok=True)
        with self.known_hosts.open("a", encoding="utf-8") as fh:
            fh.write(keys.stdout)

    def batch(self, files: Sequence[Path], destination: str) -> str:
        # leading "-" lets mkdir fail when the directory already exists
        dest = _batch_quote(destination)
        lines = [f"-mkdir {dest}"]
        lines += [f"put {_batch_quote(str(f))} {dest}" for f in files]
        return "\n".join(lines) + "\n"

    def upload(self, files: Sequence[Path], destination: str) -> None:
        self._ensure_host_key()
        try:
            proc = subprocess.run(
                ["sftp", "-b", "-", f"{self.user}@{self.host}"],
                input=self.batch(files, destination),
                text=True,
                capture_output=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise TransferError(f"sftp to {self.host} failed: {e}") from e
        if proc.returncode != 0:
            raise TransferError(
                f"sftp to {self.host} exited {proc.returncode}: {proc.stderr.strip()[-2000:]}"
            )


# ---------------------------------------------------------------------
# Publisher
# ---------------------------------------------------------------------

def resolve_destination(trigger: TriggerContext) -> str:
    """Tag if present, else branch. Neither is an error, never a default."""
    if trigger.tag:
        return trigger.tag
    if trigger.branch:
        return trigger.branch
    raise PublishError("Cannot resolve publish destination: neither tag nor branch is known")


def sha1_file(path: Path) -> str:
    h = hashlib.sha1()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def write_checksum(path: Path) -> Path:
    """Write `<file>.sha1` in sha1sum format next to the file."""
    out = path.with_name(path.name + CHECKSUM_SUFFIX)
    out.write_text(f"{sha1_file(path)}  {path.name}\n", encoding="utf-8")
    return out


class Publisher:
    """
    Uploads a succeeded job's publishable artifacts.

    Skipped (not an error) when no credential is configured or the trigger is
    a pull request. Transfer failures are reported in the result and never
    change the job's own state.
    """

    def __init__(self, transfer: Transfer, *, marker_name: str = REVISION_MARKER):
        self.transfer = transfer
        self.marker_name = marker_name

    def skip_reason(self, trigger: TriggerContext) -> Optional[str]:
        if not trigger.credential_present:
            return f"no publishing credential ({trigger.credential_var} unset)"
        if trigger.pull_request:
            return "pull request build"
        return None

    def publish(
        self,
        job: Job,
        trigger: TriggerContext,
        *,
        repo_root: str | Path = ".",
        staging_dir: str | Path | None = None,
    ) -> PublishResult:
        reason = self.skip_reason(trigger)
        if reason:
            return PublishResult(status="skipped", reason=reason)

        if not job.publish:
            return PublishResult(status="skipped", reason="job declares no publishable artifacts")

        try:
            dest = resolve_destination(trigger)
        except PublishError as e:
            return PublishResult(status="failed", reason=str(e))

        root = Path(repo_root).resolve()
        staging = Path(staging_dir).resolve() if staging_dir else root
        try:
            artifacts = resolve_patterns(root, job.publish)
            # checksum files are artifacts in their own right; don't re-hash them
            binaries = [a for a in artifacts if not a.name.endswith(CHECKSUM_SUFFIX)]
            checksums = [write_checksum(b) for b in binaries]
            files: List[Path] = binaries + checksums

            if job.revision_marker:
                staging.mkdir(parents=True, exist_ok=True)
                marker = staging / self.marker_name
                marker.write_text(trigger.short_revision + "\n", encoding="utf-8")
                files.append(marker)
        except (ArtifactError, OSError) as e:
            return PublishResult(status="failed", reason=str(e), destination=dest)

        try:
            self.transfer.upload(files, dest)
        except TransferError as e:
            logger.warning("publish of %s to %s failed: %s", job.name, dest, e)
            return PublishResult(status="failed", reason=str(e), destination=dest)

        return PublishResult(
            status="published",
            destination=dest,
            files=[f.name for f in files],
        )


def transfer_from_env(environ=None) -> Optional[Transfer]:
    """
    Build the configured transfer:
      MATRIXCI_PUBLISH_DIR             -> LocalTransfer
      MATRIXCI_SSH_HOST + _SSH_USER    -> SftpTransfer
    """
    env = os.environ if environ is None else environ
    if env.get("MATRIXCI_PUBLISH_DIR"):
        return LocalTransfer(env["MATRIXCI_PUBLISH_DIR"])
    if env.get("MATRIXCI_SSH_HOST") and env.get("MATRIXCI_SSH_USER"):
        return SftpTransfer(env["MATRIXCI_SSH_HOST"], env["MATRIXCI_SSH_USER"])
    return None
