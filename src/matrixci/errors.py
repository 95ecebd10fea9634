# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class MatrixCIError(Exception):
    """Base class for every error raised by matrixci."""


class ConfigurationError(MatrixCIError):
    """
    The workflow itself is malformed: missing target fields, duplicate names,
    unknown dependencies, cycles.

    Always raised before any job starts.
    """


@dataclass
class CIError(MatrixCIError):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StepFailure(MatrixCIError):
    job: str
    step: str
    cmd: str
    exit_code: int
    log_path: str | None = None

    def __str__(self) -> str:
        msg = f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"
        if self.log_path:
            msg += f"\nlog: {self.log_path}"
        return msg


class ArtifactError(MatrixCIError):
    """Workspace publish/fetch could not satisfy a declared artifact contract."""


class PublishError(MatrixCIError):
    """Publishing was required but cannot proceed (e.g. no destination)."""


class TransferError(MatrixCIError):
    """The secure transfer of artifacts failed."""


class CancelledError(MatrixCIError):
    """The run was aborted while this job was in flight."""
