# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import ConfigurationError


PACKAGE_FORMATS = ("deb", "rpm")

# Fields every target must carry before it can be expanded into a job.
REQUIRED_TARGET_FIELDS = ("name", "arch", "abi", "triple", "bin_name", "deb_arch")


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None
    # Guard evaluated right before the step runs; None means always run.
    when: Optional[Callable[[Any], bool]] = None
    kind: str = "sh"
    allow_failure: bool = False
    timeout: float | None = None


@dataclass(frozen=True)
class TargetDefinition:
    """
    One row of a target matrix: a CPU architecture/ABI combination plus the
    names derived from it.

    `name` is the matrix job identifier (e.g. "x86_64-musl"). `rpm_arch` is
    only required when the target is expanded into an rpm-format template.
    `package_alias` renames the package architecture in produced file names
    (armhf packages built for the ARMv6 target are shipped as "arm").
    """
    name: str
    arch: str = ""
    abi: str = ""
    triple: str = ""
    bin_name: str = ""
    deb_arch: str = ""
    rpm_arch: str | None = None
    package_alias: str | None = None
    is_reference: bool = False
    env: Dict[str, str] = field(default_factory=dict)

    def missing_fields(self, package_format: str | None = None) -> list[str]:
        missing = [f for f in REQUIRED_TARGET_FIELDS if not getattr(self, f, None)]
        if package_format == "rpm" and not self.rpm_arch:
            missing.append("rpm_arch")
        return missing

    def validate(self, package_format: str | None = None) -> None:
        missing = self.missing_fields(package_format)
        if missing:
            label = self.name or "<unnamed target>"
            raise ConfigurationError(
                f"Target '{label}' is missing required field(s): {', '.join(missing)}"
            )

    def package_arch(self, package_format: str | None) -> str:
        if package_format == "rpm":
            return self.rpm_arch or ""
        return self.deb_arch

    def placeholders(self, package_format: str | None = None) -> Dict[str, str]:
        """Values available as `{{ placeholder }}` in templates."""
        pkg_arch = self.package_arch(package_format)
        return {
            "name": self.name,
            "arch": self.arch,
            "abi": self.abi,
            "triple": self.triple,
            "bin_name": self.bin_name,
            "deb_arch": self.deb_arch,
            "rpm_arch": self.rpm_arch or "",
            "package_arch": pkg_arch,
            "package_alias": self.package_alias or pkg_arch,
        }

    def bindings(self, package_format: str | None = None) -> Dict[str, str]:
        """Default environment bindings every expanded job receives."""
        env = {
            "TARGET": self.triple,
            "TARGET_NAME": self.name,
            "BIN_NAME": self.bin_name,
            "PACKAGE_ARCH": self.package_arch(package_format),
        }
        env.update(self.env)
        return env


@dataclass(frozen=True)
class ArtifactSpec:
    """
    Typed handoff contract between a producer job and its consumers: the path
    patterns the producer materializes into the workspace on success, which
    the consumer declares as required inputs.
    """
    paths: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.paths:
            raise ConfigurationError("ArtifactSpec needs at least one path pattern")


@dataclass(frozen=True)
class CacheSpec:
    """
    Build cache declaration.

    The key is derived from (prefix, job identity, toolchain, lockfile checksum).
    Bump `prefix` to invalidate every entry at once.
    """
    dirs: tuple[str, ...]
    lockfile: str | None = None
    prefix: str = "v1"
    toolchain: str | None = None
    keep: int = 3


@dataclass
class JobTemplate:
    """
    A job with parameter slots, expanded once per target in its matrix.

    `name`, env values, step names/commands, `needs`, artifact patterns, the
    cache prefix/toolchain and `image` may reference target placeholders such
    as `{{ name }}`, `{{ triple }}` or `{{ deb_arch }}`.
    """
    name: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    package_format: str | None = None
    exports: ArtifactSpec | None = None
    consumes: ArtifactSpec | None = None
    cache: CacheSpec | None = None
    image: str | None = None
    publish: list[str] = field(default_factory=list)
    # the expansion for the reference target uploads the revision marker
    revision_marker: bool = False

    def __post_init__(self) -> None:
        if self.package_format is not None and self.package_format not in PACKAGE_FORMATS:
            raise ConfigurationError(
                f"Template '{self.name}' has unknown package_format {self.package_format!r}; "
                f"expected one of {PACKAGE_FORMATS}"
            )


@dataclass
class Job:
    """
    A concrete, schedulable job instance.

    Produced either directly by the DSL or by expanding a JobTemplate over a
    TargetDefinition. Treated as immutable once built; runtime state lives in
    the scheduler, never on the job.
    """
    name: str
    steps: list[Step]

    # Names of jobs that must succeed before this job starts.
    needs: list[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    target: TargetDefinition | None = None
    is_reference: bool = False
    package_format: str | None = None
    template: str | None = None

    exports: ArtifactSpec | None = None
    consumes: ArtifactSpec | None = None
    cache: CacheSpec | None = None
    image: str | None = None
    publish: list[str] = field(default_factory=list)
    # publishes the short-revision marker file; at most one job per run
    revision_marker: bool = False

    @property
    def identity(self) -> str:
        """Identity used for cache keys: the job name plus its toolchain triple."""
        if self.target is not None:
            return f"{self.name}@{self.target.triple}"
        return self.name


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED)


class StepStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_RUN = "not_run"


@dataclass
class StepResult:
    name: str
    status: StepStatus
    exit_code: int | None = None
    duration: float = 0.0
    reason: str | None = None


@dataclass
class PublishResult:
    """Outcome of publishing one job's artifacts."""
    status: str  # "published" | "skipped" | "failed"
    reason: str = ""
    destination: str | None = None
    files: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.status == "failed"


@dataclass
class JobResult:
    name: str
    state: JobState
    steps: List[StepResult] = field(default_factory=list)
    reason: str | None = None
    log_path: str | None = None
    cache: str | None = None
    artifacts: List[str] = field(default_factory=list)
    publish: PublishResult | None = None


@dataclass
class RunReport:
    """Aggregate result of one DAG execution."""
    results: Dict[str, JobResult] = field(default_factory=dict)
    cancelled: bool = False

    def state_of(self, name: str) -> JobState:
        return self.results[name].state

    @property
    def failed(self) -> bool:
        return any(r.state is JobState.FAILED for r in self.results.values())

    @property
    def publish_failed(self) -> bool:
        return any(r.publish is not None and r.publish.failed for r in self.results.values())

    def states(self) -> Dict[str, str]:
        return {name: r.state.value for name, r in self.results.items()}
