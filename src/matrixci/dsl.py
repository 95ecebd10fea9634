# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence, Union

from .errors import ConfigurationError
from .guards import Guard
from .matrix import expand
from .model import ArtifactSpec, CacheSpec, Job, JobTemplate, Step, TargetDefinition


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    when: Guard | None = None,
    kind: str = "sh",
    allow_failure: bool = False,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        when=when,
        kind=kind,
        allow_failure=allow_failure,
        timeout=timeout,
    )


def _artifacts(paths: Optional[Sequence[str]]) -> ArtifactSpec | None:
    if not paths:
        return None
    return ArtifactSpec(tuple(paths))


def cache(
    *dirs: str,
    lockfile: str | None = None,
    prefix: str = "v1",
    toolchain: str | None = None,
    keep: int = 3,
) -> CacheSpec:
    """Declare build cache directories and what the key is derived from."""
    if not dirs:
        raise ConfigurationError("cache() needs at least one directory")
    return CacheSpec(dirs=tuple(dirs), lockfile=lockfile, prefix=prefix, toolchain=toolchain, keep=keep)


def _collect_steps(name: str, steps: Sequence[Union[Step, List[Step]]], steps_list, cwd) -> List[Step]:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    for s in steps:
        # typed step helpers may expand to several steps
        if isinstance(s, list):
            steps_final.extend(s)
        else:
            steps_final.append(s)

    if not steps_final:
        raise ConfigurationError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]
    return steps_final


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Union[Step, List[Step]],
    steps_list: Optional[List[Step]] = None,
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    exports: Optional[Sequence[str]] = None,
    consumes: Optional[Sequence[str]] = None,
    cache: CacheSpec | None = None,
    image: str | None = None,
    publish: Optional[List[str]] = None,
    reference: bool = False,
    revision_marker: bool = False,
) -> Job:
    """A single, non-matrix job."""
    return Job(
        name=name,
        steps=_collect_steps(name, steps, steps_list, cwd),
        needs=list(needs or []),
        env={k: str(v) for k, v in (env or {}).items()},
        is_reference=reference,
        exports=_artifacts(exports),
        consumes=_artifacts(consumes),
        cache=cache,
        image=image,
        publish=list(publish or []),
        revision_marker=revision_marker,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def target(name: str, **fields) -> TargetDefinition:
    """
    Declare one matrix row.

        target("x86_64-musl", arch="x86_64", abi="musl",
               triple="x86_64-unknown-linux-musl", bin_name="app-linux-x86_64",
               deb_arch="amd64", rpm_arch="x86_64", reference=True)
    """
    reference = bool(fields.pop("reference", False))
    env = {k: str(v) for k, v in (fields.pop("env", None) or {}).items()}
    try:
        return TargetDefinition(name=name, is_reference=reference, env=env, **fields)
    except TypeError as e:
        raise ConfigurationError(f"target({name!r}): {e}") from e


def template(
    name: str,
    *steps: Union[Step, List[Step]],
    steps_list: Optional[List[Step]] = None,
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,
    package_format: str | None = None,
    exports: Optional[Sequence[str]] = None,
    consumes: Optional[Sequence[str]] = None,
    cache: CacheSpec | None = None,
    image: str | None = None,
    publish: Optional[List[str]] = None,
    revision_marker: bool = False,
) -> JobTemplate:
    """
    A job with `{{ placeholder }}` slots, expanded per target by matrix().

    revision_marker=True makes the reference target's job upload the
    short-revision marker next to its artifacts.
    """
    return JobTemplate(
        name=name,
        steps=_collect_steps(name, steps, steps_list, cwd),
        needs=list(needs or []),
        env={k: str(v) for k, v in (env or {}).items()},
        package_format=package_format,
        exports=_artifacts(exports),
        consumes=_artifacts(consumes),
        cache=cache,
        image=image,
        publish=list(publish or []),
        revision_marker=revision_marker,
    )


class Matrix:
    """
    Expands one template over a list of targets.

    Example:
        matrix(build_tpl, targets).jobs()
    """
    def __init__(self, tpl: JobTemplate, targets: Iterable[TargetDefinition]):
        self.template = tpl
        self.targets = list(targets)

    def only(self, *names: str) -> "Matrix":
        """Restrict the matrix to a subset of target names."""
        known = {t.name for t in self.targets}
        unknown = sorted(set(names) - known)
        if unknown:
            raise ConfigurationError(f"Unknown target(s) {unknown}; known: {sorted(known)}")
        return Matrix(self.template, [t for t in self.targets if t.name in names])

    def jobs(self) -> List[Job]:
        return expand(self.template, self.targets)


def matrix(tpl: JobTemplate, targets: Iterable[TargetDefinition]) -> List[Job]:
    return Matrix(tpl, targets).jobs()


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*items: Union[Job, List[Job]]) -> List[Job]:
    """
    Workflow definition helper; accepts jobs and lists of jobs (matrix output).

        from matrixci import wf, job, sh, matrix

        def workflow():
            return wf(
                matrix(build, TARGETS),
                job("notify", sh("Ping", "echo done"), needs=["x86_64-musl"]),
            )
    """
    out: List[Job] = []
    for item in items:
        if isinstance(item, Job):
            out.append(item)
        else:
            out.extend(item)
    return out
