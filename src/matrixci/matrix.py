# matrix.py
"""
Target matrix expansion.

A JobTemplate is expanded once per TargetDefinition into independent Job
instances. Placeholders use the `{{ field }}` form so they never clash with
shell syntax such as `${VAR}` or `{a,b}` brace expansion.
"""
from __future__ import annotations

import re
from dataclasses import replace
from typing import Dict, Iterable, List, Sequence

from .errors import ConfigurationError
from .model import ArtifactSpec, CacheSpec, Job, JobTemplate, Step, TargetDefinition

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def render(text: str, values: Dict[str, str], *, where: str) -> str:
    """Substitute `{{ key }}` placeholders; unknown keys are configuration errors."""
    def _sub(m: re.Match) -> str:
        key = m.group(1)
        if key not in values:
            raise ConfigurationError(
                f"Unknown placeholder '{{{{ {key} }}}}' in {where}. "
                f"Known: {sorted(values)}"
            )
        return values[key]

    return _PLACEHOLDER.sub(_sub, text)


def validate_targets(
    template: JobTemplate,
    targets: Sequence[TargetDefinition],
) -> None:
    """
    Check every target up front and report all problems at once, so a bad
    matrix is rejected before any job starts.
    """
    if not targets:
        raise ConfigurationError(f"Template '{template.name}' has an empty target matrix")

    problems: List[str] = []
    seen: set[str] = set()
    for t in targets:
        missing = t.missing_fields(template.package_format)
        if missing:
            problems.append(f"target '{t.name or '<unnamed>'}' missing: {', '.join(missing)}")
        if t.name in seen:
            problems.append(f"duplicate target '{t.name}'")
        seen.add(t.name)

    refs = [t.name for t in targets if t.is_reference]
    if len(refs) > 1:
        problems.append(f"more than one reference target: {refs}")

    if problems:
        raise ConfigurationError(
            f"Invalid target matrix for template '{template.name}':\n  " + "\n  ".join(problems)
        )


def _render_step(step: Step, values: Dict[str, str], where: str) -> Step:
    return replace(
        step,
        name=render(step.name, values, where=f"{where} step name"),
        run=render(step.run, values, where=f"{where} step '{step.name}'"),
        cwd=render(step.cwd, values, where=f"{where} step cwd") if step.cwd else None,
    )


def _render_artifacts(spec: ArtifactSpec | None, values: Dict[str, str], where: str) -> ArtifactSpec | None:
    if spec is None:
        return None
    return ArtifactSpec(tuple(render(p, values, where=where) for p in spec.paths))


def _render_cache(spec: CacheSpec | None, target: TargetDefinition, values: Dict[str, str], where: str) -> CacheSpec | None:
    if spec is None:
        return None
    toolchain = render(spec.toolchain, values, where=where) if spec.toolchain else target.triple
    return replace(
        spec,
        prefix=render(spec.prefix, values, where=where),
        toolchain=toolchain,
        dirs=tuple(render(d, values, where=where) for d in spec.dirs),
    )


def instantiate(template: JobTemplate, target: TargetDefinition) -> Job:
    """Bind one target into the template. Pure: no I/O, no shared state."""
    fmt = template.package_format
    values = target.placeholders(fmt)
    where = f"template '{template.name}'"

    name = render(template.name, values, where=f"{where} name")

    env = target.bindings(fmt)
    for k, v in template.env.items():
        env[k] = render(str(v), values, where=f"{where} env {k}")

    return Job(
        name=name,
        steps=[_render_step(s, values, where) for s in template.steps],
        needs=[render(n, values, where=f"{where} needs") for n in template.needs],
        env=env,
        target=target,
        is_reference=target.is_reference,
        package_format=fmt,
        template=template.name,
        exports=_render_artifacts(template.exports, values, f"{where} exports"),
        consumes=_render_artifacts(template.consumes, values, f"{where} consumes"),
        cache=_render_cache(template.cache, target, values, f"{where} cache"),
        image=render(template.image, values, where=f"{where} image") if template.image else None,
        publish=[render(p, values, where=f"{where} publish") for p in template.publish],
        revision_marker=template.revision_marker and target.is_reference,
    )


def expand(template: JobTemplate, targets: Iterable[TargetDefinition]) -> List[Job]:
    """Produce exactly one Job per target."""
    targets = list(targets)
    validate_targets(template, targets)

    jobs = [instantiate(template, t) for t in targets]

    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        raise ConfigurationError(
            f"Template '{template.name}' expands to duplicate job names: {names}. "
            "Include '{{ name }}' in the template name."
        )
    return jobs
