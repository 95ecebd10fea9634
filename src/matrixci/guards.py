# guards.py
"""
Step guards: predicates evaluated immediately before a step runs.

A guard receives a StepContext and returns a bool. False means the step is
recorded as skipped and the job moves on to the next step.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict

from .model import Job
from .trigger import TriggerContext


@dataclass(frozen=True)
class StepContext:
    job: Job
    trigger: TriggerContext
    env: Dict[str, str] = field(default_factory=dict)


Guard = Callable[[StepContext], bool]


def always(ctx: StepContext) -> bool:
    return True


def reference_only(ctx: StepContext) -> bool:
    """Run only on the matrix's reference target (once per run)."""
    return ctx.job.is_reference


def not_reference(ctx: StepContext) -> bool:
    return not ctx.job.is_reference


def not_pull_request(ctx: StepContext) -> bool:
    return not ctx.trigger.pull_request


def tagged(ctx: StepContext) -> bool:
    return bool(ctx.trigger.tag)


def env_present(name: str) -> Guard:
    def _guard(ctx: StepContext) -> bool:
        return bool(ctx.env.get(name))
    _guard.__name__ = f"env_present({name})"
    return _guard


def package_format(fmt: str) -> Guard:
    def _guard(ctx: StepContext) -> bool:
        return ctx.job.package_format == fmt
    _guard.__name__ = f"package_format({fmt})"
    return _guard


def all_of(*guards: Guard) -> Guard:
    def _guard(ctx: StepContext) -> bool:
        return all(g(ctx) for g in guards)
    _guard.__name__ = "all_of(" + ", ".join(describe(g) for g in guards) + ")"
    return _guard


def any_of(*guards: Guard) -> Guard:
    def _guard(ctx: StepContext) -> bool:
        return any(g(ctx) for g in guards)
    _guard.__name__ = "any_of(" + ", ".join(describe(g) for g in guards) + ")"
    return _guard


def negate(guard: Guard) -> Guard:
    def _guard(ctx: StepContext) -> bool:
        return not guard(ctx)
    _guard.__name__ = f"not {describe(guard)}"
    return _guard


def describe(guard: Guard | None) -> str:
    if guard is None:
        return "always"
    return getattr(guard, "__name__", repr(guard))
