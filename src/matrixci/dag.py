# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple

from .errors import ConfigurationError
from .model import Job


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Returns (adj, indeg):
      adj[producer]  -> consumers that need it
      indeg[job]     -> number of distinct producers it waits on
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate job names found: {dupes}")

    markers = [j.name for j in jobs if j.revision_marker]
    if len(markers) > 1:
        raise ConfigurationError(f"Only one job may publish the revision marker, got: {markers}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for need in job.needs:
            if need not in name_set:
                raise ConfigurationError(
                    f"Job '{job.name}' needs missing job '{need}'. "
                    f"Known jobs: {sorted(name_set)}"
                )
            if need == job.name:
                raise ConfigurationError(f"Job '{job.name}' needs itself")
            # Edge need -> job.name (need must run before job)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel. A cycle is a configuration error.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise ConfigurationError(f"Job graph has a cycle. Stuck jobs: {remaining}")

    return levels


def validate(jobs: List[Job]) -> List[List[str]]:
    """Full pre-run check; returns the stages so callers can print a plan."""
    adj, indeg = build_dag(jobs)
    return topo_levels(adj, indeg)


def descendants(adj: Dict[str, Set[str]], name: str) -> Set[str]:
    """All transitive consumers of `name`."""
    seen: Set[str] = set()
    stack = list(adj.get(name, ()))
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        stack.extend(adj.get(node, ()))
    return seen


def with_dependencies(jobs: Iterable[Job], names: Iterable[str]) -> List[Job]:
    """
    Restrict a workflow to `names` plus everything they transitively need,
    preserving declaration order.
    """
    jobs = list(jobs)
    by_name = {j.name: j for j in jobs}
    unknown = sorted(set(names) - set(by_name))
    if unknown:
        raise ConfigurationError(f"Unknown job(s) {unknown}. Known jobs: {sorted(by_name)}")

    keep: Set[str] = set()
    stack = list(names)
    while stack:
        n = stack.pop()
        if n in keep:
            continue
        keep.add(n)
        job = by_name.get(n)
        if job is None:
            raise ConfigurationError(f"Job '{n}' is needed but not defined")
        stack.extend(job.needs)
    return [j for j in jobs if j.name in keep]
