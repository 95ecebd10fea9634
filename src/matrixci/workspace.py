# workspace.py
"""
Artifact workspace: an append-only staging area keyed by revision.

    <root>/<revision>/<producer job>/
        manifest.json      relative names of every stored file
        files/<relpath>    the artifacts, names preserved

A producer publishes once, after it Succeeded; consumers only read.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterable, List

from .cache_store import safe_name
from .errors import ArtifactError

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE_DIR = ".matrixci/workspace"


def resolve_patterns(repo_root: Path, patterns: Iterable[str]) -> List[Path]:
    """
    Expand patterns into concrete files. Each pattern must match at least one
    file; a pattern that matches nothing breaks the handoff contract.
    """
    out: List[Path] = []
    unmatched: List[str] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = repo_root / pat
        if p.is_file():
            matches = [p]
        elif p.is_dir():
            matches = [f for f in sorted(p.rglob("*")) if f.is_file()]
        else:
            matches = [m for m in sorted(repo_root.glob(pat)) if m.is_file()]
        if not matches:
            unmatched.append(pat)
        out.extend(matches)

    if unmatched:
        raise ArtifactError(f"Artifact pattern(s) matched no files: {unmatched}")

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


class ArtifactWorkspace:
    def __init__(self, root: str | Path = DEFAULT_WORKSPACE_DIR, revision: str = "local"):
        self.base = Path(root).resolve() / safe_name(revision or "local")
        self.base.mkdir(parents=True, exist_ok=True)

    def _dir(self, producer: str) -> Path:
        return self.base / safe_name(producer)

    def published(self, producer: str) -> bool:
        return (self._dir(producer) / "manifest.json").exists()

    def publish(self, producer: str, patterns: Iterable[str], *, repo_root: str | Path = ".") -> List[str]:
        """
        Copy matching files into the workspace under `producer`.

        Staged in a temp dir and renamed into place, so readers never see a
        half-written set. Returns the stored relative names.
        """
        root = Path(repo_root).resolve()
        files = resolve_patterns(root, patterns)

        names: List[str] = []
        staging = Path(tempfile.mkdtemp(prefix=f".{safe_name(producer)}.", dir=str(self.base)))
        try:
            for f in files:
                try:
                    rel = f.resolve().relative_to(root).as_posix()
                except ValueError:
                    raise ArtifactError(f"Artifact {f} is outside the repository root {root}")
                dest = staging / "files" / rel
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(f, dest)
                names.append(rel)

            (staging / "manifest.json").write_text(
                json.dumps({"producer": producer, "files": names}, indent=2),
                encoding="utf-8",
            )

            target = self._dir(producer)
            if target.exists():
                # republish of the same producer (retried run) replaces the set
                shutil.rmtree(target)
            os.replace(staging, target)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        logger.debug("published %d artifact(s) for %s", len(names), producer)
        return names

    def list(self, producer: str) -> List[str]:
        if not self.published(producer):
            raise ArtifactError(f"No artifacts published by '{producer}'")
        body = json.loads((self._dir(producer) / "manifest.json").read_text(encoding="utf-8"))
        return list(body.get("files", []))

    def fetch(self, producer: str, dest: str | Path) -> List[Path]:
        """Copy a producer's artifacts into `dest`, preserving relative names."""
        names = self.list(producer)
        src_root = self._dir(producer) / "files"
        dest_root = Path(dest).resolve()
        out: List[Path] = []
        for rel in names:
            target = dest_root / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src_root / rel, target)
            out.append(target)
        return out
