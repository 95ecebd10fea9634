# cache_store.py
from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tarfile
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .model import Job

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Job-level build caching:
#   cache_key = "<prefix>-<job name>--<digest>"
#   digest    = sha256(job identity, toolchain identity, lockfile checksum)
#
# The job identity is always part of the key so two targets with the same
# lockfile never share an entry. Lookup is exact-match only.
#
# Cache entry:
#   root/
#     <key>.tar.gz          the declared cache dirs
#     <key>.manifest.json   what went into the key, for explainability
#
# Paths under the repo root are archived relative to it; paths under the
# user's home ("~/.cargo") are archived under HOME_PREFIX and restored there.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".matrixci/cache"
HOME_PREFIX = "_home"
KEY_FORMAT_VERSION = 1

DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".matrixci/**",
    "**/__pycache__/**",
    "**/*.pyc",
]

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    manifest: Dict


@dataclass(frozen=True)
class CacheSave:
    saved: bool
    key: str
    reason: str


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def safe_name(name: str) -> str:
    return _UNSAFE.sub("_", name).strip("_") or "job"


def lockfile_checksum(repo_root: str | Path, lockfile: str | None) -> Tuple[str, bool]:
    """
    Returns (checksum, present). A missing lockfile hashes as empty content so
    the key stays deterministic; `present` lets callers explain the key.
    """
    if not lockfile:
        return _sha256_bytes(b""), False
    p = Path(repo_root) / lockfile
    if not p.is_file():
        return _sha256_bytes(b""), False
    return _hash_file_contents(p), True


def compute_cache_key(job: Job, *, repo_root: str | Path = ".") -> Tuple[str, Dict]:
    """
    Returns (cache_key, manifest) where manifest can be stored for explainability.

    Deterministic for a given (job identity, toolchain, lockfile content).
    """
    spec = job.cache
    if spec is None:
        raise ValueError(f"Job '{job.name}' declares no cache")

    checksum, present = lockfile_checksum(repo_root, spec.lockfile)
    toolchain = spec.toolchain or (job.target.triple if job.target else "")

    payload = {
        "v": KEY_FORMAT_VERSION,  # bump this if you change hashing format
        "job": job.identity,
        "toolchain": toolchain,
        "lockfile": spec.lockfile,
        "lockfile_checksum": checksum,
    }
    digest = _sha256_str(_json_dumps_stable(payload))[:32]
    # double dash so "x86_64" can never read as a prefix of "x86_64-musl--..."
    key = f"{safe_name(spec.prefix)}-{safe_name(job.name)}--{digest}"

    manifest = {
        "key": key,
        "job_name": job.name,
        "payload": payload,
        "lockfile_present": present,
        "dirs": list(spec.dirs),
        "generated_at_unix": int(time.time()),
    }
    return key, manifest


def _extract_kwargs() -> Dict:
    # Python >= 3.12 (and security backports) ship extraction filters
    if hasattr(tarfile, "data_filter"):
        return {"filter": "data"}
    return {}


def _archive_name(path: Path, repo_root: Path, home: Path) -> Optional[str]:
    path = path.resolve()
    try:
        return path.relative_to(repo_root).as_posix()
    except ValueError:
        pass
    try:
        return f"{HOME_PREFIX}/{path.relative_to(home).as_posix()}"
    except ValueError:
        return None


class CacheStore:
    """
    File-based, process-wide cache store keyed by cache key.

    Saves are atomic (temp file + rename), so concurrent saves of the same key
    are safe and the last writer wins.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR, *, home: str | Path | None = None):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.home = Path(home).resolve() if home is not None else Path.home().resolve()

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{key}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{key}.manifest.json"

    def exists(self, key: str) -> bool:
        return self.artifact_path(key).exists() and self.manifest_path(key).exists()

    def restore(self, key: str, *, repo_root: str | Path = ".") -> CacheHit:
        """
        Restore the entry for `key` into the working directory.

        A miss is never an error; a corrupt entry is reported as a miss.
        NOTE: restore is "overwrite by extraction". Clean beforehand if needed.
        """
        root = Path(repo_root).resolve()
        art = self.artifact_path(key)
        man = self.manifest_path(key)

        if not art.exists() or not man.exists():
            return CacheHit(hit=False, key=key, reason="cache miss", manifest={})

        try:
            with tarfile.open(str(art), mode="r:gz") as tar:
                for member in tar.getmembers():
                    if member.name.startswith(HOME_PREFIX + "/"):
                        base = self.home
                        member.name = member.name[len(HOME_PREFIX) + 1:]
                    else:
                        base = root
                    tar.extract(member, path=str(base), **_extract_kwargs())
        except (OSError, tarfile.TarError) as e:
            logger.warning("cache entry %s unreadable: %s", key, e)
            return CacheHit(hit=False, key=key, reason=f"cache exists but restore failed: {e}", manifest={})

        try:
            stored = json.loads(man.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            stored = {}

        return CacheHit(hit=True, key=key, reason="cache hit: restored", manifest=stored)

    def save(
        self,
        key: str,
        dirs: Iterable[str],
        *,
        repo_root: str | Path = ".",
        manifest: Optional[Dict] = None,
        excludes: Optional[List[str]] = None,
    ) -> CacheSave:
        """
        Archive `dirs` under `key`. Best-effort: failures are reported in the
        returned CacheSave and logged, never raised.
        """
        root = Path(repo_root).resolve()
        exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])
        tmp_name: Optional[str] = None

        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=str(self.root))
            added = 0
            with os.fdopen(fd, "wb") as fh, tarfile.open(fileobj=fh, mode="w:gz") as tar:
                for entry in dirs:
                    src = Path(entry).expanduser()
                    if not src.is_absolute():
                        src = root / src
                    if not src.exists():
                        logger.debug("cache dir %s does not exist, skipping", src)
                        continue
                    files = [src] if src.is_file() else list(_iter_files_under(src))
                    for f in files:
                        arc = _archive_name(f, root, self.home)
                        if arc is None:
                            logger.warning("cache path %s is outside repo and home, skipping", f)
                            continue
                        if _matches_any_glob(arc, exclude_globs):
                            continue
                        tar.add(str(f), arcname=arc, recursive=False)
                        added += 1

            os.replace(tmp_name, self.artifact_path(key))
            tmp_name = None

            body = dict(manifest or {})
            body.update({"key": key, "files": added, "saved_at_unix": int(time.time())})
            self._write_manifest(key, body)
        except (OSError, tarfile.TarError) as e:
            logger.warning("cache save for %s failed: %s", key, e)
            return CacheSave(saved=False, key=key, reason=f"save failed: {e}")
        finally:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)

        return CacheSave(saved=True, key=key, reason=f"saved {added} file(s)")

    def _write_manifest(self, key: str, body: Dict) -> None:
        fd, tmp = tempfile.mkstemp(prefix=f".{key}.", suffix=".json.tmp", dir=str(self.root))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(body, fh, sort_keys=True, indent=2, ensure_ascii=False)
            os.replace(tmp, self.manifest_path(key))
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)

    def entries_for(self, job_name: str) -> List[Path]:
        out: List[Path] = []
        for man in self.root.glob("*.manifest.json"):
            try:
                body = json.loads(man.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue
            if body.get("job_name") != job_name:
                continue
            art = self.artifact_path(man.name[: -len(".manifest.json")])
            if art.exists():
                out.append(art)
        return out

    def prune(self, job_name: str, keep: int = 3) -> None:
        """
        Keep only the newest N entries for a job.
        Uses file mtime as "newest".
        """
        tars = sorted(self.entries_for(job_name), key=lambda p: p.stat().st_mtime, reverse=True)
        for p in tars[keep:]:
            key = p.name[: -len(".tar.gz")]
            p.unlink(missing_ok=True)
            self.manifest_path(key).unlink(missing_ok=True)
