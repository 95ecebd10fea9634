# companion.py
"""
Optional pre-step: pull a pre-built companion asset bundle (e.g. the web UI
tarball) from the first candidate location that has it.

Candidates are probed in order: the current branch, then the development
line, then the stable line. Total unavailability is not fatal.
"""
from __future__ import annotations

import logging
import shutil
import tarfile
import tempfile
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence
from urllib.parse import quote

logger = logging.getLogger(__name__)

DEFAULT_FALLBACKS = ("development", "master")


@dataclass
class CompanionResult:
    found: bool
    source: Optional[str] = None
    url: Optional[str] = None
    reason: str = ""
    probed: List[str] = field(default_factory=list)


def candidate_sources(branch: Optional[str], fallbacks: Sequence[str] = DEFAULT_FALLBACKS) -> List[str]:
    out: List[str] = []
    for c in ([branch] if branch else []) + list(fallbacks):
        if c and c not in out:
            out.append(c)
    return out


def _url(root: str, source: str, filename: str) -> str:
    return f"{root.rstrip('/')}/{quote(source)}/{filename}"


def probe(url: str, timeout: float = 10) -> bool:
    """
    HEAD the url. True on 2xx; False when the server says it is not there.
    Network-level failures propagate as urllib.error.URLError.
    """
    req = urllib.request.Request(url, method="HEAD")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            return 200 <= response.status < 300
    except urllib.error.HTTPError:
        return False


def _download(url: str, dest: Path, timeout: float) -> None:
    with urllib.request.urlopen(url, timeout=timeout) as response, dest.open("wb") as fh:
        shutil.copyfileobj(response, fh)


def fetch_companion(
    root_url: str,
    filename: str,
    dest: str | Path,
    *,
    branch: Optional[str],
    fallbacks: Sequence[str] = DEFAULT_FALLBACKS,
    timeout: float = 30,
    probe_fn: Callable[[str], bool] | None = None,
) -> CompanionResult:
    """
    Probe candidates and unpack the first hit into `dest` (emptied first).

    The result reason tells "no candidate had it" (every probe answered
    not-found) apart from "location unreachable" (network errors).
    """
    probe_fn = probe_fn or (lambda u: probe(u, timeout=timeout))
    probed: List[str] = []
    unreachable: List[str] = []

    for source in candidate_sources(branch, fallbacks):
        url = _url(root_url, source, filename)
        probed.append(url)
        try:
            ok = probe_fn(url)
        except (urllib.error.URLError, OSError) as e:
            logger.debug("probe %s failed: %s", url, e)
            unreachable.append(url)
            continue
        if not ok:
            continue

        dest_p = Path(dest)
        if dest_p.exists():
            shutil.rmtree(dest_p)
        dest_p.mkdir(parents=True)

        try:
            with tempfile.TemporaryDirectory() as tmp:
                archive = Path(tmp) / filename
                _download(url, archive, timeout)
                with tarfile.open(str(archive), mode="r:*") as tar:
                    if hasattr(tarfile, "data_filter"):
                        tar.extractall(path=str(dest_p), filter="data")
                    else:
                        tar.extractall(path=str(dest_p))
        except (urllib.error.URLError, OSError, tarfile.TarError) as e:
            logger.warning("companion download %s failed: %s", url, e)
            return CompanionResult(found=False, source=source, url=url, reason=f"download failed: {e}", probed=probed)

        return CompanionResult(found=True, source=source, url=url, reason=f"using {source}", probed=probed)

    if unreachable and len(unreachable) == len(probed):
        reason = "fetch location unreachable"
    elif unreachable:
        reason = "not found on reachable candidates; some candidates unreachable"
    else:
        reason = "no candidate has the asset"
    return CompanionResult(found=False, reason=reason, probed=probed)
