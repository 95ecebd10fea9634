from __future__ import annotations

import io
import tarfile
import urllib.error
from pathlib import Path

from matrixci.companion import candidate_sources, fetch_companion


def make_bundle(root: Path, source: str) -> None:
    d = root / source
    d.mkdir(parents=True)
    data = f"built from {source}\n".encode()
    with tarfile.open(d / "web.tar.gz", "w:gz") as tar:
        info = tarfile.TarInfo("index.html")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))


def file_probe(url: str) -> bool:
    return Path(url[len("file://"):]).exists()


def test_candidates_deduplicated():
    assert candidate_sources("development") == ["development", "master"]
    assert candidate_sources("feature/x") == ["feature/x", "development", "master"]
    assert candidate_sources(None) == ["development", "master"]


def test_falls_back_to_development(tmp_path):
    server = tmp_path / "server"
    make_bundle(server, "development")
    make_bundle(server, "master")

    result = fetch_companion(
        server.as_uri(), "web.tar.gz", tmp_path / "web", branch="feature-x", probe_fn=file_probe
    )

    assert result.found
    assert result.source == "development"
    assert (tmp_path / "web" / "index.html").read_text() == "built from development\n"
    assert len(result.probed) == 2


def test_destination_is_replaced(tmp_path):
    server = tmp_path / "server"
    make_bundle(server, "master")
    dest = tmp_path / "web"
    dest.mkdir()
    (dest / "stale.js").write_text("old")

    fetch_companion(server.as_uri(), "web.tar.gz", dest, branch=None, probe_fn=file_probe)

    assert not (dest / "stale.js").exists()
    assert (dest / "index.html").exists()


def test_not_found_anywhere(tmp_path):
    server = tmp_path / "server"
    server.mkdir()

    result = fetch_companion(server.as_uri(), "web.tar.gz", tmp_path / "web", branch="dev", probe_fn=file_probe)

    assert not result.found
    assert result.reason == "no candidate has the asset"
    assert not (tmp_path / "web").exists()


def test_unreachable_location(tmp_path):
    def offline(url: str) -> bool:
        raise urllib.error.URLError("Name or service not known")

    result = fetch_companion("https://ftl.invalid", "web.tar.gz", tmp_path / "web", branch="dev", probe_fn=offline)

    assert not result.found
    assert result.reason == "fetch location unreachable"
    assert result.probed == [
        "https://ftl.invalid/dev/web.tar.gz",
        "https://ftl.invalid/development/web.tar.gz",
        "https://ftl.invalid/master/web.tar.gz",
    ]
