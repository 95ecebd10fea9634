from __future__ import annotations

import io

import pytest

from matrixci.dsl import target
from matrixci.trigger import TriggerContext
from matrixci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(stream=io.StringIO())
    set_console(console)
    return console


@pytest.fixture
def trigger() -> TriggerContext:
    return TriggerContext(revision="0123456789abcdef", branch="development")


@pytest.fixture
def targets():
    return [
        target(
            "armhf",
            arch="armv7",
            abi="gnueabihf",
            triple="armv7-unknown-linux-gnueabihf",
            bin_name="app-arm-linux-gnueabihf",
            deb_arch="armhf",
            rpm_arch="armhfp",
        ),
        target(
            "x86_64",
            arch="x86_64",
            abi="musl",
            triple="x86_64-unknown-linux-musl",
            bin_name="app-linux-x86_64",
            deb_arch="amd64",
            rpm_arch="x86_64",
            reference=True,
        ),
    ]
