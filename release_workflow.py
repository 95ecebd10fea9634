# release_workflow.py
# Release pipeline for the pihole-API service: cross-compile for every target,
# package a .deb per target, hand the binaries to rpm-capable workers, publish.
from __future__ import annotations

from matrixci import cache, matrix, target, template, wf
from matrixci.step_workflows import (
    build_step,
    companion_fetch_step,
    coverage_step,
    deb_package,
    lint_check,
    rpm_package,
    style_check,
    test_step,
)

TARGETS = [
    target("arm", arch="arm", abi="gnueabi", triple="arm-unknown-linux-gnueabi",
           bin_name="pihole-API-arm-linux-gnueabi", deb_arch="armhf", package_alias="arm"),
    target("armhf", arch="armv7", abi="gnueabihf", triple="armv7-unknown-linux-gnueabihf",
           bin_name="pihole-API-arm-linux-gnueabihf", deb_arch="armhf", rpm_arch="armhfp"),
    target("aarch64", arch="aarch64", abi="gnu", triple="aarch64-unknown-linux-gnu",
           bin_name="pihole-API-aarch64-linux-gnu", deb_arch="arm64", rpm_arch="aarch64"),
    target("x86_64-musl", arch="x86_64", abi="musl", triple="x86_64-unknown-linux-musl",
           bin_name="pihole-API-linux-x86_64", deb_arch="amd64", rpm_arch="x86_64", reference=True),
    target("x86_32", arch="i686", abi="gnu", triple="i686-unknown-linux-gnu",
           bin_name="pihole-API-linux-x86_32", deb_arch="i386", rpm_arch="i386"),
]

# files the rpm workers need from each build
RPM_INPUTS = [
    "target/{{ triple }}/release/pihole_api",
    "Makefile",
    "LICENSE",
    "debian/pihole-API.service",
    "rpm/pihole-api.spec",
]

build = template(
    "{{ name }}",
    companion_fetch_step("https://ftl.pi-hole.net", "pihole-web.tar.gz", "web", name="Download Web"),
    style_check(),
    lint_check(),
    build_step("pihole_api"),
    test_step(),
    coverage_step("cargo tarpaulin --out Xml && bash <(curl -s https://codecov.io/bash) -f lcov.info",
                  name="Generate and Upload Code Coverage"),
    deb_package("pihole-api*.deb"),
    image="azuremarker/pihole-api-build:v4-{{ name }}",
    package_format="deb",
    exports=RPM_INPUTS,
    env={"CARGO_HOME": ".cargo"},
    publish=["{{ bin_name }}", "pihole-api*.deb"],
    revision_marker=True,
    # CARGO_HOME is inside the mounted checkout
    cache=cache("target", ".cargo", lockfile="Cargo.lock", prefix="v5-cargo"),
)

rpm = template(
    "{{ name }}-rpm",
    rpm_package("rpm/pihole-api.spec", "pihole-api*.rpm"),
    needs=["{{ name }}"],
    image="pihole/rpm-builder:v1",
    package_format="rpm",
    consumes=RPM_INPUTS,
    publish=["pihole-api*.rpm"],
)


def workflow():
    rpm_targets = [t for t in TARGETS if t.rpm_arch]
    return wf(
        matrix(build, TARGETS),
        matrix(rpm, rpm_targets),
    )
