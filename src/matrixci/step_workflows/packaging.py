# step_workflows/packaging.py
"""
Packaging tool invocations for the two supported families:

  deb  built on the same worker as the binary, one architecture-tagged
       package per run
  rpm  two-phase: the build job exports its binary and packaging inputs to
       the workspace, a dependent job on an rpm-capable image packages them
"""
from __future__ import annotations

from typing import List

from ..errors import ConfigurationError
from ..model import Step


def deb_package(
    package_glob: str = "*.deb",
    *,
    name: str = "Build DEB",
    profile: str = "release",
) -> Step:
    # dpkg-buildpackage writes into the parent directory; pull the result back
    # and rename the architecture when the target ships under an alias.
    cmd = "\n".join([
        f"export DEB_BUILD_OPTIONS=nostrip TARGET_PROFILE={profile}",
        "dpkg-buildpackage -b -a {{ deb_arch }}",
        f"mv ../{package_glob} .",
        '[ "{{ deb_arch }}" = "{{ package_alias }}" ] || '
        f'for f in {package_glob}; do mv "$f" "${{f//{{{{ deb_arch }}}}/{{{{ package_alias }}}}}}"; done',
    ])
    return Step(name=name, run=cmd, kind="package")


def rpm_package(
    spec_file: str,
    package_glob: str = "*.rpm",
    *,
    name: str = "Build RPM",
    profile: str = "release",
) -> Step:
    spec_name = spec_file.rsplit("/", 1)[-1]
    cmd = "\n".join([
        f"export TARGET_PROFILE={profile}",
        "mkdir -p ~/rpmbuild/SOURCES ~/rpmbuild/SPECS",
        f"cp {spec_file} ~/rpmbuild/SPECS/",
        "cp -r . ~/rpmbuild/SOURCES/",
        f"rpmbuild -bb ~/rpmbuild/SPECS/{spec_name} --target {{{{ rpm_arch }}}}",
        f"mv ~/rpmbuild/RPMS/{{{{ rpm_arch }}}}/{package_glob} .",
    ])
    return Step(name=name, run=cmd, kind="package")


def package_steps(package_format: str, **kwargs) -> List[Step]:
    if package_format == "deb":
        return [deb_package(**kwargs)]
    if package_format == "rpm":
        if "spec_file" not in kwargs:
            raise ConfigurationError("rpm packaging needs spec_file=")
        return [rpm_package(**kwargs)]
    raise ConfigurationError(f"Unknown package format: {package_format!r}")
