"""Typed step helpers: each returns plain shell Steps with sensible guards."""
from .checks import build_step, companion_fetch_step, coverage_step, lint_check, style_check, test_step
from .packaging import deb_package, package_steps, rpm_package

__all__ = [
    "build_step",
    "companion_fetch_step",
    "coverage_step",
    "lint_check",
    "style_check",
    "test_step",
    "deb_package",
    "package_steps",
    "rpm_package",
]
