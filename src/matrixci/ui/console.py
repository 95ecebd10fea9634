"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from ..model import PublishResult, RunReport


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Output stream (defaults to sys.stdout at print time)
        """
        self.debug = debug
        self._stream = stream
        # jobs run on worker threads; keep each line intact
        self._lock = threading.Lock()

    def _out(self, text: str = "", *, err: bool = False) -> None:
        stream = sys.stderr if err else (self._stream or sys.stdout)
        with self._lock:
            print(text, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}")
        self._out("-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
        destination: Optional[str] = None,
        revision: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        self._out("\nRUN STARTED")
        self._out(f"Repository: {repository}")
        self._out(f"Workflow: {workflow}")
        self._out(f"Jobs: {job_count}")
        if revision:
            self._out(f"Revision: {revision}")
        if destination:
            self._out(f"Destination: {destination}")
        self._out()

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print the dependency stages of the run."""
        self.print_header("PLAN")
        for idx, level in enumerate(levels, start=1):
            self._out(f"  stage {idx}: {', '.join(level)}")

    def print_job_start(self, name: str) -> None:
        self._out(f"[{name}] JOB STARTED")

    def print_step(self, job: str, name: str) -> None:
        self._out(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str, guard: str) -> None:
        self._out(f"[{job}] STEP SKIPPED: {name} (guard {guard} is false)")

    def print_cache(self, job: str, reason: str) -> None:
        self._out(f"[{job}] CACHE: {reason}")

    def print_success(self, name: str, duration: Optional[float] = None) -> None:
        suffix = f" in {duration:.1f}s" if duration is not None else ""
        self._out(f"[{name}] STATUS: succeeded{suffix}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        self._out(f"{prefix}: {name}")
        if exit_code is not None:
            self._out(f"Exit code: {exit_code}")
        if hint:
            self._out(f"Hint: {hint}")
        if self.debug:
            self._out(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            self._out(f"Error: {error_line}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._out(f"[{name}] STATUS: skipped ({reason})")

    def print_publish(self, job: str, result: "PublishResult") -> None:
        if result.status == "published":
            self._out(f"[{job}] PUBLISH: {len(result.files)} file(s) -> {result.destination}")
        elif result.status == "skipped":
            self.print_debug(f"[{job}] publish skipped: {result.reason}")
        else:
            self._out(f"[{job}] PUBLISH FAILED: {result.reason}", err=True)

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary."""
        self._out("\n" + "=" * 40)
        self._out("RESULTS")
        self._out("=" * 40)
        for job, result in report.results.items():
            line = f"  {job}: {result.state.value.upper()}"
            if result.reason:
                line += f" ({result.reason.splitlines()[0]})"
            if result.log_path and result.state.value == "failed":
                line += f"\n      log: {result.log_path}"
            self._out(line)
        if report.publish_failed:
            self._out("  publish: FAILED")
        if report.cancelled:
            self._out("  run: CANCELLED")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        self._out(f"\nERROR: {title}", err=True)
        self._out(message, err=True)
        if details:
            for detail in details:
                self._out(f"  {detail}", err=True)
        if suggestion:
            self._out(f"\n{suggestion}", err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
