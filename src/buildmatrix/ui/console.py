"""Console output formatting utilities for buildmatrix."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from ..model import JobOutcome, JobSpec
    from ..report import BuildReport


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, show_output: bool = True):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            show_output: If True, print the captured output tail of failed steps
        """
        self.debug = debug
        self.show_output = show_output
        # jobs report progress from worker threads
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        config: str,
        job_count: int,
        workers: int,
        fail_fast: bool,
    ) -> None:
        """Print run start information."""
        self._emit(
            "\nBUILD STARTED",
            f"Config: {config}",
            f"Jobs: {job_count}",
            f"Workers: {workers}",
            f"Fail fast: {'yes' if fail_fast else 'no'}",
            "",
        )

    def print_plan(self, jobs: Sequence[JobSpec]) -> None:
        """Print the expanded matrix, one job per block."""
        self.print_header(f"MATRIX ({len(jobs)} jobs)")
        for job in jobs:
            flag = " [allow failure]" if job.allow_failure else ""
            lines = [f"#{job.number} {job.name}{flag}"]
            for stage in job.stages:
                lines.append(f"    {stage.phase.value}: {stage.run}")
            self._emit(*lines)

    def print_job_start(self, job: JobSpec) -> None:
        """Print job start message."""
        self._emit(f"\nJOB STARTED: #{job.number} {job.name}")

    def print_step(self, job: str, step: str) -> None:
        """Print step start message."""
        self._emit(f"[{job}] ▶ {step}")

    def print_job_finished(self, outcome: JobOutcome) -> None:
        """Print a job's terminal status, with the failing step if any."""
        job = outcome.job
        suffix = " (allowed to fail)" if job.allow_failure and outcome.status.value == "failure" else ""
        lines = [f"JOB FINISHED: #{job.number} {job.name} -> {outcome.status.value.upper()}{suffix}"]
        step = outcome.failed_step
        if step is not None:
            lines.append(f"STEP FAILED: {step.stage.name}")
            if step.exit_code is not None:
                lines.append(f"Exit code: {step.exit_code}")
            if step.error:
                lines.append(f"Error: {step.error}")
            if self.show_output and step.output:
                lines.append("Output (tail):")
                lines.extend(f"  | {line}" for line in step.output.rstrip().splitlines()[-20:])
        self._emit(*lines)

    def print_aborted(self, outcome: JobOutcome, cancelled: int) -> None:
        """Print fail-fast abort notice."""
        self._emit(
            f"\nFAIL FAST: required job #{outcome.job.number} {outcome.job.name} failed",
            f"Cancelling {cancelled} job(s) that have not started",
        )

    def print_report(self, report: BuildReport) -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for row in report.jobs:
            flag = " (allow failure)" if row.allow_failure else ""
            lines.append(f"  #{row.number} {row.name}: {row.status.value.upper()}{flag} [{row.duration:.1f}s]")
        first = report.first_required_failure
        if first is not None:
            where = f" at '{first.failed_stage}'" if first.failed_stage else ""
            lines.append(f"\nFirst required failure: #{first.number} {first.name}{where}")
        lines.append(f"\nBuild {report.state.value}: {report.verdict.value.upper()} in {report.elapsed:.1f}s")
        self._emit(*lines)

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
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


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
