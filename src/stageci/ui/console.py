"""Console output formatting utilities for stageci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..errors import JobFailure
    from ..model import JobResult, PipelineResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # jobs of one stage report from worker threads
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
        pipeline: str,
        ref: str,
        ref_kind: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._emit(
            "\nPIPELINE STARTED",
            f"Pipeline: {pipeline}",
            f"Ref: {ref} ({ref_kind})",
            f"Jobs: {job_count}",
            "",
        )

    def print_plan_job(self, name: str, reason: str) -> None:
        """Print job selection plan."""
        self._emit(f"  {name} ({reason})")

    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        """Print job excluded in plan."""
        self._emit(f"  {name} (excluded: {reason})")

    def print_stage(self, stage: str, job_names: list[str]) -> None:
        self._emit(f"\n=== Stage {stage}: {', '.join(job_names)} ===")

    def print_stage_skipped(self, stage: str, reason: str) -> None:
        self._emit(f"\n=== Stage {stage}: skipped ({reason}) ===")

    def print_job_start(self, name: str, image: Optional[str] = None) -> None:
        """Print job start message."""
        suffix = f" (image: {image})" if image else ""
        self._emit(f"JOB STARTED: {name}{suffix}")

    def print_job_finished(self, result: JobResult) -> None:
        duration = f" in {result.duration:.1f}s" if result.duration else ""
        self._emit(f"JOB {result.state.value.upper()}: {result.job}{duration}")

    def print_failure(self, failure: JobFailure, log_tail: str = "", allowed: bool = False) -> None:
        """
        Print a job failure with the stage it happened in and its log tail.

        The full log is only shown in debug mode.
        """
        prefix = "JOB FAILED (allowed)" if allowed else "JOB FAILED"
        lines = [f"{prefix}: {failure.job}", f"Stage: {failure.stage}", f"Exit code: {failure.exit_code}"]
        if failure.step:
            lines.append(f"Step: {failure.step}")
        for k, v in failure.details.items():
            lines.append(f"{k}: {v}")
        if log_tail:
            shown = log_tail if self.debug else "\n".join(log_tail.splitlines()[-20:])
            lines.append("--- log ---")
            lines.append(shown.rstrip())
            lines.append("-----------")
        self._emit(*lines, err=True)

    def print_canceled(self, name: str, reason: str = "pipeline canceled") -> None:
        self._emit(f"JOB CANCELED: {name} ({reason})")

    def print_cache_hit(self, job: str, key: str) -> None:
        """Print cache hit message."""
        self._emit(f"[{job}] CACHE: hit ({key})")

    def print_cache_miss(self, job: str, key: str, reason: str = "cache miss") -> None:
        """Print cache miss message."""
        self._emit(f"[{job}] CACHE: miss ({key}: {reason})")

    def print_cache_saved(self, job: str, key: str, file_count: int) -> None:
        """Print cache save message."""
        self._emit(f"[{job}] CACHE: saved {file_count} file(s) under {key}")

    def print_cache_warning(self, job: str, key: str, reason: str) -> None:
        """Print a cache problem that does not affect the job outcome."""
        self._emit(f"[{job}] CACHE: warning ({key}: {reason})", err=True)

    def print_artifact_saved(self, job: str, name: str, file_count: int, expires: Optional[str]) -> None:
        until = f", expires {expires}" if expires else ""
        self._emit(f"[{job}] ARTIFACT: {name} ({file_count} file(s){until})")

    def print_results(self, result: PipelineResult) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, f"PIPELINE {result.state.value.upper()}", "=" * 40]
        for name, job in result.jobs.items():
            mark = " (allowed to fail)" if name in result.allowed_failures else ""
            lines.append(f"  {name} [{job.stage}]: {job.state.value.upper()}{mark}")
        if result.failed_stage:
            lines.append(f"\nBlocked at stage: {result.failed_stage}")
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

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
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
