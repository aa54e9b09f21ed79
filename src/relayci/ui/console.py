"""Console output formatting utilities for relayci."""

from __future__ import annotations

import sys
import threading
from typing import Dict, Optional, TextIO


class Console:
    """Centralized console output formatting. Safe to call from worker threads."""

    def __init__(self, debug: bool = False, stream: Optional[TextIO] = None, err: Optional[TextIO] = None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where normal output goes (defaults to sys.stdout at call time)
            err: Where errors and warnings go (defaults to sys.stderr at call time)
        """
        self.debug = debug
        self._stream = stream
        self._err = err
        self._lock = threading.RLock()

    def _out(self, *lines: str, error: bool = False) -> None:
        target = (self._err or sys.stderr) if error else (self._stream or sys.stdout)
        with self._lock:
            for line in lines:
                print(line, file=target)

    def print_run_started(self, workflow: str, job_count: int, correlation_id: str) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Jobs: {job_count}",
            f"Correlation: {correlation_id}",
            "",
        )

    def print_job_start(self, name: str) -> None:
        self._out(f"JOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        self._out(f"[{job}] STEP: {name}")

    def print_step_output(self, job: str, output: str) -> None:
        """Print (already redacted) step output, indented under its job."""
        if not output:
            return
        self._out(*(f"[{job}]   {line}" for line in output.rstrip("\n").splitlines()))

    def print_job_finished(self, name: str, status: str, duration: Optional[float] = None) -> None:
        took = f" in {duration:.1f}s" if duration is not None else ""
        self._out(f"JOB {status.upper()}: {name}{took}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        self._out(*lines, error=True)

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._out(f"JOB SKIPPED: {name} ({reason})")

    def print_cache_hit(self, job: str, key: str, exact: bool) -> None:
        kind = "hit" if exact else "restored from fallback"
        self._out(f"[{job}] CACHE: {kind} ({_short(key)})")

    def print_cache_miss(self, job: str) -> None:
        self._out(f"[{job}] CACHE: miss")

    def print_cache_saved(self, job: str, key: str) -> None:
        self._out(f"[{job}] CACHE: saved ({_short(key)})")

    def print_plan(self, levels: list[list[str]]) -> None:
        """Print the staged execution plan."""
        for idx, level in enumerate(levels, start=1):
            self._out(f"=== Stage {idx}: {', '.join(level)} ===")

    def print_results(self, results: Dict[str, str], outcome: str) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, status in results.items():
            lines.append(f"  {job}: {status.upper()}")
        lines.append(f"OUTCOME: {outcome.upper()}")
        self._out(*lines)

    def print_notification(self, channel: str, message: str) -> None:
        self._out(f"NOTIFY [{channel}]: {message}")

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", error=True)

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
        self._out(*lines, error=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__, file=self._err or sys.stderr)
        else:
            self._out(f"Error: {exc}", error=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", error=True)


def _short(key: str) -> str:
    return key[:40] + "..." if len(key) > 40 else key


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
