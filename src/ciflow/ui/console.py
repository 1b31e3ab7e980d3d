"""Console output formatting utilities for ciflow."""

from __future__ import annotations

import sys
from typing import Iterable, Optional

from ciflow.model import JobInstance, JobResult, JobStatus, RunResult, StepStatus

_STEP_MARKS = {
    StepStatus.SUCCESS: "ok",
    StepStatus.FAILURE: "FAILED",
    StepStatus.TIMED_OUT: "TIMED OUT",
    StepStatus.SKIPPED: "skipped",
    StepStatus.CANCELLED: "cancelled",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where normal output goes (defaults to stdout)
        """
        self.debug = debug
        self.stream = stream

    def _out(self, text: str = "") -> None:
        print(text, file=self.stream or sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}")
        self._out("-" * len(title))

    def print_run_started(self, workflow: str, run_id: str, group: str, job_count: int) -> None:
        """Print run start information."""
        self._out("\nRUN STARTED")
        self._out(f"Workflow: {workflow}")
        self._out(f"Run ID: {run_id}")
        self._out(f"Concurrency group: {group}")
        self._out(f"Jobs: {job_count}")

    def print_plan(self, instances: Iterable[JobInstance]) -> None:
        """Print the expanded job instances and the labels they need."""
        self.print_header("PLAN")
        for inst in instances:
            labels = ", ".join(sorted(inst.required_labels)) or "(any agent)"
            self._out(f"  {inst.id}  [{labels}]  {len(inst.steps)} step(s)")

    def print_job(self, job: JobResult) -> None:
        """Print one job result with a line per step."""
        self._out(f"\nJOB: {job.instance_id}  ->  {job.status.value.upper()}")
        if job.agent_id:
            self._out(f"Agent: {job.agent_id}")
        for step in job.steps:
            mark = _STEP_MARKS[step.status]
            extra = []
            if step.exit_code not in (None, 0):
                extra.append(f"exit={step.exit_code}")
            if step.attempts > 1:
                extra.append(f"attempts={step.attempts}")
            if step.continue_on_error and step.failed:
                extra.append("continue-on-error")
            suffix = f" ({', '.join(extra)})" if extra else ""
            self._out(f"  STEP {step.name}: {mark}{suffix}")
        failed = job.failed_step
        if failed is not None:
            self.print_failure(failed.name, job.error or "", exit_code=failed.exit_code)
            if self.debug and failed.output:
                self._out(failed.output)
        elif job.error and job.status != JobStatus.SUCCESS:
            self._out(f"Error: {job.error.splitlines()[0]}")

    def print_failure(self, name: str, reason: str, exit_code: Optional[int] = None) -> None:
        """Print failure message for a step."""
        self._out(f"STEP FAILED: {name}")
        if exit_code is not None:
            self._out(f"Exit code: {exit_code}")
        if self.debug:
            self._out(f"Error details: {reason}")

    def print_results(self, result: RunResult) -> None:
        """Print final results summary."""
        for job in result.job_results:
            self.print_job(job)
        self._out("\n" + "=" * 40)
        self._out("RESULTS")
        self._out("=" * 40)
        for job in result.job_results:
            self._out(f"  {job.instance_id}: {job.status.value.upper()}")
        self._out(f"\nOVERALL: {result.overall_status.value.upper()} (exit {result.exit_code})")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """Print structured error message."""
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)


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
