# aggregator.py
from __future__ import annotations

from typing import Iterable, Optional

from .model import JobResult, JobStatus, RunResult, RunStatus


def aggregate(job_results: Iterable[JobResult], *, cancelled: bool = False, run_id: Optional[str] = None) -> RunResult:
    """
    Fold job results into one run result.

      cancelled run, no job finished on its own  -> cancelled
      any job failed                             -> failure
      any job cancelled                          -> cancelled
      otherwise                                  -> success

    Every job is required: there are no advisory jobs.
    """
    results = list(job_results)
    finished = [r for r in results if r.status != JobStatus.CANCELLED]

    if cancelled and not finished:
        status = RunStatus.CANCELLED
    elif any(r.status == JobStatus.FAILURE for r in results):
        status = RunStatus.FAILURE
    elif len(finished) != len(results):
        status = RunStatus.CANCELLED
    else:
        status = RunStatus.SUCCESS

    return RunResult(job_results=results, overall_status=status, run_id=run_id)
