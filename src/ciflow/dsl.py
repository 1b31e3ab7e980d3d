# src/ciflow/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from .config import (
    CacheConfig,
    ConcurrencyConfig,
    JobConfig,
    RetryConfig,
    StepConfig,
    StrategyConfig,
    TriggersConfig,
    WorkflowConfig,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def retry(max_attempts: int = 3, base_delay: float = 1.0) -> RetryConfig:
    return RetryConfig(max_attempts=max_attempts, base_delay=base_delay)


def cache(
    scope: str,
    *,
    key_files: Sequence[str] = (),
    paths: Sequence[str] = (),
    save_if_ref: Optional[str] = None,
) -> CacheConfig:
    """Declare a cache scope keyed on the contents of key_files."""
    return CacheConfig(scope=scope, key_files=list(key_files), paths=list(paths), save_if_ref=save_if_ref)


def sh(
    name: str,
    cmd: str,
    *,
    env: Optional[Dict[str, Any]] = None,
    retry: Optional[RetryConfig] = None,
    continue_on_error: bool = False,
    timeout: Optional[float] = None,
    cache: Optional[CacheConfig] = None,
) -> StepConfig:
    """Create a shell step."""
    return StepConfig(
        name=name,
        run=cmd,
        env=env or {},
        retry=retry,
        continue_on_error=continue_on_error,
        timeout=timeout,
        cache=cache,
    )


# ---------------------------------------------------------------------
# Job helpers
# ---------------------------------------------------------------------

def matrix(
    *,
    include: Optional[List[Dict[str, Any]]] = None,
    exclude: Optional[List[Dict[str, Any]]] = None,
    **axes: Iterable[Any],
) -> Dict[str, Any]:
    """
    Matrix axes in declaration order.

    Example:
        matrix(os=["ubuntu-latest", "macos-latest"], py=["3.11", "3.12"])
    """
    out: Dict[str, Any] = {k: list(v) for k, v in axes.items()}
    if include:
        out["include"] = list(include)
    if exclude:
        out["exclude"] = list(exclude)
    return out


def job(
    name: str,
    *steps: StepConfig,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[StepConfig]] = None,  # allow: job("x", steps_list=[...])
    runs_on: Union[str, Sequence[str], None] = None,
    matrix: Optional[Dict[str, Any]] = None,
    fail_fast: bool = True,
    max_parallel: Optional[int] = None,
    env: Optional[Dict[str, Any]] = None,
    caches: Optional[List[CacheConfig]] = None,
    timeout: Optional[float] = None,
) -> JobConfig:
    steps_final: List[StepConfig] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if isinstance(runs_on, str):
        labels = [runs_on]
    else:
        labels = list(runs_on or [])

    return JobConfig(
        name=name,
        runs_on=labels,
        strategy=StrategyConfig(matrix=matrix or {}, fail_fast=fail_fast, max_parallel=max_parallel),
        env=env or {},
        steps=steps_final,
        caches=list(caches or []),
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def workflow(
    name: str,
    *jobs: JobConfig,
    on: Union[str, Sequence[str], Dict[str, Any]] = ("push", "pull_request", "workflow_dispatch"),
    concurrency: Optional[str] = None,
    cancel_in_progress: bool = False,
    env: Optional[Dict[str, Any]] = None,
) -> WorkflowConfig:
    """
    Workflow definition helper.

    Users can write:
        from ciflow.dsl import workflow, job, sh

        def workflow_def():
            return workflow("CI", job("fmt", sh("fmt", "cargo fmt --check")))

    and expose it as `WORKFLOW = workflow_def()` or a `workflow()` function.
    """
    by_id: Dict[str, JobConfig] = {}
    for j in jobs:
        if j.name in by_id:
            raise ValueError(f"Duplicate job name: {j.name}")
        by_id[j.name] = j

    triggers = on if isinstance(on, dict) else list([on] if isinstance(on, str) else on)
    return WorkflowConfig(
        name=name,
        triggers=TriggersConfig.model_validate(triggers),
        concurrency=ConcurrencyConfig(group=concurrency, cancel_in_progress=cancel_in_progress),
        env=env or {},
        jobs=by_id,
    )
