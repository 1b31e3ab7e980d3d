# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple


class TriggerKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    WORKFLOW_DISPATCH = "workflow_dispatch"


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class JobStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (RunStatus.QUEUED, RunStatus.RUNNING)


# ----------------------------------------------------------------------
# Trigger
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class RunRequest:
    """A normalized trigger event. Never mutated after ingest."""
    trigger_kind: TriggerKind
    ref: str
    commit_sha: str
    dispatched_at: datetime
    pull_request_id: Optional[int] = None
    inputs: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def ref_name(self) -> str:
        # refs/heads/main -> main, refs/pull/7/merge -> 7/merge
        for prefix in ("refs/heads/", "refs/tags/", "refs/pull/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref


# ----------------------------------------------------------------------
# Templates
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {self.base_delay}")


@dataclass(frozen=True)
class CacheSpec:
    """
    A cache scope declared by a job or a step.

    key_files: files/globs whose contents feed the key (lockfiles)
    paths: files/dirs stored into and restored from the payload
    save_if_ref: only write the cache when the run's ref equals this
    """
    scope: str
    key_files: Tuple[str, ...] = ()
    paths: Tuple[str, ...] = ()
    save_if_ref: Optional[str] = None


@dataclass(frozen=True)
class StepSpec:
    """A single opaque command inside a job."""
    name: str
    command: str
    retry_policy: Optional[RetryPolicy] = None
    continue_on_error: bool = False
    env: Mapping[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None
    cache: Optional[CacheSpec] = None


@dataclass(frozen=True)
class Strategy:
    # Axis order is declaration order (dicts keep insertion order).
    axes: Mapping[str, Tuple[Any, ...]] = field(default_factory=dict)
    include: Tuple[Mapping[str, Any], ...] = ()
    exclude: Tuple[Mapping[str, Any], ...] = ()


@dataclass(frozen=True)
class JobTemplate:
    name: str
    steps: Tuple[StepSpec, ...]
    strategy: Strategy = field(default_factory=Strategy)
    required_labels: frozenset = frozenset()
    fail_fast: bool = True
    max_parallel: Optional[int] = None
    env: Mapping[str, str] = field(default_factory=dict)
    caches: Tuple[CacheSpec, ...] = ()
    timeout: Optional[float] = None
    label_axes: Tuple[str, ...] = ("os",)


@dataclass
class JobInstance:
    """One concrete matrix point of a JobTemplate."""
    template: JobTemplate
    matrix: Dict[str, Any]
    required_labels: frozenset
    env: Dict[str, str]
    steps: Tuple[StepSpec, ...]
    index: int = 0
    title: Optional[str] = None  # template name with matrix values substituted

    @property
    def name(self) -> str:
        return self.template.name

    @property
    def id(self) -> str:
        if self.title:
            return self.title
        if not self.matrix:
            return self.template.name
        values = ", ".join(str(v) for v in self.matrix.values())
        return f"{self.template.name} ({values})"


# ----------------------------------------------------------------------
# Resources
# ----------------------------------------------------------------------

@dataclass
class Agent:
    id: str
    labels: frozenset
    busy: bool = False
    workdir: Path = field(default_factory=lambda: Path("."))

    def satisfies(self, labels: frozenset) -> bool:
        return set(labels) <= set(self.labels)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    scope: str
    payload_ref: str


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    status: StepStatus
    exit_code: Optional[int] = None
    attempts: int = 0
    duration: float = 0.0
    continue_on_error: bool = False
    output: str = ""

    @property
    def failed(self) -> bool:
        return self.status in (StepStatus.FAILURE, StepStatus.TIMED_OUT)


@dataclass
class JobResult:
    job_name: str
    instance_id: str
    status: JobStatus
    matrix: Dict[str, Any] = field(default_factory=dict)
    agent_id: Optional[str] = None
    steps: List[StepResult] = field(default_factory=list)
    error: Optional[str] = None
    cache_hits: List[str] = field(default_factory=list)

    @property
    def failed_step(self) -> Optional[StepResult]:
        """First required step that failed, if any."""
        for s in self.steps:
            if s.failed and not s.continue_on_error:
                return s
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_name": self.job_name,
            "instance_id": self.instance_id,
            "status": self.status.value,
            "matrix": dict(self.matrix),
            "agent_id": self.agent_id,
            "error": self.error,
            "cache_hits": list(self.cache_hits),
            "steps": [
                {
                    "name": s.name,
                    "status": s.status.value,
                    "exit_code": s.exit_code,
                    "attempts": s.attempts,
                    "duration": round(s.duration, 3),
                    "continue_on_error": s.continue_on_error,
                }
                for s in self.steps
            ],
        }


# Process exit codes surfaced by the CLI. 130 mirrors an interrupted process.
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


@dataclass
class RunResult:
    job_results: List[JobResult]
    overall_status: RunStatus
    run_id: Optional[str] = None

    @property
    def exit_code(self) -> int:
        if self.overall_status == RunStatus.SUCCESS:
            return EXIT_SUCCESS
        if self.overall_status == RunStatus.CANCELLED:
            return EXIT_CANCELLED
        return EXIT_FAILURE

    @property
    def failed_jobs(self) -> List[JobResult]:
        return [j for j in self.job_results if j.status == JobStatus.FAILURE]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "overall_status": self.overall_status.value,
            "exit_code": self.exit_code,
            "jobs": [j.to_dict() for j in self.job_results],
        }
