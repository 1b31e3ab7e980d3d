# engine.py
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, List, Mapping, Optional

from .agents import AgentPool, parse_agents
from .aggregator import aggregate
from .cache import CacheStore, FileCacheStore, RedisCacheStore
from .cancel import CancelToken
from .config import Workflow
from .coordinator import ConcurrencyCoordinator, RunHandle
from .errors import SchedulingError
from .events import ingest
from .executor import DEFAULT_RETRY_CEILING, StepExecutor
from .matrix import expand
from .model import JobInstance, JobResult, JobStatus, RunRequest, RunResult, StepResult, StepStatus
from .runners import CommandRunner, SubprocessRunner
from .scheduler import Assignment, Scheduler
from .settings import Settings

logger = logging.getLogger(__name__)


def _unscheduled(assignment: Assignment) -> JobResult:
    inst = assignment.instance
    scheduling = isinstance(assignment.error, SchedulingError)
    step_status = StepStatus.SKIPPED if scheduling else StepStatus.CANCELLED
    return JobResult(
        job_name=inst.name,
        instance_id=inst.id,
        status=JobStatus.FAILURE if scheduling else JobStatus.CANCELLED,
        matrix=dict(inst.matrix),
        steps=[
            StepResult(name=s.name, status=step_status, continue_on_error=s.continue_on_error)
            for s in inst.steps
        ],
        error=str(assignment.error) if assignment.error else None,
    )


class Engine:
    """
    Event ingest -> coordinator -> matrix -> scheduler -> executor -> aggregator,
    for one compiled workflow.
    """

    def __init__(
        self,
        workflow: Workflow,
        pool: AgentPool,
        runner: CommandRunner,
        cache_store: Optional[CacheStore] = None,
        *,
        retry_ceiling: float = DEFAULT_RETRY_CEILING,
        default_timeout: Optional[float] = None,
    ):
        self.workflow = workflow
        self.pool = pool
        self.scheduler = Scheduler(pool)
        self.executor = StepExecutor(
            runner,
            cache_store,
            retry_ceiling=retry_ceiling,
            default_timeout=default_timeout,
        )
        self.coordinator = ConcurrencyCoordinator(
            workflow.name,
            self.execute_run,
            group_template=workflow.concurrency.group,
            cancel_in_progress=workflow.concurrency.cancel_in_progress,
        )
        # surface label/template errors before the first event arrives
        self.plan()

    @classmethod
    def from_settings(cls, workflow: Workflow, settings: Settings, runner: Optional[CommandRunner] = None) -> "Engine":
        if settings.redis_url:
            store: CacheStore = RedisCacheStore.from_url(settings.redis_url)
        else:
            store = FileCacheStore(settings.cache_dir)
        return cls(
            workflow,
            AgentPool(parse_agents(settings.agents, workdir=settings.workdir)),
            runner or SubprocessRunner(),
            store,
            retry_ceiling=settings.retry_ceiling,
            default_timeout=settings.step_timeout,
        )

    # ------------------------------------------------------------------
    # entry points
    # ------------------------------------------------------------------

    def plan(self) -> List[JobInstance]:
        instances: List[JobInstance] = []
        for template in self.workflow.templates:
            instances.extend(expand(template))
        return instances

    def submit(self, request: RunRequest) -> Optional[RunHandle]:
        """Start (or queue) a run; None if the workflow ignores this trigger."""
        if not self.workflow.accepts(request):
            logger.info(
                "%s ignores %s on %s", self.workflow.name, request.trigger_kind.value, request.ref,
            )
            return None
        return self.coordinator.submit(request)

    def trigger(self, kind: str, payload: Optional[Mapping[str, Any]] = None) -> Optional[RunHandle]:
        return self.submit(ingest(kind, payload))

    def run(self, request: RunRequest, timeout: Optional[float] = None) -> Optional[RunResult]:
        """Submit and block until the run finishes."""
        handle = self.submit(request)
        if handle is None:
            return None
        return handle.wait(timeout)

    # ------------------------------------------------------------------
    # one run
    # ------------------------------------------------------------------

    def _run_instance(self, assignment: Assignment, token: CancelToken, request: RunRequest) -> JobResult:
        inst = assignment.instance
        try:
            result = self.executor.run(inst, assignment.agent, token, request)
            if result.status == JobStatus.FAILURE and inst.template.fail_fast:
                # matrix fail-fast: stop the siblings before the slot frees up
                token.cancel(f"fail-fast: {inst.id} failed")
        finally:
            self.scheduler.release(assignment)
        return result

    def execute_run(self, handle: RunHandle) -> RunResult:
        run_token = handle.cancel_token
        instances = self.plan()
        tokens: Dict[int, CancelToken] = {id(t): run_token.child() for t in self.workflow.templates}
        results: Dict[int, JobResult] = {}

        logger.info("run %s: %d job instance(s)", handle.run_id, len(instances))
        if not instances:
            return aggregate([], cancelled=run_token.cancelled, run_id=handle.run_id)

        with ThreadPoolExecutor(max_workers=len(instances), thread_name_prefix="ciflow-job") as pool:
            futures = {}
            assignments = self.scheduler.schedule(
                instances,
                run_token,
                token_for=lambda inst: tokens[id(inst.template)],
            )
            for assignment in assignments:
                inst = assignment.instance
                if not assignment.ok:
                    results[id(inst)] = _unscheduled(assignment)
                    continue
                fut = pool.submit(self._run_instance, assignment, tokens[id(inst.template)], handle.request)
                futures[fut] = inst

            for fut in as_completed(futures):
                inst = futures[fut]
                results[id(inst)] = fut.result()
                logger.info("[%s] %s", inst.id, results[id(inst)].status.value)

        ordered = [results[id(inst)] for inst in instances]
        return aggregate(ordered, cancelled=run_token.cancelled, run_id=handle.run_id)
