# executor.py
from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional, Tuple

from . import cache as cache_mod
from .cache import CacheStore
from .cancel import CancelToken
from .errors import CacheError, StepFailure, StepTimeout
from .model import (
    Agent,
    CacheSpec,
    JobInstance,
    JobResult,
    JobStatus,
    RunRequest,
    StepResult,
    StepSpec,
    StepStatus,
)
from .runners import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

DEFAULT_RETRY_CEILING = 60.0


def backoff_delay(attempt: int, base_delay: float, ceiling: float = DEFAULT_RETRY_CEILING) -> float:
    """Delay before the retry that follows failed attempt number `attempt` (1-based)."""
    return min(base_delay * (2 ** (attempt - 1)), ceiling)


def job_status(steps: List[StepResult]) -> JobStatus:
    """Worst status among steps that do not continue on error."""
    required = [s for s in steps if not s.continue_on_error]
    if any(s.failed for s in required):
        return JobStatus.FAILURE
    if any(s.status == StepStatus.CANCELLED for s in steps):
        return JobStatus.CANCELLED
    return JobStatus.SUCCESS


def run_env(request: Optional[RunRequest]) -> Dict[str, str]:
    """Variables describing the triggering event, visible to every step."""
    env = {"CI": "true"}
    if request is None:
        return env
    env.update({
        "CIFLOW_EVENT": request.trigger_kind.value,
        "CIFLOW_REF": request.ref,
        "CIFLOW_REF_NAME": request.ref_name,
        "CIFLOW_SHA": request.commit_sha,
    })
    if request.pull_request_id is not None:
        env["CIFLOW_PR_NUMBER"] = str(request.pull_request_id)
    return env


def _unstarted(step: StepSpec, status: StepStatus) -> StepResult:
    return StepResult(name=step.name, status=status, continue_on_error=step.continue_on_error)


class StepExecutor:
    """
    Runs one job instance's steps, in order, on a leased agent.

    Cancellation is cooperative: a step already running is allowed to
    finish (its own timeout still applies); no later step starts, and each
    unstarted step is reported as cancelled. A retry backoff wait is cut
    short by cancellation.
    """

    def __init__(
        self,
        runner: CommandRunner,
        cache_store: Optional[CacheStore] = None,
        *,
        retry_ceiling: float = DEFAULT_RETRY_CEILING,
        default_timeout: Optional[float] = None,
    ):
        self.runner = runner
        self.cache_store = cache_store
        self.retry_ceiling = retry_ceiling
        self.default_timeout = default_timeout

    # ------------------------------------------------------------------
    # cache
    # ------------------------------------------------------------------

    def _restore(
        self,
        spec: CacheSpec,
        instance: JobInstance,
        agent: Agent,
        result: JobResult,
        keys: List[Tuple[CacheSpec, str, bool]],
    ) -> None:
        if self.cache_store is None:
            logger.debug("[%s] no cache store configured; skipping %s", instance.id, spec.scope)
            return
        try:
            key, entry = cache_mod.restore(self.cache_store, spec, instance.required_labels, agent.workdir)
        except CacheError as e:
            logger.warning("[%s] cache restore failed for %s: %s", instance.id, spec.scope, e.message)
            return
        if entry is not None:
            logger.info("[%s] cache hit: %s", instance.id, key)
            result.cache_hits.append(key)
        else:
            logger.info("[%s] cache miss: %s", instance.id, key)
        keys.append((spec, key, entry is not None))

    def _save(
        self,
        instance: JobInstance,
        agent: Agent,
        keys: List[Tuple[CacheSpec, str, bool]],
        request: Optional[RunRequest],
    ) -> None:
        for spec, key, hit in keys:
            if hit:
                continue  # content-addressed: identical payload already stored
            if spec.save_if_ref is not None and (request is None or request.ref != spec.save_if_ref):
                logger.debug("[%s] not saving %s outside %s", instance.id, spec.scope, spec.save_if_ref)
                continue
            try:
                entry = cache_mod.save(self.cache_store, spec, instance.required_labels, agent.workdir, key=key)
            except CacheError as e:
                logger.warning("[%s] cache write failed for %s: %s", instance.id, spec.scope, e.message)
                continue
            logger.info("[%s] cache saved: %s", instance.id, entry.key)

    # ------------------------------------------------------------------
    # steps
    # ------------------------------------------------------------------

    def _execute(self, instance: JobInstance, step: StepSpec, env: Dict[str, str], agent: Agent, timeout: Optional[float]) -> CommandResult:
        try:
            return self.runner.execute(step.command, env, timeout, cwd=agent.workdir)
        except OSError as e:
            logger.error("[%s] step '%s' could not start: %s", instance.id, step.name, e)
            return CommandResult(exit_code=127, duration=0.0, output=str(e))

    def _run_step(
        self,
        instance: JobInstance,
        step: StepSpec,
        env: Dict[str, str],
        agent: Agent,
        cancel: CancelToken,
        deadline: Optional[float],
    ) -> StepResult:
        policy = step.retry_policy
        max_attempts = policy.max_attempts if policy else 1
        attempts = 0
        started = time.monotonic()

        while True:
            attempts += 1
            timeout = step.timeout or self.default_timeout
            if deadline is not None:
                remaining = max(0.0, deadline - time.monotonic())
                timeout = remaining if timeout is None else min(timeout, remaining)

            logger.info("[%s] > %s (attempt %d/%d)", instance.id, step.name, attempts, max_attempts)
            res = self._execute(instance, step, env, agent, timeout)

            if res.timed_out:
                status = StepStatus.TIMED_OUT
            elif res.exit_code == 0:
                status = StepStatus.SUCCESS
            else:
                status = StepStatus.FAILURE

            if status == StepStatus.SUCCESS or attempts >= max_attempts:
                break

            delay = backoff_delay(attempts, policy.base_delay, self.retry_ceiling)
            logger.warning(
                "[%s] step '%s' %s (exit=%s); retrying in %.1fs",
                instance.id, step.name, status.value, res.exit_code, delay,
            )
            if cancel.wait(delay):
                status = StepStatus.CANCELLED
                break

        return StepResult(
            name=step.name,
            status=status,
            exit_code=None if res.timed_out else res.exit_code,
            attempts=attempts,
            duration=time.monotonic() - started,
            continue_on_error=step.continue_on_error,
            output=res.output,
        )

    def run(
        self,
        instance: JobInstance,
        agent: Agent,
        cancel: Optional[CancelToken] = None,
        request: Optional[RunRequest] = None,
    ) -> JobResult:
        cancel = cancel or CancelToken()
        result = JobResult(
            job_name=instance.name,
            instance_id=instance.id,
            status=JobStatus.SUCCESS,
            matrix=dict(instance.matrix),
            agent_id=agent.id,
        )
        base_env = run_env(request)
        base_env.update(instance.env)

        timeout = instance.template.timeout
        deadline = time.monotonic() + timeout if timeout else None
        keys: List[Tuple[CacheSpec, str, bool]] = []

        if not cancel.cancelled:
            for spec in instance.template.caches:
                self._restore(spec, instance, agent, result, keys)

        steps = list(instance.steps)
        for i, step in enumerate(steps):
            if cancel.cancelled:
                logger.info("[%s] cancelled; %d step(s) not started", instance.id, len(steps) - i)
                result.steps.extend(_unstarted(s, StepStatus.CANCELLED) for s in steps[i:])
                break

            if step.cache is not None:
                self._restore(step.cache, instance, agent, result, keys)

            env = dict(base_env)
            env.update(step.env)
            sr = self._run_step(instance, step, env, agent, cancel, deadline)
            result.steps.append(sr)

            if sr.failed and not step.continue_on_error:
                result.steps.extend(_unstarted(s, StepStatus.SKIPPED) for s in steps[i + 1:])
                break
            if sr.status == StepStatus.CANCELLED:
                result.steps.extend(_unstarted(s, StepStatus.CANCELLED) for s in steps[i + 1:])
                break

        result.status = job_status(result.steps)
        failed = result.failed_step
        if failed is not None:
            err_cls = StepTimeout if failed.status == StepStatus.TIMED_OUT else StepFailure
            verb = "timed out" if failed.status == StepStatus.TIMED_OUT else f"exited {failed.exit_code}"
            result.error = str(err_cls(
                f"step '{failed.name}' {verb} after {failed.attempts} attempt(s)",
                job=instance.id,
                step=failed.name,
                exit_code=failed.exit_code,
                attempts=failed.attempts,
            ))
            logger.info("[%s] failed at step '%s'", instance.id, failed.name)

        if result.status == JobStatus.SUCCESS and keys:
            self._save(instance, agent, keys, request)

        return result
