# scheduler.py
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from .agents import AgentPool
from .cancel import CancelToken
from .errors import CancellationError, CIError, SchedulingError
from .model import Agent, JobInstance

logger = logging.getLogger(__name__)

Slot = Tuple[int, int]  # (id(cancel token), id(template))


@dataclass
class Assignment:
    """A scheduling outcome: either a leased agent or the reason there is none."""
    instance: JobInstance
    agent: Optional[Agent] = None
    error: Optional[CIError] = None
    slot: Optional[Slot] = None

    @property
    def ok(self) -> bool:
        return self.agent is not None


class Scheduler:
    """
    Pairs job instances with agents.

    - eligibility: agent labels must be a superset of instance.required_labels
    - at most template.max_parallel instances of one template hold agents,
      counted per run: instances sharing a cancel token share the limit
    - no inter-job dependencies: every instance is ready immediately
      (a `needs` readiness check would slot in before _take_slot)
    """

    def __init__(self, pool: AgentPool):
        self.pool = pool
        self._cond = threading.Condition()
        self._running: Dict[Slot, int] = {}

    def running(self, assignment: Assignment) -> int:
        """Instances currently holding the max-parallel slot of this assignment."""
        if assignment.slot is None:
            return 0
        with self._cond:
            return self._running.get(assignment.slot, 0)

    def _wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def _take_slot(self, instance: JobInstance, token: CancelToken) -> Optional[Slot]:
        limit = instance.template.max_parallel
        if limit is None:
            return None
        slot = (id(token), id(instance.template))
        token.on_cancel(self._wake)
        with self._cond:
            while self._running.get(slot, 0) >= limit:
                if token.cancelled:
                    raise CancellationError("cancelled while waiting for a max-parallel slot", job=instance.id)
                self._cond.wait()
            self._running[slot] = self._running.get(slot, 0) + 1
        return slot

    def _give_slot(self, slot: Optional[Slot]) -> None:
        if slot is None:
            return
        with self._cond:
            left = self._running.get(slot, 0) - 1
            if left > 0:
                self._running[slot] = left
            else:
                self._running.pop(slot, None)
            self._cond.notify_all()

    def _wait_for(self, instance: JobInstance, token: CancelToken, out: "queue.Queue[Assignment]") -> None:
        try:
            if token.cancelled:
                raise CancellationError("cancelled before scheduling", job=instance.id)
            slot = self._take_slot(instance, token)
            try:
                agent = self.pool.acquire(instance.required_labels, cancel=token)
            except BaseException:
                self._give_slot(slot)
                raise
        except CancellationError as e:
            out.put(Assignment(instance=instance, error=e))
            return
        logger.info("scheduled %s on agent %s", instance.id, agent.id)
        out.put(Assignment(instance=instance, agent=agent, slot=slot))

    def schedule(
        self,
        instances: Iterable[JobInstance],
        cancel: Optional[CancelToken] = None,
        token_for: Optional[Callable[[JobInstance], CancelToken]] = None,
    ) -> Iterator[Assignment]:
        """
        Stream of assignments, in completion order.

        Unsatisfiable instances are yielded first with a SchedulingError;
        instances still waiting at cancellation are yielded with a
        CancellationError. Every instance is yielded exactly once.
        """
        cancel = cancel or CancelToken()
        token_for = token_for or (lambda _inst: cancel)

        out: "queue.Queue[Assignment]" = queue.Queue()
        rejected: List[Assignment] = []
        waiting = 0

        for inst in instances:
            if not self.pool.can_satisfy(inst.required_labels):
                logger.warning("no agent can satisfy %s for %s", sorted(inst.required_labels), inst.id)
                rejected.append(Assignment(
                    instance=inst,
                    error=SchedulingError(
                        "no agent matches the required labels",
                        job=inst.id,
                        details={"labels": ", ".join(sorted(inst.required_labels))},
                    ),
                ))
                continue
            t = threading.Thread(
                target=self._wait_for,
                args=(inst, token_for(inst), out),
                name=f"ciflow-sched-{inst.id}",
                daemon=True,
            )
            t.start()
            waiting += 1

        yield from rejected
        for _ in range(waiting):
            yield out.get()

    def release(self, assignment: Assignment) -> None:
        if assignment.agent is None:
            return
        self.pool.release(assignment.agent)
        self._give_slot(assignment.slot)
