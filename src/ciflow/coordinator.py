# coordinator.py
from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .cancel import CancelToken
from .config import render
from .model import RunRequest, RunResult, RunStatus

logger = logging.getLogger(__name__)

DEFAULT_GROUP = "${{ workflow }}-${{ ref_name }}-${{ pr_number || sha }}"

RunFn = Callable[["RunHandle"], RunResult]
Listener = Callable[["RunHandle", RunResult], None]


class RunHandle:
    """A submitted run: queued, running, or finished."""

    def __init__(self, request: RunRequest, group_key: str, run_id: Optional[str] = None):
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.request = request
        self.group_key = group_key
        self.cancel_token = CancelToken()
        self._status = RunStatus.QUEUED
        self._result: Optional[RunResult] = None
        self._done = threading.Event()

    def __repr__(self) -> str:
        return f"RunHandle({self.run_id}, {self.group_key!r}, {self._status.value})"

    @property
    def status(self) -> RunStatus:
        return self._status

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def result(self) -> Optional[RunResult]:
        return self._result

    def cancel(self, reason: str = "cancelled") -> None:
        self.cancel_token.cancel(reason)

    def wait(self, timeout: Optional[float] = None) -> Optional[RunResult]:
        self._done.wait(timeout)
        return self._result

    def _start(self) -> None:
        self._status = RunStatus.RUNNING

    def _finish(self, result: RunResult) -> None:
        result.run_id = self.run_id
        self._result = result
        self._status = result.overall_status
        self._done.set()


def _never_started() -> RunResult:
    return RunResult(job_results=[], overall_status=RunStatus.CANCELLED)


@dataclass
class ConcurrencyGroup:
    """
    Per-key record: the one active run plus the runs queued behind it.
    With cancel_in_progress at most one run waits in `pending`, the newest.
    All fields are guarded by `cond`. A closed group has been dropped by the
    coordinator and takes no new runs.
    """
    key: str
    cancel_in_progress: bool
    current: Optional[RunHandle] = None
    pending: Deque[RunHandle] = field(default_factory=deque)
    cond: threading.Condition = field(default_factory=threading.Condition)
    closed: bool = False

    @property
    def current_run_id(self) -> Optional[str]:
        return self.current.run_id if self.current else None

    @property
    def idle(self) -> bool:
        return self.current is None and not self.pending


class ConcurrencyCoordinator:
    """
    Admits runs so that at most one run per group key executes at a time.

    cancel_in_progress=True: a new request cancels the active run and takes
    the group's single waiting slot, finishing any older waiter as cancelled.
    It starts once the cancelled run reaches a terminal status.
    cancel_in_progress=False: a new request queues FIFO behind the active run.

    submit() never blocks on another run. Finished handles stay reachable
    through get() until `keep_finished` newer runs have finished.
    """

    def __init__(
        self,
        workflow: str,
        run_fn: RunFn,
        *,
        group_template: Optional[str] = None,
        cancel_in_progress: bool = False,
        keep_finished: int = 100,
    ):
        self.workflow = workflow
        self.run_fn = run_fn
        self.group_template = group_template or DEFAULT_GROUP
        self.cancel_in_progress = cancel_in_progress
        self.keep_finished = keep_finished
        self._groups: Dict[str, ConcurrencyGroup] = {}
        self._runs: Dict[str, RunHandle] = {}
        self._finished: "OrderedDict[str, RunHandle]" = OrderedDict()
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # keys & lookups
    # ------------------------------------------------------------------

    def context(self, request: RunRequest) -> Dict[str, Any]:
        pr = request.pull_request_id
        return {
            "workflow": self.workflow,
            "ref": request.ref,
            "ref_name": request.ref_name,
            "sha": request.commit_sha,
            "pr_number": pr,
            "event_name": request.trigger_kind.value,
            "event": {"pull_request": {"number": pr}},
            "inputs": dict(request.inputs),
        }

    def group_key(self, request: RunRequest) -> str:
        return render(self.group_template, self.context(request))

    def _group(self, key: str) -> ConcurrencyGroup:
        with self._lock:
            group = self._groups.get(key)
            if group is None:
                group = ConcurrencyGroup(key=key, cancel_in_progress=self.cancel_in_progress)
                self._groups[key] = group
            return group

    def _discard_if_idle(self, group: ConcurrencyGroup) -> None:
        # lock order: self._lock, then group.cond
        with self._lock:
            with group.cond:
                if group.idle and self._groups.get(group.key) is group:
                    group.closed = True
                    del self._groups[group.key]

    def get(self, run_id: str) -> Optional[RunHandle]:
        with self._lock:
            return self._runs.get(run_id) or self._finished.get(run_id)

    def active(self, key: str) -> Optional[RunHandle]:
        with self._lock:
            group = self._groups.get(key)
        if group is None:
            return None
        with group.cond:
            return group.current

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # admission
    # ------------------------------------------------------------------

    def submit(self, request: RunRequest) -> RunHandle:
        key = self.group_key(request)
        handle = RunHandle(request, key)
        with self._lock:
            self._runs[handle.run_id] = handle

        superseded: List[RunHandle] = []
        while True:
            group = self._group(key)
            with group.cond:
                if group.closed:
                    continue
                if group.idle:
                    self._admit(group, handle)
                    break
                if group.cancel_in_progress:
                    superseded = self._supersede(group, handle)
                else:
                    logger.info("run %s queued behind %s in group %s", handle.run_id, group.current_run_id, key)
                group.pending.append(handle)
                handle.cancel_token.on_cancel(lambda: self._drop_pending(group, handle))
                break

        self._notify([(h, h.result) for h in superseded])
        return handle

    def _supersede(self, group: ConcurrencyGroup, handle: RunHandle) -> List[RunHandle]:
        # caller holds group.cond
        reason = f"superseded by run {handle.run_id}"
        if not group.current.cancel_token.cancelled:
            logger.info("run %s supersedes %s in group %s", handle.run_id, group.current_run_id, group.key)
            group.current.cancel(reason)
        waiting = list(group.pending)
        group.pending.clear()
        for old in waiting:
            logger.info("queued run %s superseded by %s before start", old.run_id, handle.run_id)
            old.cancel(reason)
            old._finish(_never_started())
        return waiting

    def _admit(self, group: ConcurrencyGroup, handle: RunHandle) -> None:
        # caller holds group.cond
        group.current = handle
        handle._start()
        logger.info("run %s started (group %s)", handle.run_id, group.key)
        t = threading.Thread(
            target=self._execute,
            args=(group, handle),
            name=f"ciflow-run-{handle.run_id}",
            daemon=True,
        )
        t.start()

    def _drop_pending(self, group: ConcurrencyGroup, handle: RunHandle) -> None:
        with group.cond:
            if handle not in group.pending:
                return
            group.pending.remove(handle)
            handle._finish(_never_started())
            group.cond.notify_all()
        logger.info("queued run %s cancelled before start", handle.run_id)
        self._notify([(handle, handle.result)])

    def _execute(self, group: ConcurrencyGroup, handle: RunHandle) -> None:
        try:
            result = self.run_fn(handle)
        except Exception:
            logger.exception("run %s crashed", handle.run_id)
            result = RunResult(job_results=[], overall_status=RunStatus.FAILURE)

        finished: List[Tuple[RunHandle, RunResult]] = [(handle, result)]
        with group.cond:
            handle._finish(result)
            group.current = None
            while group.pending:
                nxt = group.pending.popleft()
                if nxt.cancel_token.cancelled:
                    nxt._finish(_never_started())
                    finished.append((nxt, nxt.result))
                    continue
                self._admit(group, nxt)
                break
            group.cond.notify_all()
            idle = group.idle

        logger.info("run %s finished: %s", handle.run_id, result.overall_status.value)
        if idle:
            self._discard_if_idle(group)
        self._notify(finished)

    def _notify(self, finished: List[Tuple[RunHandle, RunResult]]) -> None:
        for h, r in finished:
            for listener in self._listeners:
                try:
                    listener(h, r)
                except Exception:
                    logger.exception("run listener failed for %s", h.run_id)
            self._retire(h)

    def _retire(self, handle: RunHandle) -> None:
        with self._lock:
            self._runs.pop(handle.run_id, None)
            self._finished[handle.run_id] = handle
            while len(self._finished) > self.keep_finished:
                self._finished.popitem(last=False)

    def shutdown(self, wait: Optional[float] = None) -> None:
        """Cancel every run; optionally wait for them to finish."""
        with self._lock:
            handles = list(self._runs.values())
        for h in handles:
            h.cancel("shutdown")
        if wait is not None:
            for h in handles:
                h.wait(wait)
