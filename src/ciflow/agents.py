# agents.py
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .cancel import CancelToken
from .errors import CancellationError, ConfigError
from .model import Agent

logger = logging.getLogger(__name__)


class AgentPool:
    """
    In-process agent provider.

    Agents are registered up front; the pool only hands out exclusive
    leases. acquire() blocks on a condition variable (no polling) until an
    eligible agent is released or the caller's token is cancelled.
    """

    def __init__(self, agents: Iterable[Agent] = ()):
        self._cond = threading.Condition()
        self._agents: Dict[str, Agent] = {}
        for a in agents:
            self.register(a)

    def register(self, agent: Agent) -> None:
        with self._cond:
            if agent.id in self._agents:
                raise ValueError(f"Duplicate agent id: {agent.id}")
            self._agents[agent.id] = agent
            self._cond.notify_all()

    @property
    def agents(self) -> List[Agent]:
        with self._cond:
            return list(self._agents.values())

    def can_satisfy(self, labels: frozenset) -> bool:
        """True if any registered agent could ever run these labels."""
        with self._cond:
            return any(a.satisfies(labels) for a in self._agents.values())

    def _free(self, labels: frozenset) -> Optional[Agent]:
        for a in self._agents.values():
            if not a.busy and a.satisfies(labels):
                return a
        return None

    def try_acquire(self, labels: frozenset) -> Optional[Agent]:
        with self._cond:
            agent = self._free(labels)
            if agent is not None:
                agent.busy = True
            return agent

    def acquire(self, labels: frozenset, cancel: Optional[CancelToken] = None) -> Agent:
        """Lease a free agent whose labels are a superset of labels."""
        if cancel is not None:
            cancel.on_cancel(self.wake)
        with self._cond:
            while True:
                if cancel is not None and cancel.cancelled:
                    raise CancellationError("cancelled while waiting for an agent")
                agent = self._free(labels)
                if agent is not None:
                    agent.busy = True
                    logger.debug("leased agent %s for labels %s", agent.id, sorted(labels))
                    return agent
                self._cond.wait()

    def release(self, agent: Agent) -> None:
        with self._cond:
            agent.busy = False
            logger.debug("released agent %s", agent.id)
            self._cond.notify_all()

    def wake(self) -> None:
        with self._cond:
            self._cond.notify_all()


def parse_agents(spec: str, workdir: str | Path = ".") -> List[Agent]:
    """
    Parse "id:label,label;id2:label" into agents.

    Example:
        "linux-1:ubuntu-latest,os=ubuntu-latest;linux-big:ubuntu-latest-large"
    """
    agents: List[Agent] = []
    for chunk in spec.split(";"):
        chunk = chunk.strip()
        if not chunk:
            continue
        agent_id, sep, labels = chunk.partition(":")
        agent_id = agent_id.strip()
        if not agent_id:
            raise ConfigError(f"agent entry has no id: {chunk!r}")
        label_set = frozenset(l.strip() for l in labels.split(",") if l.strip()) if sep else frozenset()
        agents.append(Agent(id=agent_id, labels=label_set, workdir=Path(workdir)))
    return agents
