"""Shared fixtures: a scripted command runner and a local agent pool."""

import threading
from pathlib import Path

import pytest

from ciflow.agents import AgentPool
from ciflow.model import Agent, JobTemplate, StepSpec
from ciflow.matrix import expand
from ciflow.runners import CommandResult

LABELS = frozenset({"ubuntu-latest", "ubuntu-latest-large", "os=ubuntu-latest"})


class ScriptedRunner:
    """
    Fake CommandRunner.

    script maps a command to an outcome or a list of outcomes, consumed one
    per call (the last one repeats). An outcome is an exit code or the
    string "timeout". Commands listed in `gates` block until the event is set.
    """

    def __init__(self, script=None, default=0):
        self.script = {
            cmd: list(v) if isinstance(v, (list, tuple)) else [v]
            for cmd, v in (script or {}).items()
        }
        self.default = default
        self.gates = {}
        self.calls = []
        self._lock = threading.Lock()

    def commands(self):
        with self._lock:
            return [cmd for cmd, _env in self.calls]

    def execute(self, command, env, timeout, cwd=None):
        with self._lock:
            self.calls.append((command, dict(env)))
            outcomes = self.script.get(command)
            if not outcomes:
                outcome = self.default
            elif len(outcomes) > 1:
                outcome = outcomes.pop(0)
            else:
                outcome = outcomes[0]
        gate = self.gates.get(command)
        if gate is not None:
            gate.wait(10)
        if outcome == "timeout":
            return CommandResult(exit_code=-1, duration=0.0, timed_out=True)
        return CommandResult(exit_code=outcome, duration=0.0, output=f"ran {command}\n")


@pytest.fixture
def runner():
    return ScriptedRunner()


@pytest.fixture
def scripted():
    """Factory for runners with a script: scripted({"cargo test": [1, 0]})."""
    return ScriptedRunner


@pytest.fixture
def agent(tmp_path):
    return Agent(id="local", labels=LABELS, workdir=tmp_path)


@pytest.fixture
def pool(agent):
    return AgentPool([agent])


@pytest.fixture
def make_instance():
    """Build the single instance of a template made of (name, command) steps."""

    def _make(*commands, **template_kw):
        steps = []
        for c in commands:
            if isinstance(c, StepSpec):
                steps.append(c)
            else:
                steps.append(StepSpec(name=c, command=c))
        template = JobTemplate(name=template_kw.pop("name", "job"), steps=tuple(steps), **template_kw)
        return expand(template)[0]

    return _make


@pytest.fixture
def repo_root():
    return Path(__file__).resolve().parent.parent
