"""Tests for the step executor: retries, fail-fast, timeouts and cancellation."""

import logging
import threading
import time

import pytest

from ciflow.cancel import CancelToken
from ciflow.events import ingest
from ciflow.executor import StepExecutor, backoff_delay, job_status
from ciflow.model import CacheSpec, JobStatus, RetryPolicy, StepResult, StepSpec, StepStatus
from ciflow.runners import CommandResult

NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0)


class TestBackoff:
    def test_doubles(self):
        assert [backoff_delay(n, 1.0) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_ceiling(self):
        assert backoff_delay(10, 1.0, ceiling=60.0) == 60.0


class TestJobStatus:
    def test_continue_on_error_ignored(self):
        steps = [
            StepResult(name="a", status=StepStatus.FAILURE, continue_on_error=True),
            StepResult(name="b", status=StepStatus.SUCCESS),
        ]
        assert job_status(steps) == JobStatus.SUCCESS

    def test_failure_beats_cancelled(self):
        steps = [
            StepResult(name="a", status=StepStatus.TIMED_OUT),
            StepResult(name="b", status=StepStatus.CANCELLED),
        ]
        assert job_status(steps) == JobStatus.FAILURE


class TestRun:
    def test_success_and_env(self, runner, agent, make_instance):
        inst = make_instance("build", "test", env={"RUST_LOG": "info"})
        request = ingest("pull_request", {"number": 9, "sha": "abc"})
        result = StepExecutor(runner).run(inst, agent, request=request)

        assert result.status == JobStatus.SUCCESS
        assert [s.status for s in result.steps] == [StepStatus.SUCCESS, StepStatus.SUCCESS]
        assert result.agent_id == "local"
        env = runner.calls[0][1]
        assert env["CI"] == "true"
        assert env["RUST_LOG"] == "info"
        assert env["CIFLOW_PR_NUMBER"] == "9"
        assert env["CIFLOW_REF"] == "refs/pull/9/merge"

    def test_step_env_overrides_job_env(self, runner, agent, make_instance):
        step = StepSpec(name="s", command="s", env={"MODE": "step"})
        inst = make_instance(step, env={"MODE": "job"})
        StepExecutor(runner).run(inst, agent)
        assert runner.calls[0][1]["MODE"] == "step"

    def test_retry_succeeds_on_third_attempt(self, scripted, agent, make_instance):
        runner = scripted({"flaky": [1, 1, 0]})
        inst = make_instance(StepSpec(name="flaky", command="flaky", retry_policy=NO_WAIT))
        result = StepExecutor(runner).run(inst, agent)

        (step,) = result.steps
        assert step.status == StepStatus.SUCCESS
        assert step.attempts == 3
        assert result.status == JobStatus.SUCCESS

    def test_retries_exhausted(self, scripted, agent, make_instance):
        runner = scripted({"flaky": 2})
        inst = make_instance(StepSpec(name="flaky", command="flaky", retry_policy=NO_WAIT))
        result = StepExecutor(runner).run(inst, agent)

        assert result.status == JobStatus.FAILURE
        assert result.steps[0].attempts == 3
        assert result.steps[0].exit_code == 2
        assert "after 3 attempt(s)" in result.error
        assert "step=flaky" in result.error
        assert len(runner.calls) == 3

    def test_no_policy_means_one_attempt(self, scripted, agent, make_instance):
        runner = scripted({"once": 1})
        result = StepExecutor(runner).run(make_instance("once"), agent)
        assert result.steps[0].attempts == 1
        assert len(runner.calls) == 1

    def test_failure_skips_remaining_steps(self, scripted, agent, make_instance):
        runner = scripted({"two": 1})
        result = StepExecutor(runner).run(make_instance("one", "two", "three", "four"), agent)

        assert [s.status for s in result.steps] == [
            StepStatus.SUCCESS,
            StepStatus.FAILURE,
            StepStatus.SKIPPED,
            StepStatus.SKIPPED,
        ]
        assert runner.commands() == ["one", "two"]
        assert result.status == JobStatus.FAILURE
        assert result.failed_step.name == "two"

    def test_continue_on_error(self, scripted, agent, make_instance):
        runner = scripted({"lint": 1})
        lint = StepSpec(name="lint", command="lint", continue_on_error=True)
        result = StepExecutor(runner).run(make_instance(lint, "test"), agent)

        assert result.steps[0].status == StepStatus.FAILURE
        assert result.steps[1].status == StepStatus.SUCCESS
        assert result.status == JobStatus.SUCCESS
        assert result.error is None

    def test_timeout(self, scripted, agent, make_instance):
        runner = scripted({"slow": "timeout"})
        step = StepSpec(name="slow", command="slow", timeout=1)
        result = StepExecutor(runner).run(make_instance(step, "after"), agent)

        assert result.steps[0].status == StepStatus.TIMED_OUT
        assert result.steps[0].exit_code is None
        assert result.steps[1].status == StepStatus.SKIPPED
        assert result.error.startswith("step_timeout:")

    def test_timeouts_are_retried(self, scripted, agent, make_instance):
        runner = scripted({"slow": ["timeout", 0]})
        step = StepSpec(name="slow", command="slow", timeout=1, retry_policy=NO_WAIT)
        result = StepExecutor(runner).run(make_instance(step), agent)
        assert result.steps[0].status == StepStatus.SUCCESS
        assert result.steps[0].attempts == 2

    def test_job_timeout_caps_step_timeout(self, agent, make_instance):
        seen = []

        class Recording:
            def execute(self, command, env, timeout, cwd=None):
                seen.append(timeout)
                return CommandResult(exit_code=0, duration=0.0)

        step = StepSpec(name="s", command="s", timeout=600)
        StepExecutor(Recording()).run(make_instance(step, timeout=5), agent)
        assert 0 < seen[0] <= 5

    def test_runner_oserror(self, agent, make_instance):
        class Broken:
            def execute(self, command, env, timeout, cwd=None):
                raise FileNotFoundError("no shell")

        result = StepExecutor(Broken()).run(make_instance("x"), agent)
        assert result.steps[0].exit_code == 127
        assert result.status == JobStatus.FAILURE


class TestCancellation:
    def test_cancelled_before_start(self, runner, agent, make_instance):
        token = CancelToken()
        token.cancel()
        result = StepExecutor(runner).run(make_instance("a", "b"), agent, token)

        assert [s.status for s in result.steps] == [StepStatus.CANCELLED, StepStatus.CANCELLED]
        assert result.status == JobStatus.CANCELLED
        assert runner.calls == []

    def test_cancel_between_steps(self, agent, make_instance):
        """The running step finishes; later steps never start."""
        token = CancelToken()
        ran = []

        class CancelDuringFirst:
            def execute(self, command, env, timeout, cwd=None):
                ran.append(command)
                if command == "a":
                    token.cancel("superseded")
                return CommandResult(exit_code=0, duration=0.0)

        result = StepExecutor(CancelDuringFirst()).run(make_instance("a", "b", "c"), agent, token)

        assert ran == ["a"]
        assert [s.status for s in result.steps] == [
            StepStatus.SUCCESS,
            StepStatus.CANCELLED,
            StepStatus.CANCELLED,
        ]
        assert result.status == JobStatus.CANCELLED

    def test_cancel_interrupts_backoff(self, scripted, agent, make_instance):
        runner = scripted({"flaky": 1})
        token = CancelToken()
        step = StepSpec(name="flaky", command="flaky", retry_policy=RetryPolicy(max_attempts=5, base_delay=30))
        threading.Timer(0.1, token.cancel).start()

        started = time.monotonic()
        result = StepExecutor(runner).run(make_instance(step, "next"), agent, token)

        assert time.monotonic() - started < 10
        assert result.steps[0].status == StepStatus.CANCELLED
        assert result.steps[1].status == StepStatus.CANCELLED
        assert result.status == JobStatus.CANCELLED


class DictStore:
    def __init__(self, fail_put=False):
        self.data = {}
        self.fail_put = fail_put

    def get(self, key):
        return self.data.get(key)

    def put(self, key, payload):
        if self.fail_put:
            raise ConnectionError("store unavailable")
        self.data[key] = payload
        return key


class TestCaches:
    @pytest.fixture
    def workdir(self, agent):
        (agent.workdir / "Cargo.lock").write_text("serde = 1.0\n")
        (agent.workdir / "target").mkdir()
        (agent.workdir / "target" / "lib.rlib").write_text("compiled")
        return agent.workdir

    def test_saved_after_success_then_hit(self, runner, agent, workdir, make_instance):
        store = DictStore()
        spec = CacheSpec(scope="rust", key_files=("Cargo.lock",), paths=("target",))
        inst = make_instance("build", caches=(spec,))
        executor = StepExecutor(runner, store)

        first = executor.run(inst, agent)
        assert first.cache_hits == []
        assert len(store.data) == 1

        second = executor.run(inst, agent)
        assert second.cache_hits == list(store.data)

    def test_not_saved_after_failure(self, scripted, agent, workdir, make_instance):
        store = DictStore()
        spec = CacheSpec(scope="rust", key_files=("Cargo.lock",), paths=("target",))
        StepExecutor(scripted({"build": 1}), store).run(make_instance("build", caches=(spec,)), agent)
        assert store.data == {}

    def test_save_if_ref(self, runner, agent, workdir, make_instance):
        store = DictStore()
        spec = CacheSpec(scope="rust", key_files=("Cargo.lock",), paths=("target",), save_if_ref="refs/heads/main")
        inst = make_instance("build", caches=(spec,))
        executor = StepExecutor(runner, store)

        executor.run(inst, agent, request=ingest("push", {"branch": "feature", "sha": "a"}))
        assert store.data == {}
        executor.run(inst, agent, request=ingest("push", {"branch": "main", "sha": "a"}))
        assert len(store.data) == 1

    def test_step_cache(self, runner, agent, workdir, make_instance):
        store = DictStore()
        step = StepSpec(name="clippy", command="clippy", cache=CacheSpec(scope="clippy", paths=("target",)))
        StepExecutor(runner, store).run(make_instance(step), agent)
        assert [k.split("-")[0] for k in store.data] == ["clippy"]

    def test_write_failure_is_logged_not_fatal(self, runner, agent, workdir, make_instance, caplog):
        store = DictStore(fail_put=True)
        spec = CacheSpec(scope="rust", key_files=("Cargo.lock",), paths=("target",))
        with caplog.at_level(logging.WARNING, logger="ciflow.executor"):
            result = StepExecutor(runner, store).run(make_instance("build", caches=(spec,)), agent)

        assert result.status == JobStatus.SUCCESS
        assert "cache write failed" in caplog.text
