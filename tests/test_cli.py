"""CLI tests: real shell commands through click's CliRunner."""

import shutil
import subprocess

import pytest
from click.testing import CliRunner

import ciflow.cli as cli_module
from ciflow.cli import cli
from ciflow.git_facts.git import current_branch, head_sha

WORKFLOW = """
from ciflow.dsl import job, sh, workflow

WORKFLOW = workflow(
    "local",
    job("build", sh("compile", "echo building")),
    job("check", sh("check", "{check}")),
    on={{"push": {{"branches": ["main"]}}}},
)
"""


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CIFLOW_CACHE_DIR", str(tmp_path / ".ciflow" / "cache"))
    monkeypatch.setenv("CIFLOW_AGENTS", "local:")

    def write(check="true", name="ci_workflow.py"):
        (tmp_path / name).write_text(WORKFLOW.format(check=check))
        return tmp_path / name

    return write


def run(*args):
    return CliRunner().invoke(cli, list(args))


class TestRun:
    def test_success_exit_code(self, project):
        project()
        result = run("run", "--branch", "main", "--sha", "abc")
        assert result.exit_code == 0, result.output
        assert "OVERALL: SUCCESS" in result.output
        assert "build" in result.output

    def test_failure_exit_code(self, project):
        project(check="exit 3")
        result = run("run", "--branch", "main", "--sha", "abc")
        assert result.exit_code == 1
        assert "OVERALL: FAILURE" in result.output
        assert "exit=3" in result.output

    def test_not_triggered(self, project):
        project()
        result = run("run", "--branch", "feature", "--sha", "abc")
        assert result.exit_code == 0
        assert "not triggered" in result.output

    def test_explicit_workflow(self, project):
        project(name="nightly_workflow.py")
        project(name="ci_workflow.py")
        assert run("run", "--branch", "main", "--sha", "abc").exit_code == 1  # ambiguous
        result = run("run", "--workflow", "nightly_workflow", "--branch", "main", "--sha", "abc")
        assert result.exit_code == 0

    def test_missing_workflow(self, project):
        result = run("run", "--workflow", "nope.py")
        assert result.exit_code == 1

    def test_bad_event_payload(self, project):
        project()
        result = run("run", "--event", "pull_request", "--sha", "abc")
        assert result.exit_code == 1


def test_plan(project):
    project()
    result = run("plan")
    assert result.exit_code == 0
    assert "Workflow: local" in result.output
    assert "build" in result.output
    assert "check" in result.output


class TestEventPayload:
    def test_no_git(self, monkeypatch):
        def missing(*a, **kw):
            raise FileNotFoundError("git")

        monkeypatch.setattr(cli_module, "head_sha", missing)
        monkeypatch.setattr(cli_module, "current_branch", missing)
        assert cli_module._event_payload("push", None, None, None, None) == {"sha": "0" * 40, "branch": "main"}

    def test_pr_keeps_number(self):
        payload = cli_module._event_payload("pull_request", None, 7, "abc", None)
        assert payload == {"sha": "abc", "number": 7}

    @pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
    def test_reads_checkout(self, tmp_path):
        def git(*args):
            subprocess.run(["git", *args], cwd=tmp_path, check=True, capture_output=True)

        git("init", "-q", "-b", "trunk")
        git("-c", "user.name=t", "-c", "user.email=t@example.com", "commit", "-q", "--allow-empty", "-m", "init")

        sha = head_sha(cwd=str(tmp_path))
        assert len(sha) == 40
        assert current_branch(cwd=str(tmp_path)) == "trunk"

        git("checkout", "-q", "--detach")
        assert current_branch(cwd=str(tmp_path)) is None
