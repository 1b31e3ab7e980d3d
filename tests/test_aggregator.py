"""Tests for folding job results into a run result."""

from ciflow.aggregator import aggregate
from ciflow.model import JobResult, JobStatus, RunStatus


def job(name, status):
    return JobResult(job_name=name, instance_id=name, status=status)


def test_all_success():
    result = aggregate([job("fmt", JobStatus.SUCCESS), job("clippy", JobStatus.SUCCESS)])
    assert result.overall_status == RunStatus.SUCCESS
    assert result.exit_code == 0


def test_any_failure():
    result = aggregate([job("fmt", JobStatus.SUCCESS), job("clippy", JobStatus.FAILURE)])
    assert result.overall_status == RunStatus.FAILURE
    assert result.exit_code == 1
    assert [j.job_name for j in result.failed_jobs] == ["clippy"]


def test_failure_wins_over_cancellation():
    results = [job("a", JobStatus.FAILURE), job("b", JobStatus.CANCELLED)]
    assert aggregate(results, cancelled=True).overall_status == RunStatus.FAILURE


def test_cancelled_run():
    results = [job("a", JobStatus.CANCELLED), job("b", JobStatus.CANCELLED)]
    result = aggregate(results, cancelled=True)
    assert result.overall_status == RunStatus.CANCELLED
    assert result.exit_code == 130


def test_partially_cancelled_without_failure():
    """Sibling instances stopped by fail-fast are not successes."""
    results = [job("a", JobStatus.SUCCESS), job("b", JobStatus.CANCELLED)]
    assert aggregate(results).overall_status == RunStatus.CANCELLED


def test_empty():
    assert aggregate([]).overall_status == RunStatus.SUCCESS
    assert aggregate([], cancelled=True).overall_status == RunStatus.CANCELLED


def test_to_dict():
    result = aggregate([job("fmt", JobStatus.SUCCESS)], run_id="r1")
    data = result.to_dict()
    assert data["run_id"] == "r1"
    assert data["overall_status"] == "success"
    assert data["jobs"][0]["instance_id"] == "fmt"
