"""Control plane tests: FastAPI TestClient over a SQLite run store."""

import threading
import time

import pytest
from fastapi.testclient import TestClient

from ciflow.agents import AgentPool
from ciflow.cloud.db import RunStore
from ciflow.cloud.main import create_app
from ciflow.config import compile_workflow
from ciflow.dsl import job, sh, workflow
from ciflow.engine import Engine
from ciflow.model import Agent
from ciflow.settings import Settings


@pytest.fixture
def store(tmp_path):
    return RunStore.from_url(f"sqlite:///{tmp_path / 'db' / 'runs.db'}")


@pytest.fixture
def engine(runner, tmp_path):
    wf = compile_workflow(workflow(
        "CI",
        job("lint", sh("ruff", "ruff check ."), sh("format", "ruff format --check .")),
        job("test", sh("pytest", "pytest -q"), sh("coverage", "coverage report")),
        on={"push": {"branches": ["main"]}, "pull_request": None},
    ))
    pool = AgentPool([Agent(id=f"a{i}", labels=frozenset(), workdir=tmp_path) for i in range(2)])
    return Engine(wf, pool, runner)


@pytest.fixture
def client(engine, store, tmp_path):
    app = create_app(engine=engine, store=store, settings=Settings(cache_dir=tmp_path / "cache"))
    with TestClient(app) as c:
        yield c


def stored(store, run_id, timeout=5.0):
    """Results are persisted by a listener right after the run finishes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        row = store.get(run_id)
        if row is not None:
            return row
        time.sleep(0.02)
    return None


class TestEvents:
    def test_push_starts_run(self, client, engine, store):
        resp = client.post("/events/push", json={"sha": "abc", "branch": "main"})
        assert resp.status_code == 202
        body = resp.json()
        assert body["triggered"] is True
        assert body["group_key"] == "CI-main-abc"

        engine.coordinator.get(body["run_id"]).wait(10)
        row = stored(store, body["run_id"])
        assert row["status"] == "success"
        assert row["exit_code"] == 0
        assert [j["instance_id"] for j in row["jobs"]] == ["lint", "test"]

    def test_filtered_branch(self, client):
        resp = client.post("/events/push", json={"sha": "abc", "branch": "feature"})
        assert resp.status_code == 202
        assert resp.json() == {"triggered": False, "run_id": None, "group_key": None, "status": None}

    def test_pull_request(self, client):
        resp = client.post("/events/pull_request", json={"sha": "abc", "number": 5})
        assert resp.json()["group_key"] == "CI-5/merge-5"

    def test_unknown_kind(self, client):
        resp = client.post("/events/schedule", json={"sha": "abc"})
        assert resp.status_code == 400
        assert "unsupported trigger kind" in resp.json()["detail"]

    def test_malformed_payload(self, client):
        assert client.post("/events/pull_request", json={"sha": "abc"}).status_code == 400
        assert client.post("/events/push", json={"branch": "main"}).status_code == 422


class TestRuns:
    def test_get_live_and_stored(self, client, engine, store):
        run_id = client.post("/events/push", json={"sha": "abc", "branch": "main"}).json()["run_id"]
        engine.coordinator.get(run_id).wait(10)

        resp = client.get(f"/runs/{run_id}")
        assert resp.status_code == 200
        assert resp.json()["status"] == "success"
        assert len(resp.json()["jobs"]) == 2

        assert stored(store, run_id) is not None
        listed = client.get("/runs").json()
        assert [r["run_id"] for r in listed] == [run_id]

    def test_unknown_run(self, client):
        assert client.get("/runs/nope").status_code == 404
        assert client.post("/runs/nope/cancel").status_code == 404

    def test_cancel(self, client, engine, runner):
        """A run cancelled mid-step finishes that step and stops there."""
        gate = threading.Event()
        runner.gates["ruff check ."] = gate
        runner.gates["pytest -q"] = gate
        run_id = client.post("/events/push", json={"sha": "abc", "branch": "main"}).json()["run_id"]

        resp = client.post(f"/runs/{run_id}/cancel")
        assert resp.status_code == 200
        gate.set()
        engine.coordinator.get(run_id).wait(10)

        assert client.get(f"/runs/{run_id}").json()["status"] == "cancelled"
        assert client.post(f"/runs/{run_id}/cancel").status_code == 409


def test_superseding_event_returns_immediately(runner, store, tmp_path):
    wf = compile_workflow(workflow(
        "CI",
        job("test", sh("pytest", "pytest -q"), sh("coverage", "coverage report")),
        concurrency="${{ workflow }}-${{ ref_name }}",
        cancel_in_progress=True,
    ))
    engine = Engine(wf, AgentPool([Agent(id="a", labels=frozenset(), workdir=tmp_path)]), runner)
    gate = threading.Event()
    runner.gates["pytest -q"] = gate
    app = create_app(engine=engine, store=store, settings=Settings(cache_dir=tmp_path / "cache"))

    with TestClient(app) as client:
        first = client.post("/events/push", json={"sha": "one", "branch": "main"}).json()
        second = client.post("/events/push", json={"sha": "two", "branch": "main"}).json()

        # the first run is still inside its gated step
        assert not gate.is_set()
        assert second["status"] == "queued"
        assert client.get(f"/runs/{first['run_id']}").json()["status"] == "running"

        gate.set()
        engine.coordinator.get(second["run_id"]).wait(10)
        assert stored(store, first["run_id"])["status"] == "cancelled"
        assert stored(store, second["run_id"])["status"] == "success"
