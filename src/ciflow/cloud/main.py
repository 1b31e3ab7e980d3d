from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from ciflow.config import load_workflow
from ciflow.coordinator import RunHandle
from ciflow.engine import Engine
from ciflow.errors import ConfigError, EventError
from ciflow.events import ingest
from ciflow.settings import Settings, load_settings

from .db import RunStore

# -------------------- Schemas --------------------

class EventPayload(BaseModel):
    sha: str
    branch: Optional[str] = None
    ref: Optional[str] = None
    number: Optional[int] = None
    inputs: dict[str, str] = Field(default_factory=dict)


class SubmitResponse(BaseModel):
    triggered: bool
    run_id: Optional[str] = None
    group_key: Optional[str] = None
    status: Optional[str] = None


class RunResponse(BaseModel):
    run_id: str
    group_key: str
    status: str
    exit_code: Optional[int] = None
    jobs: list[dict[str, Any]] = Field(default_factory=list)


def _live(handle: RunHandle) -> RunResponse:
    result = handle.result
    return RunResponse(
        run_id=handle.run_id,
        group_key=handle.group_key,
        status=handle.status.value,
        exit_code=result.exit_code if result else None,
        jobs=[j.to_dict() for j in result.job_results] if result else [],
    )


# -------------------- App --------------------

def create_app(
    engine: Optional[Engine] = None,
    store: Optional[RunStore] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the control plane. With no arguments the workflow, agents and
    database come from CIFLOW_* environment variables:

        uvicorn --factory ciflow.cloud.main:create_app
    """
    settings = settings or load_settings()
    if engine is None:
        engine = Engine.from_settings(load_workflow(settings.workflow_path), settings)
    if store is None:
        store = RunStore.from_url(settings.database_url)

    workflow_name = engine.workflow.name
    engine.coordinator.add_listener(lambda h, r: store.save_result(h, r, workflow=workflow_name))

    app = FastAPI(title="ciflow control plane")
    app.state.engine = engine
    app.state.store = store

    @app.post("/events/{kind}", response_model=SubmitResponse, status_code=202)
    def submit_event(kind: str, payload: EventPayload) -> SubmitResponse:
        try:
            request = ingest(kind, payload.model_dump(exclude_none=True))
            handle = engine.submit(request)
        except (EventError, ConfigError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        if handle is None:
            return SubmitResponse(triggered=False)
        return SubmitResponse(
            triggered=True,
            run_id=handle.run_id,
            group_key=handle.group_key,
            status=handle.status.value,
        )

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str) -> RunResponse:
        handle = engine.coordinator.get(run_id)
        if handle is not None:
            return _live(handle)
        stored = store.get(run_id)
        if stored is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return RunResponse(
            run_id=stored["run_id"],
            group_key=stored["group_key"],
            status=stored["status"],
            exit_code=stored["exit_code"],
            jobs=stored["jobs"],
        )

    @app.post("/runs/{run_id}/cancel", response_model=RunResponse)
    def cancel_run(run_id: str) -> RunResponse:
        handle = engine.coordinator.get(run_id)
        if handle is None:
            stored = store.get(run_id)
            if stored is None:
                raise HTTPException(status_code=404, detail="Run not found")
            raise HTTPException(status_code=409, detail=f"Run already {stored['status']}")
        if handle.done:
            raise HTTPException(status_code=409, detail=f"Run already {handle.status.value}")
        handle.cancel("cancelled via API")
        return _live(handle)

    @app.get("/runs")
    def list_runs(limit: int = 50) -> list[dict[str, Any]]:
        return store.list_runs(limit=limit)

    return app
