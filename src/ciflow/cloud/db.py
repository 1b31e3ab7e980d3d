from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import sessionmaker

from ciflow.coordinator import RunHandle
from ciflow.model import RunResult

from .models import Base, Job, Run


def make_engine(url: str) -> sa.Engine:
    if url.startswith("sqlite"):
        path = url[len("sqlite:///"):]
        if url.startswith("sqlite:///") and path and path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        # results are written from run threads
        return sa.create_engine(url, connect_args={"check_same_thread": False})
    return sa.create_engine(url, pool_pre_ping=True)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class RunStore:
    """Finished-run history: one row per run, one row per job instance."""

    def __init__(self, engine: sa.Engine):
        self.engine = engine
        self.SessionLocal = sessionmaker(engine, expire_on_commit=False)
        Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, url: str) -> "RunStore":
        return cls(make_engine(url))

    def _ensure_run(self, s, handle: RunHandle, workflow: str) -> Run:
        run = s.get(Run, handle.run_id)
        if run is None:
            req = handle.request
            run = Run(
                id=handle.run_id,
                workflow=workflow,
                group_key=handle.group_key,
                trigger=req.trigger_kind.value,
                ref=req.ref,
                sha=req.commit_sha,
                status=handle.status.value,
                created_at=now_utc(),
            )
            s.add(run)
        return run

    def save_result(self, handle: RunHandle, result: RunResult, workflow: str) -> None:
        with self.SessionLocal() as s, s.begin():
            run = self._ensure_run(s, handle, workflow)
            run.status = result.overall_status.value
            run.exit_code = result.exit_code
            run.finished_at = now_utc()
            run.jobs = [
                Job(
                    position=i,
                    job_name=j.job_name,
                    instance_id=j.instance_id,
                    status=j.status.value,
                    error=j.error,
                    result_json=j.to_dict(),
                )
                for i, j in enumerate(result.job_results)
            ]

    def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self.SessionLocal() as s:
            run = s.get(Run, run_id)
            if run is None:
                return None
            return _run_dict(run, with_jobs=True)

    def list_runs(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self.SessionLocal() as s:
            q = sa.select(Run).order_by(Run.created_at.desc()).limit(limit)
            return [_run_dict(r, with_jobs=False) for r in s.scalars(q)]


def _run_dict(run: Run, *, with_jobs: bool) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "run_id": run.id,
        "workflow": run.workflow,
        "group_key": run.group_key,
        "trigger": run.trigger,
        "ref": run.ref,
        "sha": run.sha,
        "status": run.status,
        "exit_code": run.exit_code,
        "created_at": run.created_at.isoformat() if run.created_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
    }
    if with_jobs:
        out["jobs"] = [j.result_json for j in run.jobs]
    return out
