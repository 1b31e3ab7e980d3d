from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_AGENTS = "local:ubuntu-latest,ubuntu-latest-large,os=ubuntu-latest"


@dataclass(frozen=True)
class Settings:
    cache_dir: Path = Path(".ciflow/cache")
    redis_url: Optional[str] = None
    database_url: str = "sqlite:///.ciflow/runs.db"
    agents: str = DEFAULT_AGENTS
    workdir: Path = Path(".")
    retry_ceiling: float = 60.0
    step_timeout: Optional[float] = None
    workflow_path: Path = Path("ci_workflow.py")


def _float(env: Mapping[str, str], name: str, default: Optional[float]) -> Optional[float]:
    raw = env.get(name)
    if raw in (None, ""):
        return default
    return float(raw)


def load_settings(env: Mapping[str, str] = os.environ) -> Settings:
    return Settings(
        cache_dir=Path(env.get("CIFLOW_CACHE_DIR", ".ciflow/cache")),
        redis_url=env.get("CIFLOW_REDIS_URL") or None,
        database_url=env.get("CIFLOW_DATABASE_URL", "sqlite:///.ciflow/runs.db"),
        agents=env.get("CIFLOW_AGENTS", DEFAULT_AGENTS),
        workdir=Path(env.get("CIFLOW_WORKDIR", ".")),
        retry_ceiling=_float(env, "CIFLOW_RETRY_CEILING", 60.0),
        step_timeout=_float(env, "CIFLOW_STEP_TIMEOUT", None),
        workflow_path=Path(env.get("CIFLOW_WORKFLOW", "ci_workflow.py")),
    )
