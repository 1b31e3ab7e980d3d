from .dsl import cache, job, matrix, retry, sh, workflow
from .config import Workflow, compile_workflow, load_workflow
from .engine import Engine
from .events import ingest
from .model import JobResult, RunRequest, RunResult, RunStatus

__all__ = [
    "cache", "job", "matrix", "retry", "sh", "workflow",
    "Workflow", "compile_workflow", "load_workflow",
    "Engine", "ingest",
    "JobResult", "RunRequest", "RunResult", "RunStatus",
]
