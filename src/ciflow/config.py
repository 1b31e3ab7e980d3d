# config.py
from __future__ import annotations

import logging
import re
import runpy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .events import branch_matches
from .model import CacheSpec, JobTemplate, RetryPolicy, RunRequest, StepSpec, Strategy, TriggerKind

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# ${{ expr }} templates
# ---------------------------------------------------------------------
#
# Supported expressions:
#   ${{ workflow }}                    variable lookup (dotted paths walk dicts)
#   ${{ matrix.os }}
#   ${{ pr_number || sha }}            first non-empty operand wins
#   ${{ pr_number | sha }}             same, single-bar spelling
#   ${{ 'literal' }}
#
# "github." prefixes are accepted so group templates can be copied as-is.

_EXPR = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
_FALLBACK = re.compile(r"\s*\|\|?\s*")
_ALIASES = {
    "event.pull_request.number": "pr_number",
}
_MISSING = object()


def _lookup(path: str, context: Mapping[str, Any]) -> Any:
    if path.startswith("github."):
        path = path[len("github."):]
    path = _ALIASES.get(path, path)

    node: Any = context
    for part in path.split("."):
        if isinstance(node, Mapping) and part in node:
            node = node[part]
        else:
            return _MISSING
    return node


def _evaluate(expr: str, context: Mapping[str, Any]) -> Any:
    missing: List[str] = []
    for operand in _FALLBACK.split(expr):
        if not operand:
            continue
        if operand[0] in "'\"" and operand[-1] == operand[0]:
            value: Any = operand[1:-1]
        else:
            value = _lookup(operand, context)
            if value is _MISSING:
                missing.append(operand)
                continue
        if value not in (None, ""):
            return value
    if missing:
        return _MISSING
    return ""


def render(template: str, context: Mapping[str, Any], *, strict: bool = True) -> str:
    """
    Substitute ${{ }} expressions in template.

    strict=True raises ConfigError on unknown variables; otherwise the
    expression is left untouched (used when only matrix values are known).
    """
    def repl(m: re.Match) -> str:
        value = _evaluate(m.group(1), context)
        if value is _MISSING:
            if strict:
                raise ConfigError(
                    f"unknown variable in expression '{m.group(0)}'",
                    details={"known": ", ".join(sorted(context))},
                )
            return m.group(0)
        return str(value)

    return _EXPR.sub(repl, template)


def has_expressions(text: str) -> bool:
    return bool(_EXPR.search(text))


# ---------------------------------------------------------------------
# Declared configuration (pydantic)
# ---------------------------------------------------------------------

class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


def _stringify_env(v: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    # YAML-ish numbers (CARGO_INCREMENTAL: 0) become strings
    return {str(k): str(val) for k, val in (v or {}).items()}


class RetryConfig(_Model):
    max_attempts: int = Field(3, ge=1, alias="max-attempts")
    base_delay: float = Field(1.0, ge=0, alias="base-delay")


class CacheConfig(_Model):
    scope: str
    key_files: List[str] = Field(default_factory=list, alias="key-files")
    paths: List[str] = Field(default_factory=list)
    save_if_ref: Optional[str] = Field(None, alias="save-if-ref")

    def to_spec(self) -> CacheSpec:
        return CacheSpec(
            scope=self.scope,
            key_files=tuple(self.key_files),
            paths=tuple(self.paths),
            save_if_ref=self.save_if_ref,
        )


class StepConfig(_Model):
    name: Optional[str] = None
    run: str
    env: Dict[str, str] = Field(default_factory=dict)
    retry: Optional[RetryConfig] = None
    continue_on_error: bool = Field(False, alias="continue-on-error")
    timeout: Optional[float] = Field(None, gt=0)
    cache: Optional[CacheConfig] = None

    @field_validator("env", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Dict[str, str]:
        return _stringify_env(v)


class StrategyConfig(_Model):
    matrix: Dict[str, Any] = Field(default_factory=dict)
    fail_fast: bool = Field(True, alias="fail-fast")
    max_parallel: Optional[int] = Field(None, ge=1, alias="max-parallel")

    @field_validator("matrix")
    @classmethod
    def _check_matrix(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        for axis, values in v.items():
            if axis in ("include", "exclude"):
                if not isinstance(values, list) or not all(isinstance(e, dict) for e in values):
                    raise ValueError(f"matrix.{axis} must be a list of mappings")
                continue
            if not isinstance(values, list):
                raise ValueError(f"matrix axis '{axis}' must be a list, got {type(values).__name__}")
            if not values:
                raise ValueError(f"matrix axis '{axis}' is empty")
        return v


class JobConfig(_Model):
    name: Optional[str] = None
    runs_on: List[str] = Field(default_factory=list, alias="runs-on")
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    env: Dict[str, str] = Field(default_factory=dict)
    steps: List[StepConfig] = Field(min_length=1)
    caches: List[CacheConfig] = Field(default_factory=list)
    timeout: Optional[float] = Field(None, gt=0)

    @field_validator("env", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Dict[str, str]:
        return _stringify_env(v)

    @field_validator("runs_on", mode="before")
    @classmethod
    def _labels(cls, v: Any) -> List[str]:
        # runs-on: ubuntu-latest | [a, b] | {labels: ...}
        if isinstance(v, dict):
            v = v.get("labels", [])
        if isinstance(v, str):
            return [v]
        return list(v or [])


class ConcurrencyConfig(_Model):
    group: Optional[str] = None
    cancel_in_progress: bool = Field(False, alias="cancel-in-progress")


class BranchFilter(_Model):
    branches: List[str] = Field(default_factory=list)


class TriggersConfig(_Model):
    push: Optional[BranchFilter] = None
    pull_request: Optional[BranchFilter] = None
    workflow_dispatch: Optional[BranchFilter] = None

    @model_validator(mode="before")
    @classmethod
    def _from_list(cls, v: Any) -> Any:
        # on: [push, pull_request]  or  on: push
        if isinstance(v, str):
            v = [v]
        if isinstance(v, (list, tuple)):
            return {str(k): {} for k in v}
        if isinstance(v, dict):
            return {k: ({} if val is None else val) for k, val in v.items()}
        return v

    def matches(self, request: RunRequest) -> bool:
        trigger: Optional[BranchFilter] = getattr(self, request.trigger_kind.value)
        if trigger is None:
            return False
        if request.trigger_kind == TriggerKind.PULL_REQUEST or not trigger.branches:
            return True
        return branch_matches(request.ref_name, trigger.branches)


def all_triggers() -> TriggersConfig:
    """Every trigger kind, no branch filter: the default when `on` is omitted."""
    return TriggersConfig.model_validate([k.value for k in TriggerKind])


class WorkflowConfig(_Model):
    name: str
    triggers: TriggersConfig = Field(default_factory=all_triggers, alias="on")
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    env: Dict[str, str] = Field(default_factory=dict)
    jobs: Dict[str, JobConfig] = Field(min_length=1)

    @field_validator("env", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Dict[str, str]:
        return _stringify_env(v)


# ---------------------------------------------------------------------
# Compilation into engine templates
# ---------------------------------------------------------------------

@dataclass
class Workflow:
    """A compiled workflow: what the engine actually runs."""
    name: str
    templates: List[JobTemplate]
    triggers: TriggersConfig = field(default_factory=all_triggers)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    env: Dict[str, str] = field(default_factory=dict)

    def accepts(self, request: RunRequest) -> bool:
        return self.triggers.matches(request)


def _compile_step(idx: int, step: StepConfig) -> StepSpec:
    retry = None
    if step.retry is not None:
        retry = RetryPolicy(max_attempts=step.retry.max_attempts, base_delay=step.retry.base_delay)
    return StepSpec(
        name=step.name or f"step {idx + 1}",
        command=step.run,
        retry_policy=retry,
        continue_on_error=step.continue_on_error,
        env=dict(step.env),
        timeout=step.timeout,
        cache=step.cache.to_spec() if step.cache else None,
    )


def _compile_job(job_id: str, job: JobConfig, workflow_env: Mapping[str, str]) -> JobTemplate:
    matrix = dict(job.strategy.matrix)
    include = tuple(matrix.pop("include", []) or [])
    exclude = tuple(matrix.pop("exclude", []) or [])

    env = dict(workflow_env)
    env.update(job.env)

    return JobTemplate(
        name=job.name or job_id,
        steps=tuple(_compile_step(i, s) for i, s in enumerate(job.steps)),
        strategy=Strategy(
            axes={axis: tuple(values) for axis, values in matrix.items()},
            include=include,
            exclude=exclude,
        ),
        required_labels=frozenset(job.runs_on),
        fail_fast=job.strategy.fail_fast,
        max_parallel=job.strategy.max_parallel,
        env=env,
        caches=tuple(c.to_spec() for c in job.caches),
        timeout=job.timeout,
    )


def compile_workflow(config: Union[WorkflowConfig, Mapping[str, Any]]) -> Workflow:
    if not isinstance(config, WorkflowConfig):
        config = parse_config(config)
    templates = [_compile_job(job_id, job, config.env) for job_id, job in config.jobs.items()]
    return Workflow(
        name=config.name,
        templates=templates,
        triggers=config.triggers,
        concurrency=config.concurrency,
        env=dict(config.env),
    )


def parse_config(data: Mapping[str, Any]) -> WorkflowConfig:
    try:
        return WorkflowConfig.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigError(
            "invalid workflow configuration",
            details={"errors": "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )},
        ) from e


# ---------------------------------------------------------------------
# Workflow loading (local python file)
# ---------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> WorkflowConfig | dict
      - WORKFLOW = WorkflowConfig | dict
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ConfigError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"ciflow_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    fn = globals_dict.get("workflow")
    if "WORKFLOW" in globals_dict:
        obj = globals_dict["WORKFLOW"]
    elif callable(fn) and getattr(fn, "__module__", None) == module_name:
        # a workflow() defined in the file, not the imported dsl helper
        obj = fn()
    else:
        raise ConfigError(
            f"{wf_path.name} defines no workflow",
            details={"hint": "define workflow() -> WorkflowConfig or WORKFLOW = ..."},
        )

    if isinstance(obj, Workflow):
        return obj
    if isinstance(obj, (WorkflowConfig, Mapping)):
        logger.debug("loaded workflow from %s", wf_path)
        return compile_workflow(obj)
    raise ConfigError(f"workflow() must return a WorkflowConfig or mapping, got {type(obj).__name__}")


def render_labels(labels: Tuple[str, ...] | frozenset, context: Mapping[str, Any]) -> frozenset:
    return frozenset(render(label, context, strict=True) for label in labels)
