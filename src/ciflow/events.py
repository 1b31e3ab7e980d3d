# events.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from fnmatch import fnmatch
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from .errors import EventError
from .model import RunRequest, TriggerKind

logger = logging.getLogger(__name__)

DEFAULT_DISPATCH_REF = "refs/heads/main"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _branch_ref(branch: str) -> str:
    return branch if branch.startswith("refs/") else f"refs/heads/{branch}"


def _require(payload: Mapping[str, Any], key: str, kind: str) -> Any:
    value = payload.get(key)
    if value in (None, ""):
        raise EventError(f"{kind} event is missing '{key}'", details={"payload": dict(payload)})
    return value


def ingest(kind: str | TriggerKind, payload: Optional[Mapping[str, Any]] = None) -> RunRequest:
    """
    Normalize a trigger event into a RunRequest.

    push:              {branch | ref, sha}
    pull_request:      {number, sha}
    workflow_dispatch: {ref?, sha, inputs?}
    """
    payload = dict(payload or {})
    try:
        trigger = TriggerKind(kind)
    except ValueError:
        raise EventError(
            f"unsupported trigger kind: {kind!r}",
            details={"supported": ", ".join(k.value for k in TriggerKind)},
        ) from None

    dispatched_at = payload.get("dispatched_at") or _now()
    if isinstance(dispatched_at, str):
        try:
            dispatched_at = datetime.fromisoformat(dispatched_at)
        except ValueError:
            raise EventError(f"invalid dispatched_at: {dispatched_at!r}") from None

    sha = str(_require(payload, "sha", trigger.value))

    if trigger == TriggerKind.PUSH:
        branch = payload.get("ref") or _require(payload, "branch", trigger.value)
        request = RunRequest(
            trigger_kind=trigger,
            ref=_branch_ref(str(branch)),
            commit_sha=sha,
            dispatched_at=dispatched_at,
        )
    elif trigger == TriggerKind.PULL_REQUEST:
        raw = _require(payload, "number", trigger.value)
        try:
            number = int(raw)
        except (TypeError, ValueError):
            raise EventError(f"pull_request number must be an integer, got {raw!r}") from None
        request = RunRequest(
            trigger_kind=trigger,
            ref=f"refs/pull/{number}/merge",
            commit_sha=sha,
            dispatched_at=dispatched_at,
            pull_request_id=number,
        )
    else:
        ref = payload.get("ref") or payload.get("branch") or DEFAULT_DISPATCH_REF
        inputs: Dict[str, str] = {str(k): str(v) for k, v in (payload.get("inputs") or {}).items()}
        request = RunRequest(
            trigger_kind=trigger,
            ref=_branch_ref(str(ref)),
            commit_sha=sha,
            dispatched_at=dispatched_at,
            inputs=MappingProxyType(inputs),
        )

    logger.debug("ingested %s event ref=%s sha=%s", trigger.value, request.ref, request.commit_sha)
    return request


def branch_matches(ref_name: str, patterns) -> bool:
    return any(fnmatch(ref_name, p) for p in patterns)
