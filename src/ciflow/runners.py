# runners.py
from __future__ import annotations

import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Protocol

# Keep the tail only, enough to show why a step failed.
OUTPUT_TAIL = 4000


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    duration: float
    timed_out: bool = False
    output: str = ""


class CommandRunner(Protocol):
    def execute(
        self,
        command: str,
        env: Mapping[str, str],
        timeout: Optional[float],
        cwd: Optional[Path] = None,
    ) -> CommandResult:
        ...


class SubprocessRunner:
    """Runs each command through the shell on the local machine."""

    def __init__(self, inherit_env: bool = True):
        self.inherit_env = inherit_env

    def execute(
        self,
        command: str,
        env: Mapping[str, str],
        timeout: Optional[float],
        cwd: Optional[Path] = None,
    ) -> CommandResult:
        full_env = os.environ.copy() if self.inherit_env else {}
        full_env.update(env)

        start = time.monotonic()
        try:
            proc = subprocess.run(
                command,
                shell=True,
                cwd=str(cwd) if cwd is not None else None,
                env=full_env,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            out = e.output or ""
            if isinstance(out, bytes):
                out = out.decode("utf-8", errors="replace")
            return CommandResult(
                exit_code=-1,
                duration=time.monotonic() - start,
                timed_out=True,
                output=out[-OUTPUT_TAIL:],
            )
        return CommandResult(
            exit_code=proc.returncode,
            duration=time.monotonic() - start,
            output=(proc.stdout or "")[-OUTPUT_TAIL:],
        )
