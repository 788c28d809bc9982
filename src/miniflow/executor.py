# executor.py
from __future__ import annotations

import asyncio
import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Dict, Optional, Protocol

from .model import LogMode

logger = logging.getLogger(__name__)

LATEST_LOG_NAME = "latest.txt"
# longest output line read in one piece
STREAM_LIMIT = 1024 * 1024


@dataclass(frozen=True)
class ExecutionRequest:
    """What the scheduler asks a process runner to execute."""
    step: str
    command: str
    working_directory: str
    environment: Dict[str, str] = field(default_factory=dict)
    log_mode: LogMode = LogMode.FILE
    log_file: Optional[str] = None


@dataclass(frozen=True)
class ExecutionResult:
    exit_code: int
    succeeded: bool


class ProcessRunner(Protocol):
    async def execute(self, request: ExecutionRequest) -> ExecutionResult: ...


def _point_latest(log_file: Path) -> None:
    latest = log_file.parent / LATEST_LOG_NAME
    try:
        latest.unlink(missing_ok=True)
        latest.symlink_to(log_file.name)
    except OSError as e:
        logger.debug("Could not update %s: %s", latest, e)


class SubprocessRunner:
    """
    Runs a request through the shell with stdin closed.

    In `file` mode stdout and stderr are appended to the request's log file
    and `latest.txt` next to it points at that file. Each line is also echoed
    through the `miniflow` logger as `[step] [stdout] ...` or
    `[step] [stderr] ...` unless `echo_output` is off. In `console` mode the
    child inherits this process's terminal.

    Anything that stops the command from starting (log file setup, missing
    working directory) is reported as exit code -1 rather than raised.
    """

    def __init__(self, inherit_env: bool = True, echo_output: bool = True):
        self.inherit_env = inherit_env
        self.echo_output = echo_output

    def _env(self, request: ExecutionRequest) -> Dict[str, str]:
        env = os.environ.copy() if self.inherit_env else {}
        env.update(request.environment)
        return env

    async def _copy_output(
        self,
        step: str,
        stream_name: str,
        stream: asyncio.StreamReader,
        log_handle: BinaryIO,
    ) -> None:
        async for line in stream:
            log_handle.write(line)
            log_handle.flush()
            if self.echo_output:
                text = line.decode("utf-8", errors="replace").rstrip()
                logger.info("[%s] [%s] %s", step, stream_name, text)

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        log_handle: Optional[BinaryIO] = None
        proc: asyncio.subprocess.Process | None = None
        try:
            if request.log_mode == LogMode.FILE and request.log_file:
                log_path = Path(request.log_file)
                try:
                    log_path.parent.mkdir(parents=True, exist_ok=True)
                    log_handle = log_path.open("ab")
                except OSError as e:
                    logger.error("[%s] could not open log file %s: %s", request.step, log_path, e)
                    return ExecutionResult(exit_code=-1, succeeded=False)
                _point_latest(log_path)

            pipe = subprocess.PIPE if log_handle else None
            try:
                proc = await asyncio.create_subprocess_shell(
                    request.command,
                    cwd=request.working_directory,
                    env=self._env(request),
                    stdin=subprocess.DEVNULL,
                    stdout=pipe,
                    stderr=pipe,
                    limit=STREAM_LIMIT,
                )
            except OSError as e:
                # e.g. missing working directory
                logger.error("[%s] could not start: %s", request.step, e)
                if log_handle:
                    log_handle.write(f"miniflow: could not start: {e}\n".encode())
                return ExecutionResult(exit_code=-1, succeeded=False)

            if log_handle:
                await asyncio.gather(
                    self._copy_output(request.step, "stdout", proc.stdout, log_handle),
                    self._copy_output(request.step, "stderr", proc.stderr, log_handle),
                )
            code = await proc.wait()
            return ExecutionResult(exit_code=code, succeeded=code == 0)
        finally:
            if log_handle:
                log_handle.close()
            if proc is not None and proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
