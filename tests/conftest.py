"""Shared fixtures: flows built in memory and a scripted process runner."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from miniflow.dag import build_flow
from miniflow.executor import ExecutionRequest, ExecutionResult
from miniflow.runner import FlowContext
from miniflow.state import StateSnapshot, StateStore


def flow_def(**steps: Dict[str, Any]) -> Dict[str, Any]:
    """Workflow definition from keyword step tables; missing `cmd` defaults to `true`."""
    return {
        "env": {},
        "steps": {name: {"cmd": "true", **table} for name, table in steps.items()},
    }


class FakeRunner:
    """
    Records every request and exits 0 unless the command is `false`
    (or the step is listed in `fail`).
    """

    def __init__(
        self,
        fail: tuple[str, ...] = (),
        on_start: Optional[Callable[[ExecutionRequest], None]] = None,
    ):
        self.fail = set(fail)
        self.on_start = on_start
        self.requests: List[ExecutionRequest] = []
        self.running = 0
        self.max_running = 0

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        self.requests.append(request)
        if self.on_start:
            self.on_start(request)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(0.01)
        finally:
            self.running -= 1
        failed = request.command == "false" or request.step in self.fail
        return ExecutionResult(exit_code=1 if failed else 0, succeeded=not failed)

    @property
    def started(self) -> List[str]:
        return [r.step for r in self.requests]


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "_miniflow"


@pytest.fixture
def make_ctx(state_dir: Path, tmp_path: Path) -> Callable[..., FlowContext]:
    """Build a FlowContext from a definition, rehydrating from whatever is on disk."""

    def _make(definition: Dict[str, Any], snapshot: StateSnapshot | None = None) -> FlowContext:
        store = StateStore(state_dir)
        snap = snapshot if snapshot is not None else store.load()
        flow = build_flow(definition, snap, base_dir=tmp_path)
        ctx = FlowContext(flow=flow, snapshot=snap, store=store)
        ctx.clean()
        return ctx

    return _make


@pytest.fixture(autouse=True)
def _reset_logging():
    # the CLI attaches a handler to whatever stderr CliRunner provided
    yield
    logging.getLogger("miniflow").handlers.clear()
