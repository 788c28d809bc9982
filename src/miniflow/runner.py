# runner.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Set

from .executor import ExecutionRequest, ExecutionResult, ProcessRunner, SubprocessRunner
from .model import Flow, LogMode, Step, StepRun, StepState
from .propagate import clean_flow
from .settings import LOGS_DIR_NAME, MAX_RUNS_TO_RETAIN
from .state import StateSnapshot, StateStore

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def log_file_for(state_dir: Path, step: str, started: datetime) -> Path:
    safe = started.isoformat().replace(":", "-").replace(".", "-")
    return state_dir / LOGS_DIR_NAME / step / f"run-{safe}.txt"


@dataclass
class FlowContext:
    """A flow plus the snapshot it was loaded from and where to write it back."""
    flow: Flow
    snapshot: StateSnapshot
    store: StateStore
    log: logging.Logger = field(default=logger)

    @property
    def state_dir(self) -> Path:
        return self.store.state_dir

    def clean(self) -> None:
        clean_flow(self.flow, self.log)

    def save(self) -> None:
        self.flow.update(self.snapshot)
        self.store.save(self.snapshot)


def _discard_log(run: StepRun, log: logging.Logger) -> None:
    if not run.log_file:
        return
    try:
        Path(run.log_file).unlink(missing_ok=True)
    except OSError as e:
        log.debug("Could not delete %s: %s", run.log_file, e)


class Scheduler:
    """
    Reactive run loop.

    Every step found in `waiting-for-run` is launched as an asyncio task. When
    a task finishes, the step's result is recorded, its descendants are
    re-propagated and persisted, and only then is the flow scanned again for
    newly runnable steps.
    """

    def __init__(
        self,
        ctx: FlowContext,
        runner: ProcessRunner | None = None,
        *,
        max_workers: int | None = None,
        keep_runs: int = MAX_RUNS_TO_RETAIN,
        log: logging.Logger | None = None,
    ):
        if max_workers is not None and max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.ctx = ctx
        self.runner = runner or SubprocessRunner()
        self.max_workers = max_workers
        self.keep_runs = keep_runs
        self.log = log or ctx.log
        self._pending: List[asyncio.Task] = []
        self._in_flight: Set[str] = set()

    @property
    def flow(self) -> Flow:
        return self.ctx.flow

    def runnable(self) -> List[Step]:
        return self.flow.in_state(StepState.WAITING_FOR_RUN)

    def scan(self) -> List[Step]:
        """Launch every runnable step (up to the worker ceiling, if any)."""
        ready = self.runnable()
        if self.max_workers is not None:
            ready = ready[: max(0, self.max_workers - len(self._in_flight))]

        for step in ready:
            # Claim synchronously so a concurrent re-scan can't launch it twice.
            run = self._begin(step)
            self._in_flight.add(step.name)
            self._pending.append(asyncio.ensure_future(self._run_step(step, run)))
        return ready

    def _begin(self, step: Step) -> StepRun:
        started = now_utc()
        run = StepRun(start_timestamp=started)
        if step.log_mode == LogMode.FILE:
            run.log_file = str(log_file_for(self.ctx.state_dir, step.name, started))
        step.transition(StepState.RUNNING)
        for old in step.push_run(run, self.keep_runs):
            _discard_log(old, self.log)
        return run

    async def _run_step(self, step: Step, run: StepRun) -> None:
        self.ctx.save()

        self.log.info("[%s] Starting step at %s", step.name, run.start_timestamp.isoformat())
        self.log.debug("[%s]     cmd: %s", step.name, step.cmd)
        self.log.debug("[%s]     cwd: %s", step.name, step.cwd)

        request = ExecutionRequest(
            step=step.name,
            command=step.cmd,
            working_directory=step.cwd,
            environment=self.flow.environment_for(step),
            log_mode=step.log_mode,
            log_file=run.log_file,
        )
        try:
            result = await self.runner.execute(request)
        finally:
            self._in_flight.discard(step.name)

        self.complete(step, run, result)

    def complete(self, step: Step, run: StepRun, result: ExecutionResult) -> None:
        """Record a result, re-propagate, persist, then look for more work."""
        run.exit_code = result.exit_code
        run.end_timestamp = now_utc()

        if result.succeeded:
            self.log.info("[%s] Succeeded with code %s after %sms", step.name, result.exit_code, run.duration_ms)
            step.transition(StepState.SUCCEEDED)
        else:
            self.log.error("[%s] Failed with code %s after %sms", step.name, result.exit_code, run.duration_ms)
            step.transition(StepState.FAILED)

        for desc in self.flow.descendants_of(step):
            desc.mark_dirty()
        self.ctx.clean()
        self.ctx.save()

        self.scan()

    async def wait_all(self) -> None:
        """Await pending tasks until none are left; tasks may add more while we wait."""
        while self._pending:
            pending = self._pending
            self._pending = []
            await asyncio.gather(*pending)

    async def run(self) -> bool:
        self.scan()
        await self.wait_all()
        return not self.flow.in_state(StepState.FAILED)


def reset_for_run(ctx: FlowContext) -> List[Step]:
    """
    Put failed steps (and steps left `running` by an interrupted invocation)
    plus all their descendants back to `none`.
    """
    flow = ctx.flow
    stale = flow.in_state(StepState.FAILED, StepState.RUNNING)
    if not stale:
        return []

    ctx.log.info("Resetting steps: %s", ", ".join(s.name for s in stale))
    for step in stale:
        step.transition(StepState.NONE)
        for desc in flow.descendants_of(step):
            desc.transition(StepState.NONE)
    ctx.clean()
    ctx.save()
    return stale


async def run_flow(
    ctx: FlowContext,
    runner: ProcessRunner | None = None,
    *,
    max_workers: Optional[int] = None,
    keep_runs: int = MAX_RUNS_TO_RETAIN,
) -> bool:
    """
    Run the flow until no more progress can be made.

    Returns True when no step ended in `failed`.
    """
    reset_for_run(ctx)

    scheduler = Scheduler(ctx, runner, max_workers=max_workers, keep_runs=keep_runs)
    if not scheduler.runnable():
        ctx.log.info("Nothing to do")
        return not ctx.flow.in_state(StepState.FAILED)

    return await scheduler.run()
