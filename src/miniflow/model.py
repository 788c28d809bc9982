# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, List, Optional, Set

from .state import RunRecord, StateSnapshot, StepRecord


class StepState(str, Enum):
    NONE = "none"
    WAITING_FOR_RUN = "waiting-for-run"
    WAITING_FOR_DEPENDENCY = "waiting-for-dependency"
    DEPENDENCY_FAILED = "dependency-failed"
    SUCCEEDED = "succeeded"
    RUNNING = "running"
    FAILED = "failed"
    DISABLED = "disabled"


class LogMode(str, Enum):
    FILE = "file"
    CONSOLE = "console"


@dataclass
class StepRun:
    """One historical execution of a step."""
    start_timestamp: datetime
    end_timestamp: Optional[datetime] = None
    exit_code: Optional[int] = None
    log_file: Optional[str] = None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.end_timestamp is None:
            return None
        return int((self.end_timestamp - self.start_timestamp).total_seconds() * 1000)

    def to_record(self) -> RunRecord:
        return RunRecord(
            start_timestamp=self.start_timestamp,
            end_timestamp=self.end_timestamp,
            exit_code=self.exit_code,
            log_file=self.log_file,
        )

    @classmethod
    def from_record(cls, record: RunRecord) -> StepRun:
        return cls(
            start_timestamp=record.start_timestamp,
            end_timestamp=record.end_timestamp,
            exit_code=record.exit_code,
            log_file=record.log_file,
        )


@dataclass
class Step:
    """
    A named shell command inside a flow.

    Dependencies and the computed closures are stored as step *names*; the
    owning Flow resolves them.
    """
    name: str
    cmd: str
    cwd: str
    env: Dict[str, str] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    log_mode: LogMode = LogMode.FILE
    desc: str | None = None

    # ---- runtime ----
    state: StepState = StepState.NONE
    prev_state: Optional[StepState] = None
    runs: List[StepRun] = field(default_factory=list)  # most recent first
    dirty: bool = True
    deps: List[str] = field(default_factory=list)

    # ---- computed by the graph builder ----
    ancestors: Set[str] = field(default_factory=set)
    descendants: Set[str] = field(default_factory=set)
    direct_descendants: Set[str] = field(default_factory=set)

    def mark_dirty(self) -> None:
        self.dirty = True

    def transition(self, state: StepState) -> bool:
        """Move to `state`, remembering the previous one. Returns True on change."""
        if state == self.state:
            return False
        self.prev_state = self.state
        self.state = state
        self.mark_dirty()
        return True

    @property
    def last_run(self) -> Optional[StepRun]:
        return self.runs[0] if self.runs else None

    def push_run(self, run: StepRun, keep: int) -> List[StepRun]:
        """Record a new run at the front of the history and return evicted runs."""
        self.runs.insert(0, run)
        evicted = self.runs[keep:]
        del self.runs[keep:]
        return evicted

    def rehydrate(self, record: StepRecord | None) -> None:
        if record is None:
            return
        self.state = StepState(record.state)
        self.prev_state = StepState(record.prev_state) if record.prev_state else None
        self.runs = [StepRun.from_record(r) for r in record.runs]

    def to_record(self) -> StepRecord:
        return StepRecord(
            state=self.state.value,
            prev_state=self.prev_state.value if self.prev_state else None,
            runs=[r.to_record() for r in self.runs],
        )


@dataclass
class Flow:
    """The whole step graph for one workflow definition."""
    env: Dict[str, str]
    steps: Dict[str, Step]

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps.values())

    def __len__(self) -> int:
        return len(self.steps)

    def step(self, name: str) -> Step:
        return self.steps[name]

    def deps_of(self, step: Step) -> List[Step]:
        return [self.steps[d] for d in step.deps]

    def descendants_of(self, step: Step) -> List[Step]:
        # keep declaration order for stable output
        return [s for s in self if s.name in step.descendants]

    @property
    def initial_steps(self) -> List[Step]:
        return [s for s in self if not s.ancestors]

    @property
    def final_steps(self) -> List[Step]:
        return [s for s in self if not s.descendants]

    def in_state(self, *states: StepState) -> List[Step]:
        return [s for s in self if s.state in states]

    def mark_all_dirty(self) -> None:
        for step in self:
            step.mark_dirty()

    def environment_for(self, step: Step) -> Dict[str, str]:
        """Flow env overridden per key by the step's own env."""
        merged = dict(self.env)
        merged.update(step.env)
        return merged

    def update(self, snapshot: StateSnapshot) -> StateSnapshot:
        """
        Upsert the current step states into `snapshot`.

        Entries for steps missing from this flow are left alone so that
        temporarily removing a step from the workflow file keeps its history.
        """
        for step in self:
            snapshot.steps[step.name] = step.to_record()
        return snapshot
