# ops.py
from __future__ import annotations

from typing import Iterable, List, Sequence

from .model import Flow, Step, StepState
from .runner import FlowContext


class StepNotFoundError(LookupError):
    def __init__(self, names: Sequence[str]):
        self.names = list(names)
        super().__init__(f"No step or tag named: {', '.join(self.names)}")

    def __str__(self) -> str:
        return f"No step or tag named: {', '.join(self.names)}"


def resolve_steps(flow: Flow, names: Iterable[str]) -> List[Step]:
    """
    Resolve step names or tags to steps (declaration order, no duplicates).

    No names means every step. Any name matching nothing raises before the
    caller gets to mutate anything.
    """
    names = list(names)
    if not names:
        return list(flow)

    wanted: set[str] = set()
    missing: List[str] = []
    for name in names:
        matches = [s.name for s in flow if s.name == name or name in s.tags]
        if not matches:
            missing.append(name)
        wanted.update(matches)

    if missing:
        raise StepNotFoundError(missing)
    return [s for s in flow if s.name in wanted]


def _finish(ctx: FlowContext, touched: Iterable[Step]) -> None:
    # descendants have to re-read the new state of what changed
    for step in touched:
        for desc in ctx.flow.descendants_of(step):
            desc.mark_dirty()
    ctx.clean()
    ctx.save()


def reset(ctx: FlowContext, names: Iterable[str] = (), *, only: bool = False) -> List[Step]:
    steps = resolve_steps(ctx.flow, names)
    for step in steps:
        step.transition(StepState.NONE)
        if not only:
            for desc in ctx.flow.descendants_of(step):
                desc.transition(StepState.NONE)
    _finish(ctx, steps)
    return steps


def set_state(ctx: FlowContext, state: StepState, names: Iterable[str] = ()) -> List[Step]:
    steps = resolve_steps(ctx.flow, names)
    for step in steps:
        step.transition(state)
    _finish(ctx, steps)
    return steps


def disable(ctx: FlowContext, names: Iterable[str] = ()) -> List[Step]:
    steps = resolve_steps(ctx.flow, names)
    for step in steps:
        step.transition(StepState.DISABLED)
    _finish(ctx, steps)
    return steps


def enable(ctx: FlowContext, names: Iterable[str] = ()) -> List[Step]:
    """
    Restore each disabled step's previous state (`none` if unknown).

    Only one level is remembered: any transition made while disabled (e.g. a
    `set`) replaces the state that was current before the disable.
    """
    steps = resolve_steps(ctx.flow, names)
    for step in steps:
        if step.state != StepState.DISABLED:
            continue
        step.transition(step.prev_state or StepState.NONE)
    _finish(ctx, steps)
    return steps
