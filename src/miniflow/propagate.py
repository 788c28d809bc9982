"""
State propagation ("clean").

A dirty step recomputes its state from its dependencies' states, after first
cleaning those dependencies. Terminal and in-progress states are never
overridden here; they only change through the scheduler or a manual
operation.
"""

from __future__ import annotations

import logging

from .model import Flow, Step, StepState

logger = logging.getLogger(__name__)

_FAILED = {StepState.FAILED, StepState.DEPENDENCY_FAILED}
_PENDING = {
    StepState.RUNNING,
    StepState.WAITING_FOR_DEPENDENCY,
    StepState.WAITING_FOR_RUN,
    StepState.DISABLED,
}


def _move(step: Step, state: StepState, log: logging.Logger) -> None:
    old = step.state
    if step.transition(state):
        log.debug("[%s] %s => %s", step.name, old.value, state.value)


def clean_step(flow: Flow, step: Step, log: logging.Logger | None = None) -> None:
    log = log or logger
    if not step.dirty:
        return

    deps = flow.deps_of(step)
    for dep in deps:
        clean_step(flow, dep, log)

    dep_states = [d.state for d in deps]
    log.debug("cleaning %s (%s) deps=%s", step.name, step.state.value, [s.value for s in dep_states])

    # Order matters: the cases overlap (e.g. one failed and one running dep).
    if step.state in (
        StepState.FAILED,
        StepState.DISABLED,
        StepState.RUNNING,
        StepState.SUCCEEDED,
    ):
        pass
    elif any(s in _FAILED for s in dep_states):
        _move(step, StepState.DEPENDENCY_FAILED, log)
    elif any(s in _PENDING for s in dep_states):
        _move(step, StepState.WAITING_FOR_DEPENDENCY, log)
    elif not dep_states and step.state == StepState.NONE:
        _move(step, StepState.WAITING_FOR_RUN, log)
    elif not dep_states:
        _move(step, step.state, log)
    elif all(s == StepState.SUCCEEDED for s in dep_states):
        _move(step, StepState.WAITING_FOR_RUN, log)
    else:
        log.debug("    %s: no rule applies, leaving %s", step.name, step.state.value)

    # Cleared even if a transition above re-marked it; only a later external
    # mark makes this step re-evaluate.
    step.dirty = False


def clean_flow(flow: Flow, log: logging.Logger | None = None) -> None:
    for step in flow:
        clean_step(flow, step, log)
