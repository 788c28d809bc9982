# dag.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set

from .model import Flow, LogMode, Step
from .state import StateSnapshot

logger = logging.getLogger(__name__)

TOP_LEVEL_KEYS = ("env", "steps")
STEP_KEYS = ("cmd", "cwd", "env", "deps", "desc", "tags", "log")


class FlowConfigError(Exception):
    """Every problem found while building a flow, reported together."""

    def __init__(self, errors: List[str]):
        super().__init__("\n".join(errors))
        self.errors = list(errors)

    def __str__(self) -> str:
        return "\n".join(self.errors)


def _unexpected_keys(obj: Mapping[str, Any], valid: tuple[str, ...], where: str) -> List[str]:
    extra = [k for k in obj if k not in valid]
    if extra:
        return [f"Unexpected key(s) {where}: {', '.join(extra)}"]
    return []


def _str_map(value: Any, where: str, errors: List[str]) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        errors.append(f"env {where} must be a table of KEY = value")
        return {}
    return {str(k): str(v) for k, v in value.items()}


def _parse_step(
    name: str,
    raw: Any,
    base_dir: Path,
    errors: List[str],
) -> Optional[tuple[Step, Any]]:
    """Build a Step without deps; returns (step, raw deps value)."""
    if not isinstance(raw, Mapping):
        errors.append(f"step {name} must be a table")
        return None

    errors.extend(_unexpected_keys(raw, STEP_KEYS, f"in step {name}"))

    cmd = raw.get("cmd")
    if not isinstance(cmd, str):
        errors.append(f"step {name} is missing a 'cmd' string")
        cmd = ""

    cwd = base_dir / str(raw.get("cwd", "."))

    tags = raw.get("tags", [])
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        errors.append(f"tags in step {name} must be a list of strings")
        tags = []

    try:
        log_mode = LogMode(raw.get("log", LogMode.FILE.value))
    except ValueError:
        errors.append(
            f"log in step {name} must be one of: {', '.join(m.value for m in LogMode)}"
        )
        log_mode = LogMode.FILE

    desc = raw.get("desc")
    step = Step(
        name=name,
        cmd=cmd,
        cwd=str(cwd.resolve()),
        env=_str_map(raw.get("env"), f"in step {name}", errors),
        tags=list(tags),
        log_mode=log_mode,
        desc=str(desc) if desc is not None else None,
    )
    return step, raw.get("deps", [])


def find_cycles(deps: Mapping[str, List[str]]) -> List[List[str]]:
    """
    Depth-first search from every step, tracking the current path.

    When a step already on the path is reached again, the loop is recorded and
    that branch is not descended further. Each distinct loop is reported once,
    however many starting points reach it.
    """
    cycles: List[List[str]] = []
    seen: Set[tuple[str, ...]] = set()

    def visit(name: str, path: List[str]) -> None:
        if name in path:
            loop = path[path.index(name):]
            # rotate so the same loop found from another start is reported once
            pivot = loop.index(min(loop))
            key = tuple(loop[pivot:] + loop[:pivot])
            if key not in seen:
                seen.add(key)
                cycles.append(list(key) + [key[0]])
            return
        path.append(name)
        for dep in deps.get(name, []):
            visit(dep, path)
        path.pop()

    for name in deps:
        visit(name, [])
    return cycles


def _ancestors(name: str, deps: Mapping[str, List[str]]) -> Set[str]:
    out: Set[str] = set()
    for d in deps[name]:
        out.add(d)
        out |= _ancestors(d, deps)
    return out


def build_flow(
    definition: Mapping[str, Any],
    snapshot: StateSnapshot | None = None,
    *,
    base_dir: str | Path = ".",
    log: logging.Logger | None = None,
) -> Flow:
    """
    Build a validated Flow from a parsed workflow definition plus the
    persisted snapshot.

    Raises:
      FlowConfigError with every problem found (no partial flow is returned).
    """
    log = log or logger
    snapshot = snapshot or StateSnapshot()
    base = Path(base_dir)
    errors: List[str] = []

    errors.extend(_unexpected_keys(definition, TOP_LEVEL_KEYS, "at toplevel"))
    env = _str_map(definition.get("env"), "at toplevel", errors)

    raw_steps = definition.get("steps", {})
    if not isinstance(raw_steps, Mapping):
        errors.append("steps must be a table of step definitions")
        raw_steps = {}

    steps: Dict[str, Step] = {}
    raw_deps: Dict[str, Any] = {}
    for name, raw in raw_steps.items():
        parsed = _parse_step(name, raw, base, errors)
        if parsed is None:
            continue
        step, deps_value = parsed
        try:
            step.rehydrate(snapshot.steps.get(name))
        except ValueError as e:
            errors.append(f"step {name} has unreadable saved state: {e}")
        steps[name] = step
        raw_deps[name] = deps_value

    # ---- resolve dependencies ----
    resolved: Dict[str, List[str]] = {}
    for name, value in raw_deps.items():
        if not isinstance(value, list) or not all(isinstance(d, str) for d in value):
            errors.append(f"deps in step {name} must be a list of step names")
            resolved[name] = []
            continue
        found = []
        for dep in value:
            if dep not in steps:
                errors.append(f"{name} => {dep}")
                continue
            found.append(dep)
        resolved[name] = found

    for cycle in find_cycles(resolved):
        errors.append(f"Dependency cycle: {' -> '.join(cycle)}")

    if errors:
        log.debug("Flow has %d error(s)", len(errors))
        raise FlowConfigError(errors)

    # ---- closures ----
    for name, step in steps.items():
        step.deps = resolved[name]
        step.ancestors = _ancestors(name, resolved)

    for name, step in steps.items():
        step.descendants = {s.name for s in steps.values() if name in s.ancestors}
        step.direct_descendants = {s.name for s in steps.values() if name in s.deps}

    flow = Flow(env=env, steps=steps)
    flow.mark_all_dirty()
    log.debug(
        "Built flow: %d steps, initial=%s, final=%s",
        len(flow),
        [s.name for s in flow.initial_steps],
        [s.name for s in flow.final_steps],
    )
    return flow
