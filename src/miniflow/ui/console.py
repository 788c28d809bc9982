"""Console output formatting utilities for miniflow."""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from typing import Any, Optional

import click

from ..model import Flow, Step, StepRun, StepState

STATE_COLORS = {
    StepState.NONE: "bright_black",
    StepState.WAITING_FOR_RUN: "yellow",
    StepState.WAITING_FOR_DEPENDENCY: "yellow",
    StepState.DEPENDENCY_FAILED: "red",
    StepState.SUCCEEDED: "green",
    StepState.RUNNING: "blue",
    StepState.FAILED: "bright_red",
    StepState.DISABLED: "bright_black",
}


def format_duration(ms: int) -> str:
    """Compact human duration: 2d 3h 4m, 3h 4m, 4m 5s, 5.2s."""
    seconds, _ = divmod(max(ms, 0), 1000)
    minutes, secs = divmod(seconds, 60)
    hours, mins = divmod(minutes, 60)
    days, hrs = divmod(hours, 24)
    if days:
        return f"{days}d {hrs}h {mins}m"
    if hours:
        return f"{hours}h {mins}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{ms / 1000:.1f}s"


def format_ago(ts: datetime, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    delta_ms = int((now - ts).total_seconds() * 1000)
    return f"{format_duration(delta_ms)} ago"


def truncate_one_line(s: str, limit: int = 60) -> str:
    first = s.split("\n")[0]
    out = first[:limit]
    return out + "..." if out != s else out


def describe_run(run: StepRun, now: Optional[datetime] = None) -> dict[str, Any]:
    if run.end_timestamp is not None:
        return {
            "end": format_ago(run.end_timestamp, now),
            "duration": format_duration(run.duration_ms or 0),
            "exitCode": run.exit_code,
        }
    return {"start": format_ago(run.start_timestamp, now)}


def inspect_flow(flow: Flow, now: Optional[datetime] = None) -> dict[str, Any]:
    """Structured dump of the flow, used by `miniflow inspect`."""
    return {
        "env": dict(flow.env),
        "initialSteps": [s.name for s in flow.initial_steps],
        "finalSteps": [s.name for s in flow.final_steps],
        "steps": [
            {
                "name": s.name,
                "tags": list(s.tags),
                "state": s.state.value,
                "deps": list(s.deps),
                "cmd": truncate_one_line(s.cmd),
                "cwd": s.cwd,
                "description": s.desc,
                "lastRun": describe_run(s.last_run, now) if s.last_run else "(not run yet)",
                "env": dict(s.env),
            }
            for s in flow
        ],
    }


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, color: Optional[bool] = None):
        """
        Args:
            debug: If True, show stack traces and debug messages
            color: Force colour on/off (None lets click decide)
        """
        self.debug = debug
        self.color = color

    def _echo(self, message: str = "", err: bool = False) -> None:
        click.echo(message, err=err, color=self.color)

    def print_header(self, title: str) -> None:
        self._echo(f"---[ {title} ]" + "-" * max(0, 40 - len(title)))

    def run_info(self, step: Step, now: Optional[datetime] = None) -> str:
        run = step.last_run
        if run is None:
            return ""
        if step.state in (StepState.SUCCEEDED, StepState.FAILED) and run.end_timestamp is not None:
            return (
                f"finished with exit code [{run.exit_code}] after "
                f"{format_duration(run.duration_ms or 0)} ({format_ago(run.end_timestamp, now)})"
            )
        if step.state == StepState.RUNNING:
            return f"running since {format_ago(run.start_timestamp, now)}"
        return ""

    def print_status(self, flow: Flow, now: Optional[datetime] = None) -> None:
        """Print one line per step: name, coloured state, last run."""
        self.print_header("Flow Status")
        name_width = max((len(s.name) for s in flow), default=0)
        state_width = max(len(s.value) for s in StepState)
        for step in flow:
            state = click.style(step.state.value.ljust(state_width), fg=STATE_COLORS[step.state])
            info = click.style(self.run_info(step, now), fg="bright_black")
            self._echo(f"{step.name.ljust(name_width)}  {state}  {info}".rstrip())
        self._echo("-" * 46)

    def print_inspect(self, flow: Flow) -> None:
        self._echo(json.dumps(inspect_flow(flow), indent=2, ensure_ascii=False))

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        self._echo(click.style(f"ERROR: {title}", fg="bright_red"), err=True)
        self._echo(message, err=True)
        for detail in details or []:
            self._echo(f"  {detail}", err=True)
        if suggestion:
            self._echo(f"\n{suggestion}", err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            self._echo(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._echo(message)


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
