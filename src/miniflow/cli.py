# cli.py
from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path

import click

from miniflow.dag import FlowConfigError
from miniflow.log import configure_logging
from miniflow.model import StepState
from miniflow.ops import StepNotFoundError, disable, enable, reset, resolve_steps, set_state
from miniflow.runner import FlowContext, run_flow
from miniflow.settings import (
    APP_NAME,
    DEFAULT_FLOW_FILENAME,
    ENV_FLOW,
    ENV_MAX_RUNS,
    ENV_WORKERS,
    MAX_RUNS_TO_RETAIN,
    STATE_DIR_NAME,
)
from miniflow.state import StateFileError, StateStore
from miniflow.ui.console import Console, get_console, set_console
from miniflow.workflow import WorkflowFileError, open_flow, state_dir_for


def _open(ctx: click.Context) -> FlowContext:
    """Load the flow or exit with a readable error."""
    console = get_console()
    flow_file = ctx.obj["flow"]
    try:
        return open_flow(flow_file)
    except WorkflowFileError as e:
        console.print_error(
            e.reason,
            str(e.path),
            suggestion=f"Create {DEFAULT_FLOW_FILENAME} or pass one explicitly:\n  {APP_NAME} --flow my_flow.toml status",
        )
    except FlowConfigError as e:
        console.print_error(
            "Invalid workflow",
            f"{len(e.errors)} problem(s) in {flow_file}:",
            details=e.errors,
        )
    except StateFileError as e:
        console.print_error(
            "Unreadable state",
            str(e),
            suggestion=f"Remove the state with:\n  {APP_NAME} purge",
        )
    sys.exit(1)


def _parse_env(values: tuple[str, ...]) -> dict[str, str]:
    env: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=value, got {item!r}", param_hint="--env")
        env[key] = value
    return env


@click.group()
@click.option(
    "-f",
    "--flow",
    "flow_file",
    default=DEFAULT_FLOW_FILENAME,
    envvar=ENV_FLOW,
    show_default=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Workflow file to use",
)
@click.option("-e", "--env", "env", multiple=True, help="Set an environment variable (KEY=value)")
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and propagation trace)",
)
@click.option("--json-logs", is_flag=True, default=False, help="Emit log records as JSON")
@click.pass_context
def cli(ctx, flow_file, env, debug, json_logs):
    """miniflow: run shell steps in dependency order and remember where you left off.

    State and logs are kept in the _miniflow folder next to the workflow file;
    add it to your .gitignore.
    """
    set_console(Console(debug=debug))
    configure_logging(logging.DEBUG if debug else logging.INFO, json_format=json_logs)
    os.environ.update(_parse_env(env))

    ctx.ensure_object(dict)
    ctx.obj["flow"] = flow_file
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workers",
    default=None,
    envvar=ENV_WORKERS,
    type=click.IntRange(min=1),
    help="Maximum steps running at once (default: no limit)",
)
@click.option(
    "--keep-runs",
    default=MAX_RUNS_TO_RETAIN,
    envvar=ENV_MAX_RUNS,
    show_default=True,
    type=click.IntRange(min=1),
    help="Runs (and log files) to retain per step",
)
@click.pass_context
def run(ctx, workers, keep_runs):
    """Run the flow, making as much progress as the current state allows."""
    console = get_console()
    fctx = _open(ctx)
    try:
        ok = asyncio.run(run_flow(fctx, max_workers=workers, keep_runs=keep_runs))
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except OSError as e:
        # state could not be written; stop rather than lose track of runs
        console.print_exception(e)
        sys.exit(1)

    console.print_status(fctx.flow)
    sys.exit(0 if ok else 1)


@cli.command("reset")
@click.option("--only", is_flag=True, default=False, help="Do not reset the steps' descendants")
@click.argument("names", nargs=-1)
@click.pass_context
def reset_cmd(ctx, only, names):
    """Reset steps (by name or tag) and their descendants. No names resets everything."""
    _manual(ctx, lambda fctx: reset(fctx, names, only=only))


@cli.command("set")
@click.argument("state", type=click.Choice([s.value for s in StepState]))
@click.argument("names", nargs=-1)
@click.pass_context
def set_cmd(ctx, state, names):
    """Force steps (by name or tag) into STATE."""
    _manual(ctx, lambda fctx: set_state(fctx, StepState(state), names))


@cli.command("disable")
@click.argument("names", nargs=-1)
@click.pass_context
def disable_cmd(ctx, names):
    """Disable steps so they are never run."""
    _manual(ctx, lambda fctx: disable(fctx, names))


@cli.command("enable")
@click.argument("names", nargs=-1)
@click.pass_context
def enable_cmd(ctx, names):
    """Re-enable disabled steps, restoring the state they had before."""
    _manual(ctx, lambda fctx: enable(fctx, names))


def _manual(ctx: click.Context, op) -> None:
    console = get_console()
    fctx = _open(ctx)
    try:
        op(fctx)
    except StepNotFoundError as e:
        console.print_error(
            "Unknown step",
            str(e),
            details=[f"Known steps: {', '.join(s.name for s in fctx.flow)}"],
        )
        sys.exit(1)
    console.print_status(fctx.flow)


@cli.command()
@click.pass_context
def status(ctx):
    """Show short-form flow status."""
    get_console().print_status(_open(ctx).flow)


@cli.command()
@click.pass_context
def inspect(ctx):
    """Show detailed information about the flow for debugging."""
    get_console().print_inspect(_open(ctx).flow)


@cli.command()
@click.argument("name")
@click.pass_context
def logs(ctx, name):
    """Print the log of the most recent run of a step."""
    console = get_console()
    fctx = _open(ctx)
    try:
        step = resolve_steps(fctx.flow, [name])[0]
    except StepNotFoundError as e:
        console.print_error("Unknown step", str(e))
        sys.exit(1)

    run = step.last_run
    if run is None or not run.log_file or not Path(run.log_file).exists():
        console.print_error("No log", f"Step {step.name} has no log file from its last run.")
        sys.exit(1)
    click.echo(Path(run.log_file).read_text(encoding="utf-8", errors="replace"), nl=False)


@cli.command()
@click.pass_context
def purge(ctx):
    """Delete all state and logs for this flow."""
    store = StateStore(state_dir_for(ctx.obj["flow"]))
    if store.purge():
        get_console().print_info(f"deleted {store.state_dir}")
    else:
        get_console().print_info(f"nothing to delete ({STATE_DIR_NAME} not found)")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
