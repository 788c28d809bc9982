# workflow.py
from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any, Dict

from .dag import build_flow
from .runner import FlowContext
from .settings import STATE_DIR_NAME
from .state import StateStore

logger = logging.getLogger(__name__)


class WorkflowFileError(Exception):
    def __init__(self, path: Path, reason: str):
        super().__init__(f"{reason}: {path}")
        self.path = path
        self.reason = reason


def load_workflow(path: str | Path) -> Dict[str, Any]:
    """
    Read a TOML workflow definition:

        [env]
        KEY = "value"

        [steps.hello]
        cmd = "echo hello"

        [steps.world]
        cmd  = "echo world"
        deps = ["hello"]
    """
    wf_path = Path(path).expanduser()
    if not wf_path.exists():
        raise WorkflowFileError(wf_path, "Workflow file not found")
    try:
        with wf_path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise WorkflowFileError(wf_path, f"Couldn't parse workflow ({e})") from e
    except OSError as e:
        raise WorkflowFileError(wf_path, f"Couldn't read workflow ({e})") from e


def state_dir_for(flow_file: str | Path) -> Path:
    return Path(flow_file).expanduser().resolve().parent / STATE_DIR_NAME


def open_flow(flow_file: str | Path, log: logging.Logger | None = None) -> FlowContext:
    """Load the workflow file and its snapshot, build the flow and run the initial propagation pass."""
    log = log or logger
    wf_path = Path(flow_file).expanduser().resolve()
    definition = load_workflow(wf_path)

    store = StateStore(state_dir_for(wf_path))
    snapshot = store.load()
    flow = build_flow(definition, snapshot, base_dir=wf_path.parent, log=log)

    ctx = FlowContext(flow=flow, snapshot=snapshot, store=store, log=log)
    ctx.clean()
    return ctx
