from __future__ import annotations

from pathlib import Path

import pytest

from miniflow.dag import FlowConfigError
from miniflow.model import StepState
from miniflow.workflow import WorkflowFileError, load_workflow, open_flow, state_dir_for

FLOW = """
[env]
MODE = "test"

[steps.fetch]
cmd = "echo fetch"
tags = ["io"]

[steps.build]
cmd = "echo build"
deps = ["fetch"]
cwd = "src"
"""


def write_flow(tmp_path: Path, text: str = FLOW) -> Path:
    path = tmp_path / "miniflow.toml"
    path.write_text(text)
    return path


def test_load_workflow(tmp_path: Path):
    definition = load_workflow(write_flow(tmp_path))
    assert definition["env"] == {"MODE": "test"}
    assert definition["steps"]["build"]["deps"] == ["fetch"]


def test_missing_file(tmp_path: Path):
    with pytest.raises(WorkflowFileError) as exc:
        load_workflow(tmp_path / "nope.toml")
    assert exc.value.reason == "Workflow file not found"


def test_invalid_toml(tmp_path: Path):
    with pytest.raises(WorkflowFileError) as exc:
        load_workflow(write_flow(tmp_path, "[steps.a\ncmd = 1"))
    assert exc.value.reason.startswith("Couldn't parse workflow")


def test_open_flow_runs_initial_propagation(tmp_path: Path):
    ctx = open_flow(write_flow(tmp_path))

    assert ctx.state_dir == tmp_path.resolve() / "_miniflow"
    assert state_dir_for(tmp_path / "miniflow.toml") == ctx.state_dir
    assert ctx.flow.step("fetch").state == StepState.WAITING_FOR_RUN
    assert ctx.flow.step("build").state == StepState.WAITING_FOR_DEPENDENCY
    assert ctx.flow.step("build").cwd == str((tmp_path / "src").resolve())
    assert not any(s.dirty for s in ctx.flow)


def test_open_flow_with_errors(tmp_path: Path):
    with pytest.raises(FlowConfigError) as exc:
        open_flow(write_flow(tmp_path, '[steps.a]\ncmd = "x"\ndeps = ["b"]\n'))
    assert exc.value.errors == ["a => b"]
