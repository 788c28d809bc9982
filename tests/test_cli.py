from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from miniflow.cli import cli
from miniflow.state import StateStore

FLOW = """
[env]
GREETING = "hello"

[steps.a]
cmd = "echo $GREETING"
tags = ["first"]

[steps.b]
cmd = "false"
deps = ["a"]

[steps.c]
cmd = "true"
deps = ["a"]
desc = "the good sibling"
"""


@pytest.fixture
def flow_file(tmp_path: Path) -> Path:
    path = tmp_path / "miniflow.toml"
    path.write_text(FLOW)
    return path


def invoke(flow_file: Path, *args: str):
    return CliRunner().invoke(cli, ["--flow", str(flow_file), *args], obj={})


def saved_states(flow_file: Path) -> dict[str, str]:
    snapshot = StateStore(flow_file.parent / "_miniflow").load()
    return {name: rec.state for name, rec in snapshot.steps.items()}


def test_run_reports_failure(flow_file: Path):
    result = invoke(flow_file, "run")

    assert result.exit_code == 1
    assert saved_states(flow_file) == {"a": "succeeded", "b": "failed", "c": "succeeded"}
    assert "Flow Status" in result.output

    log_dir = flow_file.parent / "_miniflow" / "logs" / "a"
    assert (log_dir / "latest.txt").read_text() == "hello\n"


def test_run_all_green(flow_file: Path):
    flow_file.write_text(FLOW.replace('cmd = "false"', 'cmd = "true"'))

    result = invoke(flow_file, "run")

    assert result.exit_code == 0
    assert set(saved_states(flow_file).values()) == {"succeeded"}


def test_logs_prints_last_run(flow_file: Path):
    invoke(flow_file, "run")

    result = invoke(flow_file, "logs", "a")

    assert result.exit_code == 0
    assert result.output == "hello\n"


def test_status(flow_file: Path):
    result = invoke(flow_file, "status")

    assert result.exit_code == 0
    lines = [line for line in result.output.splitlines() if line.startswith(("a ", "b ", "c "))]
    assert len(lines) == 3
    assert "waiting-for-run" in lines[0]
    assert "waiting-for-dependency" in lines[1]


def test_inspect(flow_file: Path):
    result = invoke(flow_file, "inspect")

    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["env"] == {"GREETING": "hello"}
    assert data["initialSteps"] == ["a"]
    assert data["finalSteps"] == ["b", "c"]
    c = data["steps"][2]
    assert c["name"] == "c"
    assert c["deps"] == ["a"]
    assert c["description"] == "the good sibling"
    assert c["lastRun"] == "(not run yet)"


def test_reset_unknown_step(flow_file: Path):
    result = invoke(flow_file, "reset", "nope")

    assert result.exit_code == 1
    assert "No step or tag named: nope" in result.output


def test_disable_enable_and_set(flow_file: Path):
    assert invoke(flow_file, "disable", "first").exit_code == 0
    assert saved_states(flow_file)["a"] == "disabled"

    assert invoke(flow_file, "enable", "a").exit_code == 0
    assert saved_states(flow_file)["a"] == "waiting-for-run"

    assert invoke(flow_file, "set", "succeeded", "a").exit_code == 0
    assert saved_states(flow_file) == {
        "a": "succeeded",
        "b": "waiting-for-run",
        "c": "waiting-for-run",
    }


def test_set_rejects_unknown_state(flow_file: Path):
    result = invoke(flow_file, "set", "bogus", "a")
    assert result.exit_code == 2


def test_reset_after_run(flow_file: Path):
    invoke(flow_file, "run")

    result = invoke(flow_file, "reset", "--only", "c")

    assert result.exit_code == 0
    assert saved_states(flow_file) == {"a": "succeeded", "b": "failed", "c": "waiting-for-run"}


def test_invalid_workflow(flow_file: Path):
    flow_file.write_text('[steps.a]\ncmd = "true"\ndeps = ["a"]\nwhat = 1\n')

    result = invoke(flow_file, "status")

    assert result.exit_code == 1
    assert "Unexpected key(s) in step a: what" in result.output
    assert "Dependency cycle: a -> a" in result.output


def test_missing_workflow(tmp_path: Path):
    result = invoke(tmp_path / "missing.toml", "status")

    assert result.exit_code == 1
    assert "Workflow file not found" in result.output


def test_env_option(flow_file: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("EXTRA", "no")
    flow_file.write_text('[steps.a]\ncmd = "test \\"$EXTRA\\" = yes"\n')

    result = invoke(flow_file, "-e", "EXTRA=yes", "run")

    assert result.exit_code == 0


def test_purge(flow_file: Path):
    invoke(flow_file, "run")
    state_dir = flow_file.parent / "_miniflow"
    assert state_dir.exists()

    result = invoke(flow_file, "purge")

    assert result.exit_code == 0
    assert not state_dir.exists()


def test_bad_worker_env_is_a_usage_error(flow_file: Path):
    result = CliRunner().invoke(
        cli, ["--flow", str(flow_file), "run"], obj={}, env={"MINIFLOW_WORKERS": "lots"}
    )

    assert result.exit_code == 2
    assert "MINIFLOW_WORKERS" in result.output
    assert not (flow_file.parent / "_miniflow").exists()


def test_retention_and_flow_file_from_env(flow_file: Path):
    flow_file.write_text(FLOW.replace('cmd = "false"', 'cmd = "true"'))
    env = {"MINIFLOW_FLOW": str(flow_file), "MINIFLOW_MAX_RUNS": "1", "MINIFLOW_WORKERS": "1"}

    for _ in range(2):
        assert CliRunner().invoke(cli, ["reset"], obj={}, env=env).exit_code == 0
        assert CliRunner().invoke(cli, ["run"], obj={}, env=env).exit_code == 0

    snapshot = StateStore(flow_file.parent / "_miniflow").load()
    assert len(snapshot.steps["a"].runs) == 1


def test_run_echoes_step_output(flow_file: Path):
    result = invoke(flow_file, "run")

    assert "[a] [stdout] hello" in result.output
