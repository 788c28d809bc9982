from __future__ import annotations

APP_NAME = "miniflow"
DEFAULT_FLOW_FILENAME = f"{APP_NAME}.toml"
STATE_DIR_NAME = f"_{APP_NAME}"
STATE_FILENAME = "state.json"
LOGS_DIR_NAME = "logs"
SNAPSHOT_VERSION = 1
MAX_RUNS_TO_RETAIN = 10

# Environment overrides, read and validated by the CLI options.
ENV_FLOW = "MINIFLOW_FLOW"
ENV_MAX_RUNS = "MINIFLOW_MAX_RUNS"
ENV_WORKERS = "MINIFLOW_WORKERS"
