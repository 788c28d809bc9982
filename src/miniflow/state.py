"""On-disk snapshot of step states and run history."""

from __future__ import annotations

import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .settings import SNAPSHOT_VERSION, STATE_FILENAME

logger = logging.getLogger(__name__)


class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RunRecord(_Record):
    start_timestamp: datetime = Field(alias="startTimestamp")
    end_timestamp: Optional[datetime] = Field(default=None, alias="endTimestamp")
    exit_code: Optional[int] = Field(default=None, alias="exitCode")
    log_file: Optional[str] = Field(default=None, alias="logFile")


class StepRecord(_Record):
    state: str
    prev_state: Optional[str] = Field(default=None, alias="prevState")
    runs: List[RunRecord] = Field(default_factory=list)


class StateSnapshot(_Record):
    version: int = SNAPSHOT_VERSION
    steps: Dict[str, StepRecord] = Field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            self.model_dump(mode="json", by_alias=True, exclude_none=True),
            indent=2,
            ensure_ascii=False,
        )


class StateFileError(Exception):
    def __init__(self, path: Path, reason: str):
        super().__init__(f"Couldn't read state file {path}: {reason}")
        self.path = path
        self.reason = reason


class StateStore:
    """
    File-based snapshot store:
      state_dir/
        state.json
        logs/<step>/run-<timestamp>.txt
    """

    def __init__(self, state_dir: str | Path):
        self.state_dir = Path(state_dir)
        self.state_file = self.state_dir / STATE_FILENAME

    def load(self) -> StateSnapshot:
        if not self.state_file.exists():
            logger.debug("No state at %s, starting fresh", self.state_file)
            return StateSnapshot()

        try:
            raw = self.state_file.read_text(encoding="utf-8")
            return StateSnapshot.model_validate_json(raw)
        except OSError as e:
            raise StateFileError(self.state_file, str(e)) from e
        except ValidationError as e:
            raise StateFileError(self.state_file, str(e)) from e

    def save(self, snapshot: StateSnapshot) -> None:
        """
        Write the snapshot atomically (tmp file + rename).

        Errors propagate: a lost write would break resuming.
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.state_file.with_suffix(".json.tmp")
        tmp.write_text(snapshot.to_json() + "\n", encoding="utf-8")
        tmp.replace(self.state_file)
        logger.debug("Saved state to %s", self.state_file)

    def purge(self) -> bool:
        """Delete the whole state directory. Returns False if there was nothing to delete."""
        if not self.state_dir.exists():
            return False
        shutil.rmtree(self.state_dir)
        logger.info("Deleted %s", self.state_dir)
        return True
