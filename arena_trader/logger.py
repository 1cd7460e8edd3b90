"""
JSONL persistence for DecisionRecords - one file per agent.

Optional fields (P&L on orphaned closes, missing account snapshots) are
omitted from the JSON rather than written as null or zero, and come back
as absent when the log is reloaded.
"""
import logging
from pathlib import Path
from typing import List

from pydantic import ValidationError

from .schemas import DecisionRecord

logger = logging.getLogger("arena_trader.logger")


def serialize_record(record: DecisionRecord) -> str:
    return record.model_dump_json(exclude_none=True)


def deserialize_record(line: str) -> DecisionRecord:
    return DecisionRecord.model_validate_json(line)


class DecisionLogger:
    """Append-only decision log at <log_dir>/<agent_id>/decisions.jsonl."""

    def __init__(self, log_dir: str, agent_id: str):
        self.agent_id = agent_id
        self.log_dir = Path(log_dir) / agent_id
        self.path = self.log_dir / "decisions.jsonl"
        self._ensure_log_dir()

    def _ensure_log_dir(self):
        """Create log directory if it doesn't exist."""
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def write(self, record: DecisionRecord):
        with open(self.path, "a") as f:
            f.write(serialize_record(record) + "\n")
            f.flush()

    def load(self) -> List[DecisionRecord]:
        """Read every persisted record, skipping lines that fail to parse."""
        if not self.path.exists():
            return []

        records = []
        with open(self.path, "r") as f:
            for line_no, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    records.append(deserialize_record(line))
                except ValidationError as e:
                    logger.warning(f"[{self.agent_id}] Skipping malformed record at line {line_no}: {e}")
        return records
