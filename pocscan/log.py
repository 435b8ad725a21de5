"""
pocscan - Logging
loguru sinks for the engine log and the per-task raw tool transcript.
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger


def _not_transcript(record) -> bool:
    return "transcript_task" not in record["extra"]


def setup_logging(log_dir: Path, level: str = "INFO"):
    """Console sink plus a rotating engine log under log_dir."""
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    logger.remove()
    logger.add(sys.stderr, level=level, filter=_not_transcript)
    logger.add(
        str(log_dir / "pocscan.log"),
        rotation="10 MB",
        retention=5,
        level="DEBUG",
        filter=_not_transcript,
    )


class TaskTranscript:
    """Raw stdout/stderr of one scan, written to logs/task_<id>.log.

    Lines are emitted at TRACE level through a dedicated sink so they stay
    out of the console and engine log.
    """

    def __init__(self, task_id: int, path: Path):
        self.task_id = task_id
        self.path = Path(path)
        self._sink_id: Optional[int] = None
        self._log = logger.bind(transcript_task=task_id)

    def _belongs(self, record) -> bool:
        return record["extra"].get("transcript_task") == self.task_id

    def open(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._sink_id = logger.add(
            str(self.path),
            level="TRACE",
            format="{time:HH:mm:ss} {message}",
            filter=self._belongs,
            mode="w",
            encoding="utf-8",
        )

    def write(self, stream: str, line: str):
        if self._sink_id is not None:
            self._log.trace(f"[{stream}] {line}")

    def note(self, message: str):
        if self._sink_id is not None:
            self._log.trace(f"[ENGINE] {message}")

    def close(self):
        if self._sink_id is not None:
            logger.remove(self._sink_id)
            self._sink_id = None
