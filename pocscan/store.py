"""
pocscan - Task Store
JSON-file persistence for task configs, results and captured HTTP logs.

Layout below data_dir:
    tasks/task_<id>.json
    results/task_<id>_result.json
    results/task_<id>/nuclei_output.jsonl
    logs/task_<id>.log
    logs/task_<id>_http_logs.json
"""

import json
import os
import re
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Any, List, Optional

from loguru import logger

from pocscan.models import HTTPRequestLog, TaskConfig, TaskResult


TASK_FILE_RE = re.compile(r"^task_(\d+)\.json$")


def atomic_write_json(path: Path, data: Any):
    """Write JSON to a temp file beside path, then rename over it."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def read_json(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


class TaskStore:
    """File-backed CRUD. Callers hold `lock` across read-modify-write."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.tasks_dir = self.data_dir / "tasks"
        self.results_dir = self.data_dir / "results"
        self.logs_dir = self.data_dir / "logs"
        self.lock = threading.RLock()
        for d in (self.tasks_dir, self.results_dir, self.logs_dir):
            d.mkdir(parents=True, exist_ok=True)

    # ── Paths ────────────────────────────────────────────────────

    def task_path(self, task_id: int) -> Path:
        return self.tasks_dir / f"task_{task_id}.json"

    def result_path(self, task_id: int) -> Path:
        return self.results_dir / f"task_{task_id}_result.json"

    def output_dir(self, task_id: int) -> Path:
        return self.results_dir / f"task_{task_id}"

    def output_path(self, task_id: int) -> Path:
        return self.output_dir(task_id) / "nuclei_output.jsonl"

    def log_path(self, task_id: int) -> Path:
        return self.logs_dir / f"task_{task_id}.log"

    def http_logs_path(self, task_id: int) -> Path:
        return self.logs_dir / f"task_{task_id}_http_logs.json"

    # ── IDs ──────────────────────────────────────────────────────

    def next_id(self) -> int:
        """max(numeric suffix of task_*.json) + 1, ignoring unreadable content."""
        max_id = 0
        with self.lock:
            for entry in self.tasks_dir.iterdir():
                m = TASK_FILE_RE.match(entry.name)
                if m:
                    max_id = max(max_id, int(m.group(1)))
        return max_id + 1

    # ── Tasks ────────────────────────────────────────────────────

    def save_task(self, task: TaskConfig):
        with self.lock:
            atomic_write_json(self.task_path(task.id), task.to_dict())

    def load_task(self, task_id: int) -> Optional[TaskConfig]:
        path = self.task_path(task_id)
        with self.lock:
            if not path.exists():
                return None
            return TaskConfig.from_dict(read_json(path))

    def list_tasks(self) -> List[TaskConfig]:
        tasks = []
        with self.lock:
            for entry in self.tasks_dir.iterdir():
                if not TASK_FILE_RE.match(entry.name):
                    continue
                try:
                    tasks.append(TaskConfig.from_dict(read_json(entry)))
                except (OSError, ValueError, TypeError) as e:
                    logger.warning(f"[TaskStore] Skipping unreadable task file {entry.name}: {e}")
        tasks.sort(key=lambda t: t.id)
        return tasks

    # ── Results ──────────────────────────────────────────────────

    def save_result(self, result: TaskResult):
        with self.lock:
            atomic_write_json(self.result_path(result.task_id), result.to_dict())

    def load_result(self, task_id: int) -> Optional[TaskResult]:
        path = self.result_path(task_id)
        with self.lock:
            if not path.exists():
                return None
            return TaskResult.from_dict(read_json(path))

    def list_results(self) -> List[TaskResult]:
        results = []
        with self.lock:
            for entry in self.results_dir.glob("task_*_result.json"):
                try:
                    results.append(TaskResult.from_dict(read_json(entry)))
                except (OSError, ValueError, TypeError) as e:
                    logger.warning(f"[TaskStore] Skipping unreadable result file {entry.name}: {e}")
        results.sort(key=lambda r: r.task_id)
        return results

    # ── HTTP logs ────────────────────────────────────────────────

    def save_http_logs(self, task_id: int, logs: List[HTTPRequestLog]):
        with self.lock:
            atomic_write_json(self.http_logs_path(task_id), [entry.to_dict() for entry in logs])

    def load_http_logs(self, task_id: int) -> List[HTTPRequestLog]:
        path = self.http_logs_path(task_id)
        with self.lock:
            if not path.exists():
                return []
            data = read_json(path)
        return [HTTPRequestLog.from_dict(item) for item in data if isinstance(item, dict)]

    # ── Transcripts ──────────────────────────────────────────────

    def read_log(self, task_id: int, tail: int = 0) -> List[str]:
        """Transcript lines, oldest first. tail > 0 keeps only the last lines."""
        path = self.log_path(task_id)
        if not path.exists():
            return []
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            lines = [line.rstrip("\n") for line in f]
        return lines[-tail:] if tail > 0 else lines

    # ── Deletion ─────────────────────────────────────────────────

    def delete_task_files(self, task_id: int):
        """Remove the config, result, transcript, HTTP log and raw output of a task."""
        with self.lock:
            for path in (
                self.task_path(task_id),
                self.result_path(task_id),
                self.log_path(task_id),
                self.http_logs_path(task_id),
            ):
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass
            shutil.rmtree(self.output_dir(task_id), ignore_errors=True)
