"""
pocscan - Task Manager
Task lifecycle on top of the JSON task store: create, start, rescan, stop,
update, delete, and the event subscription API.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from loguru import logger

from pocscan.config import EngineConfig
from pocscan.errors import PocscanError, TaskNotFoundError, TaskStateError
from pocscan.events import EventBus, EventHandler
from pocscan.models import (
    EVENT_COMPLETED, EVENT_PROGRESS, STATUS_COMPLETED, STATUS_FAILED, STATUS_RUNNING,
    TERMINAL_STATUSES,
    HTTPRequestLog, ScanProgress, TaskConfig, TaskResult, now_iso,
)
from pocscan.scanner import NucleiScanner
from pocscan.staging import TempManager
from pocscan.store import TaskStore


EXPORT_VERSION = "1.0"


@dataclass
class RunningScan:
    """A task whose orchestrator is currently alive."""
    task_id: int
    scanner: NucleiScanner
    runner: asyncio.Task
    started_at: float


def _copy(task: TaskConfig) -> TaskConfig:
    return TaskConfig.from_dict(task.to_dict())


class TaskManager:
    """Owns the task store, the event bus and every running scan."""

    def __init__(self, config: EngineConfig, bus: Optional[EventBus] = None):
        self.config = config
        config.ensure_dirs()
        self.store = TaskStore(config.data_dir)
        self.temp_manager = TempManager(config.tmp_dir, config.templates_dir)
        self.bus = bus or EventBus(config.event_queue_size, config.handler_timeout_s)
        self._running: Dict[int, RunningScan] = {}
        self._recover_interrupted()
        self.temp_manager.cleanup_stale(config.stale_temp_age_s)

    def _recover_interrupted(self):
        """Tasks left 'running' by a previous process can never finish on their own."""
        with self.store.lock:
            for task in self.store.list_tasks():
                if task.status != STATUS_RUNNING:
                    continue
                task.status = STATUS_FAILED
                task.error = "interrupted"
                task.end_time = task.end_time or now_iso()
                task.updated_at = now_iso()
                self.store.save_task(task)
                logger.warning(f"[TaskManager] Task {task.id} was left running, marked failed")

    def update_config(self, config: EngineConfig):
        """Swap the engine config. Running scans keep the one they started with."""
        self.config = config
        self.temp_manager = TempManager(config.tmp_dir, config.templates_dir)

    # ── Lookup ──────────────────────────────────────────────────

    def _load(self, task_id: int) -> TaskConfig:
        try:
            task = self.store.load_task(task_id)
        except (OSError, ValueError, TypeError) as e:
            raise PocscanError(f"Task {task_id} is unreadable: {e}") from e
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def is_running(self, task_id: int) -> bool:
        return task_id in self._running

    def running_task_ids(self) -> List[int]:
        return sorted(self._running)

    def get_task(self, task_id: int) -> TaskConfig:
        running = self._running.get(task_id)
        if running:
            return _copy(running.scanner.task)
        return self._load(task_id)

    def get_all_tasks(self) -> List[TaskConfig]:
        tasks = []
        for task in self.store.list_tasks():
            running = self._running.get(task.id)
            tasks.append(_copy(running.scanner.task) if running else task)
        return tasks

    def get_task_result(self, task_id: int) -> Optional[TaskResult]:
        self._load(task_id)
        return self.store.load_result(task_id)

    def get_all_task_results(self) -> List[TaskResult]:
        """Finished tasks that produced at least one finding."""
        return [r for r in self.store.list_results() if r.found_vulns > 0 and r.vulnerabilities]

    def get_http_logs(self, task_id: int) -> List[HTTPRequestLog]:
        running = self._running.get(task_id)
        if running:
            return list(running.scanner.http_logs)
        return self.store.load_http_logs(task_id)

    def get_task_log(self, task_id: int, tail: int = 0) -> List[str]:
        """Raw nuclei transcript of the latest run."""
        self._load(task_id)
        return self.store.read_log(task_id, tail)

    def export_task(self, task_id: int) -> Optional[Dict[str, Any]]:
        """Stored result and HTTP exchanges as one document. None until a run has finished."""
        result = self.get_task_result(task_id)
        if result is None:
            return None
        return {
            "task_result": result.to_dict(),
            "http_logs": [entry.to_dict() for entry in self.store.load_http_logs(task_id)],
            "exported_at": now_iso(),
            "export_version": EXPORT_VERSION,
        }

    def get_progress(self, task_id: int) -> ScanProgress:
        """Live snapshot while running, otherwise rebuilt from the stored task/result."""
        running = self._running.get(task_id)
        if running:
            return running.scanner.progress()
        task = self._load(task_id)
        result = self.store.load_result(task_id) if task.status in TERMINAL_STATUSES else None
        progress = ScanProgress(
            task_id=task.id,
            total_requests=task.total_requests,
            completed_requests=task.completed_requests,
            found_vulns=task.found_vulns,
            percentage=100.0 if task.status == STATUS_COMPLETED else 0.0,
            status=task.status,
            total_templates=len(task.templates),
            selected_templates=list(task.templates),
        )
        if result:
            progress.scanned_templates = result.scanned_templates
            progress.failed_templates = result.failed_templates
            progress.filtered_templates = result.filtered_templates
            progress.skipped_templates = result.skipped_templates
            progress.scanned_template_ids = list(result.scanned_template_ids)
            progress.failed_template_ids = list(result.failed_template_ids)
            progress.filtered_template_ids = list(result.filtered_template_ids)
            progress.skipped_template_ids = list(result.skipped_template_ids)
            if task.status != STATUS_COMPLETED and result.total_requests > 0:
                progress.percentage = round(min(100.0, result.completed_requests / result.total_requests * 100), 2)
        return progress

    # ── CRUD ────────────────────────────────────────────────────

    def create_task(self, templates: List[str], targets: List[str], name: str = "") -> TaskConfig:
        """Persist a new pending task. total_requests = templates x targets."""
        with self.store.lock:
            task_id = self.store.next_id()
            task = TaskConfig(
                id=task_id,
                name=(name or "").strip() or f"Task-{task_id}",
                templates=list(templates),
                targets=list(targets),
                total_requests=len(templates) * len(targets),
                output_file=str(self.store.output_path(task_id)),
                log_file=str(self.store.log_path(task_id)),
            )
            self.store.save_task(task)
        logger.info(
            f"[TaskManager] Created task {task.id} '{task.name}': "
            f"{len(task.templates)} templates x {len(task.targets)} targets"
        )
        return task

    def update_task(
        self,
        task_id: int,
        templates: Optional[List[str]] = None,
        targets: Optional[List[str]] = None,
        name: Optional[str] = None,
    ) -> TaskConfig:
        with self.store.lock:
            task = self._load(task_id)
            if task.status == STATUS_RUNNING or task_id in self._running:
                raise TaskStateError(task_id, task.status, f"Cannot update task {task_id} while it is running")
            if templates is not None:
                task.templates = list(templates)
            if targets is not None:
                task.targets = list(targets)
            if name is not None and name.strip():
                task.name = name.strip()
            task.total_requests = len(task.templates) * len(task.targets)
            task.updated_at = now_iso()
            self.store.save_task(task)
        logger.info(f"[TaskManager] Updated task {task_id}")
        return task

    def delete_task(self, task_id: int):
        with self.store.lock:
            task = self._load(task_id)
            if task.status == STATUS_RUNNING or task_id in self._running:
                raise TaskStateError(task_id, task.status, f"Cannot delete task {task_id} while it is running")
            self.store.delete_task_files(task_id)
        self.bus.unregister_handler(task_id)
        logger.info(f"[TaskManager] Deleted task {task_id}")

    # ── Lifecycle ───────────────────────────────────────────────

    async def start_task(self, task_id: int) -> TaskConfig:
        """Reset counters, persist, emit a zeroed progress event and launch the scan."""
        with self.store.lock:
            task = self._load(task_id)
            if task_id in self._running or task.status == STATUS_RUNNING:
                raise TaskStateError(task_id, task.status, f"Task {task_id} is already running")
            return self._launch(task)

    async def rescan_task(self, task_id: int) -> TaskConfig:
        """Run a finished task again from zero."""
        with self.store.lock:
            task = self._load(task_id)
            if task_id in self._running or task.status not in TERMINAL_STATUSES:
                raise TaskStateError(
                    task_id, task.status,
                    f"Task {task_id} can only be rescanned once completed or failed (status: {task.status})",
                )
            return self._launch(task)

    def _launch(self, task: TaskConfig) -> TaskConfig:
        task.reset_counters()
        task.status = STATUS_RUNNING
        task.start_time = now_iso()
        task.updated_at = task.start_time
        self.store.save_task(task)

        scanner = NucleiScanner(task, self.config, self.store, self.bus, self.temp_manager)
        self.bus.publish(task.id, EVENT_PROGRESS, scanner.progress().to_dict())

        runner = asyncio.create_task(self._run_scanner(scanner))
        self._running[task.id] = RunningScan(
            task_id=task.id,
            scanner=scanner,
            runner=runner,
            started_at=time.time(),
        )
        logger.info(f"[TaskManager] Started task {task.id}")
        return _copy(task)

    async def _run_scanner(self, scanner: NucleiScanner) -> Optional[TaskResult]:
        task_id = scanner.task.id
        try:
            return await scanner.run()
        except Exception as e:
            logger.exception(f"[TaskManager] Task {task_id} orchestrator crashed: {e}")
            await self._fail_crashed(scanner, str(e))
            return None
        finally:
            self._running.pop(task_id, None)
            await self.bus.close(task_id, timeout=self.config.handler_timeout_s * 2)

    async def _fail_crashed(self, scanner: NucleiScanner, error: str):
        task = scanner.task
        task.status = STATUS_FAILED
        task.error = error
        task.end_time = now_iso()
        task.updated_at = task.end_time
        with self.store.lock:
            self.store.save_task(task)
        scanner.transcript.close()
        progress = scanner.tracker.finish(STATUS_FAILED)
        await self.bus.publish_terminal(task.id, EVENT_COMPLETED, progress.to_dict())

    async def stop_task(self, task_id: int, timeout: float = 15.0) -> bool:
        """Kill a running scan. The task finishes as failed with error 'cancelled'."""
        running = self._running.get(task_id)
        if not running:
            task = self._load(task_id)
            raise TaskStateError(task_id, task.status, f"Task {task_id} is not running")
        running.scanner.stop()
        try:
            await asyncio.wait_for(asyncio.shield(running.runner), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[TaskManager] Task {task_id} did not stop within {timeout:g}s")
            return False
        return True

    async def wait_for_task(self, task_id: int, timeout: Optional[float] = None) -> Optional[TaskResult]:
        """Wait for a running task's orchestrator. Returns the stored result."""
        running = self._running.get(task_id)
        if running:
            await asyncio.wait_for(asyncio.shield(running.runner), timeout=timeout)
        return self.store.load_result(task_id)

    async def cancel_all(self):
        """Stop every running scan, then shut the event bus down."""
        for task_id in list(self._running.keys()):
            await self.stop_task(task_id)
        await self.bus.shutdown()

    # ── Event subscription ──────────────────────────────────────

    def register_handler(self, task_id: int, handler: EventHandler):
        self.bus.register_handler(task_id, handler)

    def unregister_handler(self, task_id: int):
        self.bus.unregister_handler(task_id)
