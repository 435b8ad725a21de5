"""
pocscan - Scan Orchestrator
Runs one nuclei process for one task, feeds both output streams through the
classifier, and writes the final result, HTTP log and task status.
"""

import asyncio
import json
import os
import signal
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger

from pocscan.command import CommandBuilder, ScanCommand
from pocscan.config import EngineConfig
from pocscan.errors import ScanSetupError
from pocscan.events import EventBus
from pocscan.log import TaskTranscript
from pocscan.models import (
    EVENT_COMPLETED, EVENT_ERROR, EVENT_HTTP, EVENT_PROGRESS, EVENT_VULN_FOUND,
    STATUS_COMPLETED, STATUS_FAILED, HTTPRequestLog, ScanProgress, TaskConfig,
    TaskResult, now_iso,
)
from pocscan.parser import HttpExchange, StreamParser, VulnRecord
from pocscan.progress import ProgressTracker
from pocscan.staging import TempManager
from pocscan.store import TaskStore


# JSONL findings with -include-rr embed whole responses on one line
STREAM_LIMIT = 16 * 1024 * 1024
KILL_GRACE_S = 3.0


class NucleiScanner:
    """Drives one task's nuclei process from start to final result."""

    def __init__(
        self,
        task: TaskConfig,
        config: EngineConfig,
        store: TaskStore,
        bus: EventBus,
        temp_manager: TempManager,
    ):
        self.task = task
        self.config = config
        self.store = store
        self.bus = bus
        self.temp_manager = temp_manager
        self.builder = CommandBuilder(config, temp_manager)
        self.tracker = ProgressTracker(task.id, task.templates, task.total_requests)
        self.transcript = TaskTranscript(task.id, store.log_path(task.id))

        self.process: Optional[asyncio.subprocess.Process] = None
        self.command: Optional[ScanCommand] = None
        self.http_logs: List[HTTPRequestLog] = []
        self.stream_vulns: List[Dict] = []

        self._cancel_event = asyncio.Event()
        self._cancelled = False
        self._timed_out = False
        self._error = ""
        self._targets_file: Optional[str] = None
        self._started_at: float = 0.0
        self._last_progress_emit: float = 0.0
        self._progress_interval_s: float = 0.2
        self._last_persist: float = 0.0

    # ── Public ──────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def progress(self) -> ScanProgress:
        return self.tracker.snapshot()

    def stop(self):
        """Request cancellation. run() kills the process group and finalizes as failed."""
        self._cancel_event.set()

    async def run(self) -> TaskResult:
        """Execute the scan. Always writes a TaskResult and emits the terminal event."""
        self._started_at = time.time()
        status = STATUS_FAILED
        try:
            try:
                await self._setup()
            except ScanSetupError as e:
                self._error = str(e)
                logger.error(f"[Scanner] Task {self.task.id} setup failed: {e}")
            else:
                exit_code = await self._supervise()
                if self._cancelled:
                    self._error = "cancelled"
                elif self._timed_out:
                    self._error = f"scan timed out after {self.config.scan_timeout_s:g}s"
                elif exit_code != 0:
                    self._error = f"nuclei exited with code {exit_code}"
                else:
                    status = STATUS_COMPLETED
        except asyncio.CancelledError:
            self._cancelled = True
            self._error = "cancelled"
            await self._kill()
            await self._finalize(STATUS_FAILED)
            raise
        except Exception as e:
            logger.exception(f"[Scanner] Task {self.task.id} crashed")
            self._error = f"internal error: {e}"
            await self._kill()
            status = STATUS_FAILED
        return await self._finalize(status)

    # ── Setup ───────────────────────────────────────────────────

    def _write_targets(self) -> str:
        tmp_dir = Path(self.config.tmp_dir)
        tmp_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="w",
            prefix=f"targets_{self.task.id}_",
            suffix=".txt",
            dir=str(tmp_dir),
            delete=False,
            encoding="utf-8",
        ) as f:
            for target in self.task.targets:
                f.write(target + "\n")
            return f.name

    async def _setup(self):
        task = self.task
        output_dir = self.store.output_dir(task.id)
        output_file = self.store.output_path(task.id)
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            if output_file.exists():
                output_file.unlink()
        except OSError as e:
            raise ScanSetupError(f"failed to prepare output directory {output_dir}: {e}") from e
        task.output_file = str(output_file)
        task.log_file = str(self.store.log_path(task.id))

        try:
            self._targets_file = self._write_targets()
        except OSError as e:
            raise ScanSetupError(f"failed to create targets file: {e}") from e

        self.temp_manager.cleanup_stale(self.config.stale_temp_age_s)
        self.command = self.builder.build(task.id, task.templates, self._targets_file, str(output_file))

        try:
            self.transcript.open()
        except (OSError, ValueError) as e:
            raise ScanSetupError(f"failed to open log file {task.log_file}: {e}") from e
        self.transcript.note(f"command: {self.command.display()}")

        argv = self.command.argv
        try:
            self.process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except (OSError, ValueError) as e:
            raise ScanSetupError(f"failed to start nuclei ({argv[0]}): {e}") from e

        logger.info(
            f"[Scanner] Task {task.id} started nuclei (PID: {self.process.pid}), "
            f"{len(task.templates)} templates x {len(task.targets)} targets, "
            f"{self.command.template_flags} -t flags{' (staged)' if self.command.staging_dir else ''}"
        )

    # ── Supervision ─────────────────────────────────────────────

    async def _pump(self, stream: asyncio.StreamReader, parser: StreamParser, label: str):
        """Read one pipe line by line until EOF."""
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                logger.warning(f"[Scanner] Task {self.task.id}: oversized {label} line dropped")
                continue
            if not line:
                break
            decoded = line.decode("utf-8", errors="replace").rstrip("\r\n")
            self.transcript.write(label, decoded)
            parser.feed(decoded)
        parser.close()

    async def _drain(self, pumps: List[asyncio.Task]) -> int:
        await asyncio.gather(*pumps)
        return await self.process.wait()

    async def _supervise(self) -> int:
        proc = self.process
        stdout_parser = StreamParser(
            "stdout", self.tracker,
            on_exchange=self._on_exchange, on_vuln=self._on_vuln, on_progress=self._on_progress,
        )
        stderr_parser = StreamParser(
            "stderr", self.tracker,
            on_exchange=self._on_exchange, on_vuln=self._on_vuln, on_progress=self._on_progress,
            skip_duplicates=True, parse_json=False,
        )
        pumps = [
            asyncio.create_task(self._pump(proc.stdout, stdout_parser, "STDOUT")),
            asyncio.create_task(self._pump(proc.stderr, stderr_parser, "STDERR")),
        ]
        drain = asyncio.create_task(self._drain(pumps))
        cancel_wait = asyncio.create_task(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {drain, cancel_wait},
                timeout=self.config.scan_timeout_s,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if drain not in done:
                if cancel_wait in done:
                    self._cancelled = True
                    logger.info(f"[Scanner] Task {self.task.id} cancelled, killing nuclei")
                else:
                    self._timed_out = True
                    logger.warning(
                        f"[Scanner] Task {self.task.id} hit the {self.config.scan_timeout_s:g}s timeout, killing nuclei"
                    )
                await self._kill()
                try:
                    await asyncio.wait_for(asyncio.shield(drain), timeout=10.0)
                except asyncio.TimeoutError:
                    logger.warning(f"[Scanner] Task {self.task.id}: output pipes still open after kill")
                    drain.cancel()
        finally:
            cancel_wait.cancel()
            if not drain.done():
                drain.cancel()
                for pump in pumps:
                    pump.cancel()

        logger.info(
            f"[Scanner] Task {self.task.id} nuclei exited with code {proc.returncode} "
            f"({stdout_parser.lines} stdout / {stderr_parser.lines} stderr lines, "
            f"{stdout_parser.exchanges + stderr_parser.exchanges} HTTP exchanges)"
        )
        return proc.returncode if proc.returncode is not None else -1

    async def _kill(self):
        """SIGTERM the process group, SIGKILL after a grace period."""
        proc = self.process
        if proc is None or proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE_S)
        except asyncio.TimeoutError:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await proc.wait()

    # ── Stream callbacks ────────────────────────────────────────

    def _emit_progress(self, force: bool = False):
        now = time.time()
        if not force and now - self._last_progress_emit < self._progress_interval_s:
            return
        self._last_progress_emit = now
        self.bus.publish(self.task.id, EVENT_PROGRESS, self.tracker.snapshot().to_dict())

    def _persist_progress(self):
        now = time.time()
        if now - self._last_persist < self.config.persist_interval_s:
            return
        self._last_persist = now
        task = self.task
        task.completed_requests = self.tracker.completed_requests
        task.found_vulns = self.tracker.found_vulns
        task.updated_at = now_iso()
        try:
            self.store.save_task(task)
        except OSError as e:
            logger.warning(f"[Scanner] Task {task.id}: progress not persisted: {e}")

    def _on_progress(self):
        self._emit_progress()
        self._persist_progress()

    def _on_vuln(self, record: VulnRecord):
        self.stream_vulns.append(record.raw)
        found = self.tracker.found_vulns
        logger.info(
            f"[Scanner] Task {self.task.id} finding #{found}: [{record.severity}] "
            f"{record.template_id} {record.host}"
        )
        self.bus.publish(self.task.id, EVENT_VULN_FOUND, {
            "vuln_number": found,
            "template_id": record.template_id,
            "name": record.name,
            "severity": record.severity,
            "host": record.host,
            "timestamp": time.strftime("%H:%M:%S"),
        })
        self._emit_progress(force=True)

    def _on_exchange(self, exchange: HttpExchange):
        entry = HTTPRequestLog(
            id=len(self.http_logs) + 1,
            task_id=self.task.id,
            timestamp=now_iso(),
            template_id=exchange.template_id,
            template_name=exchange.template_id,
            severity=self.tracker.severity_for(exchange.template_id),
            target=exchange.target,
            method=exchange.method,
            status_code=exchange.status_code,
            request=exchange.request,
            response=exchange.response,
            duration_ms=exchange.duration_ms,
        )
        self.http_logs.append(entry)
        self.bus.publish(self.task.id, EVENT_HTTP, entry.summary())

    # ── Finalization ────────────────────────────────────────────

    def _load_vulnerabilities(self) -> List[Dict]:
        """Findings from the -jle file. A missing file means no findings were written."""
        path = self.store.output_path(self.task.id)
        if not path.exists():
            if self.stream_vulns:
                logger.info(
                    f"[Scanner] Task {self.task.id}: no output file, using "
                    f"{len(self.stream_vulns)} findings seen on stdout"
                )
            return list(self.stream_vulns)

        vulns: List[Dict] = []
        malformed = 0
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = json.loads(line)
                    except ValueError:
                        malformed += 1
                        continue
                    if isinstance(record, dict) and record.get("matched-at"):
                        vulns.append(record)
        except OSError as e:
            logger.error(f"[Scanner] Task {self.task.id}: cannot read {path}: {e}")
            return list(self.stream_vulns)
        if malformed:
            logger.warning(f"[Scanner] Task {self.task.id}: skipped {malformed} malformed output lines")
        return vulns

    def _cleanup(self):
        if self._targets_file:
            try:
                os.unlink(self._targets_file)
            except FileNotFoundError:
                pass
            self._targets_file = None
        if self.command and self.command.staging_dir:
            self.temp_manager.cleanup_temp_dir(self.command.staging_dir)

    async def _finalize(self, status: str) -> TaskResult:
        task = self.task
        self._cleanup()

        progress = self.tracker.finish(status)
        vulnerabilities = self._load_vulnerabilities()
        found = max(len(vulnerabilities), progress.found_vulns)
        progress.found_vulns = found

        vuln_ids = set(self.tracker.vuln_template_ids())
        vuln_ids.update(v.get("template-id") for v in vulnerabilities if isinstance(v, dict))
        for entry in self.http_logs:
            if not entry.severity:
                entry.severity = self.tracker.severity_for(entry.template_id)
            entry.is_vuln_found = entry.template_id in vuln_ids

        duration_s = round(time.time() - self._started_at, 2)
        total = progress.total_requests
        success_rate = round(progress.completed_requests / total * 100, 2) if total > 0 else 100.0

        task.status = status
        task.end_time = now_iso()
        task.updated_at = task.end_time
        task.total_requests = total
        task.completed_requests = progress.completed_requests
        task.found_vulns = found
        task.error = self._error

        result = TaskResult(
            task_id=task.id,
            task_name=task.name,
            status=status,
            start_time=task.start_time,
            end_time=task.end_time,
            duration_s=duration_s,
            targets=list(task.targets),
            templates=list(task.templates),
            target_count=len(task.targets),
            template_count=len(task.templates),
            total_requests=total,
            completed_requests=progress.completed_requests,
            found_vulns=found,
            success_rate=success_rate,
            vulnerabilities=vulnerabilities,
            http_requests=len(self.http_logs),
            scanned_templates=progress.scanned_templates,
            failed_templates=progress.failed_templates,
            filtered_templates=progress.filtered_templates,
            skipped_templates=progress.skipped_templates,
            scanned_template_ids=progress.scanned_template_ids,
            failed_template_ids=progress.failed_template_ids,
            filtered_template_ids=progress.filtered_template_ids,
            skipped_template_ids=progress.skipped_template_ids,
            error=self._error,
            summary={
                "total_requests": total,
                "completed_requests": progress.completed_requests,
                "found_vulns": found,
                "duration_s": duration_s,
                "success_rate": success_rate,
                "scanned_templates": progress.scanned_templates,
                "failed_templates": progress.failed_templates,
                "filtered_templates": progress.filtered_templates,
                "skipped_templates": progress.skipped_templates,
                "http_requests": len(self.http_logs),
            },
        )

        try:
            self.store.save_result(result)
            self.store.save_http_logs(task.id, self.http_logs)
            self.store.save_task(task)
        except OSError as e:
            logger.error(f"[Scanner] Task {task.id}: failed to persist final state: {e}")

        self.transcript.note(f"finished: status={status} findings={found} error={self._error or '-'}")
        self.transcript.close()
        logger.info(
            f"[Scanner] Task {task.id} {status} in {duration_s}s: {found} findings, "
            f"{progress.scanned_templates}/{progress.total_templates} templates scanned"
        )

        if self._error:
            self.bus.publish(task.id, EVENT_ERROR, {"message": self._error, "status": status})
        await self.bus.publish_terminal(task.id, EVENT_COMPLETED, progress.to_dict())
        return result
