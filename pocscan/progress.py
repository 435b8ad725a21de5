"""
pocscan - Progress Accumulator
Folds classified stream events into monotonic per-task counters and the
scanned/failed/filtered/skipped template accounting.
"""

import threading
from typing import Dict, List, Optional

from loguru import logger

from pocscan.models import STATUS_COMPLETED, STATUS_RUNNING, ScanProgress
from pocscan.staging import template_id_from_path


class ProgressTracker:
    """
    Shared state of one running scan.

    Both stream parsers write into it and status queries read from it; every
    access goes through one lock and no method awaits while holding it.
    """

    def __init__(self, task_id: int, templates: List[str], total_requests: int):
        self.task_id = task_id
        self._lock = threading.RLock()
        self.reset(templates, total_requests)

    def reset(self, templates: List[str], total_requests: int, status: str = STATUS_RUNNING):
        """Clear every counter and set. Only start/rescan call this."""
        with self._lock:
            self._templates = list(templates)
            self._requested_ids = [template_id_from_path(t) for t in self._templates]
            self._index: Dict[str, int] = {}
            for i, template_id in enumerate(self._requested_ids):
                self._index.setdefault(template_id, i)
            self._total_requests = total_requests
            self._completed_requests = 0
            self._matched_reported = 0
            self._vuln_records = 0
            self._percentage = 0.0
            self._status = status
            self._current_template = ""
            self._current_target = ""
            self._current_index = 0
            self._scanned: Dict[str, None] = {}
            self._failed: Dict[str, None] = {}
            self._loaded: Optional[int] = None
            self._excluded = 0
            self._skipped = 0
            self._skipped_ids: List[str] = []
            self._finished = False
            self._severity: Dict[str, str] = {}
            self._vuln_templates: Dict[str, None] = {}

    # ── Writers ─────────────────────────────────────────────────

    def _update_percentage(self):
        if self._total_requests > 0:
            pct = min(100.0, max(0.0, self._completed_requests / self._total_requests * 100))
            # Never move backwards within one run
            self._percentage = max(self._percentage, round(pct, 2))

    def apply_stats(self, requests: int, total: int, matched: int):
        with self._lock:
            if total > 0:
                self._total_requests = total
            self._completed_requests = max(self._completed_requests, requests)
            if self._total_requests > 0:
                self._completed_requests = min(self._completed_requests, self._total_requests)
            self._matched_reported = max(self._matched_reported, matched)
            self._update_percentage()

    def record_vuln(self, template_id: str, host: str = "", severity: str = "") -> int:
        """Count one finding. Repeated findings for a template each count."""
        with self._lock:
            self._vuln_records += 1
            self._vuln_templates[template_id] = None
            if severity:
                self._severity[template_id] = severity
            self._set_position(template_id, host)
            self._mark_scanned(template_id)
            return self.found_vulns

    def set_loaded(self, loaded: int):
        with self._lock:
            self._loaded = loaded

    def add_excluded(self, count: int):
        with self._lock:
            self._excluded += count

    def _set_position(self, template_id: str, target: str = ""):
        self._current_template = template_id
        if target:
            self._current_target = target
        if template_id in self._index:
            self._current_index = self._index[template_id] + 1
        else:
            self._current_index = max(self._current_index, len(self._scanned))

    def _mark_scanned(self, template_id: str) -> bool:
        if template_id in self._scanned:
            return False
        self._scanned[template_id] = None
        return True

    def mark_scanned(self, template_id: str, target: str = "") -> bool:
        """First-seen accounting. Returns True the first time template_id is seen."""
        with self._lock:
            new = self._mark_scanned(template_id)
            self._set_position(template_id, target)
            return new

    def mark_failed(self, template_id: str) -> bool:
        """A failed template was attempted, so it is scanned too."""
        with self._lock:
            self._mark_scanned(template_id)
            self._set_position(template_id)
            if template_id in self._failed:
                return False
            self._failed[template_id] = None
            return True

    def finish(self, status: str) -> ScanProgress:
        """Settle filtered/skipped once the process is gone and return the final snapshot."""
        with self._lock:
            self._status = status
            if status == STATUS_COMPLETED:
                self._percentage = 100.0
            if not self._finished:
                self._finished = True
                self._settle()
            return self._snapshot()

    def _settle(self):
        total = len(self._templates)
        scanned = len(self._scanned)
        filtered = self._filtered_count()
        remainder = total - scanned - filtered
        if remainder < 0:
            logger.warning(
                f"[Progress] Task {self.task_id}: classification gap, scanned={scanned} "
                f"filtered={filtered} exceeds total={total}"
            )
            remainder = 0
        self._skipped = remainder

        unscanned = [tid for tid in dict.fromkeys(self._requested_ids) if tid not in self._scanned]
        self._skipped_ids = unscanned
        if len(unscanned) != filtered + remainder:
            logger.warning(
                f"[Progress] Task {self.task_id}: {len(unscanned)} requested templates never observed, "
                f"but filtered={filtered} skipped={remainder}"
            )
        unknown = [tid for tid in self._scanned if tid not in self._index]
        if unknown:
            logger.debug(f"[Progress] Task {self.task_id}: observed ids not in selection: {unknown[:20]}")

    def _filtered_count(self) -> int:
        total = len(self._templates)
        if self._loaded is not None:
            filtered = total - self._loaded
        else:
            filtered = self._excluded
        return max(0, min(filtered, total))

    # ── Readers ─────────────────────────────────────────────────

    @property
    def found_vulns(self) -> int:
        with self._lock:
            return max(self._vuln_records, self._matched_reported)

    @property
    def percentage(self) -> float:
        with self._lock:
            return self._percentage

    @property
    def current_template(self) -> str:
        with self._lock:
            return self._current_template

    @property
    def completed_requests(self) -> int:
        with self._lock:
            return self._completed_requests

    @property
    def total_requests(self) -> int:
        with self._lock:
            return self._total_requests

    def severity_for(self, template_id: str) -> str:
        with self._lock:
            return self._severity.get(template_id, "")

    def vuln_template_ids(self) -> List[str]:
        with self._lock:
            return list(self._vuln_templates)

    def _snapshot(self) -> ScanProgress:
        filtered = self._filtered_count()
        skipped = self._skipped if self._finished else 0
        return ScanProgress(
            task_id=self.task_id,
            total_requests=self._total_requests,
            completed_requests=self._completed_requests,
            found_vulns=max(self._vuln_records, self._matched_reported),
            percentage=self._percentage,
            status=self._status,
            current_template=self._current_template,
            current_target=self._current_target,
            current_index=self._current_index,
            total_templates=len(self._templates),
            selected_templates=list(self._templates),
            scanned_templates=len(self._scanned),
            failed_templates=len(self._failed),
            filtered_templates=filtered,
            skipped_templates=skipped,
            scanned_template_ids=list(self._scanned),
            failed_template_ids=list(self._failed),
            filtered_template_ids=[],
            skipped_template_ids=list(self._skipped_ids) if self._finished else [],
        )

    def snapshot(self) -> ScanProgress:
        with self._lock:
            return self._snapshot()
