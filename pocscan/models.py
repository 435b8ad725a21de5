"""
pocscan - Data Model
Task configuration, live progress, final results, captured HTTP exchanges and bus events.
"""

from dataclasses import dataclass, field, asdict, fields
from datetime import datetime
from typing import Any, Dict, List, Optional


STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)

EVENT_PROGRESS = "progress"
EVENT_VULN_FOUND = "vuln_found"
EVENT_HTTP = "http"
EVENT_COMPLETED = "completed"
EVENT_ERROR = "error"


def now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class TaskConfig:
    """A scan task as persisted in tasks/task_<id>.json."""

    id: int
    name: str
    templates: List[str] = field(default_factory=list)
    targets: List[str] = field(default_factory=list)
    status: str = STATUS_PENDING
    total_requests: int = 0
    completed_requests: int = 0
    found_vulns: int = 0
    start_time: str = ""
    end_time: Optional[str] = None
    output_file: str = ""
    log_file: str = ""
    error: str = ""
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def reset_counters(self):
        self.completed_requests = 0
        self.found_vulns = 0
        self.end_time = None
        self.error = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskConfig":
        return cls(**_known_fields(cls, data))


@dataclass
class ScanProgress:
    """Snapshot of a running task, emitted on the event bus."""

    task_id: int
    total_requests: int = 0
    completed_requests: int = 0
    found_vulns: int = 0
    percentage: float = 0.0
    status: str = STATUS_RUNNING
    current_template: str = ""
    current_target: str = ""
    current_index: int = 0
    total_templates: int = 0
    selected_templates: List[str] = field(default_factory=list)
    scanned_templates: int = 0
    failed_templates: int = 0
    filtered_templates: int = 0
    skipped_templates: int = 0
    scanned_template_ids: List[str] = field(default_factory=list)
    failed_template_ids: List[str] = field(default_factory=list)
    filtered_template_ids: List[str] = field(default_factory=list)
    skipped_template_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class HTTPRequestLog:
    """One captured request/response pair from the tool's debug dump."""

    id: int
    task_id: int
    timestamp: str
    template_id: str = ""
    template_name: str = ""
    severity: str = ""
    target: str = ""
    method: str = "GET"
    status_code: int = 0
    is_vuln_found: bool = False
    request: str = ""
    response: str = ""
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    def summary(self) -> dict:
        """Event payload without request/response bodies."""
        return {
            "id": self.id,
            "task_id": self.task_id,
            "timestamp": self.timestamp,
            "template_id": self.template_id,
            "severity": self.severity,
            "target": self.target,
            "method": self.method,
            "status_code": self.status_code,
            "is_vuln_found": self.is_vuln_found,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HTTPRequestLog":
        return cls(**_known_fields(cls, data))


@dataclass
class TaskResult:
    """Written once to results/task_<id>_result.json when a task finishes."""

    task_id: int
    task_name: str
    status: str
    start_time: str = ""
    end_time: str = ""
    duration_s: float = 0.0
    targets: List[str] = field(default_factory=list)
    templates: List[str] = field(default_factory=list)
    target_count: int = 0
    template_count: int = 0
    total_requests: int = 0
    completed_requests: int = 0
    found_vulns: int = 0
    success_rate: float = 0.0
    vulnerabilities: List[Dict[str, Any]] = field(default_factory=list)
    http_requests: int = 0
    scanned_templates: int = 0
    failed_templates: int = 0
    filtered_templates: int = 0
    skipped_templates: int = 0
    scanned_template_ids: List[str] = field(default_factory=list)
    failed_template_ids: List[str] = field(default_factory=list)
    filtered_template_ids: List[str] = field(default_factory=list)
    skipped_template_ids: List[str] = field(default_factory=list)
    error: str = ""
    summary: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskResult":
        return cls(**_known_fields(cls, data))


@dataclass
class ScanEvent:
    task_id: int
    event_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=now_iso)

    @property
    def is_terminal(self) -> bool:
        return self.event_type == EVENT_COMPLETED

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "event_type": self.event_type,
            "data": self.data,
            "timestamp": self.timestamp,
        }
