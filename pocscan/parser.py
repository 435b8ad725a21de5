"""
pocscan - Stream Classifier
Classifies nuclei stdout/stderr lines into typed records and reassembles the
HTTP request/response pairs that `-debug` dumps between them.
"""

import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from loguru import logger


ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
LOADED_RE = re.compile(r"Templates loaded for current scan: (\d+)")
EXCLUDED_RE = re.compile(r"\[WRN\]\s+Excluded\s+(\d+)\s+(\w+)\s+template")
EXECUTING_RE = re.compile(r"\[([^\]]+)\] Executing ([^\s]+) on (.+)")
REQUEST_DUMP_RE = re.compile(r"\[([^\]]+)\] Dumped HTTP request for (https?://[^\s]+)")
RESPONSE_DUMP_RE = re.compile(r"\[([^\]]+)\] Dumped HTTP response for (https?://[^\s]+)")
TEMPLATE_TAG_RE = re.compile(r"\[([a-zA-Z][a-zA-Z0-9\-_]+)\]")
LEVEL_TAG_RE = re.compile(r"\[(?:INF|VER|DBG)\]")
LOG_LINE_RE = re.compile(r"^\[(?:INF|VER|DBG|WRN|ERR|FTL|TRC)\]")
HTTP_METHODS = ("GET ", "POST ", "PUT ", "DELETE ", "PATCH ", "HEAD ", "OPTIONS ")

LOG_LEVELS = {"INF", "VER", "DBG", "WRN", "ERR", "FTL", "TRC", "SIL"}

FAILURE_PHRASES = (
    "Could not execute step",
    "template execution failed",
    "skipping template",
    "template not applicable",
)

# A response block only closes on a blank line once it holds more than this
MIN_RESPONSE_LEN = 50


def strip_ansi(line: str) -> str:
    return ANSI_RE.sub("", line)


def to_int(value: Any) -> Optional[int]:
    """nuclei stats report numbers as JSON numbers or as strings."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return None


def first_template_tag(line: str) -> str:
    """First bracketed token that looks like a template id rather than a level or timestamp."""
    for tag in TEMPLATE_TAG_RE.findall(line):
        if tag not in LOG_LEVELS:
            return tag
    return ""


# ── Classified line variants ─────────────────────────────────────

@dataclass
class StatsFrame:
    requests: int
    total: int
    matched: int


@dataclass
class VulnRecord:
    template_id: str
    host: str
    name: str
    severity: str
    raw: Dict[str, Any]


@dataclass
class TemplatesLoaded:
    count: int


@dataclass
class TemplatesExcluded:
    count: int
    kind: str


@dataclass
class ExecutionMarker:
    template_id: str
    target: str


@dataclass
class RequestDump:
    template_id: str
    url: str


@dataclass
class ResponseDump:
    template_id: str
    url: str


@dataclass
class FailureMarker:
    template_id: str
    phrase: str


@dataclass
class TemplateMarker:
    """A template observed by a finished/no-match line or an [INF]/[VER]/[DBG] tag."""
    template_id: str


@dataclass
class HttpRequestLine:
    method: str
    path: str
    line: str


@dataclass
class HttpStatusLine:
    status_code: int
    line: str


@dataclass
class Blank:
    line: str = ""


@dataclass
class Noise:
    line: str


ClassifiedLine = Union[
    StatsFrame, VulnRecord, TemplatesLoaded, TemplatesExcluded, ExecutionMarker,
    RequestDump, ResponseDump, FailureMarker, TemplateMarker, HttpRequestLine,
    HttpStatusLine, Blank, Noise,
]


def _classify_json(line: str) -> Optional[ClassifiedLine]:
    try:
        data = json.loads(line)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    if "requests" in data and ("total" in data or "matched" in data):
        requests = to_int(data.get("requests"))
        if requests is not None:
            return StatsFrame(
                requests=requests,
                total=to_int(data.get("total")) or 0,
                matched=to_int(data.get("matched")) or 0,
            )

    template_id = data.get("template-id")
    if isinstance(template_id, str) and template_id:
        info = data.get("info") if isinstance(data.get("info"), dict) else {}
        return VulnRecord(
            template_id=template_id,
            host=str(data.get("host") or data.get("matched-at") or ""),
            name=str(info.get("name") or ""),
            severity=str(info.get("severity") or "unknown"),
            raw=data,
        )
    return None


def classify_line(raw_line: str, parse_json: bool = True) -> ClassifiedLine:
    """Classify one line of nuclei output. Never raises.

    JSON stats and findings are only recognised when parse_json is set; nuclei
    writes them to stdout, while stderr carries raw HTTP dumps whose bodies may
    hold arbitrary JSON.
    """
    line = strip_ansi(raw_line).rstrip("\r\n")
    stripped = line.strip()

    if not stripped:
        return Blank(line)

    if parse_json and stripped.startswith("{"):
        item = _classify_json(stripped)
        if item is not None:
            return item

    m = LOADED_RE.search(line)
    if m:
        return TemplatesLoaded(int(m.group(1)))

    m = EXCLUDED_RE.search(line)
    if m:
        return TemplatesExcluded(int(m.group(1)), m.group(2))

    m = EXECUTING_RE.search(line)
    if m:
        return ExecutionMarker(template_id=m.group(2), target=m.group(3).strip())

    m = REQUEST_DUMP_RE.search(line)
    if m:
        return RequestDump(template_id=m.group(1), url=m.group(2))

    m = RESPONSE_DUMP_RE.search(line)
    if m:
        return ResponseDump(template_id=m.group(1), url=m.group(2))

    for phrase in FAILURE_PHRASES:
        if phrase in line:
            template_id = first_template_tag(line)
            if template_id:
                return FailureMarker(template_id=template_id, phrase=phrase)
            break

    if ("Finished" in line and "execution" in line) or ("No match" in line and "found" in line):
        template_id = first_template_tag(line)
        if template_id:
            return TemplateMarker(template_id)

    if LEVEL_TAG_RE.search(line):
        template_id = first_template_tag(line)
        if template_id:
            return TemplateMarker(template_id)

    if line.startswith(HTTP_METHODS):
        parts = line.split()
        return HttpRequestLine(method=parts[0], path=parts[1] if len(parts) > 1 else "", line=line)

    if line.startswith("HTTP/"):
        parts = line.split()
        code = to_int(parts[1]) if len(parts) > 1 else None
        return HttpStatusLine(status_code=code or 200, line=line)

    return Noise(line)


# ── Stream parser ────────────────────────────────────────────────

@dataclass
class HttpExchange:
    """A reassembled request/response pair."""
    template_id: str
    target: str
    method: str
    status_code: int
    request: str
    response: str
    duration_ms: int = 0


@dataclass
class _Capture:
    template_id: str = ""
    target: str = ""
    dump_url: str = ""
    request: List[str] = field(default_factory=list)
    response: List[str] = field(default_factory=list)
    in_request: bool = False
    in_response: bool = False
    started_at: float = 0.0
    responded_at: float = 0.0

    def response_len(self) -> int:
        return sum(len(l) + 1 for l in self.response)


class StreamParser:
    """
    Line-by-line consumer for one of nuclei's output streams.

    Every line goes through classify_line(); the result updates the shared
    ProgressTracker and, for HTTP dumps, the capture window. While a dump is
    open its lines are collected verbatim, so response bodies never reach the
    tracker. parse_json is only enabled for stdout. Callbacks are
    plain functions so the parser never awaits.
    """

    def __init__(
        self,
        name: str,
        tracker,
        on_exchange: Optional[Callable[[HttpExchange], None]] = None,
        on_vuln: Optional[Callable[[VulnRecord], None]] = None,
        on_progress: Optional[Callable[[], None]] = None,
        skip_duplicates: bool = False,
        parse_json: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.tracker = tracker
        self.on_exchange = on_exchange
        self.on_vuln = on_vuln
        self.on_progress = on_progress
        self.skip_duplicates = skip_duplicates
        self.parse_json = parse_json
        self.clock = clock
        self.lines = 0
        self.exchanges = 0
        self._last_line: Optional[str] = None
        self._cap = _Capture()

    def feed(self, raw_line: str) -> ClassifiedLine:
        line = strip_ansi(raw_line).rstrip("\r\n")
        if self.skip_duplicates and line.strip():
            if line == self._last_line:
                return Noise(line)
            self._last_line = line
        self.lines += 1

        item = self._classify(line)
        try:
            self._dispatch(item, line)
        except Exception:
            # A bad callback must not stop the stream
            logger.exception(f"[StreamParser:{self.name}] Error handling line: {line[:200]}")
        return item

    def close(self):
        """Flush a pending exchange at EOF."""
        self._flush()

    def _classify(self, line: str) -> ClassifiedLine:
        cap = self._cap
        if not (cap.in_request or cap.in_response) or LOG_LINE_RE.match(line):
            return classify_line(line, self.parse_json)
        # Inside a dump only blank lines and request/status lines are structural
        item = classify_line(line, parse_json=False)
        if isinstance(item, Blank):
            return item
        if isinstance(item, HttpRequestLine) and (cap.in_response or not cap.request):
            return item
        if isinstance(item, HttpStatusLine) and cap.in_request:
            return item
        return Noise(line)

    # ── dispatch ────────────────────────────────────────────────

    def _progress(self):
        if self.on_progress:
            self.on_progress()

    def _dispatch(self, item: ClassifiedLine, line: str):
        cap = self._cap
        tracker = self.tracker

        if isinstance(item, StatsFrame):
            tracker.apply_stats(item.requests, item.total, item.matched)
            self._progress()
        elif isinstance(item, VulnRecord):
            tracker.record_vuln(item.template_id, item.host, item.severity)
            if self.on_vuln:
                self.on_vuln(item)
            self._progress()
        elif isinstance(item, TemplatesLoaded):
            tracker.set_loaded(item.count)
            self._progress()
        elif isinstance(item, TemplatesExcluded):
            tracker.add_excluded(item.count)
            self._progress()
        elif isinstance(item, ExecutionMarker):
            cap.template_id = item.template_id
            if tracker.mark_scanned(item.template_id, item.target):
                self._progress()
        elif isinstance(item, RequestDump):
            self._flush()
            cap.started_at = self.clock()
            cap.template_id = item.template_id
            cap.dump_url = item.url
            cap.request = []
            cap.in_request = True
            cap.in_response = False
            if tracker.mark_scanned(item.template_id, item.url):
                self._progress()
        elif isinstance(item, ResponseDump):
            cap.template_id = item.template_id
            cap.in_request = False
            tracker.mark_scanned(item.template_id, item.url)
        elif isinstance(item, FailureMarker):
            if tracker.mark_failed(item.template_id):
                self._progress()
        elif isinstance(item, TemplateMarker):
            cap.template_id = item.template_id
            if tracker.mark_scanned(item.template_id):
                self._progress()
        elif isinstance(item, HttpRequestLine):
            started = cap.started_at if cap.dump_url else 0.0
            self._flush()
            cap.started_at = started or self.clock()
            cap.request = [line]
            cap.response = []
            cap.in_request = True
            cap.in_response = False
            cap.target = cap.dump_url or item.path
            cap.dump_url = ""
        elif isinstance(item, HttpStatusLine):
            cap.in_request = False
            cap.in_response = True
            cap.response = [line]
            cap.responded_at = self.clock()
        else:
            self._collect(line, isinstance(item, Blank))

    def _collect(self, line: str, blank: bool):
        cap = self._cap
        if cap.in_request:
            cap.request.append(line)
            if blank:
                cap.in_request = False
            elif line.startswith("Host:") and cap.target.startswith("/"):
                host = line[len("Host:"):].strip()
                cap.target = f"http://{host}{cap.target}"
        elif cap.in_response:
            cap.response.append(line)
            if blank and cap.response_len() > MIN_RESPONSE_LEN:
                cap.in_response = False
                self._flush()

    def _flush(self):
        cap = self._cap
        if cap.request and cap.response:
            request = "\n".join(cap.request) + "\n"
            response = "\n".join(cap.response) + "\n"
            first = cap.request[0].split()
            method = first[0] if first and first[0] + " " in HTTP_METHODS else "GET"
            status_line = cap.response[0].split()
            status = to_int(status_line[1]) if len(status_line) > 1 else None
            exchange = HttpExchange(
                template_id=cap.template_id or self.tracker.current_template,
                target=cap.target,
                method=method,
                status_code=status or 200,
                request=request,
                response=response,
                duration_ms=self._duration_ms(),
            )
            self.exchanges += 1
            if self.on_exchange:
                self.on_exchange(exchange)
        cap.request = []
        cap.response = []
        cap.in_request = False
        cap.in_response = False
        cap.started_at = 0.0
        cap.responded_at = 0.0

    def _duration_ms(self) -> int:
        """Time from the request dump to the response status line."""
        cap = self._cap
        if not cap.started_at or cap.responded_at < cap.started_at:
            return 0
        return int(round((cap.responded_at - cap.started_at) * 1000))
