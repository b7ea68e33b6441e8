"""Access-record contract of the edge proxy.

Every request handled by the edge must be logged with the client, the
request and response, and, for proxied requests, the timing, address,
status and cache status of the upstream plus the pipelining flag.
:data:`LOG_FORMAT` is the nginx ``log_format`` that satisfies it;
:func:`verify_log_format` checks any proxy configuration against it and
:func:`parse_access_line` reads records back for analysis.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from collections.abc import Iterable
from datetime import datetime

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

LOG_FORMAT_NAME = "oration"

LOG_FORMAT = (
    '$remote_addr - $remote_user [$time_local] "$request" '
    '$status $body_bytes_sent "$http_referer" "$http_user_agent" '
    'rt=$request_time urt="$upstream_response_time" ua="$upstream_addr" '
    'us="$upstream_status" cs=$upstream_cache_status pipe=$pipe'
)

# Record field -> nginx variable that supplies it
CONTRACT_VARIABLES: dict[str, str] = {
    "client_address": "remote_addr",
    "remote_user": "remote_user",
    "timestamp": "time_local",
    "request": "request",
    "status": "status",
    "body_bytes_sent": "body_bytes_sent",
    "referrer": "http_referer",
    "user_agent": "http_user_agent",
    "request_time": "request_time",
    "upstream_response_time": "upstream_response_time",
    "upstream_addr": "upstream_addr",
    "upstream_status": "upstream_status",
    "upstream_cache_status": "upstream_cache_status",
    "pipelined": "pipe",
}

_LOG_FORMAT_RE = re.compile(r"\blog_format\s+(\S+)\s+(.*?);", re.DOTALL)

_LINE_RE = re.compile(
    r'^(?P<remote_addr>\S+) - (?P<remote_user>\S+) \[(?P<time_local>[^\]]+)\] '
    r'"(?P<request>[^"]*)" (?P<status>\d{3}) (?P<body_bytes_sent>\d+|-) '
    r'"(?P<http_referer>[^"]*)" "(?P<http_user_agent>[^"]*)" '
    r'rt=(?P<request_time>\S+) urt="(?P<upstream_response_time>[^"]*)" '
    r'ua="(?P<upstream_addr>[^"]*)" us="(?P<upstream_status>[^"]*)" '
    r'cs=(?P<upstream_cache_status>\S*) pipe=(?P<pipe>[p.])\s*$'
)

_TIME_FORMAT = "%d/%b/%Y:%H:%M:%S %z"


def log_format_directive(name: str = LOG_FORMAT_NAME) -> str:
    """Render the ``log_format`` directive for nginx.conf."""
    return f"log_format {name} '{LOG_FORMAT}';"


def missing_variables(format_body: str) -> list[str]:
    """Return the contract fields whose variable is absent from *format_body*."""
    missing = []
    for field, variable in CONTRACT_VARIABLES.items():
        if not re.search(rf"\$(?:{variable}\b|\{{{variable}\}})", format_body):
            missing.append(field)
    return missing


def verify_log_format(conf_text: str) -> list[str]:
    """Check a proxy configuration for a complete access-record format.

    Returns the contract fields missing from the most complete
    ``log_format`` directive; an empty list means the contract is met.
    """
    best: list[str] | None = None
    for _name, body in _LOG_FORMAT_RE.findall(conf_text):
        missing = missing_variables(body)
        if best is None or len(missing) < len(best):
            best = missing
    if best is None:
        return list(CONTRACT_VARIABLES)
    return best


def _dash(value: str) -> str | None:
    return None if value in ("", "-") else value


class AccessRecord(BaseModel):
    """One parsed access-log line."""

    client_address: str
    remote_user: str | None = None
    timestamp: datetime
    request: str
    status: int
    body_bytes_sent: int = 0
    referrer: str | None = None
    user_agent: str | None = None
    request_time: float = 0.0
    upstream_response_time: str | None = None
    upstream_addr: str | None = None
    upstream_status: str | None = None
    upstream_cache_status: str | None = None
    pipelined: bool = False

    @property
    def method(self) -> str:
        return self.request.split(" ", 1)[0] if self.request else ""

    @property
    def path(self) -> str:
        parts = self.request.split(" ")
        return parts[1] if len(parts) > 1 else ""

    @property
    def proxied(self) -> bool:
        return self.upstream_addr is not None

    @property
    def upstream_seconds(self) -> float | None:
        """Total upstream time across every upstream tried."""
        if self.upstream_response_time is None:
            return None
        values = [
            float(v) for v in re.split(r"[,:]", self.upstream_response_time)
            if v.strip() not in ("", "-")
        ]
        return sum(values) if values else None


def parse_access_line(line: str) -> AccessRecord | None:
    """Parse one line written with :data:`LOG_FORMAT`.

    Returns *None* for a line that does not match.
    """
    match = _LINE_RE.match(line.rstrip("\n"))
    if match is None:
        return None
    g = match.groupdict()
    try:
        timestamp = datetime.strptime(g["time_local"], _TIME_FORMAT)
        request_time = float(g["request_time"])
    except ValueError:
        return None

    return AccessRecord(
        client_address=g["remote_addr"],
        remote_user=_dash(g["remote_user"]),
        timestamp=timestamp,
        request=g["request"],
        status=int(g["status"]),
        body_bytes_sent=0 if g["body_bytes_sent"] == "-" else int(g["body_bytes_sent"]),
        referrer=_dash(g["http_referer"]),
        user_agent=_dash(g["http_user_agent"]),
        request_time=request_time,
        upstream_response_time=_dash(g["upstream_response_time"]),
        upstream_addr=_dash(g["upstream_addr"]),
        upstream_status=_dash(g["upstream_status"]),
        upstream_cache_status=_dash(g["upstream_cache_status"]),
        pipelined=g["pipe"] == "p",
    )


def _percentile(values: list[float], pct: float) -> float | None:
    """Nearest-rank percentile."""
    if not values:
        return None
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[rank - 1]


class AccessLogSummary(BaseModel):
    """Latency and cache overview of an access log."""

    total: int = 0
    proxied: int = 0
    pipelined: int = 0
    malformed: int = 0
    status_classes: dict[str, int] = Field(default_factory=dict)
    cache_statuses: dict[str, int] = Field(default_factory=dict)
    request_time_p50: float | None = None
    request_time_p95: float | None = None
    upstream_time_p50: float | None = None
    upstream_time_p95: float | None = None


def summarize_access_log(lines: Iterable[str]) -> AccessLogSummary:
    """Aggregate parsed records from *lines*; blank lines are ignored."""
    summary = AccessLogSummary()
    statuses: Counter[str] = Counter()
    caches: Counter[str] = Counter()
    request_times: list[float] = []
    upstream_times: list[float] = []

    for line in lines:
        if not line.strip():
            continue
        record = parse_access_line(line)
        if record is None:
            summary.malformed += 1
            continue

        summary.total += 1
        statuses[f"{record.status // 100}xx"] += 1
        request_times.append(record.request_time)
        if record.pipelined:
            summary.pipelined += 1
        if record.proxied:
            summary.proxied += 1
            caches[record.upstream_cache_status or "NONE"] += 1
            upstream = record.upstream_seconds
            if upstream is not None:
                upstream_times.append(upstream)

    summary.status_classes = dict(sorted(statuses.items()))
    summary.cache_statuses = dict(sorted(caches.items()))
    summary.request_time_p50 = _percentile(request_times, 50)
    summary.request_time_p95 = _percentile(request_times, 95)
    summary.upstream_time_p50 = _percentile(upstream_times, 50)
    summary.upstream_time_p95 = _percentile(upstream_times, 95)
    if summary.malformed:
        logger.warning("Skipped %d malformed access-log line(s)", summary.malformed)
    return summary
