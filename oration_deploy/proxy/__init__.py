"""Edge proxy — access-record contract and generated configuration."""

from oration_deploy.proxy.access_log import (
    LOG_FORMAT,
    AccessLogSummary,
    AccessRecord,
    parse_access_line,
    summarize_access_log,
    verify_log_format,
)
from oration_deploy.proxy.templates import ProxyConfigGenerator

__all__ = [
    "LOG_FORMAT",
    "AccessLogSummary",
    "AccessRecord",
    "ProxyConfigGenerator",
    "parse_access_line",
    "summarize_access_log",
    "verify_log_format",
]
