"""HealthChecker — validates a staged release and a running edge."""

from __future__ import annotations

import logging
import stat
from pathlib import Path

import requests
from pydantic import BaseModel, Field

from oration_deploy.config import BACKEND_EXECUTABLE, SECRETS_FILE, SOURCE_MAP_PATTERNS
from oration_deploy.release.manifest import (
    ArtifactSet,
    ReleaseManifest,
    manifest_path_for,
    unexpected_entries,
)
from oration_deploy.release.sanitizer import find_source_maps
from oration_deploy.security.modes import format_mode, is_safe_mode

logger = logging.getLogger(__name__)


class CheckResult(BaseModel):
    """Result of a single health check."""

    name: str = ""
    passed: bool = True
    message: str = ""
    severity: str = "info"  # info, warning, critical


class HealthReport(BaseModel):
    """Aggregate health report."""

    status: str = "healthy"  # healthy, degraded, unhealthy
    checks: list[CheckResult] = Field(default_factory=list)


def _summarize(checks: list[CheckResult]) -> HealthReport:
    critical_fail = any(c.severity == "critical" and not c.passed for c in checks)
    warning_fail = any(c.severity == "warning" and not c.passed for c in checks)

    if critical_fail:
        status = "unhealthy"
    elif warning_fail:
        status = "degraded"
    else:
        status = "healthy"
    return HealthReport(status=status, checks=checks)


class HealthChecker:
    """Validate an oration release before or after activation."""

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout

    def check_release(
        self,
        deploy_dir: str | Path,
        public_dir: str | Path | None = None,
        manifest_path: str | Path | None = None,
    ) -> HealthReport:
        """Run all release checks and return a report.

        Parameters
        ----------
        deploy_dir:
            Deployment directory holding the Artifact Set.
        public_dir:
            Built frontend tree, checked for leftover source maps.
        manifest_path:
            Release manifest; defaults to the file beside *deploy_dir*.
        """
        deploy = Path(deploy_dir)
        checks: list[CheckResult] = []

        # 1. Artifact Set completeness
        missing = ArtifactSet.from_deploy_dir(deploy, public_dir).missing()
        checks.append(CheckResult(
            name="artifacts_complete",
            passed=not missing,
            message="All artifacts present" if not missing else f"Missing: {', '.join(missing)}",
            severity="critical" if missing else "info",
        ))

        extra = unexpected_entries(deploy)
        checks.append(CheckResult(
            name="no_extra_entries",
            passed=not extra,
            message="Only artifacts staged" if not extra else f"Unexpected: {', '.join(extra)}",
            severity="warning" if extra else "info",
        ))

        # 2. Restricted modes
        for name in (BACKEND_EXECUTABLE, SECRETS_FILE):
            path = deploy / name
            if not path.is_file():
                continue
            mode = stat.S_IMODE(path.stat().st_mode)
            safe = is_safe_mode(mode)
            checks.append(CheckResult(
                name=f"mode_{name.lstrip('.')}",
                passed=safe,
                message=f"{name} is {format_mode(mode)}",
                severity="critical" if not safe else "info",
            ))

        exe = deploy / BACKEND_EXECUTABLE
        if exe.is_file():
            runnable = bool(exe.stat().st_mode & stat.S_IXUSR)
            checks.append(CheckResult(
                name="executable_runnable",
                passed=runnable,
                message="Owner may execute" if runnable else "Owner execute bit missing",
                severity="critical" if not runnable else "info",
            ))

        # 3. Source maps
        if public_dir is not None and Path(public_dir).is_dir():
            maps = find_source_maps(public_dir, SOURCE_MAP_PATTERNS)
            checks.append(CheckResult(
                name="no_source_maps",
                passed=not maps,
                message="No source maps" if not maps else f"{len(maps)} source map(s) left",
                severity="critical" if maps else "info",
            ))

        # 4. Manifest agreement
        mpath = Path(manifest_path) if manifest_path is not None else manifest_path_for(deploy)
        if not mpath.is_file():
            checks.append(CheckResult(
                name="manifest",
                passed=False,
                message=f"No release manifest at {mpath}",
                severity="warning",
            ))
        else:
            problems = ReleaseManifest.load(mpath).verify(deploy, public_dir)
            checks.append(CheckResult(
                name="manifest",
                passed=not problems,
                message="Release matches manifest" if not problems else "; ".join(problems),
                severity="critical" if problems else "info",
            ))

        return _summarize(checks)

    def check_edge(self, url: str) -> HealthReport:
        """Probe a running edge proxy over HTTP."""
        checks: list[CheckResult] = []
        try:
            response = requests.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Edge probe of %s failed: %s", url, exc)
            checks.append(CheckResult(
                name="edge_reachable",
                passed=False,
                message=f"{url} unreachable: {exc}",
                severity="critical",
            ))
            return _summarize(checks)

        checks.append(CheckResult(name="edge_reachable", passed=True, message=f"{url} reachable"))
        code = response.status_code
        if code >= 500:
            severity = "critical"
        elif code >= 400:
            severity = "warning"
        else:
            severity = "info"
        checks.append(CheckResult(
            name="edge_status",
            passed=code < 400,
            message=f"HTTP {code}",
            severity=severity,
        ))
        return _summarize(checks)
