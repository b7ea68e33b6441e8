"""AptPackageManager — convergent system package installation."""

from __future__ import annotations

import logging
import os
import re
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Literal

from oration_deploy.config import APT_CACHE_VALID_TIME, APT_UPDATE_STAMP
from oration_deploy.errors import ProvisionError
from oration_deploy.host.runner import CommandRunner

logger = logging.getLogger(__name__)

_NONINTERACTIVE = {"DEBIAN_FRONTEND": "noninteractive"}
_POLICY_FIELD_RE = re.compile(r"^\s*(Installed|Candidate):\s*(\S+)", re.MULTILINE)
_SIMULATED_INST_RE = re.compile(r"^Inst (\S+)", re.MULTILINE)

PackagePolicy = Literal["latest", "present"]


class AptPackageManager:
    """Install and upgrade Debian packages, refreshing the index sparingly.

    The package index is refreshed the first time and then only when the
    stamp file is older than *cache_valid_time* seconds.

    Parameters
    ----------
    runner:
        Command runner used for apt invocations.
    update_stamp:
        File whose modification time records the last index refresh.
    cache_valid_time:
        Validity window of a refresh, in seconds.
    clock:
        Time source returning epoch seconds.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        update_stamp: str | Path = APT_UPDATE_STAMP,
        cache_valid_time: int = APT_CACHE_VALID_TIME,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.runner = runner
        self.update_stamp = Path(update_stamp)
        self.cache_valid_time = cache_valid_time
        self.clock = clock

    # -- Index ----------------------------------------------------------------

    def index_is_fresh(self) -> bool:
        """Return *True* if the last refresh is inside the validity window."""
        if not self.update_stamp.is_file():
            return False
        age = self.clock() - self.update_stamp.stat().st_mtime
        return 0 <= age < self.cache_valid_time

    def refresh_index(self, *, force: bool = False) -> bool:
        """Run ``apt-get update`` unless the cached index is still valid."""
        if not force and self.index_is_fresh():
            logger.debug("Package index still valid, skipping refresh")
            return False

        self.runner.run(["apt-get", "update", "-q"], env=_NONINTERACTIVE)

        now = self.clock()
        self.update_stamp.parent.mkdir(parents=True, exist_ok=True)
        self.update_stamp.touch()
        os.utime(self.update_stamp, (now, now))
        logger.info("Refreshed package index")
        return True

    # -- Queries ----------------------------------------------------------------

    def package_state(self, name: str) -> tuple[str | None, str | None]:
        """Return ``(installed_version, candidate_version)`` for *name*."""
        result = self.runner.run(["apt-cache", "policy", name])
        fields = dict(_POLICY_FIELD_RE.findall(result.stdout))
        installed = fields.get("Installed")
        candidate = fields.get("Candidate")
        return (
            None if installed in (None, "(none)") else installed,
            None if candidate in (None, "(none)") else candidate,
        )

    def pending(self, names: Iterable[str], policy: PackagePolicy = "latest") -> list[str]:
        """Return the packages that need an install or upgrade."""
        todo: list[str] = []
        for name in names:
            installed, candidate = self.package_state(name)
            if candidate is None and installed is None:
                raise ProvisionError(
                    f"No installation candidate for package {name!r}",
                    step="ensure_packages",
                )
            if installed is None:
                todo.append(name)
            elif policy == "latest" and candidate is not None and candidate != installed:
                todo.append(name)
        return todo

    # -- Convergence ------------------------------------------------------------

    def ensure_packages(
        self,
        names: Iterable[str],
        policy: PackagePolicy = "latest",
    ) -> list[str]:
        """Install missing packages (and upgrade outdated ones for ``latest``).

        Returns the packages that were installed or upgraded.
        """
        wanted = list(dict.fromkeys(names))
        if not wanted:
            return []

        self.refresh_index()
        todo = self.pending(wanted, policy)
        if not todo:
            logger.debug("All %d packages converged", len(wanted))
            return []

        self.runner.run(["apt-get", "install", "-y", "-q", *todo], env=_NONINTERACTIVE)
        logger.info("Installed/upgraded packages: %s", ", ".join(todo))
        return todo

    def upgrade(self) -> list[str]:
        """Apply pending upgrades, if a simulation reports any.

        Returns the packages the simulation listed.
        """
        self.refresh_index()
        simulation = self.runner.run(["apt-get", "-s", "-q", "upgrade"], env=_NONINTERACTIVE)
        pending = _SIMULATED_INST_RE.findall(simulation.stdout)
        if not pending:
            logger.debug("No pending upgrades")
            return []

        self.runner.run(["apt-get", "upgrade", "-y", "-q"], env=_NONINTERACTIVE)
        logger.info("Upgraded %d package(s)", len(pending))
        return pending
