"""Systemd service control."""

from __future__ import annotations

import logging

from oration_deploy.host.runner import CommandRunner

logger = logging.getLogger(__name__)


class SystemdManager:
    """Thin wrapper over ``systemctl`` with check-then-act helpers."""

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def daemon_reload(self) -> None:
        self.runner.run(["systemctl", "daemon-reload"])
        logger.info("Reloaded systemd units")

    def is_enabled(self, name: str) -> bool:
        result = self.runner.run(["systemctl", "is-enabled", name], check=False)
        return result.returncode == 0 and result.stdout.strip() == "enabled"

    def is_active(self, name: str) -> bool:
        result = self.runner.run(["systemctl", "is-active", name], check=False)
        return result.returncode == 0 and result.stdout.strip() == "active"

    def ensure_enabled(self, name: str) -> bool:
        """Enable *name* at boot if it is not already."""
        if self.is_enabled(name):
            logger.debug("%s already enabled", name)
            return False
        self.runner.run(["systemctl", "enable", name])
        logger.info("Enabled %s", name)
        return True

    def ensure_running(self, name: str, *, restart: bool = False) -> bool:
        """Start *name* if stopped, or restart it when *restart* is set."""
        if restart:
            self.runner.run(["systemctl", "restart", name])
            logger.info("Restarted %s", name)
            return True
        if self.is_active(name):
            logger.debug("%s already running", name)
            return False
        self.runner.run(["systemctl", "start", name])
        logger.info("Started %s", name)
        return True
