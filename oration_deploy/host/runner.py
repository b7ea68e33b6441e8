"""CommandRunner — execute provisioning and build tools.

All external tools (cargo, npm, apt, systemctl, nginx) run through
:func:`subprocess.run`; the runner is injected everywhere so that a host
can be driven by a different runner (tests, chroots).
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from oration_deploy.errors import CommandError

logger = logging.getLogger(__name__)


class CommandRunner:
    """Run external commands and raise :class:`CommandError` on failure.

    Parameters
    ----------
    env:
        Extra environment variables merged into every invocation.
    """

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        self.env = dict(env or {})

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: str | Path | None = None,
        check: bool = True,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Execute *argv* and return the completed process.

        Parameters
        ----------
        argv:
            Program and arguments.
        cwd:
            Working directory for the command.
        check:
            If *True*, raise :class:`CommandError` on non-zero exit.
        env:
            Extra environment variables for this call only.
        """
        cmd = [str(a) for a in argv]
        logger.debug("run %s (cwd=%s)", " ".join(cmd), cwd)

        merged_env = None
        if self.env or env:
            merged_env = {**os.environ, **self.env, **(env or {})}

        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                capture_output=True,
                text=True,
                env=merged_env,
            )
        except FileNotFoundError as exc:
            raise CommandError(cmd, 127, str(exc)) from exc

        if check and result.returncode != 0:
            raise CommandError(cmd, result.returncode, result.stderr or result.stdout)
        return result


class ChrootRunner(CommandRunner):
    """Run every command inside the host filesystem mounted at *root*.

    Parameters
    ----------
    root:
        Mount point of the target host.  Commands are wrapped in
        ``chroot ROOT`` so packages, units and reloads act on that host.
    env:
        Extra environment variables merged into every invocation.
    """

    def __init__(self, root: str | Path, env: Mapping[str, str] | None = None) -> None:
        super().__init__(env)
        self.root = Path(root)

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: str | Path | None = None,
        check: bool = True,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        return super().run(["chroot", str(self.root), *argv], cwd=cwd, check=check, env=env)
