"""EdgeActivator — the reverse-proxy available/enabled vhost slots.

The vhost definition lives once in the *available* slot; the *enabled*
slot is only a symlink to it, so edits to the definition propagate
without copying.  Activation retires competing bindings first, then
installs the definition, then points the enabled slot at it.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable
from pathlib import Path

from pydantic import BaseModel, Field

from oration_deploy.config import DEFAULT_VHOST_ENABLED
from oration_deploy.host.files import ensure_absent, ensure_link, place_content
from oration_deploy.host.runner import CommandRunner

logger = logging.getLogger(__name__)


class EdgeChange(BaseModel):
    """What :meth:`EdgeActivator.activate_edge` changed."""

    retired: list[str] = Field(default_factory=list)
    definition_changed: bool = False
    link_changed: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.retired) or self.definition_changed or self.link_changed


def _identity(path: Path) -> Path:
    return path


class EdgeActivator:
    """Install and enable the single vhost binding for the service.

    Parameters
    ----------
    runner:
        Command runner for ``nginx`` and ``systemctl``.
    resolve:
        Maps an absolute host path to the local filesystem path (identity
        on a real host, a prefix under a staging root otherwise).
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        resolve: Callable[[Path], Path] = _identity,
    ) -> None:
        self.runner = runner
        self.resolve = resolve

    def activate_edge(
        self,
        vhost_src: str | Path,
        vhost_available_path: str | Path,
        vhost_enabled_path: str | Path,
        *,
        retire: Iterable[str | Path] = (DEFAULT_VHOST_ENABLED,),
        content: bytes | None = None,
    ) -> EdgeChange:
        """Make *vhost_enabled_path* the only enabled binding of the vhost.

        Parameters
        ----------
        vhost_src:
            Vhost definition to install (ignored when *content* is given).
        vhost_available_path:
            Definition slot.
        vhost_enabled_path:
            Active pointer slot.
        retire:
            Enabled entries to remove before enabling (the stock default).
        content:
            Pre-rendered definition bytes.
        """
        host_available = Path(vhost_available_path)
        available = self.resolve(host_available)
        enabled = self.resolve(Path(vhost_enabled_path))
        data = content if content is not None else Path(vhost_src).read_bytes()
        change = EdgeChange()

        # 1. Retire the default and any other binding of this definition
        for entry in retire:
            path = self.resolve(Path(entry))
            if path != enabled and ensure_absent(path):
                change.retired.append(str(entry))
        for competing in self.bindings_to(
            host_available, enabled.parent, host_enabled_dir=Path(vhost_enabled_path).parent,
        ):
            if competing != enabled and ensure_absent(competing):
                change.retired.append(str(competing))

        # 2. Install the definition
        change.definition_changed = place_content(available, data, 0o644)

        # 3. Point the enabled slot at it, by its path on the host
        change.link_changed = ensure_link(host_available, enabled)

        if change.changed:
            logger.info("Edge binding converged: %s -> %s", enabled, host_available)
        else:
            logger.debug("Edge binding already converged")
        return change

    @staticmethod
    def bindings_to(
        available: Path,
        enabled_dir: Path,
        *,
        host_enabled_dir: Path | None = None,
    ) -> list[Path]:
        """Return the entries of *enabled_dir* that link to *available*.

        Link targets are host paths; relative ones are taken against
        *host_enabled_dir* (defaults to *enabled_dir*).
        """
        base = host_enabled_dir if host_enabled_dir is not None else enabled_dir
        if not enabled_dir.is_dir():
            return []
        found: list[Path] = []
        for entry in sorted(enabled_dir.iterdir()):
            if not entry.is_symlink():
                continue
            target = Path(os.readlink(entry))
            if not target.is_absolute():
                target = base / target
            if os.path.normpath(target) == os.path.normpath(available):
                found.append(entry)
        return found

    @staticmethod
    def enabled_bindings(enabled_dir: str | Path) -> list[Path]:
        """Return every entry in the enabled set."""
        d = Path(enabled_dir)
        if not d.is_dir():
            return []
        return sorted(p for p in d.iterdir() if not p.name.startswith("."))

    def test_config(self) -> None:
        """Validate the proxy configuration (``nginx -t``)."""
        self.runner.run(["nginx", "-t"])

    def reload(self) -> None:
        """Validate then reload the proxy."""
        self.test_config()
        self.runner.run(["systemctl", "reload", "nginx"])
        logger.info("Reloaded nginx")
