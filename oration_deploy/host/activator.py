"""HostActivator — converge one host to its :class:`HostDescriptor`.

Steps run strictly in order.  Each step compares the host with the
desired state and acts only on a difference, so a second run against a
converged host changes nothing.  The first failing step stops the run and
is reported as a :class:`ProvisionError`; nothing is rolled back.

Reloads and restarts that a change requires are recorded as marker files
on the host before they are attempted, so a run that fails between the
change and the reload still reloads when it is repeated.
"""

from __future__ import annotations

import logging
import stat
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, Field

from oration_deploy.config import BACKEND_EXECUTABLE, SECRETS_FILE
from oration_deploy.errors import ConfigError, DeployError, ProvisionError
from oration_deploy.host.descriptor import HostDescriptor
from oration_deploy.host.edge import EdgeActivator, EdgeChange
from oration_deploy.host.files import (
    ensure_absent,
    ensure_directory,
    ensure_mode,
    place_content,
    place_file,
    sync_tree,
)
from oration_deploy.host.packages import AptPackageManager, PackagePolicy
from oration_deploy.host.runner import CommandRunner
from oration_deploy.host.services import SystemdManager
from oration_deploy.proxy.access_log import verify_log_format
from oration_deploy.release.manifest import (
    ArtifactSet,
    ReleaseManifest,
    manifest_path_for,
    unexpected_entries,
)
from oration_deploy.release.sanitizer import find_source_maps
from oration_deploy.security.modes import require_safe_mode

logger = logging.getLogger(__name__)

STATE_DIR = Path("/var/lib/oration-deploy")

_RESTRICTED_ARTIFACTS = {BACKEND_EXECUTABLE, SECRETS_FILE}


class StepResult(BaseModel):
    """Outcome of one convergence step."""

    name: str
    changed: bool = False
    message: str = ""


class ActivationReport(BaseModel):
    """Outcome of one activation run on one host."""

    host: str = "localhost"
    status: str = "unchanged"  # unchanged, changed, failed
    steps: list[StepResult] = Field(default_factory=list)
    failed_step: str = ""
    error: str = ""

    @property
    def changed(self) -> bool:
        return any(s.changed for s in self.steps)


class HostActivator:
    """Bring one host to the desired state.

    Parameters
    ----------
    descriptor:
        Desired state of the host.
    release_dir:
        Deployment directory produced by the release builder.
    public_dir:
        Built frontend tree, mirrored into the web root when given.
    root:
        Filesystem root of the target host.  ``/`` for the local machine.
    runner:
        Command runner executing on the target host.
    host:
        Name used in reports and errors.
    require_manifest:
        Refuse a release directory without a matching manifest.
    clock:
        Time source for the package index validity window.
    """

    def __init__(
        self,
        descriptor: HostDescriptor,
        release_dir: str | Path,
        *,
        public_dir: str | Path | None = None,
        root: str | Path = "/",
        runner: CommandRunner | None = None,
        host: str = "localhost",
        require_manifest: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.descriptor = descriptor
        self.release_dir = Path(release_dir)
        self.public_dir = Path(public_dir) if public_dir is not None else None
        self.root = Path(root)
        self.runner = runner or CommandRunner()
        self.host = host
        self.require_manifest = require_manifest

        self.packages = AptPackageManager(
            self.runner,
            update_stamp=self.host_path(descriptor.update_stamp),
            cache_valid_time=descriptor.cache_valid_time,
            clock=clock,
        )
        self.systemd = SystemdManager(self.runner)
        self.edge = EdgeActivator(self.runner, resolve=self.host_path)
        self.report = ActivationReport(host=host)

    # -- Helpers --------------------------------------------------------------

    def host_path(self, path: str | Path) -> Path:
        """Map an absolute host path onto the local view of the host."""
        p = Path(path)
        if self.root == Path("/"):
            return p
        if p.is_absolute():
            return self.root / p.relative_to(p.anchor)
        return self.root / p

    def _marker(self, name: str) -> Path:
        return self.host_path(STATE_DIR / f"pending-{name}")

    def _mark_pending(self, name: str) -> None:
        marker = self._marker(name)
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.touch()

    def _is_pending(self, name: str) -> bool:
        return self._marker(name).exists()

    def _clear_pending(self, name: str) -> None:
        ensure_absent(self._marker(name))

    # -- Steps ----------------------------------------------------------------

    def verify_release(self) -> str:
        """Refuse to activate an incomplete or inconsistent release."""
        artifacts = ArtifactSet.from_deploy_dir(self.release_dir, self.public_dir)
        missing = artifacts.missing()
        if missing:
            raise ProvisionError(
                f"Release directory {self.release_dir} is incomplete: missing {missing}",
                step="verify_release",
            )

        extra = unexpected_entries(self.release_dir)
        if extra:
            raise ProvisionError(
                f"Release directory {self.release_dir} holds unexpected entries: {extra}",
                step="verify_release",
            )

        manifest_path = manifest_path_for(self.release_dir)
        if not manifest_path.is_file():
            if self.require_manifest:
                raise ProvisionError(
                    f"No release manifest at {manifest_path}",
                    step="verify_release",
                )
            logger.warning("No release manifest at %s, skipping hash check", manifest_path)
            return "artifacts present"

        manifest = ReleaseManifest.load(manifest_path)
        problems = manifest.verify(self.release_dir, self.public_dir)
        if problems:
            raise ProvisionError(
                f"Release does not match its manifest: {problems}",
                step="verify_release",
            )
        return f"release {manifest.release_id}"

    def upgrade_system(self) -> list[str]:
        return self.packages.upgrade()

    def ensure_packages(
        self,
        names: Iterable[str] | None = None,
        policy: PackagePolicy | None = None,
    ) -> list[str]:
        return self.packages.ensure_packages(
            self.descriptor.packages if names is None else names,
            policy or self.descriptor.package_policy,
        )

    def place_proxy_config(self) -> bool:
        """Install the proxy main configuration after checking its log format."""
        placement = self.descriptor.proxy_config
        if placement is None:
            return False
        data = self.descriptor.render(placement)
        missing = verify_log_format(data.decode("utf-8", errors="replace"))
        if missing:
            raise ConfigError(
                f"Proxy configuration lacks access-record fields: {missing}",
                step="place_proxy_config",
            )
        changed = place_content(self.host_path(placement.dest), data, placement.mode)
        if changed:
            self._mark_pending("nginx-reload")
        return changed

    def place_files(self) -> list[str]:
        changed: list[str] = []
        for placement in self.descriptor.files:
            data = self.descriptor.render(placement)
            if place_content(self.host_path(placement.dest), data, placement.mode):
                changed.append(str(placement.dest))
        return changed

    def place_unit_file(
        self,
        src: str | Path | None = None,
        dest: str | Path | None = None,
    ) -> bool:
        """Install the service definition, replacing any manual edit."""
        unit = self.descriptor.unit
        if src is not None:
            data = Path(src).read_bytes()
        else:
            data = self.descriptor.render(unit)
        changed = place_content(self.host_path(dest or unit.dest), data, 0o644)
        if changed:
            self._mark_pending("daemon-reload")
            self._mark_pending("service-restart")
        return changed

    def place_artifacts(self) -> list[str]:
        """Install the Artifact Set and the public tree (full replace)."""
        install_dir = self.host_path(self.descriptor.artifacts.install_dir)
        ensure_directory(install_dir, 0o755)

        changed: list[str] = []
        artifacts = ArtifactSet.from_deploy_dir(self.release_dir)
        for name, src in artifacts.files().items():
            mode = stat.S_IMODE(src.stat().st_mode)
            dest = install_dir / name
            if name in _RESTRICTED_ARTIFACTS:
                require_safe_mode(str(dest), mode)
            if place_file(src, dest, mode):
                changed.append(name)
        if changed:
            self._mark_pending("service-restart")

        if self.public_dir is not None:
            leaked = find_source_maps(self.public_dir)
            if leaked:
                raise ProvisionError(
                    f"Refusing to publish source maps: {[str(p) for p in leaked]}",
                    step="place_artifacts",
                )
            web_changes = sync_tree(
                self.public_dir, self.host_path(self.descriptor.artifacts.web_root),
            )
            changed.extend(f"public/{rel}" for rel in web_changes)
        return changed

    def activate_edge(
        self,
        vhost_src: str | Path | None = None,
        vhost_available_path: str | Path | None = None,
        vhost_enabled_path: str | Path | None = None,
    ) -> EdgeChange:
        """Retire competing bindings, install the vhost, enable it by link."""
        vhost = self.descriptor.vhost
        content = None if vhost_src is not None else self.descriptor.render(vhost)
        change = self.edge.activate_edge(
            vhost_src or self.descriptor.source_path(vhost),
            vhost_available_path or vhost.available,
            vhost_enabled_path or vhost.enabled,
            retire=vhost.retire,
            content=content,
        )
        if change.changed:
            self._mark_pending("nginx-reload")
        return change

    def fix_log_permissions(
        self,
        path: str | Path | None = None,
        mode: int | str | None = None,
        recurse: bool | None = None,
    ) -> list[Path]:
        log_dir = self.descriptor.log_dir
        target = self.host_path(path or log_dir.path)
        ensure_directory(target)
        return ensure_mode(
            target,
            log_dir.mode if mode is None else mode,
            recurse=log_dir.recurse if recurse is None else recurse,
        )

    def restart_services(self) -> list[str]:
        """Apply pending reloads and make sure the service runs at boot."""
        actions: list[str] = []
        unit = self.descriptor.unit.name

        if self._is_pending("daemon-reload"):
            self.systemd.daemon_reload()
            self._clear_pending("daemon-reload")
            actions.append("daemon-reload")

        if self.systemd.ensure_enabled(unit):
            actions.append(f"enable {unit}")

        restart = self._is_pending("service-restart")
        if self.systemd.ensure_running(unit, restart=restart):
            actions.append(f"{'restart' if restart else 'start'} {unit}")
        self._clear_pending("service-restart")

        if self._is_pending("nginx-reload"):
            self.edge.reload()
            self._clear_pending("nginx-reload")
            actions.append("reload nginx")
        return actions

    # -- Run ------------------------------------------------------------------

    def steps(self) -> list[tuple[str, Callable[[], object]]]:
        """The ordered convergence steps for this descriptor."""
        steps: list[tuple[str, Callable[[], object]]] = [("verify_release", self.verify_release)]
        if self.descriptor.upgrade:
            steps.append(("upgrade_system", self.upgrade_system))
        steps.append(("ensure_packages", self.ensure_packages))
        if self.descriptor.proxy_config is not None:
            steps.append(("place_proxy_config", self.place_proxy_config))
        if self.descriptor.files:
            steps.append(("place_files", self.place_files))
        steps.extend([
            ("place_unit_file", self.place_unit_file),
            ("place_artifacts", self.place_artifacts),
            ("activate_edge", self.activate_edge),
            ("fix_log_permissions", self.fix_log_permissions),
            ("restart_services", self.restart_services),
        ])
        return steps

    def activate(self) -> ActivationReport:
        """Run every step in order.

        Raises :class:`ProvisionError` naming the first failing step.  The
        partial report stays available as :attr:`report`.
        """
        self.report = ActivationReport(host=self.host)
        logger.info("Activating %s", self.host)

        for name, action in self.steps():
            try:
                outcome = action()
            except Exception as exc:
                detail = exc.detail if isinstance(exc, DeployError) and exc.detail else str(exc)
                self.report.status = "failed"
                self.report.failed_step = name
                self.report.error = str(exc)
                logger.error("Step %s failed on %s: %s", name, self.host, exc)
                raise ProvisionError(
                    f"Step {name} failed on {self.host}: {exc}",
                    step=name,
                    detail=detail,
                    host=self.host,
                ) from exc

            result = _step_result(name, outcome)
            self.report.steps.append(result)
            logger.debug("Step %s: changed=%s %s", name, result.changed, result.message)

        self.report.status = "changed" if self.report.changed else "unchanged"
        logger.info("Activation of %s finished: %s", self.host, self.report.status)
        return self.report


def _step_result(name: str, outcome: object) -> StepResult:
    if isinstance(outcome, EdgeChange):
        return StepResult(
            name=name,
            changed=outcome.changed,
            message=", ".join(outcome.retired) if outcome.retired else "",
        )
    if isinstance(outcome, bool):
        return StepResult(name=name, changed=outcome)
    if isinstance(outcome, list):
        return StepResult(
            name=name,
            changed=bool(outcome),
            message=", ".join(str(o) for o in outcome),
        )
    return StepResult(name=name, changed=False, message=str(outcome or ""))


# -- Several hosts -------------------------------------------------------------


@dataclass
class HostTarget:
    """One host to converge, reachable through its own runner."""

    name: str
    root: Path = Path("/")
    runner: CommandRunner | None = field(default=None, repr=False)


def activate_hosts(
    targets: Iterable[HostTarget],
    descriptor: HostDescriptor,
    release_dir: str | Path,
    *,
    public_dir: str | Path | None = None,
    max_workers: int = 4,
    clock: Callable[[], float] = time.time,
) -> dict[str, ActivationReport]:
    """Converge several hosts concurrently, one sequential run per host.

    A failure on one host is recorded in its report and never affects the
    others.  With more than one target every target needs its own runner,
    so that no two hosts execute commands on the same machine.
    """
    target_list = list(targets)
    names = [t.name for t in target_list]
    roots = [Path(t.root).resolve() for t in target_list]
    if len(set(names)) != len(names) or len(set(roots)) != len(roots):
        raise ConfigError("Each host may appear only once per activation", step="activate_hosts")
    if len(target_list) > 1:
        unbound = [t.name for t in target_list if t.runner is None]
        if unbound:
            raise ConfigError(
                f"Hosts without a runner would all run on this machine: {unbound}",
                step="activate_hosts",
            )
        if len({id(t.runner) for t in target_list}) != len(target_list):
            raise ConfigError("Each host needs its own runner", step="activate_hosts")

    def _one(target: HostTarget) -> ActivationReport:
        activator = HostActivator(
            descriptor,
            release_dir,
            public_dir=public_dir,
            root=target.root,
            runner=target.runner,
            host=target.name,
            clock=clock,
        )
        try:
            return activator.activate()
        except ProvisionError:
            return activator.report

    reports: dict[str, ActivationReport] = {}
    if not target_list:
        return reports
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(target_list)))) as pool:
        futures = {pool.submit(_one, t): t.name for t in target_list}
        for future in as_completed(futures):
            reports[futures[future]] = future.result()
    return reports
