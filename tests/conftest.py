"""Shared fixtures: a scripted command runner and staged project trees."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

import pytest

from oration_deploy.config import BUILD_TARGET
from oration_deploy.errors import CommandError
from oration_deploy.host.descriptor import HostDescriptor, load_descriptor
from oration_deploy.proxy.templates import ProxyConfigGenerator
from oration_deploy.release.builder import ReleaseBuilder

FIXED_NOW = 1_700_000_000.0

ORATION_YAML = """\
# oration settings
host: https://comments.example.org/
name: oration
blog: https://example.org
"""

_READ_ONLY = (
    ("apt-cache",),
    ("apt-get", "-s"),
    ("systemctl", "is-enabled"),
    ("systemctl", "is-active"),
    ("nginx", "-t"),
)


class FakeRunner:
    """Stand-in for :class:`CommandRunner` emulating the external tools.

    Package, service and proxy state is kept in memory; builds write the
    files the real tools would produce.  Every call is recorded.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.installed: dict[str, str] = {}
        self.candidates: dict[str, str] = {}
        self.unavailable: set[str] = set()
        self.upgradable: list[str] = ["libssl3"]
        self.enabled: set[str] = set()
        self.active: set[str] = set()
        self.failures: dict[tuple[str, ...], tuple[int, str]] = {}

    # -- Scripting ------------------------------------------------------------

    def fail(self, *prefix: str, rc: int = 1, stderr: str = "boom") -> None:
        self.failures[prefix] = (rc, stderr)

    def heal(self) -> None:
        self.failures.clear()

    def commands(self, *prefix: str) -> list[list[str]]:
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]

    @property
    def mutations(self) -> list[list[str]]:
        return [
            c for c in self.calls
            if not any(tuple(c[: len(p)]) == p for p in _READ_ONLY)
        ]

    # -- Runner interface -----------------------------------------------------

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: str | Path | None = None,
        check: bool = True,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        cmd = [str(a) for a in argv]
        self.calls.append(cmd)

        for prefix, (rc, stderr) in self.failures.items():
            if tuple(cmd[: len(prefix)]) == prefix:
                if check:
                    raise CommandError(cmd, rc, stderr)
                return subprocess.CompletedProcess(cmd, rc, "", stderr)

        rc, out = self._emulate(cmd, cwd)
        if check and rc != 0:
            raise CommandError(cmd, rc, out)
        return subprocess.CompletedProcess(cmd, rc, out, "")

    def _emulate(self, cmd: list[str], cwd: str | Path | None) -> tuple[int, str]:
        tool, args = cmd[0], cmd[1:]
        if tool == "apt-cache":
            return 0, self._policy(args[-1])
        if tool == "apt-get":
            return self._apt_get(args)
        if tool == "systemctl":
            return self._systemctl(args)
        if tool == "nginx":
            return 0, "nginx: configuration file test is successful"
        if tool in ("cargo", "docker"):
            target = args[args.index("--target") + 1] if "--target" in args else BUILD_TARGET
            exe = Path(cwd or ".") / "target" / target / "release" / "oration"
            exe.parent.mkdir(parents=True, exist_ok=True)
            exe.write_bytes(b"\x7fELF oration " + target.encode())
            os.chmod(exe, 0o755)
            return 0, "Finished release"
        if tool == "npm":
            public = Path(cwd or ".").parent / "public"
            (public / "js").mkdir(parents=True, exist_ok=True)
            (public / "index.html").write_text("<html>oration</html>")
            (public / "js" / "app.js").write_text("console.log('oration')")
            (public / "js" / "app.js.map").write_text("{}")
            return 0, "built"
        return 127, f"{tool}: not found"

    def _policy(self, name: str) -> str:
        if name in self.unavailable:
            return f"{name}:\n  Installed: (none)\n  Candidate: (none)\n"
        installed = self.installed.get(name, "(none)")
        candidate = self.candidates.get(name, "1.0")
        return f"{name}:\n  Installed: {installed}\n  Candidate: {candidate}\n"

    def _apt_get(self, args: list[str]) -> tuple[int, str]:
        if args[0] == "update":
            return 0, "Reading package lists..."
        if args[0] == "-s":
            return 0, "".join(f"Inst {name} [0.9] (1.0 stable)\n" for name in self.upgradable)
        if args[0] == "upgrade":
            self.upgradable = []
            return 0, ""
        if args[0] == "install":
            for name in args[3:]:
                self.installed[name] = self.candidates.get(name, "1.0")
            return 0, ""
        return 100, "E: invalid operation"

    def _systemctl(self, args: list[str]) -> tuple[int, str]:
        verb, name = args[0], args[-1]
        if verb == "is-enabled":
            return (0, "enabled") if name in self.enabled else (1, "disabled")
        if verb == "is-active":
            return (0, "active") if name in self.active else (3, "inactive")
        if verb == "enable":
            self.enabled.add(name)
        elif verb in ("start", "restart"):
            self.active.add(name)
        return 0, ""


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def oration_project(tmp_path: Path) -> Path:
    """Source checkout with configuration, secrets, data and frontend dir."""
    root = tmp_path / "oration"
    (root / "app").mkdir(parents=True)
    (root / "oration.yaml").write_text(ORATION_YAML)
    (root / ".env").write_text("ORATION_SECRET=hunter2\n")
    os.chmod(root / ".env", 0o644)
    (root / "oration.db").write_bytes(b"SQLite format 3\x00")
    return root


@pytest.fixture
def builder(oration_project: Path, fake_runner: FakeRunner) -> ReleaseBuilder:
    return ReleaseBuilder(oration_project, runner=fake_runner)


@pytest.fixture
def staged_release(builder: ReleaseBuilder) -> ReleaseBuilder:
    """A builder whose release has been built and staged once."""
    builder.build()
    return builder


@pytest.fixture
def host_descriptor(tmp_path: Path) -> HostDescriptor:
    """Descriptor loaded from generated config files."""
    config_dir = tmp_path / "config"
    ProxyConfigGenerator().generate(config_dir)
    return load_descriptor(config_dir / "host.yaml")
