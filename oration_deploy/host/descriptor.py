"""HostDescriptor — declarative desired state for one target host.

Loaded from YAML::

    packages: [nginx, sqlite3]
    package_policy: latest
    unit:
      src: config/oration.service
    vhost:
      src: config/nginx.vhost.conf
      template: true
    substitutions:
      server_name: comments.example.org

Sources are resolved relative to the descriptor file.  Files marked
``template: true`` get ``{{ name }}`` placeholders replaced from
``substitutions``; nothing else is dynamic.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from oration_deploy.config import (
    APT_CACHE_VALID_TIME,
    APT_UPDATE_STAMP,
    DEFAULT_VHOST_ENABLED,
    INSTALL_DIR,
    NGINX_CONF_PATH,
    NGINX_LOG_DIR,
    NGINX_LOG_MODE,
    SERVICE_NAME,
    SYSTEM_PACKAGES,
    UNIT_PATH,
    VHOST_AVAILABLE_PATH,
    VHOST_ENABLED_PATH,
    WEB_ROOT,
)
from oration_deploy.errors import ConfigError

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


class SourceFile(BaseModel):
    """A file shipped from the deployment bundle to the host."""

    src: Path
    template: bool = False


class FilePlacement(SourceFile):
    """A file to place at an absolute host path."""

    dest: Path
    mode: int | str | None = None


class UnitDefinition(SourceFile):
    """Process-supervision definition for the backend."""

    dest: Path = UNIT_PATH
    name: str = SERVICE_NAME


class VhostDefinition(SourceFile):
    """Reverse-proxy vhost and its available/enabled slots."""

    available: Path = VHOST_AVAILABLE_PATH
    enabled: Path = VHOST_ENABLED_PATH
    retire: list[Path] = Field(default_factory=lambda: [DEFAULT_VHOST_ENABLED])


class LogDirectory(BaseModel):
    """Proxy log directory kept readable for operators."""

    path: Path = NGINX_LOG_DIR
    mode: int | str = NGINX_LOG_MODE
    recurse: bool = True


class ArtifactPlacement(BaseModel):
    """Where the Artifact Set lands on the host."""

    install_dir: Path = INSTALL_DIR
    web_root: Path = WEB_ROOT


class HostDescriptor(BaseModel):
    """Desired state of a host running the oration service."""

    packages: list[str] = Field(default_factory=lambda: list(SYSTEM_PACKAGES))
    package_policy: Literal["latest", "present"] = "latest"
    upgrade: bool = True
    cache_valid_time: int = Field(default=APT_CACHE_VALID_TIME, ge=0)
    update_stamp: Path = APT_UPDATE_STAMP
    proxy_config: FilePlacement | None = None
    files: list[FilePlacement] = Field(default_factory=list)
    unit: UnitDefinition
    vhost: VhostDefinition
    artifacts: ArtifactPlacement = Field(default_factory=ArtifactPlacement)
    log_dir: LogDirectory = Field(default_factory=LogDirectory)
    substitutions: dict[str, str] = Field(default_factory=dict)
    base_dir: Path = Field(default=Path("."), exclude=True)

    def source_path(self, source: SourceFile) -> Path:
        """Resolve *source* relative to the descriptor location."""
        if source.src.is_absolute():
            return source.src
        return self.base_dir / source.src

    def render(self, source: SourceFile) -> bytes:
        """Return the bytes to place for *source*, applying substitutions."""
        path = self.source_path(source)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise ConfigError(f"Cannot read {path}: {exc}", step="render") from exc
        if not source.template:
            return data
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ConfigError(f"Template {path} is not valid UTF-8: {exc}", step="render") from exc
        return render_placeholders(text, self.substitutions).encode("utf-8")


def render_placeholders(text: str, values: dict[str, str]) -> str:
    """Replace ``{{ name }}`` placeholders, raising on unknown names."""

    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in values:
            raise ConfigError(f"No substitution for placeholder {key!r}", step="render")
        return values[key]

    return _PLACEHOLDER_RE.sub(_sub, text)


def default_descriptor(config_dir: str | Path) -> HostDescriptor:
    """Descriptor matching the stock staging host layout."""
    base = Path(config_dir)
    return HostDescriptor(
        proxy_config=FilePlacement(src=Path("nginx.conf"), dest=NGINX_CONF_PATH, mode=0o644),
        unit=UnitDefinition(src=Path("oration.service")),
        vhost=VhostDefinition(src=Path("nginx.vhost.conf")),
        base_dir=base,
    )


def load_descriptor(path: str | Path) -> HostDescriptor:
    """Read a :class:`HostDescriptor` from a YAML file.

    Raises :class:`ConfigError` for unreadable YAML or invalid fields.
    """
    p = Path(path)
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read host descriptor {p}: {exc}", step="load_descriptor") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Host descriptor {p} must be a mapping", step="load_descriptor")

    try:
        descriptor = HostDescriptor.model_validate({**data, "base_dir": p.parent})
    except ValidationError as exc:
        raise ConfigError(f"Invalid host descriptor {p}: {exc}", step="load_descriptor") from exc

    logger.debug("Loaded host descriptor %s (%d packages)", p, len(descriptor.packages))
    return descriptor
