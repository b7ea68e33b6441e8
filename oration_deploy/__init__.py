"""oration-deploy — release builder and host activator for the oration comment server."""

__version__ = "0.3.0"

from oration_deploy.config_manager import ConfigManager, DeploySettings
from oration_deploy.errors import (
    BuildError,
    CommandError,
    ConfigError,
    DeployError,
    ProvisionError,
    UnsafePermissionError,
)
from oration_deploy.health import CheckResult, HealthChecker, HealthReport
from oration_deploy.host.activator import ActivationReport, HostActivator, HostTarget, activate_hosts
from oration_deploy.host.descriptor import HostDescriptor, load_descriptor
from oration_deploy.proxy.access_log import parse_access_line, summarize_access_log, verify_log_format
from oration_deploy.proxy.templates import ProxyConfigGenerator
from oration_deploy.release.builder import ReleaseBuilder
from oration_deploy.release.manifest import ArtifactSet, ReleaseManifest
from oration_deploy.release.packager import ReleasePackager

__all__ = [
    "ActivationReport",
    "ArtifactSet",
    "BuildError",
    "CheckResult",
    "CommandError",
    "ConfigError",
    "ConfigManager",
    "DeployError",
    "DeploySettings",
    "HealthChecker",
    "HealthReport",
    "HostActivator",
    "HostDescriptor",
    "HostTarget",
    "ProvisionError",
    "ProxyConfigGenerator",
    "ReleaseBuilder",
    "ReleaseManifest",
    "ReleasePackager",
    "UnsafePermissionError",
    "activate_hosts",
    "load_descriptor",
    "parse_access_line",
    "summarize_access_log",
    "verify_log_format",
]
