"""Host activation — converge a machine to its descriptor."""

from oration_deploy.host.activator import (
    ActivationReport,
    HostActivator,
    HostTarget,
    StepResult,
    activate_hosts,
)
from oration_deploy.host.descriptor import HostDescriptor, load_descriptor
from oration_deploy.host.edge import EdgeActivator, EdgeChange
from oration_deploy.host.packages import AptPackageManager
from oration_deploy.host.runner import ChrootRunner, CommandRunner
from oration_deploy.host.services import SystemdManager

__all__ = [
    "ActivationReport",
    "AptPackageManager",
    "ChrootRunner",
    "CommandRunner",
    "EdgeActivator",
    "EdgeChange",
    "HostActivator",
    "HostDescriptor",
    "HostTarget",
    "StepResult",
    "SystemdManager",
    "activate_hosts",
    "load_descriptor",
]
