"""Release building — compile, bundle, stage and package one release."""

from oration_deploy.release.builder import ReleaseBuilder
from oration_deploy.release.manifest import ArtifactSet, ReleaseManifest
from oration_deploy.release.packager import ExtractResult, ReleasePackager
from oration_deploy.release.sanitizer import remove_source_maps
from oration_deploy.release.templating import substitute_fields

__all__ = [
    "ArtifactSet",
    "ExtractResult",
    "ReleaseBuilder",
    "ReleaseManifest",
    "ReleasePackager",
    "remove_source_maps",
    "substitute_fields",
]
