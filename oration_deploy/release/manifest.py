"""ArtifactSet and ReleaseManifest models."""

from __future__ import annotations

import json
import logging
import stat
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field

from oration_deploy.config import (
    ARTIFACT_FILES,
    BACKEND_EXECUTABLE,
    CONFIG_FILE,
    DATA_FILE,
    MANIFEST_SUFFIX,
    SECRETS_FILE,
)
from oration_deploy.errors import ConfigError
from oration_deploy.security.hasher import Hasher

logger = logging.getLogger(__name__)


def manifest_path_for(deploy_dir: str | Path) -> Path:
    """Return the manifest location for *deploy_dir* (a sibling file)."""
    d = Path(deploy_dir)
    return d.with_name(d.name + MANIFEST_SUFFIX)


def new_release_id() -> str:
    """Return a sortable release identifier based on the current UTC time."""
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")


class ArtifactSet(BaseModel):
    """The files that make up one release."""

    backend_executable: Path
    config_file: Path
    secret_env_file: Path
    runtime_data_file: Path
    frontend_bundle: Path | None = None

    @classmethod
    def from_deploy_dir(
        cls,
        deploy_dir: str | Path,
        public_dir: str | Path | None = None,
    ) -> ArtifactSet:
        d = Path(deploy_dir)
        return cls(
            backend_executable=d / BACKEND_EXECUTABLE,
            config_file=d / CONFIG_FILE,
            secret_env_file=d / SECRETS_FILE,
            runtime_data_file=d / DATA_FILE,
            frontend_bundle=Path(public_dir) if public_dir is not None else None,
        )

    def files(self) -> dict[str, Path]:
        """Map fixed artifact names to their paths."""
        return {
            BACKEND_EXECUTABLE: self.backend_executable,
            CONFIG_FILE: self.config_file,
            SECRETS_FILE: self.secret_env_file,
            DATA_FILE: self.runtime_data_file,
        }

    def missing(self) -> list[str]:
        """Return the names of artifacts that are absent."""
        missing = [name for name, path in self.files().items() if not path.is_file()]
        if self.frontend_bundle is not None and not self.frontend_bundle.is_dir():
            missing.append("frontend_bundle")
        return missing

    def is_complete(self) -> bool:
        return not self.missing()


class ArtifactEntry(BaseModel):
    """Hash and permission bits of one staged artifact."""

    sha256: str
    mode: int


class ReleaseManifest(BaseModel):
    """Record of a staged release, written beside the deployment directory."""

    release_id: str = Field(default_factory=new_release_id)
    created_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
    )
    artifacts: dict[str, ArtifactEntry] = Field(default_factory=dict)
    public_digest: str = ""
    public_files: int = 0

    @classmethod
    def from_directories(
        cls,
        deploy_dir: str | Path,
        public_dir: str | Path | None = None,
        *,
        release_id: str | None = None,
    ) -> ReleaseManifest:
        """Hash a staged deployment directory and public tree."""
        d = Path(deploy_dir)
        artifacts: dict[str, ArtifactEntry] = {}
        for name in ARTIFACT_FILES:
            path = d / name
            artifacts[name] = ArtifactEntry(
                sha256=Hasher.hash_file(path),
                mode=stat.S_IMODE(path.stat().st_mode),
            )

        public_digest = ""
        public_files = 0
        if public_dir is not None and Path(public_dir).is_dir():
            public_digest = Hasher.hash_folder(public_dir)
            public_files = sum(1 for p in Path(public_dir).rglob("*") if p.is_file())

        manifest = cls(
            artifacts=artifacts,
            public_digest=public_digest,
            public_files=public_files,
        )
        if release_id:
            manifest.release_id = release_id
        return manifest

    def write(self, path: str | Path) -> Path:
        p = Path(path)
        p.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return p

    @classmethod
    def load(cls, path: str | Path) -> ReleaseManifest:
        """Read a manifest, raising :class:`ConfigError` if unreadable."""
        p = Path(path)
        try:
            return cls.model_validate(json.loads(p.read_text(encoding="utf-8")))
        except (OSError, ValueError) as exc:
            raise ConfigError(f"Unreadable release manifest {p}: {exc}", step="verify_release") from exc

    def verify(
        self,
        deploy_dir: str | Path,
        public_dir: str | Path | None = None,
    ) -> list[str]:
        """Compare the directories against this manifest.

        Returns a list of human readable problems; empty means consistent.
        """
        problems: list[str] = []
        d = Path(deploy_dir)
        for name, entry in self.artifacts.items():
            path = d / name
            if not path.is_file():
                problems.append(f"missing artifact: {name}")
            elif Hasher.hash_file(path) != entry.sha256:
                problems.append(f"hash mismatch: {name}")

        if public_dir is not None and self.public_digest:
            if not Path(public_dir).is_dir():
                problems.append("missing frontend bundle")
            elif Hasher.hash_folder(public_dir) != self.public_digest:
                problems.append("frontend bundle digest mismatch")
        return problems


def unexpected_entries(deploy_dir: str | Path) -> list[str]:
    """Return names in *deploy_dir* that are not part of the Artifact Set."""
    d = Path(deploy_dir)
    if not d.is_dir():
        return []
    return sorted(p.name for p in d.iterdir() if p.name not in ARTIFACT_FILES)
