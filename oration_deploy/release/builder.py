"""ReleaseBuilder — compiles, bundles and stages one release.

A release is staged into a scratch sibling of the deployment directory and
swapped in only after every artifact has been written, so the deployment
directory is either absent, the previous complete release, or the new
complete release.
"""

from __future__ import annotations

import logging
import shutil
import stat
from collections.abc import Mapping
from pathlib import Path

from oration_deploy.config import (
    BACKEND_EXECUTABLE,
    BUILD_TARGET,
    BUILDER_MOUNT,
    CONFIG_FILE,
    CONFIG_OVERRIDES,
    DATA_FILE,
    DEFAULT_DEPLOY_DIR,
    DEFAULT_FRONTEND_DIR,
    DEFAULT_PUBLIC_DIR,
    EXECUTABLE_MODE,
    FRONTEND_BUILD_COMMAND,
    SECRET_MODE,
    SECRETS_FILE,
)
from oration_deploy.errors import BuildError, CommandError, ConfigError
from oration_deploy.host.files import copy_file
from oration_deploy.host.runner import CommandRunner
from oration_deploy.release.manifest import ReleaseManifest, manifest_path_for
from oration_deploy.release.sanitizer import find_source_maps, remove_source_maps
from oration_deploy.release.templating import substitute_file
from oration_deploy.security.modes import parse_mode, require_safe_mode

logger = logging.getLogger(__name__)


class ReleaseBuilder:
    """Turn the oration sources into a host-agnostic deployable bundle.

    Parameters
    ----------
    project_root:
        Root of the oration source checkout (holds ``Cargo.toml``,
        ``oration.yaml``, ``.env`` and ``oration.db``).
    deploy_dir:
        Deployment directory.  Relative paths resolve against
        *project_root*.
    public_dir:
        Output tree of the frontend build.
    frontend_dir:
        Directory where the frontend build command is run.
    build_target:
        Rust target triple for the static executable.
    builder_image:
        Optional container image used to compile the backend.
    config_overrides:
        Field substitutions applied to the staged ``oration.yaml``.
    runner:
        Command runner; defaults to :class:`CommandRunner`.
    """

    def __init__(
        self,
        project_root: str | Path,
        *,
        deploy_dir: str | Path = DEFAULT_DEPLOY_DIR,
        public_dir: str | Path = DEFAULT_PUBLIC_DIR,
        frontend_dir: str | Path = DEFAULT_FRONTEND_DIR,
        build_target: str = BUILD_TARGET,
        builder_image: str | None = None,
        config_overrides: Mapping[str, str] | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        self.deploy_dir = self.project_root / deploy_dir
        self.public_dir = self.project_root / public_dir
        self.frontend_dir = self.project_root / frontend_dir
        self.build_target = build_target
        self.builder_image = builder_image
        self.config_overrides = dict(
            CONFIG_OVERRIDES if config_overrides is None else config_overrides
        )
        self.runner = runner or CommandRunner()

    @property
    def executable_path(self) -> Path:
        """Where cargo leaves the release executable."""
        return (
            self.project_root / "target" / self.build_target / "release" / BACKEND_EXECUTABLE
        )

    @property
    def manifest_path(self) -> Path:
        return manifest_path_for(self.deploy_dir)

    # -- Build ----------------------------------------------------------------

    def build_backend(self) -> Path:
        """Compile the statically linked backend executable.

        Returns the path of the built executable.
        """
        if self.builder_image:
            argv = [
                "docker", "run", "--rm", "-t",
                "-v", f"{self.project_root}:{BUILDER_MOUNT}",
                self.builder_image,
                "cargo", "build", "--release",
            ]
        else:
            argv = ["cargo", "build", "--release", "--target", self.build_target]

        logger.info("Building backend for %s", self.build_target)
        try:
            self.runner.run(argv, cwd=self.project_root)
        except CommandError as exc:
            raise BuildError(
                "Backend compilation failed",
                step="build_backend",
                detail=exc.detail,
            ) from exc

        if not self.executable_path.is_file():
            raise BuildError(
                f"Backend build produced no executable at {self.executable_path}",
                step="build_backend",
            )
        return self.executable_path

    def build_frontend(self) -> list[Path]:
        """Bundle the frontend and strip source maps from the public tree.

        Returns the list of removed source map files.
        """
        logger.info("Building frontend in %s", self.frontend_dir)
        try:
            self.runner.run(FRONTEND_BUILD_COMMAND, cwd=self.frontend_dir)
        except CommandError as exc:
            raise BuildError(
                "Frontend build failed",
                step="build_frontend",
                detail=exc.detail,
            ) from exc

        if not self.public_dir.is_dir():
            raise BuildError(
                f"Frontend build produced no output at {self.public_dir}",
                step="build_frontend",
            )

        removed = remove_source_maps(self.public_dir)
        leftover = find_source_maps(self.public_dir)
        if leftover:
            raise BuildError(
                f"Source maps remain in public tree: {[str(p) for p in leftover]}",
                step="build_frontend",
            )
        return removed

    # -- Stage ----------------------------------------------------------------

    def stage_config(
        self,
        source_config: str | Path | None = None,
        overrides: Mapping[str, str] | None = None,
        *,
        dest_dir: str | Path | None = None,
    ) -> Path:
        """Copy the base configuration and rewrite the override fields."""
        src = Path(source_config) if source_config else self.project_root / CONFIG_FILE
        if not src.is_file():
            raise ConfigError(f"Configuration source not found: {src}", step="stage_config")

        dest = Path(dest_dir or self.deploy_dir) / CONFIG_FILE
        copy_file(src, dest)
        substitute_file(dest, self.config_overrides if overrides is None else overrides)
        logger.info("Staged configuration %s", dest)
        return dest

    def stage_executable(
        self,
        mode: int | str = EXECUTABLE_MODE,
        *,
        source: str | Path | None = None,
        dest_dir: str | Path | None = None,
    ) -> Path:
        """Copy the executable with the owner-only write, no-other-access mode.

        The mode is validated before anything is written.
        """
        src = Path(source) if source else self.executable_path
        self._require_source(src, "stage_executable")

        dest = Path(dest_dir or self.deploy_dir) / BACKEND_EXECUTABLE
        resolved = parse_mode(mode, base=stat.S_IMODE(src.stat().st_mode))
        require_safe_mode(str(dest), resolved)
        copy_file(src, dest, mode=resolved)
        logger.info("Staged executable %s (mode %04o)", dest, resolved)
        return dest

    def stage_secrets(
        self,
        env_file: str | Path | None = None,
        *,
        mode: int | str = SECRET_MODE,
        dest_dir: str | Path | None = None,
    ) -> Path:
        """Copy the environment file verbatim with a restricted mode."""
        src = Path(env_file) if env_file else self.project_root / SECRETS_FILE
        self._require_source(src, "stage_secrets")

        dest = Path(dest_dir or self.deploy_dir) / SECRETS_FILE
        resolved = parse_mode(mode, base=stat.S_IMODE(src.stat().st_mode))
        require_safe_mode(str(dest), resolved)
        copy_file(src, dest, mode=resolved)
        logger.info("Staged secrets %s", dest)
        return dest

    def stage_data(
        self,
        db_file: str | Path | None = None,
        *,
        dest_dir: str | Path | None = None,
    ) -> Path:
        """Copy the persisted database verbatim."""
        src = Path(db_file) if db_file else self.project_root / DATA_FILE
        self._require_source(src, "stage_data")

        dest = Path(dest_dir or self.deploy_dir) / DATA_FILE
        copy_file(src, dest, mode=stat.S_IMODE(src.stat().st_mode))
        logger.info("Staged data %s", dest)
        return dest

    # -- Full release -----------------------------------------------------------

    def build(self) -> ReleaseManifest:
        """Run every build and staging step, all or nothing.

        Both builds complete before anything is staged.  Staging happens in
        a scratch directory that replaces the deployment directory only
        once it holds the complete Artifact Set.
        """
        self.build_backend()
        self.build_frontend()

        partial = self.deploy_dir.with_name(self.deploy_dir.name + ".partial")
        if partial.exists():
            shutil.rmtree(partial)
        partial.mkdir(parents=True)

        try:
            self.stage_config(dest_dir=partial)
            self.stage_executable(dest_dir=partial)
            self.stage_secrets(dest_dir=partial)
            self.stage_data(dest_dir=partial)
            manifest = ReleaseManifest.from_directories(partial, self.public_dir)
        except Exception:
            shutil.rmtree(partial, ignore_errors=True)
            raise

        self._swap_in(partial)
        manifest.write(self.manifest_path)
        logger.info("Release %s staged in %s", manifest.release_id, self.deploy_dir)
        return manifest

    def _swap_in(self, partial: Path) -> None:
        """Replace the deployment directory with *partial*."""
        previous = self.deploy_dir.with_name(self.deploy_dir.name + ".previous")
        if previous.exists():
            shutil.rmtree(previous)

        self.manifest_path.unlink(missing_ok=True)
        if self.deploy_dir.exists():
            self.deploy_dir.rename(previous)
        partial.rename(self.deploy_dir)

        if previous.exists():
            shutil.rmtree(previous)

    @staticmethod
    def _require_source(path: Path, step: str) -> None:
        if not path.is_file():
            raise BuildError(f"Missing source file: {path}", step=step)
