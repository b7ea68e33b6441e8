"""ReleasePackager — bundles a staged release for transfer to hosts."""

from __future__ import annotations

import io
import json
import logging
import tarfile
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from oration_deploy.config import ARTIFACT_FILES
from oration_deploy.errors import BuildError
from oration_deploy.release.manifest import ReleaseManifest, manifest_path_for
from oration_deploy.security.hasher import Hasher

logger = logging.getLogger(__name__)

PACKAGE_MANIFEST = "package_manifest.json"
DEPLOY_ARCDIR = "deploy"
PUBLIC_ARCDIR = "public"


class ExtractResult(BaseModel):
    """Result of unpacking a release archive."""

    success: bool = False
    release_id: str = ""
    deploy_dir: str = ""
    public_dir: str = ""
    warnings: list[str] = Field(default_factory=list)


class ReleasePackager:
    """Create, verify and unpack release archives."""

    def package(
        self,
        deploy_dir: str | Path,
        output_path: str | Path,
        *,
        public_dir: str | Path | None = None,
    ) -> Path:
        """Create a .tar.gz holding ``deploy/``, ``public/`` and a manifest.

        Parameters
        ----------
        deploy_dir:
            Staged deployment directory.
        output_path:
            Where to write the archive.
        public_dir:
            Built frontend tree to include.

        Returns the path to the created archive.
        """
        deploy = Path(deploy_dir).resolve()
        out = Path(output_path).resolve()
        out.parent.mkdir(parents=True, exist_ok=True)
        if not out.name.endswith(".tar.gz"):
            out = out.with_name(out.name + ".tar.gz")

        missing = [name for name in ARTIFACT_FILES if not (deploy / name).is_file()]
        if missing:
            raise BuildError(f"Cannot package incomplete release: missing {missing}", step="package")

        release_path = manifest_path_for(deploy)
        if release_path.is_file():
            release = ReleaseManifest.load(release_path)
        else:
            release = ReleaseManifest.from_directories(deploy, public_dir)

        manifest: dict[str, Any] = {
            "release": release.model_dump(),
            "files": {},
        }

        with tarfile.open(out, "w:gz") as tar:
            for name in ARTIFACT_FILES:
                arcname = f"{DEPLOY_ARCDIR}/{name}"
                tar.add(deploy / name, arcname=arcname)
                manifest["files"][arcname] = Hasher.hash_file(deploy / name)

            if public_dir is not None:
                public = Path(public_dir).resolve()
                for fpath in sorted(public.rglob("*")):
                    if not fpath.is_file():
                        continue
                    arcname = f"{PUBLIC_ARCDIR}/{fpath.relative_to(public).as_posix()}"
                    tar.add(fpath, arcname=arcname)
                    manifest["files"][arcname] = Hasher.hash_file(fpath)

            manifest_json = json.dumps(manifest, indent=2).encode("utf-8")
            info = tarfile.TarInfo(name=PACKAGE_MANIFEST)
            info.size = len(manifest_json)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(manifest_json))

        logger.info("Release %s packaged: %s (%d files)", release.release_id, out, len(manifest["files"]))
        return out

    def _read_manifest(self, tar: tarfile.TarFile) -> dict[str, Any] | None:
        try:
            mf = tar.extractfile(PACKAGE_MANIFEST)
            if mf is None:
                return None
            return json.loads(mf.read())
        except (KeyError, json.JSONDecodeError):
            return None

    def verify(self, archive_path: str | Path) -> bool:
        """Validate the archive manifest hashes.

        Returns True if all file hashes match the manifest.
        """
        archive = Path(archive_path)
        if not archive.is_file():
            return False

        try:
            with tarfile.open(archive, "r:gz") as tar:
                manifest = self._read_manifest(tar)
                if manifest is None:
                    return False

                files_map: dict[str, str] = manifest.get("files", {})
                for name in ARTIFACT_FILES:
                    if f"{DEPLOY_ARCDIR}/{name}" not in files_map:
                        logger.warning("Archive lacks artifact %s", name)
                        return False

                for fname, expected_hash in files_map.items():
                    try:
                        member = tar.getmember(fname)
                    except KeyError:
                        logger.warning("Missing file in archive: %s", fname)
                        return False

                    ef = tar.extractfile(member)
                    if ef is None:
                        return False
                    if Hasher.hash_bytes(ef.read()) != expected_hash:
                        logger.warning("Hash mismatch for %s", fname)
                        return False

        except (tarfile.TarError, OSError) as exc:
            logger.error("Failed to verify release archive: %s", exc)
            return False

        return True

    def extract(self, archive_path: str | Path, target_path: str | Path) -> ExtractResult:
        """Verify and unpack a release archive into *target_path*.

        The release manifest is written beside the extracted ``deploy/``
        directory so activation can check it.
        """
        archive = Path(archive_path)
        target = Path(target_path)
        warnings: list[str] = []

        if not self.verify(archive):
            return ExtractResult(success=False, warnings=["Release archive verification failed"])

        target.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(archive, "r:gz") as tar:
                manifest = self._read_manifest(tar) or {}
                members = []
                for m in tar.getmembers():
                    if m.name == PACKAGE_MANIFEST:
                        continue
                    if m.name.startswith("/") or ".." in Path(m.name).parts:
                        warnings.append(f"Skipped suspicious path: {m.name}")
                        continue
                    members.append(m)
                tar.extractall(target, members=members, filter="data")
        except (tarfile.TarError, OSError) as exc:
            return ExtractResult(success=False, warnings=[f"Extraction failed: {exc}"])

        release = ReleaseManifest.model_validate(manifest.get("release", {}))
        deploy_dir = target / DEPLOY_ARCDIR
        release.write(manifest_path_for(deploy_dir))
        public_dir = target / PUBLIC_ARCDIR

        return ExtractResult(
            success=True,
            release_id=release.release_id,
            deploy_dir=str(deploy_dir),
            public_dir=str(public_dir) if public_dir.is_dir() else "",
            warnings=warnings,
        )
