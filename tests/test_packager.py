"""Tests for release archives."""

from __future__ import annotations

import io
import json
import stat
import tarfile
from pathlib import Path

import pytest

from oration_deploy.config import ARTIFACT_FILES
from oration_deploy.errors import BuildError
from oration_deploy.release.manifest import ReleaseManifest, manifest_path_for
from oration_deploy.release.packager import PACKAGE_MANIFEST, ReleasePackager
from oration_deploy.security.hasher import Hasher


def _add_bytes(tar: tarfile.TarFile, name: str, data: bytes) -> None:
    info = tarfile.TarInfo(name=name)
    info.size = len(data)
    tar.addfile(info, io.BytesIO(data))


def _handmade_archive(path: Path, files: dict[str, bytes], hashes: dict[str, str]) -> Path:
    manifest = {"release": {"release_id": "handmade"}, "files": hashes}
    with tarfile.open(path, "w:gz") as tar:
        for name, data in files.items():
            _add_bytes(tar, name, data)
        _add_bytes(tar, PACKAGE_MANIFEST, json.dumps(manifest).encode())
    return path


def _artifact_files() -> dict[str, bytes]:
    return {f"deploy/{name}": name.encode() for name in ARTIFACT_FILES}


# ── Package ──────────────────────────────────────────────────────────────────

class TestPackage:

    def test_archive_holds_release_and_manifest(self, staged_release, tmp_path: Path):
        archive = ReleasePackager().package(
            staged_release.deploy_dir, tmp_path / "out" / "release", public_dir=staged_release.public_dir,
        )
        assert archive.name == "release.tar.gz"
        with tarfile.open(archive, "r:gz") as tar:
            names = tar.getnames()
            data = json.loads(tar.extractfile(PACKAGE_MANIFEST).read())

        assert {f"deploy/{n}" for n in ARTIFACT_FILES} <= set(names)
        assert "public/index.html" in names
        release = ReleaseManifest.load(staged_release.manifest_path)
        assert data["release"]["release_id"] == release.release_id

    def test_incomplete_release_refused(self, tmp_path: Path):
        deploy = tmp_path / "deploy"
        deploy.mkdir()
        (deploy / "oration").write_bytes(b"x")
        with pytest.raises(BuildError) as exc_info:
            ReleasePackager().package(deploy, tmp_path / "r.tar.gz")
        assert exc_info.value.step == "package"


# ── Verify ───────────────────────────────────────────────────────────────────

class TestVerify:

    def test_fresh_archive_verifies(self, staged_release, tmp_path: Path):
        archive = ReleasePackager().package(staged_release.deploy_dir, tmp_path / "r.tar.gz")
        assert ReleasePackager().verify(archive)

    def test_hash_mismatch(self, tmp_path: Path):
        files = _artifact_files()
        hashes = {name: Hasher.hash_bytes(data) for name, data in files.items()}
        hashes["deploy/oration"] = Hasher.hash_bytes(b"something else")
        archive = _handmade_archive(tmp_path / "r.tar.gz", files, hashes)
        assert not ReleasePackager().verify(archive)

    def test_missing_artifact_in_manifest(self, tmp_path: Path):
        files = _artifact_files()
        del files["deploy/.env"]
        hashes = {name: Hasher.hash_bytes(data) for name, data in files.items()}
        archive = _handmade_archive(tmp_path / "r.tar.gz", files, hashes)
        assert not ReleasePackager().verify(archive)

    def test_not_an_archive(self, tmp_path: Path):
        bogus = tmp_path / "r.tar.gz"
        bogus.write_bytes(b"plain text")
        assert not ReleasePackager().verify(bogus)
        assert not ReleasePackager().verify(tmp_path / "absent.tar.gz")


# ── Extract ──────────────────────────────────────────────────────────────────

class TestExtract:

    def test_extracted_release_matches_manifest(self, staged_release, tmp_path: Path):
        packager = ReleasePackager()
        archive = packager.package(
            staged_release.deploy_dir, tmp_path / "r.tar.gz", public_dir=staged_release.public_dir,
        )
        result = packager.extract(archive, tmp_path / "unpacked")

        assert result.success
        deploy = Path(result.deploy_dir)
        assert sorted(p.name for p in deploy.iterdir()) == sorted(ARTIFACT_FILES)
        assert stat.S_IMODE((deploy / "oration").stat().st_mode) == 0o750
        assert stat.S_IMODE((deploy / ".env").stat().st_mode) == 0o600

        manifest = ReleaseManifest.load(manifest_path_for(deploy))
        assert manifest.verify(deploy, result.public_dir) == []

    def test_traversal_member_skipped(self, tmp_path: Path):
        files = _artifact_files()
        hashes = {name: Hasher.hash_bytes(data) for name, data in files.items()}
        files["../escape.txt"] = b"owned"
        archive = _handmade_archive(tmp_path / "r.tar.gz", files, hashes)

        result = ReleasePackager().extract(archive, tmp_path / "unpacked")
        assert result.success
        assert any("escape.txt" in w for w in result.warnings)
        assert not (tmp_path / "escape.txt").exists()

    def test_failed_verification_extracts_nothing(self, tmp_path: Path):
        files = _artifact_files()
        hashes = {name: "0" * 64 for name in files}
        archive = _handmade_archive(tmp_path / "r.tar.gz", files, hashes)

        result = ReleasePackager().extract(archive, tmp_path / "unpacked")
        assert not result.success
        assert not (tmp_path / "unpacked").exists()
