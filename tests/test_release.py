"""Tests for the release builder: templating, sanitation, staging, manifest."""

from __future__ import annotations

import stat
from pathlib import Path

import pytest

from oration_deploy.config import ARTIFACT_FILES, BUILD_TARGET
from oration_deploy.errors import BuildError, ConfigError, UnsafePermissionError
from oration_deploy.release.builder import ReleaseBuilder
from oration_deploy.release.manifest import (
    ArtifactSet,
    ReleaseManifest,
    manifest_path_for,
    unexpected_entries,
)
from oration_deploy.release.sanitizer import find_source_maps, remove_source_maps
from oration_deploy.release.templating import substitute_fields, substitute_file
from oration_deploy.security.hasher import Hasher

from conftest import ORATION_YAML


def _mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


# ── Templating ───────────────────────────────────────────────────────────────

class TestSubstituteFields:

    def test_rewrites_only_the_named_field(self):
        result = substitute_fields(ORATION_YAML, {"host": "http://localhost/"})
        assert result == ORATION_YAML.replace("https://comments.example.org/", "http://localhost/")

    def test_preserves_comments_and_order(self):
        result = substitute_fields(ORATION_YAML, {"name": "staging"})
        lines = result.splitlines()
        assert lines[0] == "# oration settings"
        assert lines[2] == "name: staging"
        assert lines[3] == "blog: https://example.org"

    def test_nested_key_is_not_touched(self):
        text = "host: a\nnested:\n  host: b\n"
        assert substitute_fields(text, {"host": "c"}) == "host: c\nnested:\n  host: b\n"

    def test_crlf_line_endings_survive(self):
        text = "host: a\r\nname: b\r\n"
        assert substitute_fields(text, {"host": "z"}) == "host: z\r\nname: b\r\n"

    def test_missing_field_raises(self):
        with pytest.raises(ConfigError) as exc_info:
            substitute_fields("name: oration\n", {"host": "http://localhost/"})
        assert exc_info.value.step == "stage_config"

    def test_empty_field_is_filled(self):
        assert substitute_fields("host:\nname: oration\n", {"host": "http://localhost/"}) == (
            "host: http://localhost/\nname: oration\n"
        )
        assert substitute_fields("host:\r\nname: b\r\n", {"host": "z"}) == "host: z\r\nname: b\r\n"

    def test_key_prefix_is_not_a_field(self):
        with pytest.raises(ConfigError):
            substitute_fields("host:x\nhostname: a\n", {"host": "y"})

    def test_undecodable_file_is_config_error(self, tmp_path: Path):
        f = tmp_path / "oration.yaml"
        f.write_bytes(b"host: \xff\xfe\n")
        with pytest.raises(ConfigError) as exc_info:
            substitute_file(f, {"host": "http://localhost/"})
        assert exc_info.value.step == "stage_config"

    def test_substitute_file_in_place(self, tmp_path: Path):
        f = tmp_path / "oration.yaml"
        f.write_text(ORATION_YAML)
        substitute_file(f, {"host": "http://localhost/"})
        assert "host: http://localhost/\n" in f.read_text()


# ── Sanitizer ────────────────────────────────────────────────────────────────

class TestSourceMaps:

    def test_remove_source_maps(self, tmp_path: Path):
        (tmp_path / "js").mkdir()
        (tmp_path / "js" / "app.js").write_text("x")
        (tmp_path / "js" / "app.js.map").write_text("{}")
        (tmp_path / "site.css.map").write_text("{}")

        removed = remove_source_maps(tmp_path)
        assert sorted(p.name for p in removed) == ["app.js.map", "site.css.map"]
        assert find_source_maps(tmp_path) == []
        assert (tmp_path / "js" / "app.js").is_file()

    def test_missing_root_has_no_maps(self, tmp_path: Path):
        assert find_source_maps(tmp_path / "absent") == []


# ── Manifest ─────────────────────────────────────────────────────────────────

class TestManifest:

    def test_manifest_lives_beside_deploy_dir(self, tmp_path: Path):
        assert manifest_path_for(tmp_path / "deploy") == tmp_path / "deploy.manifest.json"

    def test_artifact_set_reports_missing(self, tmp_path: Path):
        (tmp_path / "oration").write_bytes(b"x")
        artifacts = ArtifactSet.from_deploy_dir(tmp_path, tmp_path / "public")
        assert artifacts.missing() == ["oration.yaml", ".env", "oration.db", "frontend_bundle"]
        assert not artifacts.is_complete()

    def test_verify_detects_tampering(self, staged_release: ReleaseBuilder):
        manifest = ReleaseManifest.load(staged_release.manifest_path)
        assert manifest.verify(staged_release.deploy_dir, staged_release.public_dir) == []

        (staged_release.deploy_dir / "oration.db").write_bytes(b"changed")
        (staged_release.public_dir / "extra.html").write_text("x")
        problems = manifest.verify(staged_release.deploy_dir, staged_release.public_dir)
        assert "hash mismatch: oration.db" in problems
        assert "frontend bundle digest mismatch" in problems

    def test_load_unreadable_manifest(self, tmp_path: Path):
        bad = tmp_path / "deploy.manifest.json"
        bad.write_text("{not json")
        with pytest.raises(ConfigError):
            ReleaseManifest.load(bad)

    def test_unexpected_entries(self, tmp_path: Path):
        (tmp_path / "oration").write_bytes(b"x")
        (tmp_path / "notes.txt").write_text("x")
        assert unexpected_entries(tmp_path) == ["notes.txt"]


# ── ReleaseBuilder ───────────────────────────────────────────────────────────

class TestReleaseBuilder:

    def test_build_stages_exactly_the_artifact_set(self, staged_release: ReleaseBuilder):
        deploy = staged_release.deploy_dir
        assert sorted(p.name for p in deploy.iterdir()) == sorted(ARTIFACT_FILES)
        assert not deploy.with_name("deploy.partial").exists()
        assert not deploy.with_name("deploy.previous").exists()
        assert staged_release.manifest_path.is_file()

    def test_executable_and_secret_modes(self, staged_release: ReleaseBuilder):
        deploy = staged_release.deploy_dir
        assert _mode(deploy / "oration") == 0o750
        assert _mode(deploy / ".env") == 0o600

    def test_config_override_applied_verbatim_elsewhere(self, staged_release: ReleaseBuilder):
        staged = (staged_release.deploy_dir / "oration.yaml").read_text()
        assert staged == ORATION_YAML.replace("https://comments.example.org/", "http://localhost/")

    def test_secrets_and_data_copied_verbatim(self, staged_release: ReleaseBuilder, oration_project: Path):
        deploy = staged_release.deploy_dir
        assert (deploy / ".env").read_bytes() == (oration_project / ".env").read_bytes()
        assert (deploy / "oration.db").read_bytes() == (oration_project / "oration.db").read_bytes()

    def test_public_tree_has_no_source_maps(self, staged_release: ReleaseBuilder):
        assert (staged_release.public_dir / "index.html").is_file()
        assert find_source_maps(staged_release.public_dir) == []

    def test_commands_run(self, staged_release: ReleaseBuilder, fake_runner):
        assert fake_runner.commands("cargo") == [
            ["cargo", "build", "--release", "--target", BUILD_TARGET],
        ]
        assert fake_runner.commands("npm") == [["npm", "run", "deploy"]]

    def test_builder_image_runs_in_container(self, oration_project: Path, fake_runner):
        builder = ReleaseBuilder(oration_project, builder_image="clux/muslrust", runner=fake_runner)
        builder.build_backend()
        argv = fake_runner.commands("docker")[0]
        assert f"{oration_project}:/home/rust/src" in argv
        assert argv[-3:] == ["cargo", "build", "--release"]

    def test_rebuild_is_stable(self, staged_release: ReleaseBuilder):
        before = Hasher.hash_folder(staged_release.deploy_dir)
        staged_release.build()
        assert Hasher.hash_folder(staged_release.deploy_dir) == before

    def test_custom_config_overrides(self, oration_project: Path, fake_runner):
        builder = ReleaseBuilder(
            oration_project,
            config_overrides={"host": "https://staging.example.org/"},
            runner=fake_runner,
        )
        builder.build()
        assert "host: https://staging.example.org/\n" in (builder.deploy_dir / "oration.yaml").read_text()

    def test_compile_failure_leaves_no_executable(self, builder: ReleaseBuilder, fake_runner):
        fake_runner.fail("cargo", stderr="error[E0308]: mismatched types")
        with pytest.raises(BuildError) as exc_info:
            builder.build()
        assert exc_info.value.step == "build_backend"
        assert "E0308" in exc_info.value.detail
        assert not builder.executable_path.exists()
        assert not builder.deploy_dir.exists()
        assert fake_runner.commands("npm") == []

    def test_frontend_failure_keeps_previous_release(self, staged_release: ReleaseBuilder, fake_runner):
        before = Hasher.hash_folder(staged_release.deploy_dir)
        manifest_before = staged_release.manifest_path.read_text()

        fake_runner.fail("npm", stderr="ERR! missing script: deploy")
        with pytest.raises(BuildError) as exc_info:
            staged_release.build()

        assert exc_info.value.step == "build_frontend"
        assert Hasher.hash_folder(staged_release.deploy_dir) == before
        assert staged_release.manifest_path.read_text() == manifest_before

    def test_missing_config_source_stages_nothing(self, builder: ReleaseBuilder, oration_project: Path):
        (oration_project / "oration.yaml").unlink()
        with pytest.raises(ConfigError) as exc_info:
            builder.build()
        assert exc_info.value.step == "stage_config"
        assert not builder.deploy_dir.exists()
        assert not builder.deploy_dir.with_name("deploy.partial").exists()

    def test_missing_data_file(self, builder: ReleaseBuilder, oration_project: Path):
        (oration_project / "oration.db").unlink()
        with pytest.raises(BuildError) as exc_info:
            builder.build()
        assert exc_info.value.step == "stage_data"
        assert not builder.deploy_dir.exists()

    def test_unsafe_executable_mode_is_refused_before_write(self, builder: ReleaseBuilder, tmp_path: Path):
        builder.build_backend()
        dest_dir = tmp_path / "scratch"
        dest_dir.mkdir()
        with pytest.raises(UnsafePermissionError):
            builder.stage_executable(0o775, dest_dir=dest_dir)
        assert not (dest_dir / "oration").exists()

    def test_build_frontend_reports_removed_maps(self, builder: ReleaseBuilder):
        removed = builder.build_frontend()
        assert [p.name for p in removed] == ["app.js.map"]

    def test_undecodable_config_stages_nothing(self, builder: ReleaseBuilder, oration_project: Path):
        (oration_project / "oration.yaml").write_bytes(b"host: \xff\n")
        with pytest.raises(ConfigError) as exc_info:
            builder.build()
        assert exc_info.value.step == "stage_config"
        assert not builder.deploy_dir.exists()
