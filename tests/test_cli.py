"""Tests for the oration-deploy command line."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from oration_deploy import cli
from oration_deploy.cli import app
from oration_deploy.host.activator import ActivationReport
from oration_deploy.host.runner import ChrootRunner

from test_proxy import PROXIED_LINE, STATIC_LINE

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated(monkeypatch):
    monkeypatch.delenv("ORATION_ENV", raising=False)
    monkeypatch.delenv("ORATION_HEALTH_URL", raising=False)
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in saved[0]:
        root.addHandler(handler)
    root.setLevel(saved[1])


# ── Configuration commands ───────────────────────────────────────────────────

class TestConfigCommands:

    def test_show_config(self, tmp_path: Path):
        (tmp_path / ".oration-deploy").mkdir()
        (tmp_path / ".oration-deploy" / "config.json").write_text(
            json.dumps({"ORATION_SERVER_NAME": "comments.example.org"})
        )
        result = runner.invoke(app, ["show-config", "--project", str(tmp_path)])
        assert result.exit_code == 0
        data = yaml.safe_load(result.output)
        assert data["server_name"] == "comments.example.org"
        assert data["upstream_port"] == 8000

    def test_show_config_invalid(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("ORATION_UPSTREAM_PORT", "not-a-port")
        result = runner.invoke(app, ["show-config", "--project", str(tmp_path)])
        assert result.exit_code == 1
        assert "[load_config]" in result.output

    def test_env_template(self, tmp_path: Path):
        result = runner.invoke(app, ["env-template", "--project", str(tmp_path)])
        assert result.exit_code == 0
        assert (tmp_path / "deploy.env.example").is_file()

    def test_render_config(self, tmp_path: Path):
        out = tmp_path / "config"
        result = runner.invoke(
            app, ["render-config", "--output-dir", str(out), "--project", str(tmp_path)],
        )
        assert result.exit_code == 0
        assert (out / "nginx.conf").is_file()
        assert (out / "host.yaml").is_file()


# ── Release and host commands ────────────────────────────────────────────────

class TestReleaseCommands:

    def test_check_staged_release(self, staged_release, oration_project: Path):
        result = runner.invoke(app, ["check", "--project", str(oration_project)])
        assert result.exit_code == 0
        assert "status: healthy" in result.output

    def test_check_missing_release_fails(self, tmp_path: Path):
        result = runner.invoke(app, ["check", "--project", str(tmp_path)])
        assert result.exit_code == 1
        assert "status: unhealthy" in result.output

    def test_package(self, staged_release, oration_project: Path, tmp_path: Path):
        out = tmp_path / "dist" / "release.tar.gz"
        result = runner.invoke(
            app, ["package", "--output", str(out), "--project", str(oration_project)],
        )
        assert result.exit_code == 0
        assert out.is_file()

    def test_activate_reports_failing_step(self, tmp_path: Path):
        bad = tmp_path / "host.yaml"
        bad.write_text("unit: [unclosed\n")
        result = runner.invoke(
            app, ["activate", "--descriptor", str(bad), "--project", str(tmp_path)],
        )
        assert result.exit_code == 1
        assert "[load_descriptor]" in result.output

    def test_activate_defaults_to_project_public_dir(
        self, host_descriptor, staged_release, oration_project: Path, tmp_path: Path, monkeypatch,
    ):
        seen = {}

        class RecordingActivator:
            def __init__(self, descriptor, release_dir, *, public_dir=None):
                seen["release_dir"], seen["public_dir"] = release_dir, public_dir
                self.report = ActivationReport()

            def activate(self):
                return self.report

        monkeypatch.setattr(cli, "HostActivator", RecordingActivator)
        result = runner.invoke(
            app,
            ["activate", "--descriptor", str(tmp_path / "config" / "host.yaml"),
             "--project", str(oration_project)],
        )
        assert result.exit_code == 0
        assert seen["release_dir"] == staged_release.deploy_dir
        assert seen["public_dir"] == staged_release.public_dir

    def test_activate_gives_each_host_its_own_chroot(
        self, host_descriptor, staged_release, oration_project: Path, tmp_path: Path, monkeypatch,
    ):
        seen = {}

        def recording_activate_hosts(targets, descriptor, release_dir, **kwargs):
            seen["targets"] = targets
            return {t.name: ActivationReport(host=t.name) for t in targets}

        monkeypatch.setattr(cli, "activate_hosts", recording_activate_hosts)
        result = runner.invoke(
            app,
            [
                "activate",
                "--descriptor", str(tmp_path / "config" / "host.yaml"),
                "--host", f"web-1={tmp_path / 'mnt-web1'}",
                "--host", f"web-2={tmp_path / 'mnt-web2'}",
                "--project", str(oration_project),
            ],
        )
        assert result.exit_code == 0
        targets = seen["targets"]
        assert all(isinstance(t.runner, ChrootRunner) for t in targets)
        assert [t.runner.root for t in targets] == [tmp_path / "mnt-web1", tmp_path / "mnt-web2"]
        assert targets[0].runner is not targets[1].runner

    def test_activate_rejects_bad_host_option(self, host_descriptor, staged_release, tmp_path: Path):
        result = runner.invoke(
            app,
            [
                "activate",
                "--descriptor", str(tmp_path / "config" / "host.yaml"),
                "--release-dir", str(staged_release.deploy_dir),
                "--host", "web-1",
                "--project", str(tmp_path),
            ],
        )
        assert result.exit_code != 0


# ── access-report ────────────────────────────────────────────────────────────

class TestAccessReport:

    def test_report_from_file(self, tmp_path: Path):
        log = tmp_path / "oration.access.log"
        log.write_text(PROXIED_LINE + "\n" + STATIC_LINE + "\n")
        result = runner.invoke(app, ["access-report", str(log)])
        assert result.exit_code == 0
        data = yaml.safe_load(result.output)
        assert data["total"] == 2
        assert data["proxied"] == 1

    def test_report_from_stdin(self):
        result = runner.invoke(app, ["access-report"], input=PROXIED_LINE + "\n")
        assert result.exit_code == 0
        assert yaml.safe_load(result.output)["total"] == 1
