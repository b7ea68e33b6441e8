"""Typer CLI entrypoint for oration_deploy."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import NoReturn

import typer
import yaml

from oration_deploy.config_manager import ConfigManager, DeploySettings
from oration_deploy.errors import DeployError
from oration_deploy.health import HealthChecker, HealthReport
from oration_deploy.host.activator import (
    ActivationReport,
    HostActivator,
    HostTarget,
    activate_hosts,
)
from oration_deploy.host.descriptor import load_descriptor
from oration_deploy.host.runner import ChrootRunner
from oration_deploy.logging_utils import configure_logging
from oration_deploy.proxy.access_log import summarize_access_log
from oration_deploy.proxy.templates import ProxyConfigGenerator
from oration_deploy.release.builder import ReleaseBuilder
from oration_deploy.release.packager import ReleasePackager

app = typer.Typer(
    add_completion=False,
    help="Build oration releases and activate them on hosts.",
    no_args_is_help=True,
)

_PROJECT_OPTION = typer.Option(
    Path("."),
    "--project",
    help="Project root holding .oration-deploy/config.json.",
    file_okay=False,
)
_VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level.")
_LOG_FILE_OPTION = typer.Option(None, "--log-file", help="Also write logs to this file.")


def _load_settings(project: Path, verbose: bool = False, log_file: Path | None = None) -> DeploySettings:
    try:
        settings = ConfigManager().load_settings(project)
    except DeployError as exc:
        _fail(exc)
    configure_logging("DEBUG" if verbose else settings.log_level, log_file)
    return settings


def _fail(exc: DeployError) -> NoReturn:
    step = f" [{exc.step}]" if exc.step else ""
    typer.echo(f"error{step}: {exc}", err=True)
    if exc.detail and exc.detail not in str(exc):
        typer.echo(exc.detail, err=True)
    raise typer.Exit(code=1)


def _resolve(project: Path, path: Path) -> Path:
    return path if path.is_absolute() else project / path


def _echo_report(report: ActivationReport) -> None:
    typer.echo(f"host: {report.host}")
    typer.echo(f"status: {report.status}")
    for step in report.steps:
        marker = "changed" if step.changed else "ok"
        suffix = f" ({step.message})" if step.message else ""
        typer.echo(f"  {step.name}: {marker}{suffix}")
    if report.failed_step:
        typer.echo(f"  {report.failed_step}: FAILED {report.error}")


def _echo_health(report: HealthReport) -> None:
    typer.echo(f"status: {report.status}")
    for check in report.checks:
        mark = "PASS" if check.passed else "FAIL"
        typer.echo(f"  [{mark}] {check.name}: {check.message}")


@app.command("show-config")
def show_config(project: Path = _PROJECT_OPTION) -> None:
    """Print the effective configuration after env overrides."""

    try:
        settings = ConfigManager().load_settings(project)
    except DeployError as exc:
        _fail(exc)
    typer.echo(yaml.safe_dump(settings.model_dump(mode="json"), sort_keys=False))


@app.command("env-template")
def env_template(project: Path = _PROJECT_OPTION) -> None:
    """Write deploy.env.example listing every configuration key."""

    path = ConfigManager().generate_env_template(project)
    typer.echo(f"env_template_path: {path}")


@app.command("build")
def build(
    project: Path = _PROJECT_OPTION,
    verbose: bool = _VERBOSE_OPTION,
    log_file: Path | None = _LOG_FILE_OPTION,
) -> None:
    """Compile the backend, bundle the frontend and stage the release."""

    settings = _load_settings(project, verbose, log_file)
    builder = ReleaseBuilder(
        project,
        deploy_dir=settings.deploy_dir,
        public_dir=settings.public_dir,
        frontend_dir=settings.frontend_dir,
        build_target=settings.build_target,
        builder_image=settings.builder_image or None,
        config_overrides=settings.config_overrides,
    )
    try:
        manifest = builder.build()
    except DeployError as exc:
        _fail(exc)

    typer.echo(f"release_id: {manifest.release_id}")
    typer.echo(f"deploy_dir: {builder.deploy_dir}")
    typer.echo(f"manifest_path: {builder.manifest_path}")
    typer.echo(f"public_files: {manifest.public_files}")


@app.command("package")
def package(
    output: Path = typer.Option(..., "--output", "-o", help="Archive path (.tar.gz)."),
    project: Path = _PROJECT_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Bundle the staged release and public tree into an archive."""

    settings = _load_settings(project, verbose)
    try:
        archive = ReleasePackager().package(
            _resolve(project, settings.deploy_dir),
            output,
            public_dir=_resolve(project, settings.public_dir),
        )
    except DeployError as exc:
        _fail(exc)
    typer.echo(f"archive_path: {archive}")


@app.command("activate")
def activate(
    descriptor: Path = typer.Option(..., "--descriptor", "-d", help="Host descriptor YAML.", dir_okay=False),
    release_dir: Path | None = typer.Option(None, "--release-dir", help="Staged deployment directory."),
    public_dir: Path | None = typer.Option(None, "--public-dir", help="Built frontend tree."),
    archive: Path | None = typer.Option(None, "--archive", help="Release archive to unpack and activate."),
    work_dir: Path = typer.Option(
        Path(".oration-deploy/releases"), "--work-dir", help="Where archives are unpacked.",
    ),
    hosts: list[str] = typer.Option(
        [], "--host", help="NAME=ROOT of a mounted host filesystem; commands run via chroot ROOT. Repeatable.",
    ),
    max_workers: int = typer.Option(4, "--max-workers", min=1, help="Hosts converged in parallel."),
    project: Path = _PROJECT_OPTION,
    verbose: bool = _VERBOSE_OPTION,
    log_file: Path | None = _LOG_FILE_OPTION,
) -> None:
    """Converge the local host (or each --host) to the descriptor."""

    settings = _load_settings(project, verbose, log_file)

    if archive is not None:
        result = ReleasePackager().extract(archive, work_dir / archive.name.removesuffix(".tar.gz"))
        if not result.success:
            typer.echo(f"error [extract]: {'; '.join(result.warnings)}", err=True)
            raise typer.Exit(code=1)
        release_dir = Path(result.deploy_dir)
        if public_dir is None and result.public_dir:
            public_dir = Path(result.public_dir)
    if release_dir is None:
        release_dir = _resolve(project, settings.deploy_dir)
    if public_dir is None:
        public_dir = _resolve(project, settings.public_dir)

    try:
        host_descriptor = load_descriptor(descriptor)
    except DeployError as exc:
        _fail(exc)

    if not hosts:
        activator = HostActivator(host_descriptor, release_dir, public_dir=public_dir)
        try:
            report = activator.activate()
        except DeployError as exc:
            _echo_report(activator.report)
            _fail(exc)
        _echo_report(report)
        return

    targets = []
    for entry in hosts:
        name, sep, root = entry.partition("=")
        if not sep or not name or not root:
            raise typer.BadParameter("--host must be NAME=ROOT")
        targets.append(HostTarget(name=name, root=Path(root), runner=ChrootRunner(root)))

    try:
        reports = activate_hosts(
            targets, host_descriptor, release_dir, public_dir=public_dir, max_workers=max_workers,
        )
    except DeployError as exc:
        _fail(exc)

    failed = False
    for name in sorted(reports):
        _echo_report(reports[name])
        failed = failed or reports[name].status == "failed"
    if failed:
        raise typer.Exit(code=1)


@app.command("check")
def check(
    url: str | None = typer.Option(None, "--url", help="Probe a running edge instead of the release."),
    project: Path = _PROJECT_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Report the health of the staged release or of a running edge."""

    settings = _load_settings(project, verbose)
    checker = HealthChecker()
    probe_url = url or settings.health_url
    try:
        if probe_url:
            report = checker.check_edge(probe_url)
        else:
            report = checker.check_release(
                _resolve(project, settings.deploy_dir),
                _resolve(project, settings.public_dir),
            )
    except DeployError as exc:
        _fail(exc)

    _echo_health(report)
    if report.status == "unhealthy":
        raise typer.Exit(code=1)


@app.command("render-config")
def render_config(
    output_dir: Path = typer.Option(Path("config"), "--output-dir", help="Directory for generated files."),
    project: Path = _PROJECT_OPTION,
) -> None:
    """Generate nginx.conf, the vhost, the unit file and host.yaml."""

    settings = _load_settings(project)
    for path in ProxyConfigGenerator(settings).generate(output_dir):
        typer.echo(f"generated: {path}")


@app.command("access-report")
def access_report(
    log_path: Path | None = typer.Argument(None, help="Access log to read; stdin when omitted."),
) -> None:
    """Summarize an access log written with the oration log format."""

    if log_path is None:
        summary = summarize_access_log(sys.stdin)
    else:
        with log_path.open(encoding="utf-8", errors="replace") as fh:
            summary = summarize_access_log(fh)
    typer.echo(yaml.safe_dump(summary.model_dump(), sort_keys=False))
