"""Provisioning pipeline: ordered, idempotent deployment stages.

Each stage reads the :class:`PipelineContext`, performs its host changes
through the file-operation and command-runner seams, and reports through the
context's :class:`~mmdeploy.reporting.StatusReporter`. The first stage that
raises aborts the run; earlier stages are not rolled back. Every file a stage
writes is recorded in the :class:`UndoJournal` beforehand.
"""
from __future__ import annotations

import os
import secrets
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar

from .backups import BackupSnapshot, SnapshotStore
from .config import BUILTIN_EXAMPLES_DIR
from .effective import OPTIONAL_SOURCE_FILES, REQUIRED_SOURCE_FILES, EffectiveConfig
from .errors import ExternalCommandFailure, MMDeployError, PreconditionFailure
from .fileops import FileOps
from .providers import (
    ApacheProvider,
    CertbotProvider,
    NginxProvider,
    PhpProvider,
    SystemdProvider,
    WebServer,
    any_installed,
    detect_active,
)
from .reporting import ConflictPolicy, Prompter, StatusReporter
from .runner import CommandRunner
from .runtime_config import DEFAULT_API_KEY, build_bindings
from .templates import TemplateEngine, render_placeholders, unbound_placeholders

APP_DIR_MODE = 0o755
APP_FILE_MODE = 0o644
LOG_FILE_MODE = 0o640
GENERATED_FILE_MODE = 0o644

BUNDLED_CONFIG_TEMPLATE = BUILTIN_EXAMPLES_DIR / "config.php.template"


def _current_euid() -> int:
    return os.geteuid()


# ----------------------------------------------------------------------
# Undo journal
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class UndoToken:
    """How to return one path to its state before the run."""

    path: Path
    existed: bool
    content: bytes | None = None
    mode: int | None = None


@dataclass
class UndoJournal:
    """Records the prior state of every file the pipeline writes."""

    tokens: list[UndoToken] = field(default_factory=list)

    def record(self, path: Path, files: FileOps) -> UndoToken:
        """Capture *path* before its first modification in this run."""
        for token in self.tokens:
            if token.path == path:
                return token
        previous = files.read_file(path)
        if previous is None:
            token = UndoToken(path=path, existed=False)
        else:
            content, mode = previous
            token = UndoToken(path=path, existed=True, content=content, mode=mode)
        self.tokens.append(token)
        return token

    def replay(self, files: FileOps) -> None:
        """Undo recorded changes, newest first."""
        for token in reversed(self.tokens):
            if token.existed and token.content is not None:
                files.write_bytes(token.path, token.content, mode=token.mode or GENERATED_FILE_MODE)
            elif not token.existed:
                files.remove(token.path)


# ----------------------------------------------------------------------
# Context
# ----------------------------------------------------------------------
@dataclass
class Providers:
    """External collaborators, all driven through one command runner."""

    php: PhpProvider
    systemd: SystemdProvider
    apache: ApacheProvider
    nginx: NginxProvider
    certbot: CertbotProvider

    @classmethod
    def build(cls, runner: CommandRunner, files: FileOps) -> Providers:
        """Create the default provider set."""
        systemd = SystemdProvider(runner)
        return cls(
            php=PhpProvider(runner),
            systemd=systemd,
            apache=ApacheProvider(runner, systemd, files),
            nginx=NginxProvider(runner, systemd),
            certbot=CertbotProvider(runner),
        )

    @property
    def web_servers(self) -> tuple[WebServer, ...]:
        """Supported servers in detection order."""
        return (self.apache, self.nginx)


@dataclass
class PipelineContext:
    """Everything a stage needs; shared by all stages of one run."""

    effective: EffectiveConfig
    runner: CommandRunner
    files: FileOps
    templates: TemplateEngine
    reporter: StatusReporter
    prompter: Prompter
    policy: ConflictPolicy = ConflictPolicy.ASK
    api_key: str | None = None
    config_template: Path | None = None
    providers: Providers | None = None
    euid: Callable[[], int] = field(default=_current_euid)
    journal: UndoJournal = field(default_factory=UndoJournal)
    web_server: WebServer | None = None
    site_written: bool = False
    synced_files: list[Path] = field(default_factory=list)
    snapshot: BackupSnapshot | None = None

    def __post_init__(self) -> None:
        """Fill in the default providers."""
        if self.providers is None:
            self.providers = Providers.build(self.runner, self.files)

    @property
    def tools(self) -> Providers:
        """Return the provider set."""
        assert self.providers is not None
        return self.providers

    def should_write(self, path: Path, label: str) -> bool:
        """Apply the conflict policy to an artifact about to be generated."""
        if not path.exists():
            return True
        if self.policy is ConflictPolicy.OVERWRITE:
            self.reporter.warning(f"Overwriting existing {label}: {path}")
            return True
        if self.policy is ConflictPolicy.KEEP:
            self.reporter.info(f"Keeping existing {label}: {path}")
            return False
        self.reporter.warning(f"{label} already exists at: {path}")
        if self.prompter.confirm(f"Overwrite the existing {label}?", default=False):
            self.reporter.warning(f"Overwriting existing {label}")
            return True
        self.reporter.info(f"Keeping existing {label}")
        return False

    def write_artifact(
        self,
        path: Path,
        text: str,
        *,
        mode: int = GENERATED_FILE_MODE,
        owner: str | None = None,
        group: str | None = None,
    ) -> None:
        """Journal *path* and replace it with *text*."""
        self.journal.record(path, self.files)
        self.files.write_text(path, text, mode=mode, owner=owner, group=group)
        self.reporter.mark_changed()

    def render(self, template_name: str, **extra: object) -> str:
        """Render a bundled template with the standard context."""
        context = template_context(self.effective, web_server=self.web_server)
        context.update(extra)
        return self.templates.render_to_string(template_name, context)


def template_context(
    effective: EffectiveConfig,
    *,
    web_server: WebServer | None = None,
) -> dict[str, object]:
    """Return the variables shared by the vhost, logrotate and unit templates."""
    service = "nginx" if web_server is not None and web_server.name == "nginx" else "apache2"
    return {
        "domain": effective.domain,
        "app_name": effective.app_name,
        "app_path": str(effective.app_path),
        "server_aliases": [name for name in effective.ssl_alt_domains if name != effective.domain],
        "security_headers": effective.security_headers,
        "rate_limiting": effective.rate_limiting,
        "rate_limit": effective.rate_limit,
        "php": {
            "upload_max_filesize": effective.upload_max_filesize,
            "post_max_size": effective.post_max_size,
            "max_execution_time": effective.max_execution_time,
            "memory_limit": effective.memory_limit,
            "session_gc_maxlifetime": effective.session_gc_maxlifetime,
        },
        "certificate_path": str(effective.certificate_path),
        "certificate_key_path": str(effective.certificate_key_path),
        "log_dir": effective.log_dir,
        "log_retention_days": effective.log_retention_days,
        "web_user": effective.web_user,
        "web_group": effective.web_group,
        "secure_config_dir": str(effective.runtime_config_dir),
        "env_file": effective.env_file,
        "server_service": service,
        "tls": False,
    }


# ----------------------------------------------------------------------
# Shared stage helpers
# ----------------------------------------------------------------------
def check_sources(source: Path) -> None:
    """Raise :class:`PreconditionFailure` unless every entry point exists."""
    if not source.is_dir():
        raise PreconditionFailure(
            f"Source directory not found: {source}. "
            "Ensure the sources are available or update source_dir."
        )
    missing = [name for name in REQUIRED_SOURCE_FILES if not (source / name).is_file()]
    if missing:
        raise PreconditionFailure(
            f"Required source files missing in {source}: {', '.join(missing)}"
        )


def sync_sources(
    effective: EffectiveConfig,
    files: FileOps,
    reporter: StatusReporter,
    journal: UndoJournal | None = None,
) -> list[Path]:
    """Copy the application sources into the app directory; return the copied paths."""
    source = effective.source_path
    check_sources(source)
    destination = effective.app_path
    copied: list[Path] = []
    names = sorted(entry.name for entry in source.glob("*.php") if entry.is_file())
    for name in names:
        target = destination / name
        if journal is not None:
            journal.record(target, files)
        files.copy_file(source / name, target)
        copied.append(target)
    for name in OPTIONAL_SOURCE_FILES:
        if name in names:
            continue
        candidate = source / name
        if candidate.is_file():
            target = destination / name
            if journal is not None:
                journal.record(target, files)
            files.copy_file(candidate, target)
            copied.append(target)
            reporter.info(f"{name} copied")
        else:
            reporter.warning(f"{name} not found in {source}")
    reporter.info(f"Application files copied from: {source}")
    return copied


def fix_permissions(effective: EffectiveConfig, files: FileOps, paths: Sequence[Path]) -> None:
    """Give *paths* to the web user with mode 644."""
    for path in paths:
        files.chown(path, effective.web_user, effective.web_group)
        files.chmod(path, APP_FILE_MODE)


# ----------------------------------------------------------------------
# Stages
# ----------------------------------------------------------------------
class Stage:
    """Base class; subclasses implement :meth:`run`."""

    name: ClassVar[str] = "stage"
    title: ClassVar[str] = "Running stage"

    def enabled(self, ctx: PipelineContext) -> bool:
        """Return False to skip the stage for this configuration."""
        return True

    def run(self, ctx: PipelineContext) -> None:
        raise NotImplementedError


class Preflight(Stage):
    """Refuse root, require PHP and a web server, check version and extensions."""

    name = "preflight"
    title = "Checking prerequisites"

    def run(self, ctx: PipelineContext) -> None:
        if ctx.euid() == 0:
            raise PreconditionFailure(
                "This command should not be run as root. It uses sudo when needed."
            )
        php = ctx.tools.php
        if not php.installed():
            raise PreconditionFailure("PHP is not installed. Please install PHP first.")
        if not any_installed(ctx.tools.web_servers):
            raise PreconditionFailure("No web server found. Please install Apache or Nginx.")

        minimum = ctx.effective.php_min_version
        ok, current = php.meets(minimum)
        if not ok:
            raise PreconditionFailure(f"PHP {minimum} or higher is required (found {current}).")
        ctx.reporter.info(f"PHP version {current} meets the requirement (>= {minimum})")

        required = ctx.effective.required_extensions
        if not required:
            return
        loaded = php.modules()
        for extension in required:
            if extension.lower() in loaded:
                continue
            ctx.reporter.warning(f"PHP extension missing: {extension}; attempting install")
            result = php.install_extension(extension)
            if result.ok:
                ctx.reporter.info(f"Installed php-{extension}")
            else:
                ctx.reporter.warning(f"Failed to install php-{extension}; continuing")


class BackupStage(Stage):
    """Snapshot an existing installation before it is replaced."""

    name = "backup"
    title = "Backing up existing installation"

    def enabled(self, ctx: PipelineContext) -> bool:
        effective = ctx.effective
        return effective.enable_backup and bool(effective.backup_dir) and effective.app_path.is_dir()

    def run(self, ctx: PipelineContext) -> None:
        store = SnapshotStore(Path(ctx.effective.backup_dir), ctx.files, ctx.runner)
        ctx.snapshot = store.create(ctx.effective.app_path)
        ctx.reporter.info(f"Backup created at {ctx.snapshot.path}")


class DirectorySetup(Stage):
    """Ensure the application directory exists with the right owner and mode."""

    name = "directory-setup"
    title = "Preparing application directory"

    def run(self, ctx: PipelineContext) -> None:
        effective = ctx.effective
        ctx.files.mkdir(
            effective.app_path,
            mode=APP_DIR_MODE,
            owner=effective.web_user,
            group=effective.web_group,
        )
        ctx.reporter.info(f"Application directory ready: {effective.app_path}")


class FileSync(Stage):
    """Copy the application sources into the app directory."""

    name = "file-sync"
    title = "Copying application files"

    def run(self, ctx: PipelineContext) -> None:
        ctx.synced_files = sync_sources(ctx.effective, ctx.files, ctx.reporter, ctx.journal)


class PermissionFix(Stage):
    """Set ownership and mode on every synced file."""

    name = "permission-fix"
    title = "Setting file permissions"

    def run(self, ctx: PipelineContext) -> None:
        fix_permissions(ctx.effective, ctx.files, ctx.synced_files)


class ConfigGeneration(Stage):
    """Render ``config.php`` and prepare the secure and log directories."""

    name = "config-generation"
    title = "Generating configuration file"

    def run(self, ctx: PipelineContext) -> None:
        effective = ctx.effective
        template_path = ctx.config_template or BUNDLED_CONFIG_TEMPLATE
        if not template_path.is_file():
            raise PreconditionFailure(f"Configuration template not found: {template_path}")

        if effective.runtime_config_secure:
            ctx.files.mkdir(
                effective.runtime_config_dir,
                mode=effective.secure_dir_mode,
                owner=effective.web_user,
                group=effective.web_group,
            )
            ctx.reporter.info(f"Secure configuration directory: {effective.runtime_config_dir}")
        self._prepare_logs(ctx)

        destination = effective.runtime_config_path
        if not ctx.should_write(destination, "configuration file"):
            return

        api_key = ctx.api_key
        if api_key is None:
            default = effective.raw.get("alpha_vantage_api_key") or DEFAULT_API_KEY
            api_key = ctx.prompter.ask(
                "Enter your Alpha Vantage API key (or press Enter to use demo mode)",
                default=default,
            )
        bindings = build_bindings(effective, api_key=api_key)
        template_text = template_path.read_text(encoding="utf-8")
        unbound = unbound_placeholders(template_text, bindings)
        if unbound:
            ctx.reporter.warning(f"Unbound placeholders left in template: {', '.join(unbound)}")
        mode = effective.config_file_mode if effective.runtime_config_secure else GENERATED_FILE_MODE
        ctx.write_artifact(
            destination,
            render_placeholders(template_text, bindings),
            mode=mode,
            owner=effective.web_user,
            group=effective.web_group,
        )
        ctx.reporter.info(f"Configuration file generated: {destination}")

    def _prepare_logs(self, ctx: PipelineContext) -> None:
        effective = ctx.effective
        log_file = effective.log_file
        if log_file is None:
            return
        ctx.files.mkdir(
            log_file.parent,
            mode=effective.secure_dir_mode,
            owner=effective.web_user,
            group=effective.web_group,
        )
        ctx.files.append_text(log_file, "")
        ctx.files.chown(log_file, effective.web_user, effective.web_group)
        ctx.files.chmod(log_file, LOG_FILE_MODE)
        ctx.reporter.info(f"Log directory: {log_file.parent}")


def install_site(ctx: PipelineContext, server: WebServer, *, tls: bool) -> None:
    """Write the virtual host for *server*, rendering the TLS branch when asked."""
    path = server.site_path(ctx.effective)
    ctx.write_artifact(path, ctx.render(server.template_name, tls=tls))
    ctx.site_written = True
    ctx.reporter.info(f"{server.name} virtual host written: {path}")


class WebServerConfig(Stage):
    """Create and activate the virtual host on the running web server."""

    name = "web-server"
    title = "Configuring web server"

    def run(self, ctx: PipelineContext) -> None:
        server = detect_active(ctx.tools.web_servers)
        if server is None:
            ctx.reporter.warning(
                "No active web server detected (Apache or Nginx); "
                "skipping virtual host configuration"
            )
            return
        ctx.web_server = server
        effective = ctx.effective
        tls = effective.enable_ssl and ctx.tools.certbot.certificate_exists(
            effective.certificate_path
        )
        if ctx.should_write(server.site_path(effective), f"{server.name} configuration"):
            install_site(ctx, server, tls=tls)
        server.prepare(effective, tls=tls)
        server.enable_site(effective)
        server.configtest()
        server.reload()
        ctx.reporter.info(f"{server.name} configuration is valid and reloaded")


class LogRotationSetup(Stage):
    """Install the logrotate rule for the application logs."""

    name = "log-rotation"
    title = "Setting up log rotation"

    def enabled(self, ctx: PipelineContext) -> bool:
        return ctx.effective.enable_logrotate

    def run(self, ctx: PipelineContext) -> None:
        path = Path(ctx.effective.logrotate_file)
        if not ctx.should_write(path, "log rotation configuration"):
            return
        ctx.write_artifact(path, ctx.render("logrotate/rules.j2"))
        ctx.reporter.info(f"Log rotation configuration created: {path}")


class ServiceSetup(Stage):
    """Install the marker unit and its environment file, then enable it."""

    name = "service"
    title = "Setting up systemd service"

    def enabled(self, ctx: PipelineContext) -> bool:
        return ctx.effective.enable_service

    def run(self, ctx: PipelineContext) -> None:
        effective = ctx.effective
        unit_path = Path(effective.service_file)
        env_path = Path(effective.env_file)
        if ctx.should_write(unit_path, "systemd service"):
            ctx.write_artifact(unit_path, ctx.render("systemd/service.j2"))
            ctx.reporter.info(f"Systemd service created: {unit_path}")
        if ctx.should_write(env_path, "environment file"):
            ctx.write_artifact(env_path, ctx.render("systemd/environment.j2"))
            ctx.reporter.info(f"Environment file created: {env_path}")

        systemd = ctx.tools.systemd
        systemd.daemon_reload()
        unit = effective.service_name
        if systemd.enable(unit).ok:
            ctx.reporter.info(f"Systemd service enabled: {unit}")
        else:
            ctx.reporter.warning(f"Systemd service may already be enabled: {unit}")
        if systemd.start(unit).ok:
            ctx.reporter.info(f"Systemd service started: {unit}")
        else:
            ctx.reporter.warning(f"Systemd service may already be running: {unit}")


class TlsSetup(Stage):
    """Obtain a certificate and switch the virtual host to TLS."""

    name = "tls"
    title = "Setting up SSL certificate"

    def enabled(self, ctx: PipelineContext) -> bool:
        return ctx.effective.enable_ssl

    def run(self, ctx: PipelineContext) -> None:
        effective = ctx.effective
        server = ctx.web_server or detect_active(ctx.tools.web_servers)
        if server is None:
            raise PreconditionFailure("No active web server; cannot obtain an SSL certificate.")
        ctx.web_server = server
        if server.name == "apache":
            apache = ctx.tools.apache
            apache.enable_modules("ssl", "headers", "socache_shmcb")
            if apache.ensure_stapling_cache(Path(effective.ssl_stapling_conf)):
                ctx.reporter.info(f"OCSP stapling cache added to {effective.ssl_stapling_conf}")

        certbot = ctx.tools.certbot
        if not certbot.installed():
            ctx.reporter.warning("Certbot not found; installing")
            certbot.install(server.certbot_plugin)
        names = effective.certificate_names
        certbot.obtain(names, email=effective.ssl_email, plugin=server.certbot_plugin)
        ctx.reporter.info(f"SSL certificate obtained for {', '.join(names)}")

        if ctx.site_written:
            install_site(ctx, server, tls=True)
            server.configtest()
            server.reload()
        else:
            ctx.reporter.warning(
                "Existing virtual host was kept; add the TLS configuration to it manually"
            )
        self._inspect(ctx, names)

    def _inspect(self, ctx: PipelineContext, names: Sequence[str]) -> None:
        try:
            report = ctx.tools.certbot.inspect(ctx.effective.certificate_path, names)
        except (ExternalCommandFailure, ValueError) as exc:
            ctx.reporter.warning(f"Unable to inspect the issued certificate: {exc}")
            return
        if report.missing:
            ctx.reporter.warning(f"Certificate does not cover: {', '.join(report.missing)}")
        if report.expired:
            ctx.reporter.warning(f"Certificate expired on {report.not_valid_after.isoformat()}")
        else:
            ctx.reporter.info(f"Certificate valid until {report.not_valid_after.isoformat()}")


class Verification(Stage):
    """Load the generated configuration as the web user."""

    name = "verification"
    title = "Testing configuration"

    def run(self, ctx: PipelineContext) -> None:
        effective = ctx.effective
        probe = effective.runtime_config_dir / f"mmdeploy_probe_{secrets.token_hex(4)}.php"
        try:
            ctx.files.write_text(
                probe,
                ctx.render("php/probe.php.j2", config_path=str(effective.runtime_config_path)),
                mode=0o600,
                owner=effective.web_user,
                group=effective.web_group,
            )
            result = ctx.tools.php.run_script_as(effective.web_user, probe)
            if not result.ok:
                raise ExternalCommandFailure(
                    result.args,
                    result.returncode,
                    result.output,
                    summary="Configuration test failed",
                )
            ctx.reporter.info("Configuration test passed")
        finally:
            ctx.files.remove(probe)


class LintVerification(Stage):
    """Syntax-check the deployed entry point."""

    name = "verification"
    title = "Testing deployment"

    def run(self, ctx: PipelineContext) -> None:
        index = ctx.effective.app_path / "index.php"
        result = ctx.tools.php.lint(index)
        if not result.ok:
            raise ExternalCommandFailure(
                result.args,
                result.returncode,
                result.output,
                summary=f"PHP syntax check failed for {index}",
            )
        ctx.reporter.info("PHP syntax check passed")


# ----------------------------------------------------------------------
# Pipeline
# ----------------------------------------------------------------------
@dataclass
class PipelineResult:
    """Outcome of a completed pipeline run."""

    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    journal: UndoJournal = field(default_factory=UndoJournal)
    snapshot: BackupSnapshot | None = None


@dataclass
class ProvisioningPipeline:
    """Run *stages* in order; the first failure aborts the rest."""

    stages: Sequence[Stage]

    def run(self, ctx: PipelineContext) -> PipelineResult:
        """Execute the stages against *ctx*."""
        result = PipelineResult(journal=ctx.journal)
        for stage in self.stages:
            if not stage.enabled(ctx):
                result.skipped.append(stage.name)
                continue
            ctx.reporter.info(f"{stage.title}...", step=stage.name)
            try:
                stage.run(ctx)
            except MMDeployError as exc:
                ctx.reporter.error(f"{stage.title} failed: {exc}", step=stage.name)
                raise
            result.completed.append(stage.name)
        result.snapshot = ctx.snapshot
        return result


def deploy_stages() -> list[Stage]:
    """Stages of a first-time deployment."""
    return [
        Preflight(),
        BackupStage(),
        DirectorySetup(),
        FileSync(),
        PermissionFix(),
        ConfigGeneration(),
        WebServerConfig(),
        LintVerification(),
    ]


def production_stages() -> list[Stage]:
    """Stages of a full production deployment."""
    return [
        Preflight(),
        DirectorySetup(),
        FileSync(),
        PermissionFix(),
        ConfigGeneration(),
        WebServerConfig(),
        LogRotationSetup(),
        ServiceSetup(),
        TlsSetup(),
        Verification(),
    ]


MODES: dict[str, Callable[[], list[Stage]]] = {
    "deploy": deploy_stages,
    "production": production_stages,
}


def build_pipeline(mode: str) -> ProvisioningPipeline:
    """Return the pipeline for *mode* (``deploy`` or ``production``)."""
    try:
        factory = MODES[mode]
    except KeyError as exc:
        raise ValueError(f"Unknown deployment mode: {mode}") from exc
    return ProvisioningPipeline(factory())


__all__ = [
    "BackupStage",
    "ConfigGeneration",
    "DirectorySetup",
    "FileSync",
    "LintVerification",
    "LogRotationSetup",
    "MODES",
    "PermissionFix",
    "PipelineContext",
    "PipelineResult",
    "Preflight",
    "ProvisioningPipeline",
    "Providers",
    "ServiceSetup",
    "Stage",
    "TlsSetup",
    "UndoJournal",
    "UndoToken",
    "Verification",
    "WebServerConfig",
    "build_pipeline",
    "check_sources",
    "deploy_stages",
    "fix_permissions",
    "production_stages",
    "sync_sources",
    "template_context",
]
