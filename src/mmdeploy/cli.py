"""Typer-powered command line for ``mmdeploy``.

Commands stay thin: they load configuration, pick the domain, build a
:class:`~mmdeploy.pipeline.PipelineContext` and hand over to the pipeline or
the code-only updater. Errors raised by the core are caught once per command
by :func:`_command_error`, printed in red and mapped to the exit code the
error carries.
"""
from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
import yaml
from rich.console import Console
from rich.table import Table

from . import __version__
from . import config as config_store
from . import domains as domain_registry
from .backups import SnapshotStore
from .config import DEFAULT_DOMAINS_FILE, DEFAULT_OPERATIONS_LOG_DIR, GlobalConfig
from .effective import EffectiveConfig
from .errors import (
    ConfigBootstrapped,
    ConfigError,
    ConfigNotFound,
    ExitCode,
    ExternalCommandFailure,
    MMDeployError,
    OutOfRange,
    ValidationFailure,
)
from .fileops import FileOps, SudoFileOps
from .logging import OperationScope, StructuredLogger
from .pipeline import PipelineContext, build_pipeline
from .reporting import ConflictPolicy, StatusReporter, TyperPrompter
from .runner import CommandRunner, SystemCommandRunner
from .templates import TemplateEngine
from .updater import CodeOnlyUpdater

log = logging.getLogger(__name__)

console = Console()

app = typer.Typer(
    help="Deploy, update and manage the Meeting Meter PHP application.",
    add_completion=False,
)
domains_app = typer.Typer(help="Manage the domain registry.", no_args_is_help=True)
config_app = typer.Typer(help="Inspect the deployment configuration.", no_args_is_help=True)
backup_app = typer.Typer(help="Inspect and prune code-only update backups.", no_args_is_help=True)
app.add_typer(domains_app, name="domains")
app.add_typer(config_app, name="config")
app.add_typer(backup_app, name="backup")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Path to deploy.ini (defaults to $MMDEPLOY_CONFIG_FILE or ./deploy.ini).",
)
DOMAIN_OPTION = typer.Option(
    None,
    "--domain",
    "-d",
    help="Domain to target in multi-domain mode (skips the selection prompt).",
)
CONFLICT_OPTION = typer.Option(
    None,
    "--overwrite/--keep-existing",
    help="Overwrite or keep existing generated files instead of asking.",
)
API_KEY_OPTION = typer.Option(
    None,
    "--api-key",
    help="Alpha Vantage API key written to config.php (blank uses demo mode).",
)
YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Answer every question with its default.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit JSON instead of YAML.")

_COMPLETION_MESSAGES = {
    "deploy": "Deployment complete!",
    "production": "Production deployment complete!",
}


# ----------------------------------------------------------------------
# Runtime wiring
# ----------------------------------------------------------------------
@dataclass
class RuntimeContext:
    """Per-invocation collaborators shared by every command."""

    config_file: Path | None
    logger: StructuredLogger
    runner: CommandRunner
    files: FileOps
    templates: TemplateEngine


def _build_runner() -> CommandRunner:
    return SystemCommandRunner()


def _build_files(runner: CommandRunner) -> FileOps:
    return SudoFileOps(runner)


def _operations_log_dir(config_file: Path | None) -> Path:
    try:
        return config_store.load_global_config(config_file).operations_log_dir
    except MMDeployError:
        return Path(DEFAULT_OPERATIONS_LOG_DIR).expanduser()


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    runner = _build_runner()
    runtime = RuntimeContext(
        config_file=config_file,
        logger=StructuredLogger(_operations_log_dir(config_file)),
        runner=runner,
        files=_build_files(runner),
        templates=TemplateEngine.with_overrides(None),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    root = ctx.find_root()
    runtime = root.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(root, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the mmdeploy version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    runtime = _ensure_runtime(ctx, config_file)
    if version:
        with runtime.logger.operation("root --version", args={"version": True}) as op:
            console.print(f"mmdeploy {__version__}")
            op.success("Reported CLI version.")
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _command_error(op: OperationScope, message: str, *, rc: int = 2) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]", markup=True, highlight=False)
    op.error(message, rc=rc)
    raise typer.Exit(code=rc)


def _handle_error(op: OperationScope, exc: MMDeployError) -> NoReturn:
    """Map a core error onto console output and an exit code."""
    if isinstance(exc, ConfigBootstrapped):
        console.print(f"[yellow]{exc}[/yellow]")
        op.success(str(exc), changed=1, context={"created": exc.path})
        raise typer.Exit(code=int(ExitCode.OK))
    log.debug("command failed", exc_info=exc)
    _command_error(op, str(exc), rc=int(exc.exit_code))


def _conflict_policy(overwrite: bool | None) -> ConflictPolicy:
    if overwrite is None:
        return ConflictPolicy.ASK
    return ConflictPolicy.OVERWRITE if overwrite else ConflictPolicy.KEEP


def _load_config(runtime: RuntimeContext, *, bootstrap: bool = True) -> GlobalConfig:
    return config_store.load_global_config(runtime.config_file, bootstrap=bootstrap)


def _registry_path(runtime: RuntimeContext) -> tuple[Path, GlobalConfig | None]:
    """Return the domain registry path, even when deploy.ini is absent."""
    try:
        global_config = _load_config(runtime, bootstrap=False)
    except ConfigNotFound:
        located = config_store.locate_config_file(runtime.config_file)
        return located.parent / DEFAULT_DOMAINS_FILE, None
    return global_config.domains_file, global_config


def _print_domain_list(names: list[str]) -> None:
    console.print("[bold]Available domains:[/bold]")
    for index, name in enumerate(names, start=1):
        console.print(f"  {index}. {name}")


def _resolve_effective(
    global_config: GlobalConfig,
    domain: str | None,
    prompter: TyperPrompter,
) -> EffectiveConfig:
    """Pick the domain (multi-domain mode) and merge its overrides."""
    if not global_config.multi_domain_enabled:
        if domain:
            console.print(
                "[yellow]Multi-domain support is disabled; ignoring --domain.[/yellow]"
            )
        return domain_registry.resolve(global_config, None, None)

    registry = config_store.load_or_bootstrap(global_config.domains_file)
    if domain:
        return domain_registry.resolve(global_config, registry, domain)
    names = domain_registry.list_domains(registry)
    if not names:
        raise OutOfRange(1, 0)
    if prompter.assume_defaults:
        if len(names) == 1:
            return domain_registry.resolve(global_config, registry, names[0])
        raise ValidationFailure("Several domains are configured; choose one with --domain.")
    _print_domain_list(names)
    answer = prompter.ask(f"Select domain (1-{len(names)})")
    try:
        choice = int(answer)
    except ValueError as exc:
        raise OutOfRange(0, len(names)) from exc
    selected = domain_registry.select_domain(names, choice)
    console.print(f"Selected domain: [bold]{selected}[/bold]")
    return domain_registry.resolve(global_config, registry, selected)


def _pipeline_context(
    runtime: RuntimeContext,
    effective: EffectiveConfig,
    global_config: GlobalConfig,
    reporter: StatusReporter,
    prompter: TyperPrompter,
    *,
    policy: ConflictPolicy = ConflictPolicy.ASK,
    api_key: str | None = None,
) -> PipelineContext:
    return PipelineContext(
        effective=effective,
        runner=runtime.runner,
        files=runtime.files,
        templates=runtime.templates,
        reporter=reporter,
        prompter=prompter,
        policy=policy,
        api_key=api_key,
        config_template=global_config.config_template,
    )


def _target(effective: EffectiveConfig) -> dict[str, object]:
    return {"kind": "domain", "domain": effective.domain, "app_path": effective.app_path}


def _interactive_setup(runtime: RuntimeContext, prompter: TyperPrompter) -> None:
    """Create or update deploy.ini from a short questionnaire."""
    path = config_store.locate_config_file(runtime.config_file)
    try:
        config_store.load_or_bootstrap(path)
    except ConfigBootstrapped as created:
        console.print(f"[green]Created {created.path} from {created.template}[/green]")
    current = config_store.load(path).flatten()

    console.print("[bold]=== Interactive configuration ===[/bold]")
    app_name = prompter.ask("Application name", default=current.get("app_name") or "meeting_meter")
    web_root = prompter.ask("Web root directory", default=current.get("web_root") or "/var/www/html")
    general = {"app_name": app_name, "web_root": web_root}
    if prompter.confirm("Enable multi-domain support?", default=False):
        general["default_domain"] = prompter.ask(
            "Default domain name",
            default=current.get("default_domain") or "meetingmeter.example.com",
        )
        general["multi_domain_enabled"] = "true"
        console.print("Manage domains with [bold]mmdeploy domains add[/bold].")
    else:
        domain = prompter.ask(
            "Domain name",
            default=current.get("domain") or "meetingmeter.example.com",
        )
        general.update(
            {
                "default_domain": domain,
                "domain": domain,
                "app_dir": prompter.ask(
                    "Application directory",
                    default=current.get("app_dir") or "meeting_meter",
                ),
                "multi_domain_enabled": "false",
            }
        )
    config_store.set_values(path, general, section="general")
    console.print(f"[green]Configuration saved to {path}[/green]")


def _run_mode(
    ctx: typer.Context,
    mode: str,
    *,
    domain: str | None,
    overwrite: bool | None,
    api_key: str | None,
    yes: bool,
    interactive: bool = False,
) -> None:
    runtime = _get_runtime(ctx)
    prompter = TyperPrompter(assume_defaults=yes)
    args = {"domain": domain, "overwrite": overwrite, "interactive": interactive, "yes": yes}
    with runtime.logger.operation(mode, args=args) as op:
        try:
            if interactive:
                _interactive_setup(runtime, prompter)
            global_config = _load_config(runtime)
            effective = _resolve_effective(global_config, domain, prompter)
            op.target = _target(effective)
            domain_registry.validate(
                effective,
                domain_registry.required_fields(
                    effective,
                    web_server=True,
                    services=mode == "production",
                ),
            )
            reporter = StatusReporter(console, op)
            pipeline_ctx = _pipeline_context(
                runtime,
                effective,
                global_config,
                reporter,
                prompter,
                policy=_conflict_policy(overwrite),
                api_key=api_key,
            )
            result = build_pipeline(mode).run(pipeline_ctx)
        except MMDeployError as exc:
            _handle_error(op, exc)

        console.print(f"[bold green]{_COMPLETION_MESSAGES[mode]}[/bold green]")
        _print_summary(effective, result.completed, reporter.warnings)
        backups = [str(result.snapshot.path)] if result.snapshot else []
        message = f"Deployed {effective.domain} ({mode})."
        if reporter.warnings:
            op.warning(message, warnings=reporter.warnings, changed=reporter.changed, backups=backups)
        else:
            op.success(message, changed=reporter.changed, backups=backups)


def _print_summary(effective: EffectiveConfig, completed: list[str], warnings: list[str]) -> None:
    table = Table(title="Summary", show_header=False)
    table.add_column("Item")
    table.add_column("Value")
    table.add_row("Application", str(effective.app_path))
    table.add_row("Configuration", str(effective.runtime_config_path))
    if effective.log_file is not None:
        table.add_row("Log file", str(effective.log_file))
    table.add_row("Stages", ", ".join(completed) or "none")
    if warnings:
        table.add_row("Warnings", str(len(warnings)))
    console.print(table)
    scheme = "https" if effective.enable_ssl else "http"
    console.print(f"Access the application at: {scheme}://{effective.domain}")


# ----------------------------------------------------------------------
# Deployment commands
# ----------------------------------------------------------------------
@app.command()
def deploy(
    ctx: typer.Context,
    interactive: bool = typer.Option(
        False,
        "--interactive",
        "-i",
        help="Answer a short questionnaire to create or update deploy.ini first.",
    ),
    domain: str | None = DOMAIN_OPTION,
    overwrite: bool | None = CONFLICT_OPTION,
    api_key: str | None = API_KEY_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Deploy the application (first-time or interactive setup)."""
    _run_mode(
        ctx,
        "deploy",
        domain=domain,
        overwrite=overwrite,
        api_key=api_key,
        yes=yes,
        interactive=interactive,
    )


@app.command()
def production(
    ctx: typer.Context,
    domain: str | None = DOMAIN_OPTION,
    overwrite: bool | None = CONFLICT_OPTION,
    api_key: str | None = API_KEY_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Full production deployment: vhost, logrotate, systemd, TLS and verification."""
    _run_mode(ctx, "production", domain=domain, overwrite=overwrite, api_key=api_key, yes=yes)


@app.command()
def update(
    ctx: typer.Context,
    domain: str | None = DOMAIN_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Redeploy application files only, rolling back on PHP syntax errors."""
    runtime = _get_runtime(ctx)
    prompter = TyperPrompter(assume_defaults=yes)
    with runtime.logger.operation("update", args={"domain": domain, "yes": yes}) as op:
        try:
            global_config = _load_config(runtime)
            effective = _resolve_effective(global_config, domain, prompter)
            op.target = _target(effective)
            domain_registry.validate(
                effective,
                domain_registry.required_fields(effective, backup=True),
            )
            reporter = StatusReporter(console, op)
            pipeline_ctx = _pipeline_context(runtime, effective, global_config, reporter, prompter)
            result = CodeOnlyUpdater(pipeline_ctx).run()
        except MMDeployError as exc:
            _handle_error(op, exc)

        console.print("[bold green]Code-only deployment complete![/bold green]")
        console.print(f"Updated {len(result.files)} file(s) in {effective.app_path}")
        backups = [] if result.snapshot is None or result.snapshot_deleted else [str(result.snapshot.path)]
        context = {"pruned": [item.identifier for item in result.pruned]}
        if reporter.warnings:
            op.warning(
                "Code-only update completed with warnings.",
                warnings=reporter.warnings,
                changed=len(result.files),
                backups=backups,
                context=context,
            )
        else:
            op.success(
                "Code-only update completed.",
                changed=len(result.files),
                backups=backups,
                context=context,
            )


# ----------------------------------------------------------------------
# Domain registry commands
# ----------------------------------------------------------------------
@domains_app.command("list")
def domains_list(ctx: typer.Context) -> None:
    """List configured domains in registry order."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("domains list") as op:
        try:
            path, _ = _registry_path(runtime)
            registry = domain_registry.load_registry(path)
        except MMDeployError as exc:
            _handle_error(op, exc)
        names = domain_registry.list_domains(registry)
        if not names:
            console.print("No domains configured.")
            op.success("No domains configured.")
            return
        table = Table(title=f"Domains ({path})")
        table.add_column("#", justify="right")
        table.add_column("Domain")
        table.add_column("App name")
        table.add_column("App dir")
        table.add_column("Source dir")
        table.add_column("SSL")
        for index, name in enumerate(names, start=1):
            section = registry.section(name)
            table.add_row(
                str(index),
                name,
                section.get("app_name", ""),
                section.get("app_dir", ""),
                section.get("source_dir", ""),
                section.get("enable_ssl", "false"),
            )
        console.print(table)
        op.success(f"Listed {len(names)} domain(s).", context={"domains": names})


@domains_app.command("add")
def domains_add(
    ctx: typer.Context,
    domain: str | None = typer.Argument(None, help="Domain name, e.g. example.com."),
    app_name: str | None = typer.Option(None, "--app-name", help="Defaults to the domain."),
    app_dir: str | None = typer.Option(
        None, "--app-dir", help="Defaults to the domain with dots replaced by underscores."
    ),
    source_dir: str | None = typer.Option(
        None, "--source-dir", help="Source tree relative to the configuration directory."
    ),
    web_root: str | None = typer.Option(None, "--web-root", help="Web root directory."),
    ssl: bool | None = typer.Option(None, "--ssl/--no-ssl", help="Enable SSL for the domain."),
    ssl_email: str | None = typer.Option(None, "--ssl-email", help="Certificate contact email."),
    yes: bool = YES_OPTION,
) -> None:
    """Append a new domain section to the registry."""
    runtime = _get_runtime(ctx)
    prompter = TyperPrompter(assume_defaults=yes)
    with runtime.logger.operation("domains add", args={"domain": domain}) as op:
        try:
            path, global_config = _registry_path(runtime)
            name = (domain or prompter.ask("Domain name (e.g. example.com)")).strip()
            if not name:
                raise ConfigError("Domain name cannot be empty.")
            default_root = (global_config.get("web_root") if global_config else None) or "/var/www/html"
            if app_name is None:
                app_name = prompter.ask("App name", default=name)
            if app_dir is None:
                app_dir = prompter.ask("App directory", default=name.replace(".", "_"))
            if source_dir is None:
                source_dir = prompter.ask("Source directory", default="../meeting_meter")
            if web_root is None:
                web_root = prompter.ask("Web root", default=default_root)
            if ssl is None:
                ssl = prompter.confirm("Enable SSL?", default=False)
            if ssl and ssl_email is None:
                ssl_email = prompter.ask("SSL email")
            values = domain_registry.default_domain_values(
                name,
                web_root=web_root,
                app_name=app_name,
                app_dir=app_dir,
                source_dir=source_dir,
                enable_ssl=ssl,
                ssl_email=ssl_email or "",
            )
            domain_registry.add_domain(path, values)
        except MMDeployError as exc:
            _handle_error(op, exc)
        console.print(f"[green]Domain {name} added to {path}[/green]")
        op.success(f"Added domain {name}.", changed=1, context={"registry": path})


@domains_app.command("remove")
def domains_remove(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain to remove."),
    yes: bool = YES_OPTION,
) -> None:
    """Remove a domain section from the registry."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("domains remove", args={"domain": domain}) as op:
        try:
            path, _ = _registry_path(runtime)
            if not yes and not typer.confirm(f"Remove domain {domain}?", default=False):
                console.print("Removal cancelled.")
                op.success("Removal cancelled.")
                return
            domain_registry.remove_domain(path, domain)
        except MMDeployError as exc:
            _handle_error(op, exc)
        console.print(f"[green]Domain {domain} removed.[/green]")
        op.success(f"Removed domain {domain}.", changed=1)


@domains_app.command("edit")
def domains_edit(ctx: typer.Context) -> None:
    """Open the registry in $EDITOR (falls back to nano, then vi)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("domains edit") as op:
        try:
            path, _ = _registry_path(runtime)
            if not path.is_file():
                raise ConfigNotFound(path)
            editor = os.environ.get("EDITOR") or next(
                (name for name in ("nano", "vi") if runtime.runner.which(name)),
                None,
            )
            if editor is None:
                raise ConfigError("No editor found. Set $EDITOR or install nano or vi.")
            result = runtime.runner.run([editor, str(path)], capture=False)
            if not result.ok:
                raise ExternalCommandFailure(result.args, result.returncode, result.output)
        except MMDeployError as exc:
            _handle_error(op, exc)
        op.success(f"Edited {path}.", context={"editor": editor})


@domains_app.command("validate")
def domains_validate(ctx: typer.Context) -> None:
    """Check every domain section for required keys and sources."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("domains validate") as op:
        try:
            path, _ = _registry_path(runtime)
            registry = domain_registry.load_registry(path)
        except MMDeployError as exc:
            _handle_error(op, exc)
        findings = domain_registry.validate_registry(registry, base_dir=path.parent)
        errors: list[str] = []
        warnings: list[str] = []
        for finding in findings:
            console.print(f"[bold]Validating domain: {finding.domain}[/bold]")
            for message in finding.errors:
                console.print(f"  [red]ERROR[/red] {message}")
                errors.append(f"{finding.domain}: {message}")
            for message in finding.warnings:
                console.print(f"  [yellow]WARNING[/yellow] {message}")
                warnings.append(f"{finding.domain}: {message}")
            if not finding.errors and not finding.warnings:
                console.print("  [green]OK[/green]")
        if errors:
            console.print(f"[red]Validation failed with {len(errors)} error(s).[/red]")
            op.error("Domain validation failed.", errors=errors, rc=int(ExitCode.VALIDATION))
            raise typer.Exit(code=int(ExitCode.VALIDATION))
        if warnings:
            console.print(f"[yellow]Validation completed with {len(warnings)} warning(s).[/yellow]")
            op.warning("Domain validation completed with warnings.", warnings=warnings)
        else:
            console.print("[green]All domains are valid.[/green]")
            op.success("All domains are valid.")


@domains_app.command("help")
def domains_help(ctx: typer.Context) -> None:
    """Show usage for the domain commands."""
    parent = ctx.parent
    console.print(parent.get_help() if parent is not None else ctx.get_help())


# ----------------------------------------------------------------------
# Configuration and backup commands
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    domain: str | None = DOMAIN_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the global configuration and the effective values it resolves to."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("config show", args={"domain": domain, "json": json_output}) as op:
        try:
            global_config = _load_config(runtime, bootstrap=False)
            payload: dict[str, object] = {"global": global_config.to_dict()}
            if domain or not global_config.multi_domain_enabled:
                registry = (
                    domain_registry.load_registry(global_config.domains_file)
                    if global_config.multi_domain_enabled
                    else None
                )
                effective = domain_registry.resolve(
                    global_config,
                    registry,
                    domain if global_config.multi_domain_enabled else None,
                )
                payload["effective"] = effective.to_dict()
        except MMDeployError as exc:
            _handle_error(op, exc)
        _emit(payload, json_output=json_output)
        op.success("Displayed configuration.")


@backup_app.command("list")
def backup_list(
    ctx: typer.Context,
    domain: str | None = DOMAIN_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """List snapshots in the backup directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("backup list", args={"domain": domain}) as op:
        try:
            store, effective = _snapshot_store(runtime, domain)
        except MMDeployError as exc:
            _handle_error(op, exc)
        snapshots = store.list_snapshots()
        if json_output:
            _emit({"backups": [item.to_dict() for item in snapshots]}, json_output=True)
        elif not snapshots:
            console.print(f"No backups found in {store.root}.")
        else:
            table = Table(title=f"Backups for {effective.domain} ({store.root})")
            table.add_column("ID")
            table.add_column("Created")
            table.add_column("Compressed")
            table.add_column("Path")
            for item in snapshots:
                table.add_row(
                    item.identifier,
                    item.created_at.isoformat(sep=" ", timespec="seconds"),
                    "yes" if item.compressed else "no",
                    str(item.path),
                )
            console.print(table)
        op.success(f"Listed {len(snapshots)} backup(s).")


@backup_app.command("prune")
def backup_prune(
    ctx: typer.Context,
    domain: str | None = DOMAIN_OPTION,
    days: int | None = typer.Option(
        None,
        "--days",
        min=1,
        help="Override backup_retention_days for this run.",
    ),
) -> None:
    """Delete snapshots older than the retention period."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("backup prune", args={"domain": domain, "days": days}) as op:
        try:
            store, effective = _snapshot_store(runtime, domain)
            retention = days if days is not None else effective.backup_retention_days
            if retention is None:
                raise ValidationFailure(
                    "backup_retention_days is not configured; pass --days to prune."
                )
            removed = store.prune_expired(retention)
        except MMDeployError as exc:
            _handle_error(op, exc)
        for item in removed:
            console.print(f"Removed {item.path}")
        console.print(f"Pruned {len(removed)} backup(s) older than {retention} day(s).")
        op.success(
            f"Pruned {len(removed)} backup(s).",
            changed=len(removed),
            context={"removed": [item.identifier for item in removed]},
        )


def _snapshot_store(runtime: RuntimeContext, domain: str | None) -> tuple[SnapshotStore, EffectiveConfig]:
    global_config = _load_config(runtime, bootstrap=False)
    effective = _resolve_effective(global_config, domain, TyperPrompter())
    domain_registry.validate(effective, {"backup_dir"})
    store = SnapshotStore(Path(effective.backup_dir), runtime.files, runtime.runner)
    return store, effective


def _emit(payload: Mapping[str, object], *, json_output: bool) -> None:
    if json_output:
        console.print_json(json.dumps(payload, default=str))
    else:
        text = yaml.safe_dump(json.loads(json.dumps(payload, default=str)), sort_keys=False)
        console.print(text, markup=False, highlight=False)


__all__ = ["app"]
