"""Command-line interface for promoting n8n state from dev to prod."""

from __future__ import annotations

import json
import logging
import sys
import tempfile
from pathlib import Path
from typing import Annotated, Callable, Optional

import structlog
import typer
from rich.console import Console
from rich.table import Table

from .adapters import (
    DockerProcessControl,
    N8nContainerCli,
    SqlDatabase,
    SshRemoteExec,
    detect_n8n_container,
    resolve_sqlite_path,
)
from .backup import (
    BackupArtifact,
    BackupSource,
    cleanup_old_packages,
    create_backup,
    list_backups,
    restore_backup,
    rotate_backups,
    verify_backup,
)
from .config import Settings, get_settings
from .errors import ChecksumMismatch, MigrationError
from .export import load_allowlist, run_export, run_full_database_export
from .health import http_health_check, wait_for_healthy
from .importer import ImportPipeline, ImportReport, import_full_database
from .keysync import KeySyncResult, apply_key, propagate_key, read_key_file
from .package import extract_package, verify_checksums
from .transfer import fetch_package, find_latest_package, push_file

console = Console()

_LOGGING_CONFIGURED = False


def configure_logging(settings: Settings) -> None:
    """Initialize structlog and stdlib logging formatting."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "path", "count"]))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _LOGGING_CONFIGURED = True


app = typer.Typer(help="Promote n8n workflows and credentials from dev to prod.", invoke_without_command=True)
backup_app = typer.Typer(help="Create, inspect, rotate and restore database backups")
app.add_typer(backup_app, name="backup")


@app.callback()
def _app_callback(ctx: typer.Context) -> None:
    configure_logging(get_settings())
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()


def _resolve_path(raw_path: str | Path) -> Path:
    path = Path(raw_path).expanduser()
    path = (Path.cwd() / path).resolve() if not path.is_absolute() else path.resolve()
    return path


def _format_bytes(value: int) -> str:
    units = ("B", "KiB", "MiB", "GiB", "TiB")
    current = float(max(value, 0))
    for unit in units:
        if current < 1024.0 or unit == units[-1]:
            if unit == "B":
                return f"{int(current)} {unit}"
            return f"{current:.1f} {unit}"
        current /= 1024.0
    return f"{int(value)} B"


def _interactive_confirm(message: str) -> bool:
    """Ask the operator; without a terminal the answer is no."""
    if not sys.stdin.isatty():
        console.print(f"[yellow]{message}[/] [dim](no terminal, answering no)[/]")
        return False
    return typer.confirm(message, default=False)


def _service_id(settings: Settings) -> str:
    return settings.instance.container or detect_n8n_container()


def _process(settings: Settings) -> DockerProcessControl:
    compose = settings.instance.compose_file
    return DockerProcessControl(compose_file=Path(compose) if compose else None)


def _n8n(settings: Settings, service_id: str) -> N8nContainerCli:
    return N8nContainerCli(
        service_id,
        health_url=settings.instance.health_url,
        health_timeout=settings.health.timeout_seconds,
        data_dir=settings.instance.data_dir_in_container,
        file_owner=settings.instance.file_owner,
    )


def _backup_source(settings: Settings, service_id: str) -> BackupSource:
    instance = settings.instance
    if instance.is_sqlite:
        return BackupSource(
            environment=settings.environment,
            service_id=service_id,
            kind="sqlite",
            database_path=resolve_sqlite_path(instance.database_url),
            file_owner=instance.file_owner,
        )
    return BackupSource(
        environment=settings.environment,
        service_id=service_id,
        kind="postgres",
        database_container=instance.database_container,
        database_user=instance.database_user,
        database_name=instance.database_name,
        file_owner=instance.file_owner,
    )


def _optional_path(raw: str) -> Optional[Path]:
    return Path(raw).expanduser() if raw else None


def _key_targets(settings: Settings, key: str) -> Callable[[], KeySyncResult]:
    def _propagate() -> KeySyncResult:
        return propagate_key(
            key,
            compose_file=_optional_path(settings.instance.compose_file),
            env_file=_optional_path(settings.instance.env_file),
            config_file=_optional_path(settings.instance.config_file),
            owner=settings.instance.file_owner,
        )

    return _propagate


def _fail(exc: MigrationError) -> typer.Exit:
    if isinstance(exc, ChecksumMismatch):
        console.print("[red]Checksum verification failed:[/]")
        for failure in exc.failures:
            console.print(f"  • {failure}")
    else:
        console.print(f"[red]{type(exc).__name__}:[/] {exc}")
    return typer.Exit(code=1)


def _print_report(report: ImportReport) -> None:
    colour = {"succeeded": "green", "completed_with_warnings": "yellow"}.get(report.status, "red")
    table = Table(title=f"Import report ({report.mode})", show_lines=False)
    table.add_column("Field")
    table.add_column("Expected", justify="right")
    table.add_column("Actual", justify="right")
    table.add_row("workflows", str(report.expected_workflows), str(report.actual_workflows))
    table.add_row("credentials", str(report.expected_credentials), str(report.actual_credentials))
    table.add_row("active workflows", str(report.expected_active), str(report.actual_active))
    console.print(table)
    console.print(f"[{colour}]Status: {report.status}[/] (state reached: {report.state.value})")
    if report.rollback_artifact:
        console.print(f"[bold]Rollback artifact:[/] {report.rollback_artifact}")
    if report.skipped_activation:
        console.print("[yellow]Not activated (missing after import):[/]")
        for name in report.skipped_activation:
            console.print(f"  • {name}")
    if report.webhooks_toggled:
        console.print(f"[dim]Webhook workflows re-registered: {len(report.webhooks_toggled)}[/]")
    if report.source_projects:
        console.print(f"[dim]Source projects recorded for {len(report.source_projects)} workflow(s)[/]")
    if report.warnings:
        warnings_table = Table(title="Warnings", show_lines=False)
        warnings_table.add_column("Code", style="yellow")
        warnings_table.add_column("Message")
        for warning in report.warnings:
            warnings_table.add_row(warning.code, warning.message)
        console.print(warnings_table)
    if report.error:
        console.print(f"[red]Error:[/] {report.error}")


def _print_artifact(artifact: BackupArtifact, heading: str) -> None:
    console.print(f"[green]✓ {heading}:[/] {artifact.path}")
    console.print(f"[dim]  {artifact.bucket} · {_format_bytes(artifact.size_bytes)} · sha256 {artifact.checksum}[/]")


@app.command("export")
def export_command(
    full_db: Annotated[
        bool,
        typer.Option("--full-db", help="Snapshot the whole database plus the encryption key instead of a package."),
    ] = False,
    allowlist: Annotated[
        Optional[Path],
        typer.Option("--allowlist", help="Credential allowlist file (one glob pattern per line)."),
    ] = None,
    push_to: Annotated[
        Optional[str],
        typer.Option("--push-to", help="Copy the result to this host's import directory over scp."),
    ] = None,
) -> None:
    """Export workflows and allowlisted credentials from this (source) instance."""
    settings = get_settings()
    remote = SshRemoteExec(user=settings.remote.source_user, options=settings.remote.ssh_options)
    try:
        service_id = _service_id(settings)
        n8n = _n8n(settings, service_id)
        if full_db:
            result = run_full_database_export(
                _backup_source(settings, service_id),
                settings.migration_dir,
                process=_process(settings),
                cli=n8n,
            )
            console.print(f"[green]✓ Full database export:[/] {result.directory}")
            console.print(f"  snapshot: {result.snapshot_path}")
            console.print(f"  key file: {result.key_file}")
            console.print("[yellow]This directory holds every credential and the encryption key. Transfer it securely.[/]")
            if push_to:
                remote_dir = f"{settings.import_dir}/{result.directory.name}"
                for path in (result.snapshot_path, result.key_file, result.metadata_path):
                    push_file(remote, push_to, path, remote_dir)
                console.print(f"[green]✓ Pushed to {push_to}:{remote_dir}[/]")
            return
        allowlist_path = _resolve_path(allowlist) if allowlist else settings.allowlist_file
        patterns = load_allowlist(allowlist_path)
        if patterns is None:
            console.print(
                f"[bold yellow]No credential allowlist at {allowlist_path}: ALL credentials will be exported.[/]"
            )
        result_pkg = run_export(n8n, settings.migration_dir, allowlist=patterns, environment=settings.environment)
        pushed = push_file(remote, push_to, result_pkg.package_path, str(settings.import_dir)) if push_to else None
    except MigrationError as exc:
        raise _fail(exc) from exc

    table = Table(title="Export package", show_lines=False)
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("package", str(result_pkg.package_path))
    table.add_row("workflows", str(result_pkg.workflow_count))
    table.add_row("active workflows", str(result_pkg.active_workflow_count))
    table.add_row("credentials", f"{result_pkg.credential_count} of {result_pkg.total_credential_count}")
    table.add_row("size", _format_bytes(result_pkg.package_path.stat().st_size))
    console.print(table)
    if pushed:
        console.print(f"[green]✓ Pushed to {push_to}:{pushed}[/]")
    console.print("[yellow]The package contains DECRYPTED credentials. Delete it after import.[/]")


@app.command("import")
def import_command(
    package: Annotated[
        Optional[Path],
        typer.Argument(help="Package zip or extracted directory. Omit to fetch the newest from the source host."),
    ] = None,
    mode: Annotated[
        Optional[str],
        typer.Option("--mode", help="replace (clean slate) or merge (reconcile by workflow name)."),
    ] = None,
    encryption_key_file: Annotated[
        Optional[Path],
        typer.Option("--encryption-key-file", help="Propagate this key and restart before importing credentials."),
    ] = None,
    allow_no_backup: Annotated[
        bool,
        typer.Option("--allow-no-backup", help="Continue if the destination backup fails (no rollback artifact)."),
    ] = False,
) -> None:
    """Import a transfer package into this (destination) instance."""
    settings = get_settings()
    import_mode = (mode or settings.importing.mode).strip().lower()
    if import_mode not in {"replace", "merge"}:
        console.print(f"[red]Unknown mode {import_mode!r}; use replace or merge.[/]")
        raise typer.Exit(code=2)
    try:
        if package is None:
            host = settings.remote.source_host
            if not host:
                console.print("[red]No package given and SOURCE_HOST is not configured.[/]")
                raise typer.Exit(code=1)
            remote = SshRemoteExec(user=settings.remote.source_user, options=settings.remote.ssh_options)
            latest = find_latest_package(remote, host, settings.remote.source_migration_dir)
            package_path = fetch_package(remote, host, latest, settings.import_dir)
        else:
            package_path = _resolve_path(package)

        service_id = _service_id(settings)
        process = _process(settings)
        n8n = _n8n(settings, service_id)
        source = _backup_source(settings, service_id)

        key_sync: Optional[Callable[[], KeySyncResult]] = None
        if encryption_key_file is not None:
            propagate = _key_targets(settings, read_key_file(_resolve_path(encryption_key_file)))

            def _propagate_and_apply() -> KeySyncResult:
                result = propagate()
                apply_key(process, service_id, n8n.health_check, settings.health)
                return result

            key_sync = _propagate_and_apply

        def backup() -> BackupArtifact:
            return create_backup(
                source,
                settings.backup_dir,
                process=process,
                manual=True,
                label="pre_import",
                extra_metadata={"n8n_version": n8n.version()},
            )

        database = SqlDatabase(settings.instance.database_url)
        pipeline = ImportPipeline(
            cli=n8n,
            database=database,
            process=process,
            service_id=service_id,
            backup=backup,
            work_dir=settings.import_dir,
            health=settings.health,
            mode=import_mode,
            confirm=(lambda _message: True) if allow_no_backup else _interactive_confirm,
            key_sync=key_sync,
            webhook_toggle_delay=settings.importing.webhook_toggle_delay_seconds,
        )
    except MigrationError as exc:
        raise _fail(exc) from exc

    try:
        report = pipeline.run(package_path)
    except MigrationError as exc:
        _print_report(pipeline.report)
        raise _fail(exc) from exc
    finally:
        database.dispose()
    _print_report(report)
    console.print(f"[dim]Report written to {pipeline.report_path}[/]")
    if report.healthy is False:
        raise typer.Exit(code=1)


@app.command("import-full-db")
def import_full_db_command(
    snapshot: Annotated[Path, typer.Argument(help="database.sqlite produced by `export --full-db`.")],
    key_file: Annotated[
        Optional[Path],
        typer.Option("--key-file", help="Source encryption key (defaults to encryption_key.txt beside the snapshot)."),
    ] = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip the destructive-operation prompt.")] = False,
) -> None:
    """Replace this instance's whole SQLite database with a source snapshot."""
    settings = get_settings()
    if not settings.instance.is_sqlite:
        console.print("[red]Full-database import only supports SQLite-backed instances.[/]")
        raise typer.Exit(code=1)
    snapshot_path = _resolve_path(snapshot)
    if not yes:
        console.print(f"[bold red]This REPLACES the entire {settings.environment} database with {snapshot_path}.[/]")
        if not typer.confirm("Proceed with full-database import?", default=False):
            raise typer.Exit(code=1)
    try:
        key_path = _resolve_path(key_file) if key_file else snapshot_path.parent / "encryption_key.txt"
        key_sync: Optional[Callable[[], KeySyncResult]] = None
        if key_path.exists():
            key_sync = _key_targets(settings, read_key_file(key_path))
        else:
            console.print(f"[yellow]No key file at {key_path}; imported credentials may not decrypt.[/]")

        service_id = _service_id(settings)
        process = _process(settings)
        n8n = _n8n(settings, service_id)
        source = _backup_source(settings, service_id)
        report = import_full_database(
            snapshot_path,
            database_path=resolve_sqlite_path(settings.instance.database_url),
            service_id=service_id,
            process=process,
            backup=lambda: create_backup(source, settings.backup_dir, process=process, manual=True, label="pre_full_db"),
            health_check=n8n.health_check,
            health=settings.health,
            confirm=_interactive_confirm,
            key_sync=key_sync,
            file_owner=settings.instance.file_owner,
            report_path=settings.import_dir / "full_db_import_report.json",
        )
    except MigrationError as exc:
        raise _fail(exc) from exc
    _print_report(report)
    if report.healthy is False:
        raise typer.Exit(code=1)


@app.command("verify")
def verify_command(
    package: Annotated[Path, typer.Argument(help="Package zip or extracted directory.")],
) -> None:
    """Re-verify every checksum in a transfer package without importing it."""
    package_path = _resolve_path(package)
    try:
        if package_path.is_dir():
            verified = verify_checksums(package_path)
        else:
            with tempfile.TemporaryDirectory(prefix="n8n-verify-") as temp_dir:
                verified = verify_checksums(extract_package(package_path, Path(temp_dir)))
    except MigrationError as exc:
        raise _fail(exc) from exc
    console.print(f"[green]✓ {len(verified)} file(s) verified in {package_path.name}[/]")
    for name in verified:
        console.print(f"  • {name}")


@backup_app.command("create")
def backup_create(
    manual: Annotated[bool, typer.Option("--manual", help="Store in the manual bucket (never auto-rotated as daily).")] = False,
    label: Annotated[str, typer.Option("--label", help="Suffix added to the backup file name.")] = "",
) -> None:
    """Back up this instance's database, then rotate old backups."""
    settings = get_settings()
    try:
        service_id = _service_id(settings)
        n8n = _n8n(settings, service_id)
        artifact = create_backup(
            _backup_source(settings, service_id),
            settings.backup_dir,
            process=_process(settings),
            manual=manual,
            label=label,
            extra_metadata={"n8n_version": n8n.version()},
        )
    except MigrationError as exc:
        raise _fail(exc) from exc
    _print_artifact(artifact, "Backup created")
    removed = rotate_backups(settings.backup_dir, settings.retention)
    if removed:
        console.print(f"[dim]Rotated {len(removed)} old backup(s)[/]")


@backup_app.command("list")
def backup_list(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List backups, newest first."""
    settings = get_settings()
    artifacts = list_backups(settings.backup_dir)
    if json_output:
        console.print_json(json.dumps([artifact.as_dict() for artifact in artifacts]))
        return
    if not artifacts:
        console.print("[dim]No backups found[/dim]")
        return
    table = Table(title="Available Backups")
    table.add_column("Created", style="cyan")
    table.add_column("Bucket")
    table.add_column("Env")
    table.add_column("Kind")
    table.add_column("Size", justify="right")
    table.add_column("Path")
    for artifact in artifacts:
        table.add_row(
            artifact.created_at.isoformat()[:19],
            artifact.bucket,
            artifact.environment,
            artifact.kind,
            _format_bytes(artifact.size_bytes),
            str(artifact.path),
        )
    console.print(table)


@backup_app.command("verify")
def backup_verify(
    backup_file: Annotated[Path, typer.Argument(help="Backup artifact (.sqlite.gz or .sql.gz).")],
) -> None:
    """Check a backup's checksum, gzip stream and database integrity."""
    try:
        artifact = verify_backup(_resolve_path(backup_file))
    except MigrationError as exc:
        raise _fail(exc) from exc
    _print_artifact(artifact, "Backup verified")


@backup_app.command("rotate")
def backup_rotate() -> None:
    """Apply the retention policy to every bucket."""
    settings = get_settings()
    removed = rotate_backups(settings.backup_dir, settings.retention)
    console.print(f"[green]✓ Removed {len(removed)} backup(s)[/]")
    for path in removed:
        console.print(f"  • {path}")


@backup_app.command("restore")
def backup_restore(
    backup_file: Annotated[Path, typer.Argument(help="Backup artifact to restore.")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip the confirmation prompt.")] = False,
) -> None:
    """Restore a backup over the live database (a safety backup is taken first)."""
    settings = get_settings()
    artifact_path = _resolve_path(backup_file)
    if not yes:
        console.print(f"[bold red]This OVERWRITES the current {settings.environment} database with {artifact_path}.[/]")
        if not typer.confirm("Continue with restore?", default=False):
            raise typer.Exit(code=1)
    try:
        service_id = _service_id(settings)
        n8n = _n8n(settings, service_id)
        result = restore_backup(
            artifact_path,
            _backup_source(settings, service_id),
            settings.backup_dir,
            process=_process(settings),
            health_check=n8n.health_check,
            health=settings.health,
            confirm=_interactive_confirm,
        )
    except MigrationError as exc:
        raise _fail(exc) from exc
    console.print(f"[green]✓ Restored from {result.restored_from}[/]")
    if result.safety_backup is not None:
        console.print(f"[dim]Safety backup:[/] {result.safety_backup.path}")


@app.command("keysync")
def keysync_command(
    key_file: Annotated[Path, typer.Option("--key-file", help="File holding the encryption key to propagate.")],
    no_restart: Annotated[bool, typer.Option("--no-restart", help="Write the key but do not restart n8n.")] = False,
) -> None:
    """Propagate an encryption key to compose, .env and the n8n config file."""
    settings = get_settings()
    try:
        result = _key_targets(settings, read_key_file(_resolve_path(key_file)))()
        for path in result.updated:
            console.print(f"[green]✓ Updated[/] {path}")
        for warning in result.warnings:
            console.print(f"[yellow]{warning.code}:[/] {warning.message}")
        if not no_restart:
            service_id = _service_id(settings)
            attempts = apply_key(_process(settings), service_id, _n8n(settings, service_id).health_check, settings.health)
            console.print(f"[green]✓ n8n healthy after restart[/] (attempt {attempts})")
    except MigrationError as exc:
        raise _fail(exc) from exc


@app.command("health")
def health_command(
    wait: Annotated[bool, typer.Option("--wait", help="Poll with the configured retry budget.")] = False,
) -> None:
    """Check the n8n health endpoint."""
    settings = get_settings()
    url = settings.instance.health_url
    if wait:
        try:
            attempts = wait_for_healthy(
                lambda: http_health_check(url, timeout=settings.health.timeout_seconds),
                attempts=settings.health.attempts,
                delay=settings.health.delay_seconds,
            )
        except MigrationError as exc:
            raise _fail(exc) from exc
        console.print(f"[green]✓ healthy[/] {url} (attempt {attempts})")
        return
    if http_health_check(url, timeout=settings.health.timeout_seconds):
        console.print(f"[green]✓ healthy[/] {url}")
        return
    console.print(f"[red]✗ unhealthy[/] {url}")
    raise typer.Exit(code=1)


@app.command("cleanup")
def cleanup_command(
    dry_run: Annotated[bool, typer.Option("--dry-run", help="List what would be removed.")] = False,
) -> None:
    """Remove old export packages and apply backup retention."""
    settings = get_settings()
    stale = cleanup_old_packages(
        settings.migration_dir, settings.retention.package_max_age_days, dry_run=dry_run
    )
    verb = "Would remove" if dry_run else "Removed"
    console.print(f"{verb} {len(stale)} export package(s) older than {settings.retention.package_max_age_days} days")
    for path in stale:
        console.print(f"  • {path}")
    if not dry_run:
        removed = rotate_backups(settings.backup_dir, settings.retention)
        if removed:
            console.print(f"[dim]Rotated {len(removed)} old backup(s)[/]")
