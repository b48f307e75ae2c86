"""Typer-powered command line interface for ``stackctl``.

Commands wire the update and backup pipelines to the project registry. Every
command runs inside a structured logging operation, and commands that change
a target hold that target's lock for their whole duration.
"""
from __future__ import annotations

import json
import os
import sys
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backup import BackupPipeline, list_archives
from .components import BACKUP_TYPES, ComponentAdapter, build_adapters
from .config import AppConfig, load_config
from .errors import StackctlError
from .exit_codes import ExitCode
from .health import HealthEvaluator
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .providers import ComposeProvider, PostgresProvider
from .restore import RestorePipeline
from .snapshots import SnapshotManager
from .state import ProjectRegistry, TargetInstance
from .update import UpdateOrchestrator, UpdateResult
from .versions import VersionDiff, VersionResolver, diff_versions, parse_service_selector

console = Console()

PASSWORD_ENV_VAR = "STACKCTL_BACKUP_PASSWORD"

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to stackctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON.",
)

PASSWORD_OPTION = typer.Option(
    None,
    "--password",
    help=f"Archive password (prefer --password-file or ${PASSWORD_ENV_VAR}).",
)

PASSWORD_FILE_OPTION = typer.Option(
    None,
    "--password-file",
    dir_okay=False,
    help="Read the archive password from this file.",
)

DESTINATION_OPTION = typer.Option(
    None,
    "--destination",
    help="Archive destination: a directory, local://<dir> or s3://bucket/prefix.",
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Answer yes to confirmation prompts.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Lifecycle operations for multi-instance docker compose stacks.

        Update container images with automatic rollback, and take, verify and
        restore checksummed (optionally encrypted) backups.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: ProjectRegistry
    locks: LockManager
    logger: StructuredLogger
    compose: ComposeProvider
    postgres: PostgresProvider
    adapters: dict[str, ComponentAdapter]
    snapshots: SnapshotManager
    resolver: VersionResolver
    health: HealthEvaluator
    backups: BackupPipeline
    restores: RestorePipeline


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    config = load_config(config_file=config_file, overrides=overrides)
    docker = config.docker
    compose = ComposeProvider(docker_bin=docker.docker_bin, helper_image=docker.helper_image)
    postgres = PostgresProvider(
        compose,
        service=docker.db_service,
        user=docker.db_user,
        database=docker.db_name,
    )
    adapters = build_adapters(compose, postgres)
    runtime = RuntimeContext(
        config=config,
        registry=ProjectRegistry(config.registry_dir),
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        compose=compose,
        postgres=postgres,
        adapters=adapters,
        snapshots=SnapshotManager(config.backups.root, compose),
        resolver=VersionResolver(
            config.update.reference_url, timeout=config.update.fetch_timeout
        ),
        health=HealthEvaluator(compose, config.health),
        backups=BackupPipeline(
            compose,
            adapters,
            backups_root=config.backups.root,
            temp_dir=config.backups.temp_dir,
            db_service=docker.db_service,
            iterations=config.backups.encryption_iterations,
        ),
        restores=RestorePipeline(
            compose,
            adapters,
            temp_dir=config.backups.temp_dir,
            db_service=docker.db_service,
        ),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the stackctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"stackctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc, context=context)
    raise typer.Exit(code=rc)


def _stackctl_error(op: OperationScope, prefix: str, exc: StackctlError) -> NoReturn:
    errors = list(getattr(exc, "errors", None) or [str(exc)])
    _command_error(op, f"{prefix}: {exc}", rc=int(exc.exit_code), errors=errors)


def _require_target(runtime: RuntimeContext, name: str, op: OperationScope) -> TargetInstance:
    try:
        return runtime.registry.get_target(name)
    except StackctlError as exc:
        _command_error(op, str(exc), rc=int(exc.exit_code))


def _resolve_password(
    op: OperationScope,
    password: str | None,
    password_file: Path | None,
) -> str | None:
    if password_file is not None:
        try:
            return password_file.read_text(encoding="utf-8").rstrip("\r\n")
        except OSError as exc:
            _command_error(
                op, f"Unable to read password file {password_file}: {exc}", rc=ExitCode.VALIDATION
            )
    if password:
        return password
    return os.environ.get(PASSWORD_ENV_VAR) or None


def _outcome_style(outcome: str) -> str:
    return {
        "success": "[green]success[/green]",
        "empty": "[yellow]empty[/yellow]",
        "skipped": "[dim]skipped[/dim]",
        "failed": "[red]failed[/red]",
    }.get(outcome, outcome)


def _render_components(rows: Sequence[Mapping[str, object]]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Component", style="bold")
    table.add_column("Outcome")
    table.add_column("Detail")
    for row in rows:
        table.add_row(
            str(row["component"]), _outcome_style(str(row["outcome"])), str(row["message"])
        )
    console.print(table)


update_app = typer.Typer(help="Check for and apply service image updates.")
backups_app = typer.Typer(help="Create, inspect and restore backup archives.")
snapshots_app = typer.Typer(help="Inspect update snapshots.")
config_app = typer.Typer(help="Inspect global configuration.")

app.add_typer(update_app, name="update")
app.add_typer(backups_app, name="backup")
app.add_typer(snapshots_app, name="snapshot")
app.add_typer(config_app, name="config")


# Configuration ------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


# Updates -------------------------------------------------------------------
def _render_diff(target_id: str, diff: VersionDiff) -> None:
    table = Table(title=f"Versions for {target_id}", show_header=True, header_style="bold magenta")
    table.add_column("Service", style="bold")
    table.add_column("Current")
    table.add_column("Latest")
    table.add_column("Status")
    for change in diff.changes:
        table.add_row(
            change.service, change.current, change.latest, f"[yellow]{change.kind}[/yellow]"
        )
    for service in diff.up_to_date:
        table.add_row(service, "", "", "[green]up to date[/green]")
    for service in diff.unknown_latest:
        table.add_row(service, "", "", "[dim]no reference version[/dim]")
    for service in diff.not_found:
        table.add_row(service, "", "", "[dim]not found in local config[/dim]")
    console.print(table)


@update_app.command("check")
def update_check(
    ctx: typer.Context,
    target_id: str = typer.Argument(..., metavar="TARGET", help="Target to check."),
    only: str | None = typer.Option(
        None, "--only", help="Comma-separated services to compare (default: all)."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Compare a target's pinned image versions with the reference versions."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update check",
        args={"target": target_id, "only": only, "json": json_output},
        target={"kind": "target", "id": target_id},
    ) as op:
        target = _require_target(runtime, target_id, op)
        try:
            services = parse_service_selector(only, runtime.config.update.services)
            current = runtime.resolver.current_versions(target)
        except StackctlError as exc:
            _stackctl_error(op, "Version check failed", exc)
        latest = runtime.resolver.latest_versions()
        if not latest:
            _command_error(op, "Reference versions are unavailable.", rc=ExitCode.PROVIDER)
        diff = diff_versions(current, latest, services=services, order=runtime.config.update.order)

        payload = {"target": target_id, **diff.to_dict()}
        if json_output:
            console.print_json(data=payload)
        else:
            _render_diff(target_id, diff)
            if diff.empty:
                console.print("[green]All services are up to date.[/green]")
            else:
                console.print(f"{len(diff.changes)} update(s) available.")
        op.success("Compared versions.", changed=0, context=payload)


@update_app.command("versions")
def update_versions(
    ctx: typer.Context,
    target_id: str = typer.Argument(..., metavar="TARGET", help="Target to inspect."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the pinned service versions and container states of a target."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update versions",
        args={"target": target_id, "json": json_output},
        target={"kind": "target", "id": target_id},
    ) as op:
        target = _require_target(runtime, target_id, op)
        try:
            current = runtime.resolver.current_versions(target)
            containers = {c.service: c for c in runtime.compose.ps(target)}
        except StackctlError as exc:
            _stackctl_error(op, "Unable to read versions", exc)

        rows = [
            {
                "service": service,
                "version": version,
                "state": containers[service].state if service in containers else "absent",
            }
            for service, version in sorted(current.items())
        ]
        if json_output:
            console.print_json(data={"target": target_id, "services": rows})
        else:
            table = Table(title=f"Services for {target_id}", header_style="bold magenta")
            table.add_column("Service", style="bold")
            table.add_column("Version")
            table.add_column("State")
            for row in rows:
                table.add_row(row["service"], row["version"], row["state"])
            console.print(table)
        op.success("Reported versions.", changed=0, context={"services": rows})


def _confirm_update(target: TargetInstance, diff: VersionDiff) -> bool:
    count = len(diff.changes)
    console.print(f"[green]{target.id} is healthy after updating {count} service(s).[/green]")
    return typer.confirm("Keep the update?", default=True)


def _render_update(result: UpdateResult) -> None:
    if result.changes:
        table = Table(title=f"Update of {result.target_id}", header_style="bold magenta")
        table.add_column("Service", style="bold")
        table.add_column("From")
        table.add_column("To")
        for change in result.changes:
            table.add_row(change.service, change.current, change.latest)
        console.print(table)
    for service in result.not_found:
        console.print(f"[dim]{service}: not found in local config[/dim]")
    if result.health is not None:
        for finding in result.health.findings:
            mark = "[green]ok[/green]" if finding.ok else "[red]fail[/red]"
            console.print(f"  {finding.check}: {mark} {finding.message}")
    for warning in result.warnings:
        console.print(f"[yellow]{warning}[/yellow]")
    if result.rolled_back:
        reason = "declined by operator" if result.declined else "health check failed"
        console.print(f"[red]{result.target_id}: rolled back ({reason}).[/red]")
    elif result.changes:
        count = len(result.changes)
        console.print(f"[green]{result.target_id}: updated {count} service(s).[/green]")
    else:
        console.print(f"[green]{result.target_id}: already up to date.[/green]")


@update_app.command("apply")
def update_apply(
    ctx: typer.Context,
    target_id: str | None = typer.Argument(
        None, metavar="TARGET", help="Target to update (omit with --all)."
    ),
    all_targets: bool = typer.Option(False, "--all", help="Update every registered target."),
    only: str | None = typer.Option(
        None, "--only", help="Comma-separated services to update (default: all)."
    ),
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Snapshot, retag, restart and health-check targets, rolling back on failure."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update apply",
        args={"target": target_id, "all": all_targets, "only": only, "yes": yes},
        target={"kind": "target", "id": target_id or "*"},
    ) as op:
        if all_targets == (target_id is not None):
            _command_error(op, "Specify exactly one of TARGET or --all.", rc=ExitCode.VALIDATION)
        try:
            services = parse_service_selector(only, runtime.config.update.services)
            if all_targets:
                targets = runtime.registry.list_targets()
            else:
                assert target_id is not None
                targets = [runtime.registry.get_target(target_id)]
        except StackctlError as exc:
            _stackctl_error(op, "Update aborted", exc)
        if not targets:
            _command_error(op, "No targets registered.", rc=ExitCode.ENVIRONMENT)

        settings = runtime.config.update
        orchestrator = UpdateOrchestrator(
            runtime.compose,
            runtime.snapshots,
            runtime.resolver,
            runtime.health,
            confirm=(lambda target, diff: True) if yes or json_output else _confirm_update,
            order=settings.order,
            settle_seconds=settings.settle_seconds,
            health_timeout=settings.health_timeout,
            health_interval=settings.health_interval,
        )

        results: list[UpdateResult] = []
        failures: list[str] = []
        for target in targets:
            try:
                with runtime.locks.mutate_instances([target.id]) as bundle:
                    op.set_lock_wait_ms(bundle.wait_ms)
                    result = orchestrator.run(target, services or None)
            except StackctlError as exc:
                op.add_step(f"update:{target.id}", status="error", detail=str(exc))
                failures.append(f"{target.id}: {exc}")
                console.print(f"[red]Update of {target.id} failed: {exc}[/red]")
                if not all_targets:
                    _stackctl_error(op, "Update failed", exc)
                continue
            op.add_step(f"update:{target.id}", status=result.state.value, detail=result.to_dict())
            results.append(result)
            if not json_output:
                _render_update(result)

        payload = {"results": [result.to_dict() for result in results], "failures": failures}
        if json_output:
            console.print_json(data=payload)

        rolled_back = [result for result in results if result.rolled_back]
        if failures:
            _command_error(
                op,
                f"{len(failures)} target(s) failed to update.",
                rc=ExitCode.PROVIDER,
                errors=failures,
                context=payload,
            )
        if rolled_back:
            _command_error(
                op,
                f"{len(rolled_back)} target(s) rolled back.",
                rc=ExitCode.ROLLED_BACK,
                errors=[
                    result.health.summary() if result.health else "declined"
                    for result in rolled_back
                ],
                context=payload,
            )
        changed = sum(len(result.changes) for result in results)
        op.success(f"Updated {changed} service(s).", changed=changed, context=payload)


# Backups -------------------------------------------------------------------
@backups_app.command("create")
def backup_create(
    ctx: typer.Context,
    target_id: str = typer.Argument(..., metavar="TARGET", help="Target to back up."),
    backup_type: str = typer.Option(
        "full", "--type", "-t", help=f"Backup type ({', '.join(BACKUP_TYPES)})."
    ),
    destination: str | None = DESTINATION_OPTION,
    encrypt: bool = typer.Option(False, "--encrypt", help="Encrypt the archive."),
    password: str | None = PASSWORD_OPTION,
    password_file: Path | None = PASSWORD_FILE_OPTION,
    retention: int | None = typer.Option(
        None,
        "--retention",
        help="Keep only the newest N archives of this target and type (0 keeps all).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Create a backup archive for a target."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup create",
        args={
            "target": target_id,
            "type": backup_type,
            "destination": destination,
            "encrypt": encrypt,
            "password": password,
            "password_file": str(password_file) if password_file else None,
            "retention": retention,
            "json": json_output,
        },
        target={"kind": "backup", "id": target_id},
    ) as op:
        target = _require_target(runtime, target_id, op)
        secret = _resolve_password(op, password, password_file) if encrypt else None
        effective_retention = (
            retention if retention is not None else runtime.config.backups.retention
        )
        try:
            with runtime.locks.mutate_instances([target.id]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                archive = runtime.backups.run(
                    target,
                    backup_type,
                    destination=destination,
                    encrypt=encrypt,
                    password=secret,
                    retention=effective_retention,
                )
        except StackctlError as exc:
            _stackctl_error(op, "Failed to create backup", exc)

        payload = archive.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            _render_components(payload["components"])  # type: ignore[arg-type]
            console.print(f"Archive: {archive.location}")
            console.print(f"Checksum (sha256): {archive.checksum}")
            console.print(f"Size: {archive.size_bytes} bytes")
            for name in archive.pruned:
                console.print(f"[dim]Retention removed {name}[/dim]")
        if archive.ok:
            if not json_output:
                console.print(f"[green]Created backup '{archive.name}'.[/green]")
            op.success("Backup created.", changed=1, backups=[archive.name], context=payload)
        else:
            if not json_output:
                console.print(
                    f"[yellow]Backup completed with {len(archive.errors)} error(s).[/yellow]"
                )
            op.warning(
                "Backup completed with component errors.",
                errors=archive.errors,
                changed=1,
                backups=[archive.name],
                context=payload,
            )


@backups_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    target_id: str = typer.Argument(..., metavar="TARGET", help="Target to restore into."),
    source: str = typer.Option(
        ..., "--from", help="Archive path or s3://bucket/key to restore from."
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Validate the archive and each component without changes."
    ),
    password: str | None = PASSWORD_OPTION,
    password_file: Path | None = PASSWORD_FILE_OPTION,
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Restore a target from a backup archive."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup restore",
        args={
            "target": target_id,
            "from": source,
            "dry_run": dry_run,
            "password": password,
            "password_file": str(password_file) if password_file else None,
            "yes": yes,
        },
        target={"kind": "restore", "id": target_id},
    ) as op:
        target = _require_target(runtime, target_id, op)
        secret = _resolve_password(op, password, password_file)
        if not dry_run and not yes:
            if not typer.confirm(
                f"This will replace the current state of '{target_id}'. Continue?",
                default=False,
            ):
                console.print("Restore cancelled.")
                op.success("Restore cancelled by operator.", changed=0)
                return
        try:
            with runtime.locks.mutate_instances([target.id]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = runtime.restores.run(target, source, dry_run=dry_run, password=secret)
        except StackctlError as exc:
            _stackctl_error(op, "Restore failed", exc)

        payload = result.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            for warning in result.warnings:
                console.print(f"[yellow]{warning}[/yellow]")
            _render_components(payload["components"])  # type: ignore[arg-type]

        verb = "Dry run" if dry_run else "Restore"
        if not result.ok:
            _command_error(
                op,
                f"{verb} finished with {len(result.failures)} failed component(s).",
                rc=ExitCode.PROVIDER,
                errors=[f"{item.component}: {item.message}" for item in result.failures],
                context=payload,
            )
        if not json_output:
            console.print(f"[green]{verb} of '{target_id}' completed.[/green]")
        op.success(f"{verb} completed.", changed=0 if dry_run else 1, context=payload)


@backups_app.command("list")
def backup_list(
    ctx: typer.Context,
    target_id: str = typer.Argument(..., metavar="TARGET", help="Target whose archives to list."),
    destination: str | None = DESTINATION_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """List stored archives for a target, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"target": target_id, "destination": destination, "json": json_output},
        target={"kind": "backup", "id": target_id},
    ) as op:
        try:
            store = runtime.backups.open_store(target_id, destination)
            entries = list_archives(store, target_id)
        except StackctlError as exc:
            _stackctl_error(op, "Unable to list backups", exc)

        rows = [
            {
                "name": entry.name,
                "size": entry.size,
                "modified": entry.modified.isoformat() if entry.modified else None,
            }
            for entry in entries
        ]
        if json_output:
            console.print_json(data={"location": store.describe(), "backups": rows})
        elif not rows:
            console.print(f"No backups found at {store.describe()}.")
        else:
            table = Table(title=store.describe(), header_style="bold magenta")
            table.add_column("Archive", style="bold")
            table.add_column("Size", justify="right")
            table.add_column("Modified")
            for row in rows:
                table.add_row(str(row["name"]), str(row["size"]), str(row["modified"] or ""))
            console.print(table)
        op.success("Listed backups.", changed=0, context={"count": len(rows)})


@backups_app.command("verify")
def backup_verify(
    ctx: typer.Context,
    source: str = typer.Argument(..., metavar="ARCHIVE", help="Archive path or s3:// URL."),
    password: str | None = PASSWORD_OPTION,
    password_file: Path | None = PASSWORD_FILE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Check every file of an archive against its manifest checksums."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup verify",
        args={"source": source, "password": password, "json": json_output},
        target={"kind": "backup", "source": source},
    ) as op:
        secret = _resolve_password(op, password, password_file)
        try:
            inspection = runtime.restores.inspect(source, password=secret)
        except StackctlError as exc:
            _stackctl_error(op, "Verification failed", exc)

        payload = inspection.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            for warning in inspection.validation.warnings:
                console.print(f"[yellow]{warning}[/yellow]")
            for error in inspection.validation.errors:
                console.print(f"[red]{error}[/red]")
        if not inspection.ok:
            _command_error(
                op,
                f"Backup {inspection.name} failed verification.",
                rc=ExitCode.VALIDATION,
                errors=inspection.validation.errors,
                context=payload,
            )
        if not json_output:
            console.print(
                f"[green]Backup {inspection.name} verified "
                f"({inspection.validation.checked} files).[/green]"
            )
        op.success("Backup verified.", changed=0, context=payload)


@backups_app.command("info")
def backup_info(
    ctx: typer.Context,
    source: str = typer.Argument(..., metavar="ARCHIVE", help="Archive path or s3:// URL."),
    password: str | None = PASSWORD_OPTION,
    password_file: Path | None = PASSWORD_FILE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the manifest of an archive."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup info",
        args={"source": source, "password": password, "json": json_output},
        target={"kind": "backup", "source": source},
    ) as op:
        secret = _resolve_password(op, password, password_file)
        try:
            inspection = runtime.restores.inspect(source, password=secret)
        except StackctlError as exc:
            _stackctl_error(op, "Unable to read backup", exc)

        manifest = inspection.manifest
        if manifest is None:
            _command_error(
                op,
                f"Backup {inspection.name} has no readable manifest.",
                rc=ExitCode.VALIDATION,
                errors=inspection.validation.errors,
            )
        payload = inspection.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(title=inspection.name, show_header=False)
            table.add_column("Key", style="bold")
            table.add_column("Value")
            table.add_row("Target", manifest.project_id)
            table.add_row("Type", manifest.backup_type)
            table.add_row("Created", manifest.created_at)
            table.add_row("Host", manifest.hostname)
            table.add_row("Encrypted", "yes" if inspection.encrypted else "no")
            table.add_row("Files", str(len(manifest.files)))
            table.add_row("Content size", f"{manifest.total_size} bytes")
            table.add_row("Archive size", f"{inspection.archive_size} bytes")
            table.add_row("Tool version", manifest.tool_version)
            table.add_row("Valid", "yes" if inspection.ok else "no")
            console.print(table)
        op.success("Reported backup details.", changed=0, context=payload)


@backups_app.command("schedule")
def backup_schedule(
    ctx: typer.Context,
    target_id: str = typer.Argument(..., metavar="TARGET", help="Target to schedule."),
) -> None:
    """Print crontab entries for scheduled backups of a target."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup schedule",
        args={"target": target_id},
        target={"kind": "backup", "id": target_id},
    ) as op:
        target = _require_target(runtime, target_id, op)
        command = Path(sys.argv[0]).name or "stackctl"
        base = f"{command} backup create {target.id}"
        examples = [
            ("Daily full backup at 2 AM", f"0 2 * * * {base} --type full"),
            (
                "Daily database backup at 3 AM keeping 30 archives",
                f"0 3 * * * {base} --type database --retention 30",
            ),
            (
                "Weekly full backup every Sunday at 1 AM to S3",
                f"0 1 * * 0 {base} --type full --destination s3://your-bucket/backups",
            ),
            (
                "Daily encrypted backup with a password file",
                f"0 2 * * * {base} --type full --encrypt --password-file /secure/backup.key",
            ),
        ]
        console.print(f"[bold]Backup schedule examples for {target.id}[/bold]")
        console.print("Add one of the following lines to the crontab (crontab -e):\n")
        for title, line in examples:
            console.print(f"{title}:")
            console.print(f"  {line}\n", markup=False)
        console.print("Keep password files readable only by the cron user (chmod 600).")
        op.success("Printed schedule examples.", changed=0)


# Snapshots -------------------------------------------------------------------
@snapshots_app.command("list")
def snapshot_list(
    ctx: typer.Context,
    target_id: str = typer.Argument(..., metavar="TARGET", help="Target whose snapshots to list."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List retained pre-update and post-update snapshots."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshot list",
        args={"target": target_id, "json": json_output},
        target={"kind": "snapshot", "id": target_id},
    ) as op:
        try:
            snapshots = runtime.snapshots.list_snapshots(target_id)
        except StackctlError as exc:
            _stackctl_error(op, "Unable to list snapshots", exc)

        rows = [snapshot.to_dict() for snapshot in snapshots]
        if json_output:
            console.print_json(data={"target": target_id, "snapshots": rows})
        elif not rows:
            console.print(f"No snapshots for {target_id}.")
        else:
            table = Table(title=f"Snapshots for {target_id}", header_style="bold magenta")
            table.add_column("Created", style="bold")
            table.add_column("Kind")
            table.add_column("Services", justify="right")
            table.add_column("Path")
            for snapshot in snapshots:
                table.add_row(
                    snapshot.created_at,
                    snapshot.kind,
                    str(len(snapshot.versions)),
                    str(snapshot.path),
                )
            console.print(table)
        op.success("Listed snapshots.", changed=0, context={"count": len(rows)})


def main() -> None:
    """Console script entry point."""
    app()
