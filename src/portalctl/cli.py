"""Typer-powered command line interface for ``portalctl``.

Descriptors are read from and written to the remote management API through
:class:`PortalStore`, which mirrors them into the local registry cache. Builds
and restores go through :class:`BuildSession` and :class:`RestoreSession`.
Every command runs inside a structured logger operation so the outcome lands
in ``operations.jsonl``.
"""
from __future__ import annotations

import asyncio
import json
import textwrap
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import NoReturn, TypeVar

import typer
import yaml
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .descriptor import (
    FLAG_FIELDS,
    DescriptorError,
    GitOptions,
    InstanceDescriptor,
    NodeOptions,
)
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .manage import ManageClient, ManageError
from .plan import BuildOptions, compile_build_plan, join_plan, render_plan
from .portals import (
    DuplicateInstanceError,
    PortalStore,
    PortalStoreError,
    UnknownInstanceError,
)
from .preview import LivePreview
from .sessions import (
    BuildSession,
    RestoreSession,
    ResultTab,
    SessionState,
    SessionStateError,
)
from .state import StateRegistry, StateRegistryError

T = TypeVar("T")

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to portalctl's YAML config file.",
)

SET_OPTION = typer.Option(
    None,
    "--set",
    help="Descriptor field override as dotted.key=value (repeatable).",
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Skip the confirmation prompt (non-interactive mode).",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit output as JSON instead of a table.",
)


class ResultView(str, Enum):
    """Result views selectable from the command line."""

    commands = "commands"
    output = "output"

    @property
    def tab(self) -> ResultTab:
        """Return the matching session result tab."""
        return ResultTab.COMMANDS if self is ResultView.commands else ResultTab.OUTPUT


SHOW_OPTION = typer.Option(
    ResultView.output,
    "--show",
    help="Which view of the job result to print.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Portal instance build and restore admin CLI.

        Instance descriptors, builds and restores are all handled by the
        remote management API; descriptors are cached locally for offline
        build plans.
        """
    ).strip(),
)
instances_app = typer.Typer(help="Manage portal instances, builds and restores.")
config_app = typer.Typer(help="Inspect global configuration.")
app.add_typer(instances_app, name="instance")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    logger: StructuredLogger


def _build_client(config: AppConfig) -> ManageClient:
    """Return a management API client for *config*."""
    return ManageClient.from_config(config.api)


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc
    registry = StateRegistry(config.registry_dir)
    logger = StructuredLogger(config.logs_dir)
    runtime = RuntimeContext(config=config, registry=registry, logger=logger)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the portalctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    runtime = _ensure_runtime(ctx, config_file)
    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"portalctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


async def _with_store(
    runtime: RuntimeContext,
    action: Callable[[PortalStore], Awaitable[T]],
) -> T:
    async with _build_client(runtime.config) as client:
        return await action(PortalStore(client, runtime.registry))


def _call_store(
    runtime: RuntimeContext,
    op: OperationScope,
    action: Callable[[PortalStore], Awaitable[T]],
) -> T:
    """Run *action* against the portal store and map failures to exit codes."""
    try:
        return asyncio.run(_with_store(runtime, action))
    except (UnknownInstanceError, DuplicateInstanceError) as exc:
        _command_error(op, f"{exc}.", rc=ExitCode.VALIDATION)
    except DescriptorError as exc:
        _descriptor_error(op, exc)
    except PortalStoreError as exc:
        _command_error(op, str(exc), rc=ExitCode.PROVIDER)
    except ManageError as exc:
        _command_error(op, _format_manage_error(exc), rc=ExitCode.PROVIDER)
    except StateRegistryError as exc:
        _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)


def _require_descriptor(
    runtime: RuntimeContext,
    name: str,
    op: OperationScope,
) -> InstanceDescriptor:
    return _call_store(runtime, op, lambda store: store.get(name))


def _cached_descriptor(
    runtime: RuntimeContext,
    name: str,
    op: OperationScope,
) -> InstanceDescriptor:
    try:
        return runtime.registry.get_descriptor(name)
    except StateRegistryError as exc:
        _command_error(op, f"{exc}.", rc=ExitCode.VALIDATION)


def _descriptor_error(op: OperationScope, exc: DescriptorError) -> NoReturn:
    _command_error(
        op,
        "Instance descriptor is invalid.",
        rc=ExitCode.VALIDATION,
        errors=[f"{path}: {message}" for path, message in exc.fields],
    )


def _format_manage_error(error: ManageError) -> str:
    msg = error.msg
    if isinstance(msg, (list, dict)):
        msg = json.dumps(msg)
    return f"Management API error {error.code}: {msg}"


def _parse_assignments(values: Sequence[str] | None) -> dict[str, object]:
    """Turn ``dotted.key=value`` strings into a nested edit delta.

    Boolean fields accept YAML spellings such as ``true`` or ``no``; every
    other value is kept as the literal text. An empty value clears the field.
    """
    delta: dict[str, object] = {}
    for raw in values or []:
        key, sep, value = raw.partition("=")
        path = [segment for segment in key.strip().split(".") if segment]
        if not sep or not path:
            raise typer.BadParameter(f"Expected dotted.key=value, got {raw!r}.")
        parsed: object = value.strip() or None
        if parsed is not None and ".".join(path) in FLAG_FIELDS:
            try:
                parsed = yaml.safe_load(value)
            except yaml.YAMLError:
                parsed = value
        current = delta
        for segment in path[:-1]:
            child = current.setdefault(segment, {})
            if not isinstance(child, dict):
                raise typer.BadParameter(f"Conflicting assignment for {key!r}.")
            current = child
        current[path[-1]] = parsed
    return delta


def _print_plan(commands: Sequence[str]) -> None:
    console.print(render_plan(commands), markup=False, highlight=False)


def _confirm(prompt: str, *, auto_confirm: bool) -> bool:
    return auto_confirm or typer.confirm(prompt, default=False)


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
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


# ----------------------------------------------------------------------
# instance CRUD
# ----------------------------------------------------------------------
@instances_app.command("list")
def instance_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List the instances held by the management API."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "all"},
    ) as op:
        descriptors = _call_store(runtime, op, lambda store: store.list_all())

        if json_output:
            console.print_json(data={"instances": [d.to_dict() for d in descriptors]})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Path")
        table.add_column("Web Root")
        table.add_column("Backups")

        if not descriptors:
            table.add_row("(none)", "", "", "")
        for descriptor in descriptors:
            table.add_row(
                descriptor.name,
                descriptor.path,
                descriptor.web_root,
                descriptor.backups_dir or "",
            )

        console.print(table)
        op.success("Reported instance list.", changed=0)


@instances_app.command("show")
def instance_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to display."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show a descriptor together with its default build plan."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance show",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        descriptor = _require_descriptor(runtime, name, op)
        commands = LivePreview(descriptor).commands

        if json_output:
            console.print_json(data={"instance": descriptor.to_dict(), "plan": commands})
            op.success("Displayed instance details as JSON.", changed=0)
            return

        table = Table(show_header=False)
        table.add_row("Name", descriptor.name)
        table.add_row("Path", descriptor.path)
        table.add_row("Build", descriptor.build_output_dir or f"{descriptor.path}/dist")
        table.add_row("Web Root", descriptor.web_root)
        table.add_row("Backups", descriptor.backups_dir or "")
        table.add_row("Git", json.dumps(descriptor.git.to_dict()))
        table.add_row("Node", json.dumps(descriptor.node.to_dict()))
        console.print(table)
        console.print("[bold]Build preview[/bold]")
        _print_plan(commands)
        op.success("Displayed instance details.", changed=0)


@instances_app.command("create")
def instance_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Unique instance name."),
    path: str = typer.Option(..., "--path", help="Path to the repository."),
    web_root: str = typer.Option(..., "--web-root", help="Path to copy files after build."),
    build: str | None = typer.Option(None, "--build", help="Path to the build folder."),
    backups: str | None = typer.Option(None, "--backups", help="Backups folder."),
    checkout: bool = typer.Option(False, "--checkout", help="Allow switching branches."),
    submodules: bool = typer.Option(False, "--submodules", help="Requires submodules."),
    force_install: bool = typer.Option(False, "--force-install", help="--force on install."),
    nvm: str | None = typer.Option(None, "--nvm", help="nvm alias (optional)."),
    script: str | None = typer.Option(None, "--script", help="npm run script."),
) -> None:
    """Register a new portal instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance create",
        args={"name": name, "path": path, "web_root": web_root},
        target={"kind": "instance", "name": name},
    ) as op:
        record = InstanceDescriptor(
            name=name,
            path=path,
            web_root=web_root,
            build_output_dir=build,
            backups_dir=backups,
            git=GitOptions(checkout_allowed=checkout, submodules_required=submodules),
            node=NodeOptions(force_install=force_install, nvm_alias=nvm, script=script),
        ).to_dict()
        try:
            descriptor = InstanceDescriptor.from_mapping(record)
        except DescriptorError as exc:
            _descriptor_error(op, exc)
        _call_store(runtime, op, lambda store: store.create(descriptor))
        op.add_step("portal.create", detail=descriptor.name)
        console.print(f"[green]Instance '{descriptor.name}' registered.[/green]")
        op.success("Registered instance.", changed=1)


@instances_app.command("update")
def instance_update(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to update."),
    assignments: list[str] | None = SET_OPTION,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Show the build plan with the edits applied without saving them.",
    ),
) -> None:
    """Update descriptor fields of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance update",
        args={"name": name, "set": list(assignments or []), "dry_run": dry_run},
        target={"kind": "instance", "name": name},
    ) as op:
        delta = _parse_assignments(assignments)
        if not delta:
            _command_error(op, "Nothing to update; pass at least one --set.")
        preview = LivePreview(_require_descriptor(runtime, name, op))
        preview.edit(delta)
        try:
            commands = preview.commands
        except DescriptorError as exc:
            _descriptor_error(op, exc)

        if dry_run:
            console.print("[yellow]Dry run[/yellow]: build preview with pending edits")
            _print_plan(commands)
            op.success("Dry run complete.", changed=0, context={"delta": delta})
            return

        updated = preview.effective
        _call_store(runtime, op, lambda store: store.update(updated))
        preview.saved(updated)
        op.add_step("portal.update", detail=name)
        console.print(f"[green]Instance '{name}' updated.[/green]")
        op.success("Updated instance.", changed=1, context={"delta": delta})


@instances_app.command("delete")
def instance_delete(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to delete."),
    yes: bool = YES_OPTION,
) -> None:
    """Unregister an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance delete",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        _require_descriptor(runtime, name, op)
        if not _confirm(f"Delete instance '{name}'?", auto_confirm=yes):
            console.print("Aborted.")
            op.success("Instance delete cancelled.", changed=0)
            return
        _call_store(runtime, op, lambda store: store.delete(name))
        op.add_step("portal.delete", detail=name)
        console.print(f"[green]Instance '{name}' removed.[/green]")
        op.success("Removed instance.", changed=1)


# ----------------------------------------------------------------------
# build plan / build / restore
# ----------------------------------------------------------------------
@instances_app.command("plan")
def instance_plan(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance."),
    clear: bool = typer.Option(False, "--clear", help="Clear local changes before pulling."),
    checkout: str | None = typer.Option(
        None,
        "--checkout",
        help="Branch to check out; emitted as given, even if already current.",
    ),
    backup: bool = typer.Option(False, "--backup", help="Back up the current web root."),
    assignments: list[str] | None = SET_OPTION,
    json_output: bool = JSON_OPTION,
    offline: bool = typer.Option(
        False,
        "--offline",
        help="Use the locally cached descriptor instead of asking the API.",
    ),
) -> None:
    """Print the build plan without triggering a build."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance plan",
        args={
            "name": name,
            "clear": clear,
            "checkout": checkout,
            "backup": backup,
            "set": list(assignments or []),
            "offline": offline,
        },
        target={"kind": "instance", "name": name},
    ) as op:
        if offline:
            persisted = _cached_descriptor(runtime, name, op)
        else:
            persisted = _require_descriptor(runtime, name, op)
        preview = LivePreview(persisted)
        preview.edit(_parse_assignments(assignments))
        try:
            if clear or checkout or backup:
                options = BuildOptions(clear=clear, checkout=checkout or None, backup=backup)
                commands = compile_build_plan(preview.effective, options)
            else:
                commands = preview.commands
        except DescriptorError as exc:
            _descriptor_error(op, exc)

        if json_output:
            console.print_json(
                data={"name": name, "plan": commands, "shell": join_plan(commands)}
            )
        else:
            _print_plan(commands)
        op.success("Rendered build plan.", changed=0, context={"dirty": preview.dirty})


async def _run_build(
    runtime: RuntimeContext,
    descriptor: InstanceDescriptor,
    op: OperationScope,
    *,
    clear: bool,
    checkout: str | None,
    backup: bool | None,
    yes: bool,
) -> tuple[BuildSession, list[ManageError], bool]:
    errors: list[ManageError] = []
    async with _build_client(runtime.config) as client:
        session = BuildSession(descriptor, client, on_error=errors.append)
        await session.open()
        details = session.details
        if session.state is not SessionState.READY or details is None:
            return session, errors, False
        op.add_step("status.fetch", detail=details.current_branch)

        console.print("[bold]Status:[/bold]")
        console.print(details.status, markup=False, highlight=False)
        if checkout:
            session.set_checkout_branch(checkout)
        session.set_clear(clear)
        if backup is not None and descriptor.has_backups:
            session.set_backup(backup)

        console.print(f"[bold]Preview[/bold] (branch {session.selected_branch})")
        _print_plan(session.preview)
        if not _confirm(f"Build '{descriptor.name}'?", auto_confirm=yes):
            session.close()
            return session, errors, False

        await session.submit()
        return session, errors, True


@instances_app.command("build")
def instance_build(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to build."),
    clear: bool = typer.Option(False, "--clear", help="Clear local changes before pulling."),
    checkout: str | None = typer.Option(None, "--checkout", help="Branch to check out."),
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip moving the current web root to the backups folder.",
    ),
    yes: bool = YES_OPTION,
    show: ResultView = SHOW_OPTION,
) -> None:
    """Fetch status, preview, and trigger a build on the remote host."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance build",
        args={"name": name, "clear": clear, "checkout": checkout, "no_backup": no_backup},
        target={"kind": "instance", "name": name},
    ) as op:
        descriptor = _require_descriptor(runtime, name, op)
        try:
            session, errors, submitted = asyncio.run(
                _run_build(
                    runtime,
                    descriptor,
                    op,
                    clear=clear,
                    checkout=checkout,
                    backup=False if no_backup else None,
                    yes=yes,
                )
            )
        except (ValueError, SessionStateError) as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        if errors:
            _command_error(
                op,
                _format_manage_error(errors[-1]),
                rc=ExitCode.PROVIDER,
                errors=[_format_manage_error(error) for error in errors],
            )
        if not submitted:
            console.print("Aborted.")
            op.success("Build cancelled.", changed=0)
            return

        session.select_tab(show.tab)
        op.add_step("build.submit", detail=session.state.value)
        console.print(session.result_view(), markup=False, highlight=False)
        op.success("Build completed.", changed=1, context={"plan": session.preview})


async def _run_list_backups(
    runtime: RuntimeContext,
    name: str,
) -> tuple[RestoreSession, list[ManageError]]:
    errors: list[ManageError] = []
    async with _build_client(runtime.config) as client:
        session = RestoreSession(name, client, on_error=errors.append)
        await session.open()
        return session, errors


@instances_app.command("backups")
def instance_backups(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List the backups available on the remote host."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance backups",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        session, errors = asyncio.run(_run_list_backups(runtime, name))
        if errors:
            _command_error(op, _format_manage_error(errors[-1]), rc=ExitCode.PROVIDER)

        backups = list(session.backups or ())
        if json_output:
            console.print_json(data={"name": name, "backups": backups})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Backup", style="bold")
            if not backups:
                table.add_row("(none)")
            for backup_id in backups:
                table.add_row(backup_id)
            console.print(table)
        session.close()
        op.success("Reported backups.", changed=0, context={"count": len(backups)})


async def _run_restore(
    runtime: RuntimeContext,
    name: str,
    backup_id: str,
    op: OperationScope,
    *,
    backup_current: bool,
    yes: bool,
) -> tuple[RestoreSession, list[ManageError], bool]:
    errors: list[ManageError] = []
    async with _build_client(runtime.config) as client:
        session = RestoreSession(name, client, on_error=errors.append)
        await session.open()
        if session.state is not SessionState.READY:
            return session, errors, False
        op.add_step("backups.fetch", detail=str(len(session.backups or ())))

        session.select_backup(backup_id)
        session.set_backup_current(backup_current)
        if not _confirm(f"Restore '{name}' from backup '{backup_id}'?", auto_confirm=yes):
            session.close()
            return session, errors, False

        await session.submit()
        return session, errors, True


@instances_app.command("restore")
def instance_restore(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to restore."),
    backup_id: str = typer.Argument(..., help="Backup identifier to restore."),
    backup_current: bool = typer.Option(
        False,
        "--backup-current",
        help="Back up the current code before restoring.",
    ),
    yes: bool = YES_OPTION,
    show: ResultView = SHOW_OPTION,
) -> None:
    """Restore an instance from one of its backups."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance restore",
        args={"name": name, "backup": backup_id, "backup_current": backup_current},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            session, errors, submitted = asyncio.run(
                _run_restore(
                    runtime,
                    name,
                    backup_id,
                    op,
                    backup_current=backup_current,
                    yes=yes,
                )
            )
        except (ValueError, SessionStateError) as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        if errors:
            _command_error(
                op,
                _format_manage_error(errors[-1]),
                rc=ExitCode.PROVIDER,
                errors=[_format_manage_error(error) for error in errors],
            )
        if not submitted:
            console.print("Aborted.")
            op.success("Restore cancelled.", changed=0)
            return

        session.select_tab(show.tab)
        op.add_step("restore.submit", detail=session.state.value)
        console.print(session.result_view(), markup=False, highlight=False)
        op.success("Restore completed.", changed=1, backups=[backup_id])


__all__ = ["app"]
