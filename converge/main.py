"""
converge — CLI entrypoint.

Usage:
    python -m converge.main --help
    converge plan
    converge apply --auto-approve
"""

from __future__ import annotations

import json
import os
import signal
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click

from converge import __version__
from converge.core.engine.executor import ResourceStatus, RunReport
from converge.core.errors import ValidationError
from converge.core.models.operation import OPERATION_SYMBOLS, OperationKind, Plan
from converge.core.models.value import render
from converge.core.observability.logging_config import (
    ENV_LOG_FILE,
    ENV_LOG_FILE_LEVEL,
    level_from_flags,
    setup_logging,
)

_OP_COLORS = {
    OperationKind.CREATE: "green",
    OperationKind.UPDATE: "yellow",
    OperationKind.REPLACE: "magenta",
    OperationKind.DESTROY: "red",
    OperationKind.NOOP: "white",
}

_STATUS_COLORS = {"ok": "green", "partial": "yellow", "cancelled": "yellow", "failed": "red"}


@click.group()
@click.version_option(version=__version__, prog_name="converge")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to converge.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """converge — declarative infrastructure reconciler."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging(
        level=level_from_flags(verbose=verbose, quiet=quiet, debug=debug),
        log_file=os.environ.get(ENV_LOG_FILE),
        log_file_level=os.environ.get(ENV_LOG_FILE_LEVEL),
        quiet_third_party=not debug,
    )


def _cli_vars(pairs: tuple[str, ...]) -> dict[str, Any]:
    from converge.core.config.desired import parse_cli_vars

    try:
        return parse_cli_vars(pairs)
    except ValidationError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(1)


_var_option = click.option(
    "--var",
    "variables",
    multiple=True,
    metavar="NAME=VALUE",
    help="Set a variable (repeatable; overrides vars file and environment).",
)


# ═══════════════════════════════════════════════════════════════════
#  validate
# ═══════════════════════════════════════════════════════════════════


@cli.command()
@_var_option
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def validate(ctx: click.Context, variables: tuple[str, ...], as_json: bool) -> None:
    """Validate converge.yml and the desired state."""
    from converge.core.use_cases.validate import check_desired

    result = check_desired(config_path=ctx.obj.get("config_path"), cli_vars=_cli_vars(variables))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.valid else 1)

    if result.valid:
        assert result.desired is not None  # guaranteed when valid
        click.secho("✅ Desired state is valid", fg="green", bold=True)
        click.echo(f"   Resources: {len(result.desired)}")
        click.echo(f"   Outputs: {len(result.desired.outputs)}")
        if ctx.obj.get("verbose") and result.desired.order:
            click.echo(f"   Order: {' → '.join(result.desired.order)}")
    else:
        click.secho("❌ Validation errors:", fg="red", bold=True)
        for err in result.errors:
            click.echo(f"   • {err}")

    if result.warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warn in result.warnings:
            click.echo(f"   • {warn}")

    if not result.valid:
        click.echo()
        sys.exit(1)

    click.echo()


# ═══════════════════════════════════════════════════════════════════
#  plan / apply / destroy
# ═══════════════════════════════════════════════════════════════════


def _show_plan(plan: Plan, verbose: bool = False) -> None:
    summary = plan.summary()
    click.echo()
    if not plan.has_changes:
        click.secho("✅ No changes. Infrastructure matches the desired state.", fg="green", bold=True)
        click.echo()
        return

    click.secho("📋 Plan:", fg="cyan", bold=True)
    for op in plan:
        if not op.is_change and not verbose:
            continue
        symbol = OPERATION_SYMBOLS[op.kind]
        color = _OP_COLORS[op.kind]
        click.secho(f"   {symbol:>3} {op.name}", fg=color, bold=True, nl=False)
        click.echo(f"  ({op.resource_kind})" + (f"  {op.reason}" if op.reason else ""))

        if op.kind == OperationKind.UPDATE and op.prior is not None:
            for key in op.changed:
                before = op.prior.desired.get(key)
                after = render(op.planned.get(key))
                click.echo(f"         {key}: {json.dumps(before)} → {json.dumps(after)}")
        elif op.kind in (OperationKind.CREATE, OperationKind.REPLACE) and verbose:
            for key, value in render(op.planned).items():
                click.echo(f"         {key}: {json.dumps(value)}")

    click.echo()
    click.echo(
        f"   {summary['create']} to create, {summary['update']} to update, "
        f"{summary['replace']} to replace, {summary['destroy']} to destroy."
    )
    click.echo()


def _show_report(report: RunReport) -> None:
    click.echo()
    for name, outcome in report.outcomes.items():
        if outcome.operation == OperationKind.NOOP and outcome.status == ResourceStatus.COMMITTED:
            continue
        if outcome.status == ResourceStatus.COMMITTED:
            click.secho(f"   ✓ {name}", fg="green", nl=False)
            click.echo(f" {outcome.operation.value} ({outcome.duration_ms}ms)")
        elif outcome.status == ResourceStatus.FAILED:
            click.secho(f"   ✗ {name}", fg="red", nl=False)
            click.echo(f" {outcome.operation.value}")
            if outcome.error:
                for line in outcome.error.split("\n")[:5]:
                    click.echo(f"     │ {line}")
        else:
            click.secho(f"   ⊘ {name} ", fg="yellow", nl=False)
            click.echo(f"({outcome.reason})")

    click.echo()
    color = _STATUS_COLORS.get(report.status, "white")
    click.secho(
        f"   Result: {len(report.committed)} committed, {len(report.failed)} failed, "
        f"{len(report.skipped)} skipped",
        fg=color,
        bold=True,
    )


def _show_outputs(outputs: list[Any]) -> None:
    if not outputs:
        return
    click.echo()
    click.secho("   Outputs:", fg="white", bold=True)
    for out in outputs:
        if out.available:
            click.echo(f"     {out.name} = {json.dumps(out.value)}")
        else:
            click.secho(f"     {out.name} = (unavailable: {out.reason})", fg="yellow")


@contextmanager
def _cancel_on_interrupt() -> Iterator[threading.Event]:
    """First Ctrl-C stops scheduling new operations; in-flight ones finish."""
    cancel = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    previous = signal.getsignal(signal.SIGINT)

    def handler(signum: int, frame: Any) -> None:
        if cancel.is_set():
            signal.signal(signal.SIGINT, previous)
            raise KeyboardInterrupt
        click.secho("\n⚠️  Interrupted: waiting for in-flight operations to finish…", fg="yellow", err=True)
        cancel.set()

    signal.signal(signal.SIGINT, handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


@cli.command()
@_var_option
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--refresh", is_flag=True, help="Read live provider state before planning.")
@click.option("--destroy", is_flag=True, help="Plan the teardown of every managed resource.")
@click.pass_context
def plan(
    ctx: click.Context,
    variables: tuple[str, ...],
    as_json: bool,
    refresh: bool,
    destroy: bool,
) -> None:
    """Show the operations apply would perform."""
    from converge.core.use_cases.plan import run_plan

    result = run_plan(
        config_path=ctx.obj.get("config_path"),
        cli_vars=_cli_vars(variables),
        refresh=refresh,
        destroy=destroy,
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if result.error:
            sys.exit(1)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    assert result.plan is not None
    _show_plan(result.plan, verbose=ctx.obj.get("verbose", False))


def _run(
    ctx: click.Context,
    variables: tuple[str, ...],
    auto_approve: bool,
    as_json: bool,
    destroy: bool,
    refresh: bool = False,
    concurrency: int | None = None,
) -> None:
    from converge.core.use_cases.apply import run_apply

    if as_json and not auto_approve:
        click.secho("❌ --json requires --auto-approve", fg="red")
        sys.exit(1)

    verbose = ctx.obj.get("verbose", False)
    action = "destroy" if destroy else "apply"

    def approve(plan: Plan) -> bool:
        _show_plan(plan, verbose=verbose)
        if auto_approve:
            return True
        return click.confirm(f"Do you want to {action} these changes?", default=False)

    with _cancel_on_interrupt() as cancel:
        result = run_apply(
            config_path=ctx.obj.get("config_path"),
            cli_vars=_cli_vars(variables),
            destroy=destroy,
            refresh=refresh,
            concurrency=concurrency,
            approve=None if as_json else approve,
            cancel=cancel,
        )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if not result.ok:
            sys.exit(1)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    if result.aborted:
        click.secho(f"⊘ {action.capitalize()} cancelled.", fg="yellow")
        return

    assert result.plan is not None and result.report is not None
    if not result.plan.has_changes:
        _show_plan(result.plan)
        return

    _show_report(result.report)
    if not destroy:
        _show_outputs(result.outputs)

    if not result.report.all_ok:
        click.echo()
        click.secho("   Re-run to resume from what was committed.", fg="yellow")
        click.echo()
        sys.exit(1)

    click.echo()


@cli.command()
@_var_option
@click.option("--auto-approve", "-y", is_flag=True, help="Skip interactive approval.")
@click.option("--refresh", is_flag=True, help="Read live provider state before planning.")
@click.option("--concurrency", type=click.IntRange(1, 64), default=None, help="Maximum parallel operations.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def apply(
    ctx: click.Context,
    variables: tuple[str, ...],
    auto_approve: bool,
    refresh: bool,
    concurrency: int | None,
    as_json: bool,
) -> None:
    """Reconcile infrastructure with the desired state.

    Examples:

        converge apply

        converge apply --var memory=4096 --auto-approve
    """
    _run(ctx, variables, auto_approve, as_json, destroy=False, refresh=refresh, concurrency=concurrency)


@cli.command()
@_var_option
@click.option("--auto-approve", "-y", is_flag=True, help="Skip interactive approval.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def destroy(ctx: click.Context, variables: tuple[str, ...], auto_approve: bool, as_json: bool) -> None:
    """Destroy every resource managed in state."""
    _run(ctx, variables, auto_approve, as_json, destroy=True)


# ═══════════════════════════════════════════════════════════════════
#  output
# ═══════════════════════════════════════════════════════════════════


@cli.command()
@click.argument("name", required=False)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def output(ctx: click.Context, name: str | None, as_json: bool) -> None:
    """Show output values from committed state."""
    from converge.core.use_cases.state import get_outputs

    result = get_outputs(name=name, config_path=ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if result.error:
            sys.exit(1)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    if name is not None:
        out = result.outputs[0]
        if not out.available:
            click.secho(f"⚠️  {out.name} unavailable: {out.reason}", fg="yellow")
            sys.exit(1)
        value = out.value
        click.echo(value if isinstance(value, str) else json.dumps(value))
        return

    if not result.outputs:
        click.secho("⚠️  No outputs declared", fg="yellow")
        return
    _show_outputs(result.outputs)
    click.echo()


# ═══════════════════════════════════════════════════════════════════
#  force-unlock / health
# ═══════════════════════════════════════════════════════════════════


@cli.command("force-unlock")
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation.")
@click.pass_context
def force_unlock_cmd(ctx: click.Context, yes: bool) -> None:
    """Remove a state lock left behind by a crashed run."""
    from converge.core.use_cases.state import force_unlock

    if not yes and not click.confirm("Only do this if no other run is active. Continue?", default=False):
        return

    result = force_unlock(config_path=ctx.obj.get("config_path"))
    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    holder = result.lock_holder or {}
    click.secho("🔓 State unlocked", fg="green", bold=True)
    click.echo(f"   Was held by pid {holder.get('pid')} on {holder.get('host')} (run {holder.get('run_id') or '?'})")


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def health(ctx: click.Context, as_json: bool) -> None:
    "Show workspace health — state store, state lock, provider."
    from converge.adapters.registry import build_registry
    from converge.core.config.loader import resolve_workspace
    from converge.core.errors import ConfigError
    from converge.core.observability.health import ComponentHealth, check_system_health
    from converge.core.persistence.audit import AuditWriter
    from converge.core.persistence.lock import StateLock
    from converge.core.persistence.state_store import StateStore

    try:
        workspace = resolve_workspace(ctx.obj.get("config_path"))
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(1)

    provider_name = workspace.config.provider.name
    provider = build_registry(workspace.config.provider, workspace.state_dir).get(provider_name)
    system_health = check_system_health(
        store=StateStore(workspace.state_path),
        lock=StateLock(workspace.lock_path, stale_after=workspace.config.lock.stale_after),
        provider=provider,
        audit=AuditWriter(workspace.audit_path),
    )
    if provider is None:
        system_health.add(
            ComponentHealth(name="provider", status="unhealthy", message=f"Unknown provider '{provider_name}'")
        )

    if as_json:
        click.echo(json.dumps(system_health.to_dict(), indent=2))
        return

    status_icons = {
        "healthy": ("💚", "green"),
        "degraded": ("🟡", "yellow"),
        "unhealthy": ("🔴", "red"),
        "unknown": ("❔", "white"),
    }
    icon, color = status_icons.get(system_health.status, ("❔", "white"))

    click.echo()
    click.secho(f"{icon} System Health: {system_health.status.upper()}", fg=color, bold=True)
    click.echo(f"   {system_health.timestamp}")
    click.echo()

    for component in system_health.components:
        c_icon, c_color = status_icons.get(component.status, ("❔", "white"))
        click.secho(f"   {c_icon} {component.name}", fg=c_color, bold=True)
        click.echo(f"      {component.message}")

        if ctx.obj.get("verbose") and component.details:
            for key, val in component.details.items():
                click.echo(f"      {key}: {val}")

    click.echo()


# ── Register sub-command groups from converge/ui/cli/ ─────────────

from converge.ui.cli.state import state  # noqa: E402

cli.add_command(state)


if __name__ == "__main__":
    cli()
