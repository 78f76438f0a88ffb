"""
CLI commands for inspecting and repairing the state store.

Thin wrappers over ``converge.core.use_cases.state``.

Usage::

    converge state list
    converge state show web
    converge state rm web --yes
"""

from __future__ import annotations

import json
import sys

import click


@click.group()
def state() -> None:
    """State — inspect and repair what converge tracks."""


@state.command("list")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def state_list(ctx: click.Context, as_json: bool) -> None:
    """List tracked resources."""
    from converge.core.use_cases.state import list_state

    result = list_state(config_path=ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if result.error:
            sys.exit(1)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    if not result.records:
        click.secho("⚠️  No resources in state", fg="yellow")
        return

    click.secho(f"📦 State (serial {result.serial}):", fg="cyan", bold=True)
    for record in result.records:
        rid = record.resource_id or "-"
        address = record.attributes.get("address", "")
        click.echo(f"   • {record.name:<20} {record.kind:<18} id={rid:<6} {address}")
    click.echo()


@state.command("show")
@click.argument("name")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def state_show(ctx: click.Context, name: str, as_json: bool) -> None:
    """Show one tracked resource in full."""
    from converge.core.use_cases.state import show_state

    result = show_state(name, config_path=ctx.obj.get("config_path"))

    if result.error:
        if as_json:
            click.echo(json.dumps({"error": result.error}, indent=2))
        else:
            click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    record = result.records[0]
    if as_json:
        click.echo(json.dumps(record.model_dump(mode="json"), indent=2))
        return

    click.secho(f"📄 {record.name}", fg="cyan", bold=True)
    click.echo(f"   kind:        {record.kind}")
    if record.source:
        click.echo(f"   source:      {record.source}")
    click.echo(f"   fingerprint: {record.fingerprint}")
    if record.dependencies:
        click.echo(f"   depends on:  {', '.join(record.dependencies)}")
    click.echo(f"   updated:     {record.updated_at}")
    click.echo()
    click.secho("   Attributes:", fg="white", bold=True)
    for key in sorted(record.attributes):
        click.echo(f"     {key} = {json.dumps(record.attributes[key])}")
    click.echo()


@state.command("rm")
@click.argument("names", nargs=-1, required=True)
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation.")
@click.pass_context
def state_rm(ctx: click.Context, names: tuple[str, ...], yes: bool) -> None:
    """Stop tracking resources without destroying them."""
    from converge.core.use_cases.state import remove_state

    if not yes and not click.confirm(
        f"Forget {', '.join(names)}? The resources keep running unmanaged.", default=False
    ):
        return

    result = remove_state(list(names), config_path=ctx.obj.get("config_path"))
    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    for name in result.removed:
        click.secho(f"   ✓ removed {name} from state", fg="green")
