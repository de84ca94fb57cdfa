"""Fireblocks gas station and vault commands."""
from __future__ import annotations

import asyncio
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from ...custody import FireblocksClient
from ...exceptions import RescueError

console = Console()


def _run(settings, action):
    async def _call():
        client = FireblocksClient(settings.fireblocks)
        try:
            return await action(client)
        finally:
            await client.close()

    try:
        return asyncio.run(_call())
    except RescueError as e:
        raise click.ClickException(f"{e.error_code}: {e.message}") from e


@click.group("gas-station")
def gas_station():
    """Fireblocks gas station settings."""
    pass


@gas_station.command("show")
@click.option("--asset", default=None, help="Asset id (default from settings)")
@click.pass_context
def show(ctx, asset: Optional[str]):
    """Show gas station bounds."""
    settings = ctx.obj["settings"]
    bounds = _run(settings, lambda client: client.get_gas_station(asset))

    table = Table(title=f"Gas station ({asset or settings.fireblocks.asset_id})")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Threshold", bounds.gas_threshold)
    table.add_row("Cap", bounds.gas_cap)
    table.add_row("Max gas price", bounds.max_gas_price or "-")
    console.print(table)


@gas_station.command("set")
@click.argument("threshold")
@click.argument("cap")
@click.option("--max-gas-price", default=None, help="Max gas price in gwei")
@click.option("--asset", default=None, help="Asset id (default from settings)")
@click.pass_context
def set_bounds(ctx, threshold: str, cap: str, max_gas_price: Optional[str], asset: Optional[str]):
    """Set gas station THRESHOLD and CAP."""
    settings = ctx.obj["settings"]
    _run(settings, lambda client: client.set_gas_station(threshold, cap, max_gas_price, asset))
    console.print(f"[green]✓ Gas station set to {threshold}..{cap}[/green]")


@click.command("vault-transfer")
@click.argument("source")
@click.argument("destination")
@click.argument("amount")
@click.option("--asset", default=None, help="Asset id (default from settings)")
@click.pass_context
def vault_transfer(ctx, source: str, destination: str, amount: str, asset: Optional[str]):
    """Move AMOUNT between two Fireblocks vaults."""
    settings = ctx.obj["settings"]
    tx_id = _run(
        settings,
        lambda client: client.transfer_between_vaults(source, destination, amount, asset),
    )
    console.print(f"[green]✓ Transfer submitted: {tx_id}[/green]")
