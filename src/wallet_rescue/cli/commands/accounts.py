"""Account store commands."""
from __future__ import annotations

import asyncio
from typing import Optional

import click
from eth_account import Account
from rich.console import Console
from rich.table import Table

from ...exceptions import StoreError
from ...models import AccountPatch, AccountRecord, AccountStatus
from ..common import open_store

console = Console()


@click.group()
def accounts():
    """Account store commands."""
    pass


@accounts.command("list")
@click.option(
    "--status",
    type=click.Choice([s.value for s in AccountStatus]),
    default=None,
    help="Only show accounts in this status",
)
@click.pass_context
def list_accounts(ctx, status: Optional[str]):
    """List accounts."""
    settings = ctx.obj["settings"]

    async def _list():
        store = open_store(settings)
        try:
            return await store.read_all()
        finally:
            await store.close()

    records = asyncio.run(_list())
    if status:
        records = [r for r in records if r.status.value == status]

    if not records:
        console.print("[dim]No accounts found[/dim]")
        return

    table = Table(title="Accounts")
    table.add_column("Address", style="cyan")
    table.add_column("Vault")
    table.add_column("Destination", style="green")
    table.add_column("Status", style="yellow")
    table.add_column("Updated")
    for record in records:
        table.add_row(
            record.address,
            record.vault_id or "-",
            record.new_address or "-",
            record.status.value,
            record.updated_at.isoformat()[:19] if record.updated_at else "",
        )
    console.print(table)


@accounts.command("add")
@click.option("--private-key", prompt=True, hide_input=True, help="Private key of the exposed wallet")
@click.pass_context
def add_account(ctx, private_key: str):
    """Register an exposed wallet for recovery."""
    settings = ctx.obj["settings"]
    try:
        address = Account.from_key(private_key).address
    except ValueError as e:
        raise click.BadParameter(f"invalid private key: {e}") from e

    async def _add():
        store = open_store(settings)
        try:
            return await store.insert(AccountRecord(address=address, private_key=private_key))
        finally:
            await store.close()

    try:
        asyncio.run(_add())
    except StoreError as e:
        raise click.ClickException(e.message) from e
    console.print(f"[green]✓ Added {address}[/green]")


@accounts.command("ignore")
@click.argument("address")
@click.pass_context
def ignore_account(ctx, address: str):
    """Exclude a pending account from processing for good."""
    settings = ctx.obj["settings"]

    async def _ignore():
        store = open_store(settings)
        try:
            return await store.update(address, AccountPatch(status=AccountStatus.IGNORE))
        finally:
            await store.close()

    try:
        asyncio.run(_ignore())
    except StoreError as e:
        raise click.ClickException(e.message) from e
    console.print(f"[green]✓ {address} will be ignored[/green]")
