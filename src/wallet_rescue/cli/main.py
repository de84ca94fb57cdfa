"""
wallet-rescue CLI entry point.

Usage:
    wallet-rescue [OPTIONS] COMMAND [ARGS]...
"""
from __future__ import annotations

import asyncio
import dataclasses
import json
from pathlib import Path
from typing import Optional

import click
from eth_account import Account
from rich.console import Console
from rich.table import Table

from ..chain import RPCChainClient
from ..config import RescueSettings, load_settings
from ..custody import FireblocksClient
from ..dispatcher import Dispatcher
from ..exceptions import RescueError
from ..logging_config import set_account_context, setup_logging
from ..models import ItemVoucher
from ..sequencer import NonceSequencer
from ..worker import process_account
from ..workflow import WorkflowOptions
from .commands import accounts, custody
from .common import open_store, require_engine_settings

console = Console()


def _parse_token_ids(value: Optional[str]) -> Optional[list[int]]:
    if not value:
        return None
    try:
        return [int(part) for part in value.split(",") if part.strip()]
    except ValueError as e:
        raise click.BadParameter(f"token ids must be integers: {value}") from e


def _load_voucher(path: str) -> ItemVoucher:
    try:
        return ItemVoucher.model_validate(json.loads(Path(path).read_text()))
    except ValueError as e:
        raise click.BadParameter(f"not a usable fighter voucher: {e}", param_hint="--voucher") from e


@click.group()
@click.version_option(message="%(prog)s %(version)s")
@click.option("--env-file", type=click.Path(dir_okay=False), help="Settings file (default .env)")
@click.option("--log-level", default=None, help="Override RESCUE_LOG_LEVEL")
@click.option("--json-logs", is_flag=True, default=False, help="Emit JSON log lines")
@click.pass_context
def cli(ctx, env_file: Optional[str], log_level: Optional[str], json_logs: bool):
    """Recover assets from exposed wallets into custodial vaults."""
    ctx.ensure_object(dict)
    settings = load_settings(env_file)
    updates = {}
    if log_level:
        updates["log_level"] = log_level
    if json_logs:
        updates["log_json"] = True
    if updates:
        settings = settings.model_copy(update=updates)
    setup_logging(settings.log_level, settings.log_json, settings.log_dir)
    ctx.obj["settings"] = settings


@cli.command()
@click.option("--threads", type=int, default=None, help="Workers per batch")
@click.option("--max-rounds", type=int, default=None, help="Stop after this many batches")
@click.option("--no-serum", is_flag=True, help="Skip serum claims")
@click.option("--no-fighters", is_flag=True, help="Skip fighter claims")
@click.option("--no-verify-knots", is_flag=True, help="Skip the knots top-up check")
@click.pass_context
def run(ctx, threads: Optional[int], max_rounds: Optional[int], no_serum: bool, no_fighters: bool, no_verify_knots: bool):
    """Process every pending account until none are left."""
    settings: RescueSettings = ctx.obj["settings"]
    require_engine_settings(settings)
    updates = {}
    if threads is not None:
        updates["threads_count"] = threads
    if max_rounds is not None:
        updates["max_rounds"] = max_rounds
    if updates:
        settings = settings.model_copy(update=updates)
    options = WorkflowOptions(
        claim_serum=not no_serum,
        claim_fighters=not no_fighters,
        verify_knots=not no_verify_knots,
    )

    async def _run():
        store = open_store(settings)
        chain = RPCChainClient(settings.rpc_url, settings.chain_id)
        fireblocks = FireblocksClient(settings.fireblocks)
        funding = Account.from_key(settings.funding_private_key.get_secret_value())
        sequencer = NonceSequencer(chain, funding.address)
        dispatcher = Dispatcher(settings, store, fireblocks, sequencer, options=options)
        try:
            return await dispatcher.run()
        finally:
            await fireblocks.close()
            await chain.close()
            await store.close()

    try:
        summaries = asyncio.run(_run())
    except RescueError as e:
        raise click.ClickException(f"{e.error_code}: {e.message}") from e

    table = Table(title="Rounds")
    table.add_column("Round", style="cyan")
    table.add_column("Dispatched")
    table.add_column("Completed", style="green")
    table.add_column("Not completed", style="yellow")
    table.add_column("Crashed", style="red")
    for summary in summaries:
        table.add_row(
            str(summary.round),
            str(summary.dispatched),
            str(summary.completed),
            str(summary.not_completed),
            str(summary.crashed),
        )
    console.print(table)


@cli.command()
@click.argument("address")
@click.option("--read-only", is_flag=True, help="Only print balances")
@click.option("--no-serum", is_flag=True, help="Skip the serum claim")
@click.option("--no-fighters", is_flag=True, help="Skip the fighter claim")
@click.option("--no-verify-knots", is_flag=True, help="Skip the knots top-up check")
@click.option("--token-ids", default=None, help="Comma separated fighter ids to transfer")
@click.option("--voucher", type=click.Path(exists=True, dir_okay=False), help="JSON fighter voucher to claim with")
@click.option("--to", "destination", default=None, help="Destination address (default: account's vault address)")
@click.pass_context
def process(
    ctx,
    address: str,
    read_only: bool,
    no_serum: bool,
    no_fighters: bool,
    no_verify_knots: bool,
    token_ids: Optional[str],
    voucher: Optional[str],
    destination: Optional[str],
):
    """Run one account's workflow in this process."""
    settings: RescueSettings = ctx.obj["settings"]
    require_engine_settings(settings)
    options = WorkflowOptions(
        read_only=read_only,
        claim_serum=not no_serum,
        claim_fighters=not no_fighters,
        verify_knots=not no_verify_knots,
        manual_token_ids=_parse_token_ids(token_ids),
        manual_voucher=_load_voucher(voucher) if voucher else None,
    )

    async def _process():
        store = open_store(settings)
        chain = RPCChainClient(settings.rpc_url, settings.chain_id)
        try:
            account = await store.read_by_address(address)
            if account is None:
                raise click.ClickException(f"Account {address} not found")
            if destination:
                account = dataclasses.replace(account, new_address=destination)
            set_account_context(account.label)
            funding = Account.from_key(settings.funding_private_key.get_secret_value())
            sequencer = NonceSequencer(chain, funding.address)
            return await process_account(account, settings, sequencer, options, chain=chain)
        finally:
            await chain.close()
            await store.close()

    try:
        outcome = asyncio.run(_process())
    except RescueError as e:
        raise click.ClickException(f"{e.error_code}: {e.message}") from e

    if outcome.balances is not None:
        b = outcome.balances
        table = Table(title=f"Balances of {address}")
        table.add_column("Asset", style="cyan")
        table.add_column("Amount")
        table.add_row("Knots (wallet, wei)", str(b.knots))
        table.add_row("Serum (wallet)", str(b.serum))
        table.add_row("Knots (in game, wei)", str(b.in_game_knots))
        table.add_row("Serum (in game)", str(b.in_game_serum))
        table.add_row("Fighters (in game)", ", ".join(map(str, b.in_game_fighters)) or "-")
        table.add_row("Fighters (wallet)", ", ".join(map(str, b.wallet_fighters)) or "-")
        console.print(table)

    states = " -> ".join(state.value for state in outcome.history)
    console.print(f"[dim]{states}[/dim]")
    if outcome.completed:
        console.print("[green]✓ Account completed[/green]")
    else:
        console.print(f"[yellow]Not completed: {outcome.detail}[/yellow]")


@cli.command("init-db")
@click.pass_context
def init_db(ctx):
    """Create the accounts table."""
    settings: RescueSettings = ctx.obj["settings"]

    async def _init():
        store = open_store(settings)
        try:
            await store.init_schema()
        finally:
            await store.close()

    asyncio.run(_init())
    console.print("[green]✓ Schema ready[/green]")


cli.add_command(accounts.accounts)
cli.add_command(custody.gas_station)
cli.add_command(custody.vault_transfer)


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
