"""Helpers shared by CLI commands."""
from __future__ import annotations

import click

from ..config import RescueSettings
from ..store_postgres import PostgresAccountStore


def open_store(settings: RescueSettings) -> PostgresAccountStore:
    if not settings.database_url:
        raise click.ClickException("RESCUE_DATABASE_URL (or DATABASE_URL) is not set")
    return PostgresAccountStore(settings.database_url)


def require_engine_settings(settings: RescueSettings) -> None:
    if not settings.funding_private_key.get_secret_value():
        raise click.ClickException("RESCUE_FUNDING_PRIVATE_KEY is not set")
    missing = settings.contracts.missing()
    if missing:
        raise click.ClickException(f"Contract addresses not configured: {', '.join(missing)}")
