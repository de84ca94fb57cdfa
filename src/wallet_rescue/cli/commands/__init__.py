"""CLI command modules."""
from . import accounts, custody

__all__ = ["accounts", "custody"]
