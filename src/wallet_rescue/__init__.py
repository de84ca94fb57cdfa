"""Concurrent recovery engine for assets held by exposed wallets."""

__version__ = "0.1.0"
