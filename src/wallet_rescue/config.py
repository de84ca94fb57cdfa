"""Configuration surface for the recovery engine."""
from __future__ import annotations

import re
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Inventory contract of the game's fighter collection on Polygon.
DEFAULT_FIGHTER_NFT = "0x60ce73cF71Def773a7a8199D4e6B2F237D5a6b32"


class GameApiSettings(BaseModel):
    """Credentials for the game balance/claim API."""
    base_url: str = "https://api.karmaverse.io/api/v1"
    api_key: SecretStr = SecretStr("")
    api_base: SecretStr = SecretStr("")
    api_salt: SecretStr = SecretStr("")
    timeout_seconds: float = 30.0


class FireblocksSettings(BaseModel):
    """Custodial vault provisioning."""
    base_url: str = "https://api.fireblocks.io/v1"
    api_key: SecretStr = SecretStr("")
    secret_key_path: str = "fireblocks_secret.key"
    asset_id: str = "MATIC_POLYGON"
    vault_name_prefix: str = "Recovery "
    hidden_on_ui: bool = False
    auto_fuel: bool = True
    timeout_seconds: float = 30.0


class ContractSettings(BaseModel):
    """Contract addresses the workflow talks to."""
    knot_token: str = ""
    serum_token: str = ""
    knot_vault: str = ""
    fighter_nft: str = DEFAULT_FIGHTER_NFT

    @field_validator("knot_token", "serum_token", "knot_vault", "fighter_nft")
    @classmethod
    def validate_address(cls, v: str) -> str:
        if v and not _ADDRESS_RE.match(v):
            raise ValueError(f"not a hex address: {v!r}")
        return v

    def missing(self) -> list[str]:
        return [name for name, value in self.model_dump().items() if not value]


class RescueSettings(BaseSettings):
    """Main recovery engine configuration."""

    environment: Literal["dev", "prod"] = "dev"

    # Chain
    rpc_url: str = "https://polygon-rpc.com"
    chain_id: int = 137
    funding_private_key: SecretStr = SecretStr("")

    # Persistence
    database_url: str = Field(default="", validate_default=True)

    # Engine
    threads_count: int = 5
    max_retries: int = 15
    max_retries_refund: int = 5
    pf_increase: int = 20
    gas_buffer_percent: int = 10
    confirmations: int = 1
    confirmation_timeout_seconds: float = 60.0
    nonce_timeout_seconds: float = 120.0
    dispatcher_poll_seconds: float = 1.0
    worker_join_seconds: float = 10.0
    knots_settle_seconds: float = 30.0
    max_rounds: Optional[int] = None

    # Game rules
    serum_min_claim: int = 100
    fighter_claim_batch: int = 20
    knots_per_batch: int = 10

    # Collaborators
    game_api: GameApiSettings = Field(default_factory=GameApiSettings)
    fireblocks: FireblocksSettings = Field(default_factory=FireblocksSettings)
    contracts: ContractSettings = Field(default_factory=ContractSettings)

    # Logging
    log_level: str = "INFO"
    log_json: bool = False
    log_dir: Optional[str] = "logs"

    class Config:
        env_prefix = "RESCUE_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"

    @field_validator("threads_count", "max_retries", "max_retries_refund", "confirmations")
    @classmethod
    def validate_positive(cls, v: int, info) -> int:
        if v < 1:
            raise ValueError(f"{info.field_name} must be at least 1")
        return v

    @field_validator("pf_increase", "gas_buffer_percent")
    @classmethod
    def validate_percent(cls, v: int, info) -> int:
        if v < 0:
            raise ValueError(f"{info.field_name} cannot be negative")
        return v

    @field_validator("database_url", mode="before")
    @classmethod
    def set_database_default(cls, v: str) -> str:
        """Fall back to DATABASE_URL, the name most hosting platforms export."""
        import os

        if not v:
            v = os.getenv("DATABASE_URL", "")
        return v


@lru_cache
def load_settings(env_file: str | None = None) -> RescueSettings:
    """Load RescueSettings once per process."""
    env_path = Path(env_file) if env_file else None
    return RescueSettings(_env_file=env_path)
