"""Fireblocks vault provisioning and gas station management.

Authenticates every request with a short-lived RS256 JWT signed by the
workspace's API secret, as the Fireblocks REST API requires.
"""
from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx
import jwt

from .config import FireblocksSettings
from .exceptions import ConfigurationError, ProvisioningError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Vault:
    id: str
    name: str


@dataclass(frozen=True)
class GasStationBounds:
    gas_threshold: str
    gas_cap: str
    max_gas_price: Optional[str] = None


class FireblocksClient:
    """Thin Fireblocks REST client covering the calls provisioning needs."""

    def __init__(
        self,
        settings: FireblocksSettings,
        api_secret: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings
        self._api_key = settings.api_key.get_secret_value()
        self._api_secret = api_secret
        self._base_path = urlparse(settings.base_url).path.rstrip("/")
        self._client = http_client

    def _secret(self) -> str:
        if self._api_secret is None:
            path = Path(self._settings.secret_key_path)
            if not path.exists():
                raise ConfigurationError(
                    f"Fireblocks secret key not found at {path}",
                    details={"path": str(path)},
                )
            self._api_secret = path.read_text()
        return self._api_secret

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.base_url,
                timeout=self._settings.timeout_seconds,
            )
        return self._client

    def _sign_jwt(self, path: str, body: str = "") -> str:
        now = int(time.time())
        payload = {
            "uri": f"{self._base_path}{path}",
            "nonce": uuid.uuid4().hex,
            "iat": now,
            "exp": now + 30,
            "sub": self._api_key,
            "bodyHash": hashlib.sha256(body.encode()).hexdigest(),
        }
        return jwt.encode(payload, self._secret(), algorithm="RS256")

    async def _request(
        self, method: str, path: str, body: Optional[Dict[str, Any]] = None
    ) -> Any:
        client = await self._get_client()
        body_str = json.dumps(body) if body is not None else ""
        headers = {
            "X-API-Key": self._api_key,
            "Authorization": f"Bearer {self._sign_jwt(path, body_str)}",
            "Content-Type": "application/json",
        }
        try:
            response = await client.request(
                method, path, headers=headers, content=body_str if body is not None else None
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ProvisioningError(
                f"Fireblocks {method} {path} returned {e.response.status_code}",
                details={"path": path, "body": e.response.text[:500]},
            ) from e
        except httpx.HTTPError as e:
            raise ProvisioningError(f"Fireblocks {method} {path} failed: {e}", details={"path": path}) from e
        return response.json() if response.content else {}

    async def create_vault(
        self,
        name: str,
        hidden: Optional[bool] = None,
        reference_address: Optional[str] = None,
        auto_fuel: Optional[bool] = None,
    ) -> Vault:
        body: Dict[str, Any] = {
            "name": name,
            "hiddenOnUI": self._settings.hidden_on_ui if hidden is None else hidden,
            "autoFuel": self._settings.auto_fuel if auto_fuel is None else auto_fuel,
        }
        if reference_address:
            body["customerRefId"] = reference_address
        result = await self._request("POST", "/vault/accounts", body)
        vault = Vault(id=str(result["id"]), name=result.get("name", name))
        logger.info(f"Created Fireblocks vault {vault.id} ({vault.name})")
        return vault

    async def create_asset(self, vault_id: str, asset_id: Optional[str] = None) -> str:
        """Activate ``asset_id`` in the vault and return its deposit address."""
        asset_id = asset_id or self._settings.asset_id
        result = await self._request("POST", f"/vault/accounts/{vault_id}/{asset_id}", {})
        address = result.get("address")
        if not address:
            raise ProvisioningError(
                f"No deposit address for {asset_id} in vault {vault_id}",
                details={"vault_id": vault_id, "asset_id": asset_id},
            )
        return address

    async def get_vault(self, vault_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/vault/accounts/{vault_id}")

    async def get_gas_station(self, asset_id: Optional[str] = None) -> GasStationBounds:
        asset_id = asset_id or self._settings.asset_id
        result = await self._request("GET", f"/gas_station/{asset_id}")
        config = result.get("configuration", {})
        return GasStationBounds(
            gas_threshold=str(config.get("gasThreshold", "")),
            gas_cap=str(config.get("gasCap", "")),
            max_gas_price=config.get("maxGasPrice"),
        )

    async def set_gas_station(
        self,
        gas_threshold: str,
        gas_cap: str,
        max_gas_price: Optional[str] = None,
        asset_id: Optional[str] = None,
    ) -> None:
        asset_id = asset_id or self._settings.asset_id
        body: Dict[str, Any] = {"gasThreshold": gas_threshold, "gasCap": gas_cap}
        if max_gas_price:
            body["maxGasPrice"] = max_gas_price
        await self._request("PUT", f"/gas_station/configuration/{asset_id}", body)
        logger.info(f"Gas station for {asset_id} set to {gas_threshold}..{gas_cap}")

    async def transfer_between_vaults(
        self,
        source_vault_id: str,
        destination_vault_id: str,
        amount: str,
        asset_id: Optional[str] = None,
    ) -> str:
        body = {
            "assetId": asset_id or self._settings.asset_id,
            "source": {"type": "VAULT_ACCOUNT", "id": source_vault_id},
            "destination": {"type": "VAULT_ACCOUNT", "id": destination_vault_id},
            "amount": amount,
        }
        result = await self._request("POST", "/transactions", body)
        logger.info(f"Vault transfer {source_vault_id} -> {destination_vault_id}: {result.get('id')}")
        return str(result.get("id", ""))

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None
