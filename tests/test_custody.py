"""Tests for the Fireblocks custody client."""
from __future__ import annotations

import hashlib
import json
from typing import List

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from wallet_rescue.config import FireblocksSettings
from wallet_rescue.custody import FireblocksClient
from wallet_rescue.exceptions import ConfigurationError, ProvisioningError

FB_SETTINGS = FireblocksSettings(base_url="https://fb.test/v1", api_key="fb-key")


@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def secret_pem(rsa_key) -> str:
    return rsa_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def make_client(secret_pem: str, handler, requests: List[httpx.Request]) -> FireblocksClient:
    def record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(record), base_url=FB_SETTINGS.base_url)
    return FireblocksClient(FB_SETTINGS, api_secret=secret_pem, http_client=http)


class TestRequestSigning:
    """JWT authentication of every request."""

    @pytest.mark.asyncio
    async def test_create_vault_jwt_claims(self, rsa_key, secret_pem):
        requests: List[httpx.Request] = []
        client = make_client(
            secret_pem,
            lambda r: httpx.Response(200, json={"id": "17", "name": "Recovery 17"}),
            requests,
        )

        vault = await client.create_vault("Recovery 17", reference_address="0xabc")

        assert vault.id == "17"
        (request,) = requests
        assert request.headers["X-API-Key"] == "fb-key"
        token = request.headers["Authorization"].removeprefix("Bearer ")
        claims = jwt.decode(token, rsa_key.public_key(), algorithms=["RS256"])
        assert claims["uri"] == "/v1/vault/accounts"
        assert claims["sub"] == "fb-key"
        assert claims["bodyHash"] == hashlib.sha256(request.content).hexdigest()
        assert claims["exp"] - claims["iat"] == 30

        body = json.loads(request.content)
        assert body == {
            "name": "Recovery 17",
            "hiddenOnUI": False,
            "autoFuel": True,
            "customerRefId": "0xabc",
        }
        await client.close()

    @pytest.mark.asyncio
    async def test_get_request_hashes_empty_body(self, rsa_key, secret_pem):
        requests: List[httpx.Request] = []
        client = make_client(
            secret_pem,
            lambda r: httpx.Response(
                200, json={"configuration": {"gasThreshold": "0.1", "gasCap": "1", "maxGasPrice": None}}
            ),
            requests,
        )

        bounds = await client.get_gas_station()

        assert bounds.gas_threshold == "0.1"
        assert bounds.gas_cap == "1"
        token = requests[0].headers["Authorization"].removeprefix("Bearer ")
        claims = jwt.decode(token, rsa_key.public_key(), algorithms=["RS256"])
        assert claims["uri"] == "/v1/gas_station/MATIC_POLYGON"
        assert claims["bodyHash"] == hashlib.sha256(b"").hexdigest()

    @pytest.mark.asyncio
    async def test_missing_secret_file(self, tmp_path):
        settings = FireblocksSettings(api_key="fb-key", secret_key_path=str(tmp_path / "missing.key"))
        client = FireblocksClient(settings)

        with pytest.raises(ConfigurationError):
            await client.create_vault("Recovery 1")


class TestProvisioningCalls:
    """Vault and asset provisioning."""

    @pytest.mark.asyncio
    async def test_create_asset_returns_deposit_address(self, secret_pem):
        requests: List[httpx.Request] = []
        client = make_client(
            secret_pem, lambda r: httpx.Response(200, json={"id": "x", "address": "0xdeposit"}), requests
        )

        address = await client.create_asset("17")

        assert address == "0xdeposit"
        assert requests[0].url.path == "/v1/vault/accounts/17/MATIC_POLYGON"

    @pytest.mark.asyncio
    async def test_create_asset_without_address(self, secret_pem):
        client = make_client(secret_pem, lambda r: httpx.Response(200, json={"id": "x"}), [])

        with pytest.raises(ProvisioningError):
            await client.create_asset("17")

    @pytest.mark.asyncio
    async def test_http_error_is_provisioning_error(self, secret_pem):
        client = make_client(secret_pem, lambda r: httpx.Response(401, json={"message": "Unauthorized"}), [])

        with pytest.raises(ProvisioningError) as exc_info:
            await client.create_vault("Recovery 1")

        assert "401" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_set_gas_station(self, secret_pem):
        requests: List[httpx.Request] = []
        client = make_client(secret_pem, lambda r: httpx.Response(200, json={"success": True}), requests)

        await client.set_gas_station("0.1", "1", max_gas_price="300")

        (request,) = requests
        assert request.method == "PUT"
        assert request.url.path == "/v1/gas_station/configuration/MATIC_POLYGON"
        assert json.loads(request.content) == {"gasThreshold": "0.1", "gasCap": "1", "maxGasPrice": "300"}

    @pytest.mark.asyncio
    async def test_transfer_between_vaults(self, secret_pem):
        requests: List[httpx.Request] = []
        client = make_client(secret_pem, lambda r: httpx.Response(200, json={"id": "tx-1"}), requests)

        tx_id = await client.transfer_between_vaults("1", "2", "0.5")

        assert tx_id == "tx-1"
        body = json.loads(requests[0].content)
        assert body["source"] == {"type": "VAULT_ACCOUNT", "id": "1"}
        assert body["destination"] == {"type": "VAULT_ACCOUNT", "id": "2"}
