"""Tests for the game API client."""
from __future__ import annotations

import hashlib
from typing import Any, Callable, Dict, List
from urllib.parse import parse_qs

import httpx
import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from wallet_rescue.config import GameApiSettings
from wallet_rescue.constants import CHALLENGE_TEMPLATE
from wallet_rescue.exceptions import AccountLockedError, AuthenticationError, ExternalAPIError
from wallet_rescue.game_api import GameApiClient

FIGHTER = "0x" + "04" * 20
API_SETTINGS = GameApiSettings(
    base_url="https://game.test/api/v1",
    api_key="key",
    api_base="base",
    api_salt="salt",
)

Route = Callable[[httpx.Request], Any]


def wrapped(data: Any) -> Dict[str, Any]:
    return {"data": {"data": data}}


class Recorder:
    """MockTransport handler dispatching on the path after /api/v1/."""

    def __init__(self, routes: Dict[str, Route]):
        self.routes = routes
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/api/v1/")
        route = self.routes.get(path)
        if route is None:
            return httpx.Response(404, json={"message": "not found"})
        result = route(request)
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json=result)

    def last(self, path: str) -> httpx.Request:
        return [r for r in self.requests if r.url.path.endswith(path)][-1]


def login_routes(rules: Dict[str, Any] | None = None, message: str = "Success") -> Dict[str, Route]:
    return {
        "account-nft/wallet": lambda r: wrapped("482913"),
        "account-nft/metamask/login": lambda r: {
            "data": {
                "message": message,
                "data": {"tokenHead": "Bearer ", "token": "session"},
                "kToken": "ktoken",
            }
        },
        "wallet-nft/player/query/withdrawalrules": lambda r: wrapped(
            {"baseControl": rules or {"is_banned": False, "is_locked_claim": False}}
        ),
    }


def make_client(recorder: Recorder, address: str) -> GameApiClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(recorder), base_url=API_SETTINGS.base_url)
    return GameApiClient(API_SETTINGS, address, FIGHTER, http_client=http)


class TestAuthenticate:
    """Challenge signing and login."""

    @pytest.mark.asyncio
    async def test_signs_challenge_and_stores_tokens(self, operating):
        recorder = Recorder(login_routes())
        client = make_client(recorder, operating.address)

        tokens = await client.authenticate(operating)

        assert tokens.token == "Bearer session"
        assert tokens.token_secondary == "ktoken"

        form = parse_qs(recorder.last("metamask/login").content.decode())
        signature = form["signature"][0]
        message = encode_defunct(text=CHALLENGE_TEMPLATE.format(nonce="482913"))
        assert Account.recover_message(message, signature=signature) == operating.address
        assert form["walletAddress"] == [operating.address.lower()]

        rules_request = recorder.last("withdrawalrules")
        assert rules_request.headers["Authorization"] == "Bearer session"
        assert rules_request.headers["Authorizationk"] == "ktoken"
        await client.close()

    @pytest.mark.asyncio
    async def test_every_request_is_signed(self, operating):
        recorder = Recorder(login_routes())
        client = make_client(recorder, operating.address)

        await client.authenticate(operating)

        for request in recorder.requests:
            ts = request.headers["x-api-ts"]
            expected = hashlib.md5(f"base_salt_{ts}".encode()).hexdigest()
            assert request.headers["x-api-sign"] == expected
            assert request.headers["Api-Key"] == "key"

    @pytest.mark.asyncio
    async def test_rejected_login(self, operating):
        client = make_client(Recorder(login_routes(message="Invalid signature")), operating.address)

        with pytest.raises(AuthenticationError):
            await client.authenticate(operating)

    @pytest.mark.asyncio
    async def test_missing_challenge(self, operating):
        routes = login_routes()
        routes["account-nft/wallet"] = lambda r: wrapped(None)
        client = make_client(Recorder(routes), operating.address)

        with pytest.raises(AuthenticationError):
            await client.authenticate(operating)

    @pytest.mark.asyncio
    async def test_non_dict_login_body(self, operating):
        routes = login_routes()
        routes["account-nft/metamask/login"] = lambda r: ["Success"]
        client = make_client(Recorder(routes), operating.address)

        with pytest.raises(ExternalAPIError) as exc_info:
            await client.authenticate(operating)

        assert exc_info.value.details["endpoint"] == "account-nft/metamask/login"

    @pytest.mark.asyncio
    async def test_locked_account(self, operating):
        routes = login_routes(rules={"is_banned": False, "is_locked_claim": True})
        client = make_client(Recorder(routes), operating.address)

        with pytest.raises(AccountLockedError) as exc_info:
            await client.authenticate(operating)

        assert exc_info.value.details["is_locked_for_claim"] is True


class TestQueries:
    """Balance and inventory endpoints."""

    @pytest.mark.asyncio
    async def test_balances(self, operating):
        recorder = Recorder(
            {
                "wallet-nft/player/query/knot": lambda r: wrapped({"inGameAmount": str(5 * 10**18)}),
                "wallet-nft/serum/query": lambda r: wrapped({"inGameAmount": 150, "outGameAmount": 20}),
                "wallet-nft/fighter/queryingame": lambda r: wrapped([{"tokenId": "11"}, {"tokenId": 12}]),
            }
        )
        client = make_client(recorder, operating.address)

        assert await client.get_in_game_token_balance() == 5 * 10**18
        assert await client.get_in_game_serum_balance() == 150
        assert await client.get_on_chain_token_balance() == 20
        assert await client.get_in_game_held_items() == [11, 12]
        assert recorder.last("queryingame").url.params["address"] == operating.address.lower()

    @pytest.mark.asyncio
    async def test_inventory(self, operating):
        recorder = Recorder({f"assets/{FIGHTER}/inventory": lambda r: {"data": [{"tokenId": 5}]}})
        client = make_client(recorder, operating.address)

        assert await client.list_owned_items(0, 50) == [5]
        params = recorder.last("inventory").url.params
        assert params["page"] == "0"
        assert params["limit"] == "50"

    @pytest.mark.asyncio
    async def test_http_error_is_external_api_error(self, operating):
        recorder = Recorder({"wallet-nft/serum/query": lambda r: httpx.Response(502, text="bad gateway")})
        client = make_client(recorder, operating.address)

        with pytest.raises(ExternalAPIError) as exc_info:
            await client.get_in_game_serum_balance()

        assert exc_info.value.details["status_code"] == 502

    @pytest.mark.asyncio
    async def test_unexpected_payload(self, operating):
        recorder = Recorder({"wallet-nft/player/query/knot": lambda r: {"data": None}})
        client = make_client(recorder, operating.address)

        with pytest.raises(ExternalAPIError):
            await client.get_in_game_token_balance()

    @pytest.mark.asyncio
    async def test_non_dict_balance_payload(self, operating):
        recorder = Recorder({"wallet-nft/player/query/knot": lambda r: wrapped(["unexpected"])})
        client = make_client(recorder, operating.address)

        with pytest.raises(ExternalAPIError):
            await client.get_in_game_token_balance()

    @pytest.mark.asyncio
    async def test_malformed_fighter_list(self, operating):
        recorder = Recorder({"wallet-nft/fighter/queryingame": lambda r: wrapped([{"id": 3}])})
        client = make_client(recorder, operating.address)

        with pytest.raises(ExternalAPIError):
            await client.get_in_game_held_items()


class TestPreClaim:
    """Voucher endpoints."""

    @pytest.mark.asyncio
    async def test_fighter_voucher(self, operating):
        voucher = {
            "success": True,
            "txId": "9001",
            "timestamp": 1700000000,
            "signature": "0xab",
            "tokenIds": [1, 2],
        }
        recorder = Recorder({"wallet-nft/fighter/claim": lambda r: wrapped(voucher)})
        client = make_client(recorder, operating.address)

        result = await client.pre_claim_items([1, 2])

        assert result.success
        assert result.transaction_id == "9001"
        assert result.token_ids == [1, 2]
        assert recorder.last("fighter/claim").url.params["heros"] == "1,2"

    @pytest.mark.asyncio
    async def test_serum_voucher_rejected(self, operating):
        recorder = Recorder(
            {"wallet-nft/serum/claim": lambda r: wrapped({"success": False, "errorReason": "cooldown"})}
        )
        client = make_client(recorder, operating.address)

        result = await client.pre_claim_serum(150)

        assert not result.success
        assert result.error_reason == "cooldown"
        assert recorder.last("serum/claim").url.params["amount"] == "150"

    @pytest.mark.asyncio
    async def test_voucher_without_tx_id_is_rejected(self, operating):
        voucher = {"success": True, "txId": "", "timestamp": 1, "signature": "0xab", "tokenIds": [3]}
        recorder = Recorder({"wallet-nft/fighter/claim": lambda r: wrapped(voucher)})
        client = make_client(recorder, operating.address)

        with pytest.raises(ExternalAPIError):
            await client.pre_claim_items([3])
