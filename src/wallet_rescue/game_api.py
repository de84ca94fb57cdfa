"""Client for the game's balance and claim API.

Every request carries the static API key plus a timestamped md5 signature
of ``base_salt_ts``. After ``authenticate`` the session tokens are sent as
``Authorization`` and ``Authorizationk``.
"""
from __future__ import annotations

import hashlib
import logging
import time
from typing import Any, Dict, List, Optional

import httpx
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from eth_utils import to_hex
from pydantic import ValidationError

from .config import GameApiSettings
from .constants import CHALLENGE_TEMPLATE, INVENTORY_PAGE_LIMIT
from .exceptions import AccountLockedError, AuthenticationError, ExternalAPIError
from .models import AuthTokens, ItemVoucher, SerumVoucher, WithdrawalRules

logger = logging.getLogger(__name__)


def _mapping(value: Any, path: str) -> Dict[str, Any]:
    """``value`` as a dict; a missing payload reads as empty."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ExternalAPIError(f"Unexpected payload from {path}", endpoint=path)
    return value


def _amount(data: Dict[str, Any], key: str, path: str) -> int:
    try:
        return int(data.get(key) or 0)
    except (TypeError, ValueError) as e:
        raise ExternalAPIError(f"Non-numeric {key} from {path}", endpoint=path) from e


def _token_ids(items: Any, path: str) -> List[int]:
    try:
        return [int(item["tokenId"]) for item in items or []]
    except (KeyError, TypeError, ValueError) as e:
        raise ExternalAPIError(f"Unexpected item list from {path}", endpoint=path) from e


class GameApiClient:
    """Per-account session against the game API."""

    def __init__(
        self,
        settings: GameApiSettings,
        address: str,
        fighter_contract: str,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings
        self._address = address.lower()
        self._fighter_contract = fighter_contract
        self._client = http_client
        self._tokens: Optional[AuthTokens] = None

    @property
    def address(self) -> str:
        return self._address

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.base_url,
                timeout=self._settings.timeout_seconds,
            )
        return self._client

    def _headers(self) -> Dict[str, str]:
        base = self._settings.api_base.get_secret_value()
        salt = self._settings.api_salt.get_secret_value()
        ts = str(int(time.time() * 1000))
        headers = {
            "Api-Key": self._settings.api_key.get_secret_value(),
            "x-api-base": base,
            "x-api-salt": salt,
            "x-api-ts": ts,
            "x-api-sign": hashlib.md5(f"{base}_{salt}_{ts}".encode()).hexdigest(),
            "Authorization": "",
            "Authorizationk": "",
        }
        if self._tokens:
            headers["Authorization"] = self._tokens.token
            headers["Authorizationk"] = self._tokens.token_secondary
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        form: Optional[Dict[str, str]] = None,
    ) -> Any:
        client = await self._get_client()
        try:
            response = await client.request(
                method, f"/{path}", params=params, data=form, headers=self._headers()
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise ExternalAPIError(
                f"{method} {path} returned {e.response.status_code}",
                endpoint=path,
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ExternalAPIError(f"{method} {path} failed: {e}", endpoint=path) from e

    async def _data(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET an endpoint wrapped as ``{data: {data: ...}}`` and unwrap it."""
        body = await self._request("GET", path, params=params)
        try:
            return body["data"]["data"]
        except (KeyError, TypeError) as e:
            raise ExternalAPIError(f"Unexpected payload from {path}", endpoint=path) from e

    # Session

    async def authenticate(self, account: LocalAccount) -> AuthTokens:
        """Sign the login challenge and check the account may claim.

        Raises:
            AuthenticationError: no challenge, or the login was rejected
            AccountLockedError: the account is banned or locked for claims
        """
        challenge_path = "account-nft/wallet"
        body = await self._request("POST", challenge_path, form={"walletAddress": self._address})
        nonce = _mapping(_mapping(body, challenge_path).get("data"), challenge_path).get("data")
        if not nonce:
            raise AuthenticationError("No login challenge issued", endpoint=challenge_path)

        message = encode_defunct(text=CHALLENGE_TEMPLATE.format(nonce=nonce))
        signature = to_hex(account.sign_message(message).signature)

        login_path = "account-nft/metamask/login"
        body = await self._request(
            "POST",
            login_path,
            form={"signature": signature, "walletAddress": self._address},
        )
        data = _mapping(_mapping(body, login_path).get("data"), login_path)
        if data.get("message") != "Success":
            raise AuthenticationError(f"Login rejected: {data.get('message')}", endpoint=login_path)
        session = _mapping(data.get("data"), login_path)
        self._tokens = AuthTokens(
            token=f"{session.get('tokenHead', '')}{session.get('token', '')}",
            token_secondary=data.get("kToken", ""),
        )
        if not session.get("token") or not self._tokens.token_secondary:
            raise AuthenticationError("Login returned empty tokens", endpoint="account-nft/metamask/login")

        rules = await self.get_withdrawal_rules()
        if not rules.allows_claims:
            raise AccountLockedError(
                f"Account {self._address} is banned or locked for claims",
                details={"is_banned": rules.is_banned, "is_locked_for_claim": rules.is_locked_for_claim},
            )
        logger.info("Authenticated against game API")
        return self._tokens

    async def get_withdrawal_rules(self) -> WithdrawalRules:
        path = "wallet-nft/player/query/withdrawalrules"
        control = _mapping(_mapping(await self._data(path), path).get("baseControl"), path)
        return WithdrawalRules(
            is_banned=bool(control.get("is_banned")),
            is_locked_for_claim=bool(control.get("is_locked_claim")),
        )

    # Balances

    async def get_in_game_token_balance(self) -> int:
        """In-game knots, in wei."""
        path = "wallet-nft/player/query/knot"
        data = _mapping(await self._data(path, {"address": self._address}), path)
        return _amount(data, "inGameAmount", path)

    async def _serum(self) -> Dict[str, Any]:
        path = "wallet-nft/serum/query"
        return _mapping(await self._data(path, {"address": self._address}), path)

    async def get_in_game_serum_balance(self) -> int:
        return _amount(await self._serum(), "inGameAmount", "wallet-nft/serum/query")

    async def get_on_chain_token_balance(self) -> int:
        """Serum already withdrawn to the wallet."""
        return _amount(await self._serum(), "outGameAmount", "wallet-nft/serum/query")

    async def get_in_game_held_items(self) -> List[int]:
        path = "wallet-nft/fighter/queryingame"
        data = await self._data(path, {"address": self._address})
        if data is not None and not isinstance(data, list):
            raise ExternalAPIError(f"Unexpected payload from {path}", endpoint=path)
        return _token_ids(data, path)

    async def list_owned_items(self, page: int = 0, limit: int = INVENTORY_PAGE_LIMIT) -> List[int]:
        path = f"assets/{self._fighter_contract}/inventory"
        body = await self._request("GET", path, params={"page": page, "limit": limit})
        items = body.get("data") if isinstance(body, dict) else None
        if not isinstance(items, list):
            raise ExternalAPIError(f"Unexpected payload from {path}", endpoint=path)
        return _token_ids(items, path)

    # Claims

    async def pre_claim_items(self, item_ids: List[int]) -> ItemVoucher:
        data = await self._data(
            "wallet-nft/fighter/claim",
            {"heros": ",".join(str(i) for i in item_ids), "address": self._address},
        )
        try:
            return ItemVoucher.model_validate(data or {"success": False})
        except ValidationError as e:
            raise ExternalAPIError("Malformed fighter voucher", endpoint="wallet-nft/fighter/claim") from e

    async def pre_claim_serum(self, amount: int) -> SerumVoucher:
        data = await self._data("wallet-nft/serum/claim", {"amount": amount, "address": self._address})
        try:
            return SerumVoucher.model_validate(data or {"success": False})
        except ValidationError as e:
            raise ExternalAPIError("Malformed serum voucher", endpoint="wallet-nft/serum/claim") from e

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None
