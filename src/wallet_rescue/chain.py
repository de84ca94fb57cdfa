"""Chain access: JSON-RPC client, local signing and contract call encoding."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_account.signers.local import LocalAccount
from web3 import Web3

from .constants import DEFAULT_BASE_FEE, DEFAULT_GAS_PRICE, DEFAULT_PRIORITY_FEE
from .exceptions import ChainError, ConfirmationTimeoutError, TransactionRevertedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeData:
    gas_price: int
    priority_fee: int


@dataclass(frozen=True)
class ContractCall:
    """A contract method call, encoded with its 4-byte selector."""
    address: str
    signature: str
    args: tuple = ()

    @property
    def name(self) -> str:
        return self.signature.split("(", 1)[0]

    @property
    def arg_types(self) -> List[str]:
        inner = self.signature[self.signature.index("(") + 1 : -1]
        return [t for t in inner.split(",") if t]

    def encode(self) -> bytes:
        selector = Web3.keccak(text=self.signature)[:4]
        return bytes(selector) + encode(self.arg_types, list(self.args))

    def to_tx(self, sender: Optional[str] = None) -> Dict[str, Any]:
        tx: Dict[str, Any] = {
            "to": Web3.to_checksum_address(self.address),
            "data": Web3.to_hex(self.encode()),
            "value": 0,
        }
        if sender:
            tx["from"] = Web3.to_checksum_address(sender)
        return tx

    def __str__(self) -> str:
        return f"{self.name}@{self.address}"


class ChainClient(Protocol):
    """What the executor and the workflow need from a node."""

    async def get_fee_data(self) -> FeeData: ...

    async def get_base_fee(self) -> int: ...

    async def get_transaction_count(self, address: str, block: str = "pending") -> int: ...

    async def get_balance(self, address: str) -> int: ...

    async def estimate_gas(self, tx: Dict[str, Any]) -> int: ...

    async def send_transaction(self, account: LocalAccount, tx: Dict[str, Any]) -> str: ...

    async def wait_for_confirmation(
        self, tx_hash: str, confirmations: int = 1, timeout: float = 60.0
    ) -> Dict[str, Any]: ...

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]: ...

    async def read(self, call: ContractCall, output_types: Sequence[str]) -> tuple: ...


def _quantity(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


def receipt_succeeded(receipt: Dict[str, Any]) -> bool:
    return _quantity(receipt.get("status")) == 1


def _rpc_tx(tx: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (hex(v) if isinstance(v, int) else v) for k, v in tx.items()}


class RPCChainClient:
    """JSON-RPC chain client that signs locally with eth-account."""

    def __init__(
        self,
        rpc_url: str,
        chain_id: int,
        timeout: float = 30.0,
        poll_interval: float = 1.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._rpc_url = rpc_url
        self._chain_id = chain_id
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._http_client = http_client
        self._request_id = 0

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def _call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Make JSON-RPC call."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        client = await self._get_client()
        try:
            response = await client.post(
                self._rpc_url,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ChainError(f"RPC transport error on {method}: {e}", details={"method": method}) from e

        try:
            result = response.json()
        except ValueError as e:
            raise ChainError(f"RPC returned invalid JSON on {method}", details={"method": method}) from e
        if not isinstance(result, dict):
            raise ChainError(f"RPC returned unexpected payload on {method}", details={"method": method})
        if "error" in result:
            raise ChainError(
                f"RPC error on {method}: {result['error'].get('message', result['error'])}",
                details={"method": method, "rpc_error": result["error"]},
            )
        return result.get("result")

    async def get_fee_data(self) -> FeeData:
        gas_price = _quantity(await self._call("eth_gasPrice"))
        priority_fee = _quantity(await self._call("eth_maxPriorityFeePerGas"))
        return FeeData(
            gas_price=gas_price or DEFAULT_GAS_PRICE,
            priority_fee=priority_fee or DEFAULT_PRIORITY_FEE,
        )

    async def get_base_fee(self) -> int:
        block = await self._call("eth_getBlockByNumber", ["latest", False])
        base_fee = _quantity((block or {}).get("baseFeePerGas"))
        return base_fee or DEFAULT_BASE_FEE

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return _quantity(
            await self._call("eth_getTransactionCount", [Web3.to_checksum_address(address), block])
        )

    async def get_balance(self, address: str) -> int:
        return _quantity(
            await self._call("eth_getBalance", [Web3.to_checksum_address(address), "latest"])
        )

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return _quantity(await self._call("eth_estimateGas", [_rpc_tx(tx)]))

    async def send_transaction(self, account: LocalAccount, tx: Dict[str, Any]) -> str:
        """Sign ``tx`` with ``account`` and broadcast it.

        ``tx`` must carry ``nonce``, ``gas``, ``maxFeePerGas`` and
        ``maxPriorityFeePerGas``; ``chainId`` and ``type`` are filled in.
        """
        unsigned = {k: v for k, v in tx.items() if k != "from"}
        unsigned.setdefault("chainId", self._chain_id)
        unsigned.setdefault("type", 2)
        unsigned.setdefault("value", 0)
        signed = account.sign_transaction(unsigned)
        tx_hash = await self._call("eth_sendRawTransaction", [Web3.to_hex(signed.raw_transaction)])
        return tx_hash

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self._call("eth_getTransactionReceipt", [tx_hash])

    async def get_block_number(self) -> int:
        return _quantity(await self._call("eth_blockNumber"))

    async def wait_for_confirmation(
        self, tx_hash: str, confirmations: int = 1, timeout: float = 60.0
    ) -> Dict[str, Any]:
        """Poll until ``tx_hash`` has ``confirmations`` blocks on top of it.

        Raises:
            ConfirmationTimeoutError: not confirmed within ``timeout``
            TransactionRevertedError: mined with status 0
        """
        deadline = time.monotonic() + timeout
        while True:
            receipt = await self.get_receipt(tx_hash)
            if receipt is not None:
                if not receipt_succeeded(receipt):
                    raise TransactionRevertedError(tx_hash)
                mined_at = _quantity(receipt.get("blockNumber"))
                head = await self.get_block_number()
                if head - mined_at + 1 >= confirmations:
                    return receipt
            if time.monotonic() >= deadline:
                raise ConfirmationTimeoutError(tx_hash, timeout)
            await asyncio.sleep(self._poll_interval)

    async def read(self, call: ContractCall, output_types: Sequence[str]) -> tuple:
        raw = await self._call("eth_call", [_rpc_tx(call.to_tx()), "latest"])
        try:
            return decode(list(output_types), bytes.fromhex(raw[2:]))
        except (DecodingError, TypeError, ValueError) as e:
            raise ChainError(
                f"Could not decode {call.name} result from {call.address}: {raw!r}",
                details={"method": "eth_call", "function": call.name},
            ) from e

    async def close(self):
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
