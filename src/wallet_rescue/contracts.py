"""Calls against the game's token, vault and fighter contracts."""
from __future__ import annotations

from web3 import Web3

from .chain import ContractCall
from .config import ContractSettings
from .models import ItemVoucher, SerumVoucher

BALANCE_OF = "balanceOf(address)"
ALLOWANCE = "allowance(address,address)"
APPROVE = "approve(address,uint256)"
TRANSFER = "transfer(address,uint256)"
DEPOSIT = "deposit(address,uint256)"
WITHDRAW = "withdraw(address,uint256,uint256,uint256,bytes)"
BATCH_CLAIM = "batchClaim(address,uint256[],uint256,uint256,bytes)"
TRANSFER_FROM = "transferFrom(address,address,uint256)"


def _addr(address: str) -> str:
    return Web3.to_checksum_address(address)


def _signature_bytes(signature: str) -> bytes:
    return bytes.fromhex(signature.removeprefix("0x"))


class GameContracts:
    """Builds ``ContractCall`` values for the four game contracts."""

    def __init__(self, settings: ContractSettings):
        self._settings = settings

    @property
    def knot_vault(self) -> str:
        return self._settings.knot_vault

    # Knot token (ERC-20)

    def knot_balance_of(self, owner: str) -> ContractCall:
        return ContractCall(self._settings.knot_token, BALANCE_OF, (_addr(owner),))

    def knot_allowance(self, owner: str, spender: str) -> ContractCall:
        return ContractCall(self._settings.knot_token, ALLOWANCE, (_addr(owner), _addr(spender)))

    def knot_approve(self, spender: str, amount: int) -> ContractCall:
        return ContractCall(self._settings.knot_token, APPROVE, (_addr(spender), amount))

    # Knot vault

    def knot_deposit(self, account: str, amount: int) -> ContractCall:
        return ContractCall(self._settings.knot_vault, DEPOSIT, (_addr(account), amount))

    # Serum

    def serum_withdraw(self, account: str, voucher: SerumVoucher) -> ContractCall:
        return ContractCall(
            self._settings.serum_token,
            WITHDRAW,
            (
                _addr(account),
                voucher.amount,
                int(voucher.transaction_id),
                voucher.timestamp,
                _signature_bytes(voucher.signature),
            ),
        )

    def serum_transfer(self, to: str, amount: int) -> ContractCall:
        return ContractCall(self._settings.serum_token, TRANSFER, (_addr(to), amount))

    # Fighters (ERC-721)

    def fighter_batch_claim(self, account: str, voucher: ItemVoucher) -> ContractCall:
        return ContractCall(
            self._settings.fighter_nft,
            BATCH_CLAIM,
            (
                _addr(account),
                list(voucher.token_ids),
                int(voucher.transaction_id),
                voucher.timestamp,
                _signature_bytes(voucher.signature),
            ),
        )

    def fighter_transfer(self, owner: str, to: str, token_id: int) -> ContractCall:
        return ContractCall(
            self._settings.fighter_nft, TRANSFER_FROM, (_addr(owner), _addr(to), token_id)
        )
