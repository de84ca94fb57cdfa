"""Tests for domain models and worker messages."""
from __future__ import annotations

import pickle

import pytest
from pydantic import ValidationError

from wallet_rescue.exceptions import StoreError
from wallet_rescue.messages import NonceRequest, NotCompleted
from wallet_rescue.models import (
    AccountPatch,
    AccountRecord,
    AccountStatus,
    BatchSummary,
    ItemVoucher,
    JobResult,
    SerumVoucher,
    check_transition,
)


class TestAccountRecord:
    """Tests for AccountRecord."""

    def test_label_prefers_vault(self):
        assert AccountRecord(address="0xabc", private_key="k", vault_id="7").label == "vault-7"
        assert AccountRecord(address="0xabc", private_key="k").label == "0xabc"

    def test_private_key_not_in_repr(self):
        assert "supersecret" not in repr(AccountRecord(address="0xabc", private_key="supersecret"))

    def test_provisioned_needs_vault_and_address(self):
        assert not AccountRecord(address="0xabc", private_key="k", vault_id="7").is_provisioned
        assert AccountRecord(address="0xabc", private_key="k", vault_id="7", new_address="0xdef").is_provisioned

    def test_transitions(self):
        check_transition(AccountStatus.PENDING, AccountStatus.COMPLETED)
        check_transition(AccountStatus.PENDING, AccountStatus.IGNORE)
        with pytest.raises(StoreError):
            check_transition(AccountStatus.IGNORE, AccountStatus.COMPLETED)

    def test_empty_patch(self):
        assert AccountPatch().is_empty()
        assert AccountPatch(vault_id="1").present() == {"vault_id": "1"}


class TestVouchers:
    """API payload parsing."""

    def test_item_voucher_aliases(self):
        voucher = ItemVoucher.model_validate(
            {"success": True, "txId": "55", "timestamp": 9, "signature": "0x01", "tokenIds": ["3", 4]}
        )

        record = voucher.to_claim_record()

        assert record.transaction_id == "55"
        assert record.token_ids == (3, 4)


class TestMessages:
    """Messages cross a process boundary."""

    def test_picklable(self):
        message = NotCompleted(worker_id="1-0", detail="x", patch=AccountPatch(status=AccountStatus.COMPLETED))

        assert pickle.loads(pickle.dumps(message)) == message

    def test_correlation_ids_unique(self):
        assert NonceRequest("1-0").correlation_id != NonceRequest("1-0").correlation_id


class TestBatchSummary:
    def test_record(self):
        summary = BatchSummary(round=1)
        for result in (
            JobResult(address="a", completed=True),
            JobResult(address="b", completed=False),
            JobResult(address="c", completed=False, crashed=True),
        ):
            summary.record(result)

        assert (summary.completed, summary.not_completed, summary.crashed) == (1, 1, 1)


class TestVoucherValidation:
    """Accepted vouchers must be usable on-chain."""

    @pytest.mark.parametrize(
        "payload",
        [
            {"txId": "", "timestamp": 1, "signature": "0xab", "tokenIds": [3]},
            {"txId": "abc", "timestamp": 1, "signature": "0xab", "tokenIds": [3]},
            {"txId": "55", "timestamp": 1, "signature": "0x", "tokenIds": [3]},
            {"txId": "55", "timestamp": 1, "signature": "0xzz", "tokenIds": [3]},
        ],
    )
    def test_rejects_unusable_item_voucher(self, payload):
        with pytest.raises(ValidationError):
            ItemVoucher.model_validate(payload)

    def test_rejects_serum_voucher_without_signature(self):
        with pytest.raises(ValidationError):
            SerumVoucher.model_validate({"txId": "9", "timestamp": 1, "amount": 150})

    def test_rejected_voucher_needs_no_fields(self):
        voucher = SerumVoucher.model_validate({"success": False, "errorReason": "cooldown"})

        assert voucher.error_reason == "cooldown"
