"""Gas and fee arithmetic.

Everything is integer wei. Percent bumps round down, which keeps the
funding amount from ever exceeding ``gas_limit * max_fee_per_gas``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .constants import REFUND_GAS_PRICE_MARGIN, REFUND_PRIORITY_MARGIN


def add_percent(value: int, percent: int) -> int:
    return value * (100 + percent) // 100


def derive_priority_fee(
    current_priority_fee: int,
    pf_increase: int,
    override: Optional[int] = None,
) -> int:
    """Priority fee for a call: the override if given, else the bumped current one."""
    if override is not None:
        return override
    return add_percent(current_priority_fee, pf_increase)


def max_fee_per_gas(base_fee: int, priority_fee: int) -> int:
    """Max fee with room for the base fee to double before inclusion."""
    return 2 * base_fee + priority_fee


@dataclass(frozen=True)
class FeePlan:
    gas_units: int
    gas_limit: int
    priority_fee: int
    max_fee_per_gas: int

    @property
    def funding_required(self) -> int:
        return self.gas_limit * self.max_fee_per_gas


def plan_fees(
    gas_units: int,
    base_fee: int,
    current_priority_fee: int,
    pf_increase: int,
    gas_buffer_percent: int = 10,
    priority_fee_override: Optional[int] = None,
) -> FeePlan:
    priority_fee = derive_priority_fee(current_priority_fee, pf_increase, priority_fee_override)
    return FeePlan(
        gas_units=gas_units,
        gas_limit=add_percent(gas_units, gas_buffer_percent),
        priority_fee=priority_fee,
        max_fee_per_gas=max_fee_per_gas(base_fee, priority_fee),
    )


@dataclass(frozen=True)
class RefundPlan:
    gas_limit: int
    max_fee_per_gas: int
    priority_fee: int
    balance: int

    @property
    def fee(self) -> int:
        return self.gas_limit * self.max_fee_per_gas

    @property
    def available(self) -> int:
        return self.balance - self.fee


def plan_refund(
    balance: int,
    gas_units: int,
    gas_price: int,
    priority_fee: int,
    gas_buffer_percent: int = 10,
) -> RefundPlan:
    """Fee budget for sweeping ``balance`` back, leaving nothing behind."""
    refund_priority = add_percent(priority_fee, REFUND_PRIORITY_MARGIN)
    return RefundPlan(
        gas_limit=add_percent(gas_units, gas_buffer_percent),
        max_fee_per_gas=add_percent(gas_price, REFUND_GAS_PRICE_MARGIN) + refund_priority,
        priority_fee=refund_priority,
        balance=balance,
    )
