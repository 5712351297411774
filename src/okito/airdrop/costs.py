"""
Local fee heuristics for airdrop batches.

Batches are small and homogeneous, so the fee is estimated locally instead of
asking the network once per batch. All values are lamports.
"""
import math
from dataclasses import dataclass
from typing import Iterable

from okito.core.types import FeeEstimation

BASE_TX_FEE = 5000
PER_INSTRUCTION_FEE = 2000
RENT_EXEMPT_TOKEN_ACCOUNT = 2_039_280
LAMPORTS_PER_SOL = 1_000_000_000


def batch_instruction_count(recipients: int, accounts_to_create: int, priority_fee: int = 0) -> int:
    return recipients + accounts_to_create + (1 if priority_fee > 0 else 0)


def estimate_batch_fee(batch, priority_fee: int = 0, rent_exemption: int = RENT_EXEMPT_TOKEN_ACCOUNT) -> FeeEstimation:
    """base + per-instruction * instructions + rent * creations + priority fee"""
    creations = len(batch.accounts_to_create)
    instructions = batch_instruction_count(len(batch.recipients), creations, priority_fee)
    breakdown = {
        "base_fee": BASE_TX_FEE,
        "instruction_fees": PER_INSTRUCTION_FEE * instructions,
        "account_creations": rent_exemption * creations,
        "priority_fee": priority_fee,
    }
    return FeeEstimation(estimated_fee=sum(breakdown.values()), breakdown=breakdown)


def estimate_plan_fee(batches: Iterable, priority_fee: int = 0) -> FeeEstimation:
    """Sum of ``estimate_batch_fee`` over every batch."""
    totals = {"transaction_fees": 0, "account_creations": 0, "priority_fees": 0, "batch_count": 0}
    for batch in batches:
        fee = estimate_batch_fee(batch, priority_fee)
        totals["transaction_fees"] += fee.breakdown["base_fee"] + fee.breakdown["instruction_fees"]
        totals["account_creations"] += fee.breakdown["account_creations"]
        totals["priority_fees"] += fee.breakdown["priority_fee"]
        totals["batch_count"] += 1
    estimated = totals["transaction_fees"] + totals["account_creations"] + totals["priority_fees"]
    return FeeEstimation(estimated_fee=estimated, breakdown=totals)


@dataclass(frozen=True)
class AirdropCostEstimate:
    recipient_count: int
    total_batches: int
    transaction_fees: int
    account_creation_fees: int
    priority_fees: int
    total_cost: int

    @property
    def total_cost_sol(self) -> float:
        return self.total_cost / LAMPORTS_PER_SOL

    @property
    def cost_per_recipient(self) -> float:
        return self.total_cost / self.recipient_count if self.recipient_count else 0.0


def estimate_airdrop_costs(
    recipient_count: int,
    batch_size: int = 15,
    priority_fee: int = 50_000,
    rent_exemption: int = RENT_EXEMPT_TOKEN_ACCOUNT,
) -> AirdropCostEstimate:
    """
    Forecast before any account is resolved.

    Assumes half of the recipients need a token account created.
    """
    batch_size = max(1, batch_size)
    total_batches = math.ceil(recipient_count / batch_size) if recipient_count > 0 else 0
    transaction_fees = total_batches * BASE_TX_FEE + recipient_count * PER_INSTRUCTION_FEE
    account_creation_fees = (recipient_count // 2) * rent_exemption
    priority_fees = total_batches * priority_fee
    return AirdropCostEstimate(
        recipient_count=recipient_count,
        total_batches=total_batches,
        transaction_fees=transaction_fees,
        account_creation_fees=account_creation_fees,
        priority_fees=priority_fees,
        total_cost=transaction_fees + account_creation_fees + priority_fees,
    )
