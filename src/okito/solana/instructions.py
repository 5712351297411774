"""
Instruction builders for SPL token airdrops.

Order inside a transaction: compute-unit price (when a priority fee is set),
idempotent ATA creations, then one transfer per recipient.
"""
from typing import List, Optional, Union

from solders.compute_budget import set_compute_unit_price
from solders.instruction import Instruction
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferParams,
    create_idempotent_associated_token_account,
    get_associated_token_address,
    transfer,
)

from okito.solana.accounts import parse_address


class AirdropInstructionBuilder:
    """Builds the instruction list for one planned batch."""

    def __init__(
        self,
        sender: Union[str, Pubkey],
        mint: Union[str, Pubkey],
        priority_fee: int = 0,
        token_program_id: Pubkey = TOKEN_PROGRAM_ID,
        source_account: Optional[Union[str, Pubkey]] = None,
    ):
        self.sender = parse_address(sender, "sender")
        self.mint = parse_address(mint, "mint")
        self.priority_fee = priority_fee
        self.token_program_id = token_program_id
        if source_account is not None:
            self.source_account = parse_address(source_account, "source account")
        else:
            self.source_account = get_associated_token_address(self.sender, self.mint, token_program_id)

    def priority_fee_instructions(self) -> List[Instruction]:
        if self.priority_fee > 0:
            return [set_compute_unit_price(self.priority_fee)]
        return []

    def create_account(self, owner: str) -> Instruction:
        return create_idempotent_associated_token_account(
            self.sender, parse_address(owner), self.mint, self.token_program_id
        )

    def transfer(self, destination: str, amount: int) -> Instruction:
        return transfer(
            TransferParams(
                program_id=self.token_program_id,
                source=self.source_account,
                dest=parse_address(destination),
                owner=self.sender,
                amount=amount,
            )
        )

    def __call__(self, batch) -> List[Instruction]:
        instructions = self.priority_fee_instructions()
        instructions.extend(self.create_account(c.owner) for c in batch.accounts_to_create)
        instructions.extend(self.transfer(r.destination_account, r.amount) for r in batch.recipients)
        return instructions
