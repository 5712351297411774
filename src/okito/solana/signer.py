"""
Keypair-backed signer.
"""
from typing import Optional

import base58
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.transaction import Transaction

from okito.core.errors import ErrorCode, OkitoError
from okito.core.network import TransactionDraft
from okito.solana.accounts import parse_address


class KeypairSigner:
    """Signs drafts with a local keypair. Not meant for concurrent use."""

    def __init__(self, keypair: Optional[Keypair]):
        self.keypair = keypair

    @classmethod
    def from_base58(cls, secret: str) -> "KeypairSigner":
        try:
            return cls(Keypair.from_bytes(base58.b58decode(secret.strip())))
        except ValueError as e:
            raise OkitoError(ErrorCode.INVALID_CONFIGURATION, "Invalid base58 private key") from e

    @property
    def address(self) -> Optional[str]:
        return str(self.keypair.pubkey()) if self.keypair is not None else None

    async def sign(self, draft: TransactionDraft) -> Transaction:
        if self.keypair is None:
            raise OkitoError(ErrorCode.SIGNER_NOT_CONNECTED, "No keypair loaded")
        blockhash = draft.recent_blockhash
        if isinstance(blockhash, str):
            blockhash = Hash.from_string(blockhash)
        message = Message(draft.instructions, parse_address(draft.fee_payer))
        return Transaction([self.keypair], message, blockhash)
