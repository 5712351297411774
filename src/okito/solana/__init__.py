"""Solana adapters for the engine's collaborator interfaces."""

from okito.solana.accounts import AssociatedTokenAccountResolver, is_valid_address, parse_address
from okito.solana.client import SolanaNetworkClient
from okito.solana.instructions import AirdropInstructionBuilder
from okito.solana.signer import KeypairSigner

__all__ = [
    "AssociatedTokenAccountResolver",
    "is_valid_address",
    "parse_address",
    "SolanaNetworkClient",
    "AirdropInstructionBuilder",
    "KeypairSigner",
]
