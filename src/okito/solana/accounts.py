"""
Address parsing and associated token account resolution.
"""
from typing import Any, Union

from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from okito.core.errors import ErrorCode, OkitoError


def parse_address(address: Union[str, Pubkey], field: str = "address") -> Pubkey:
    """Parse a base58 address, raising INVALID_ADDRESS on failure."""
    if isinstance(address, Pubkey):
        return address
    if not isinstance(address, str) or not address.strip():
        raise OkitoError(ErrorCode.INVALID_ADDRESS, f"Invalid {field}: address is required")
    try:
        return Pubkey.from_string(address.strip())
    except ValueError as e:
        raise OkitoError(ErrorCode.INVALID_ADDRESS, f"Invalid {field}: {address}", details=str(e)) from e


def is_valid_address(address: Any) -> bool:
    try:
        parse_address(address)
    except OkitoError:
        return False
    return True


class AssociatedTokenAccountResolver:
    """
    Destination accounts for an SPL mint.

    ``derive`` is pure; ``exists`` asks the network. A missing account is a
    definitive ``False``, transport problems propagate as errors.
    """

    def __init__(self, network: Any, mint: Union[str, Pubkey], token_program_id: Pubkey = TOKEN_PROGRAM_ID):
        self.network = network
        self.mint = parse_address(mint, "mint")
        self.token_program_id = token_program_id

    def derive(self, owner: str) -> str:
        return str(get_associated_token_address(parse_address(owner), self.mint, self.token_program_id))

    async def exists(self, destination: str) -> bool:
        return await self.network.get_account_exists(destination)
