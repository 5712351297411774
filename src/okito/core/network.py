"""
Collaborator interfaces the engine is driven through.

The engine never talks to the ledger directly; it receives a ``NetworkClient``
and a ``Signer``. Concrete Solana implementations live in ``okito.solana``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Protocol, Sequence, Tuple, runtime_checkable


class ConfirmationStrategy(str, Enum):
    PROCESSED = "processed"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"

    @property
    def strength(self) -> int:
        return _STRENGTH[self]

    def weaker(self) -> List["ConfirmationStrategy"]:
        """This strategy followed by every weaker one, strongest first."""
        return [s for s in _LADDER if s.strength <= self.strength]


_LADDER = (ConfirmationStrategy.FINALIZED, ConfirmationStrategy.CONFIRMED, ConfirmationStrategy.PROCESSED)
_STRENGTH = {
    ConfirmationStrategy.PROCESSED: 0,
    ConfirmationStrategy.CONFIRMED: 1,
    ConfirmationStrategy.FINALIZED: 2,
}


@dataclass
class SimulationResult:
    ok: bool
    error: Optional[str] = None
    logs: List[str] = field(default_factory=list)
    units_consumed: Optional[int] = None


@dataclass
class ConfirmResult:
    """
    Outcome of one confirmation wait.

    ``timed_out`` separates "not yet at this strength" from a definitive
    on-ledger failure (``ok=False`` with ``error`` set).
    """
    ok: bool
    error: Optional[str] = None
    timed_out: bool = False


@dataclass
class TransactionDraft:
    """Unsigned transaction handed to the signer."""
    instructions: List[Any]
    fee_payer: str
    recent_blockhash: Any
    last_valid_block_height: Optional[int] = None


@runtime_checkable
class Signer(Protocol):
    @property
    def address(self) -> Optional[str]: ...

    async def sign(self, draft: TransactionDraft) -> Any: ...


@runtime_checkable
class NetworkClient(Protocol):
    """Network capabilities consumed by the engine. Latencies are milliseconds."""

    async def get_latest_blockhash(self) -> Tuple[Any, Optional[int]]: ...

    async def get_account_exists(self, address: str) -> bool: ...

    async def get_balance(self, address: str) -> int: ...

    async def get_token_balance(self, token_account: str) -> int: ...

    async def estimate_fee(self, instructions: Sequence[Any], fee_payer: str) -> int: ...

    async def simulate(self, signed_tx: Any) -> SimulationResult: ...

    async def submit(self, signed_tx: Any) -> str: ...

    async def confirm(self, tx_id: str, strategy: ConfirmationStrategy, timeout: float) -> ConfirmResult: ...

    async def health_check_primitive(self) -> float: ...


@runtime_checkable
class AccountResolver(Protocol):
    """Maps a recipient owner address to its destination account."""

    def derive(self, owner: str) -> str: ...

    async def exists(self, destination: str) -> bool: ...
