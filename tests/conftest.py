"""
Pytest fixtures for okito tests
"""
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import pytest
from solders.pubkey import Pubkey

from okito.core.network import ConfirmResult, SimulationResult


class FakeClock:
    """Ручные часы: время двигается только через advance()"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Записывает задержки вместо реального ожидания"""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.delays: List[float] = []
        self.clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)


class FakeNetwork:
    """
    In-memory NetworkClient.

    ``fail(method, *errors)`` queues exceptions raised by the next calls of
    that method; ``submit_error`` may reject individual signed transactions.
    """

    def __init__(self, balance: int = 10 ** 12, token_balance: int = 10 ** 15, latency: float = 50.0):
        self.balance = balance
        self.token_balance = token_balance
        self.latency = latency
        self.missing_accounts: set = set()
        self.simulation = SimulationResult(ok=True, logs=["Program log: ok"])
        self.confirm_results: Dict[Any, ConfirmResult] = {}
        self.submit_error: Optional[Callable[[Any], Optional[Exception]]] = None
        self.failures: Dict[str, List[Exception]] = defaultdict(list)
        self.calls: List[tuple] = []
        self._submitted = 0

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures[method].extend(errors)

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def _call(self, method: str, arg: Any = None) -> None:
        self.calls.append((method, arg))
        if self.failures[method]:
            raise self.failures[method].pop(0)

    async def get_latest_blockhash(self):
        self._call("get_latest_blockhash")
        return "blockhash", 1000

    async def get_account_exists(self, address: str) -> bool:
        self._call("get_account_exists", address)
        return address not in self.missing_accounts

    async def get_balance(self, address: str) -> int:
        self._call("get_balance", address)
        return self.balance

    async def get_token_balance(self, token_account: str) -> int:
        self._call("get_token_balance", token_account)
        return self.token_balance

    async def estimate_fee(self, instructions, fee_payer: str) -> int:
        self._call("estimate_fee", len(instructions))
        return 5000

    async def simulate(self, signed_tx) -> SimulationResult:
        self._call("simulate", signed_tx)
        return self.simulation

    async def submit(self, signed_tx) -> str:
        self._call("submit", signed_tx)
        if self.submit_error is not None:
            error = self.submit_error(signed_tx)
            if error is not None:
                raise error
        self._submitted += 1
        return f"tx{self._submitted}"

    async def confirm(self, tx_id, strategy, timeout) -> ConfirmResult:
        self._call("confirm", strategy)
        return self.confirm_results.get(strategy, ConfirmResult(ok=True))

    async def health_check_primitive(self) -> float:
        self._call("health_check_primitive")
        return self.latency


class FakeSigner:
    def __init__(self, address: Optional[str] = None):
        self.address = address if address is not None else str(Pubkey.new_unique())
        self.signed: List[Any] = []

    async def sign(self, draft):
        tx = {"instructions": list(draft.instructions), "fee_payer": draft.fee_payer,
              "blockhash": draft.recent_blockhash}
        self.signed.append(tx)
        return tx


class FakeResolver:
    """Derives ``ata-<owner>``; existence is answered by the fake network."""

    def __init__(self, network: FakeNetwork):
        self.network = network

    def derive(self, owner: str) -> str:
        return f"ata-{owner}"

    async def exists(self, destination: str) -> bool:
        return await self.network.get_account_exists(destination)


def build_instructions(batch) -> List[tuple]:
    """Instruction builder stand-in: first entry tags the batch index."""
    instructions = [("batch", batch.index)]
    instructions.extend(("create", c.owner) for c in batch.accounts_to_create)
    instructions.extend(("transfer", r.destination_account, r.amount) for r in batch.recipients)
    return instructions


def batch_index_of(signed_tx) -> int:
    return signed_tx["instructions"][0][1]


def make_addresses(count: int) -> List[str]:
    return [str(Pubkey.new_unique()) for _ in range(count)]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return RecordingSleep(clock)


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def resolver(network):
    return FakeResolver(network)


@pytest.fixture
def mint():
    return str(Pubkey.new_unique())


@pytest.fixture
def recipients():
    """Sample recipient list"""
    return [{"address": address, "amount": 1000 + i} for i, address in enumerate(make_addresses(5))]
