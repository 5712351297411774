"""
Solana implementation of the engine's NetworkClient.
"""

import asyncio
import json
import time
from typing import Any, Optional, Sequence, Tuple

import aiohttp
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed, Processed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.message import Message
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from okito.core.errors import NetworkError
from okito.core.network import ConfirmationStrategy, ConfirmResult, SimulationResult
from okito.solana.accounts import parse_address
from okito.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_FEE_LAMPORTS = 5000


def _reached(confirmation_status: Any) -> ConfirmationStrategy:
    if confirmation_status == TransactionConfirmationStatus.Processed:
        return ConfirmationStrategy.PROCESSED
    if confirmation_status == TransactionConfirmationStatus.Confirmed:
        return ConfirmationStrategy.CONFIRMED
    # Finalized, or no status at all once the slot is rooted
    return ConfirmationStrategy.FINALIZED


def _http_status(exc: BaseException) -> Optional[int]:
    """Walk the cause chain looking for an HTTP status."""
    seen = 0
    while exc is not None and seen < 5:
        status = getattr(exc, "status", None)
        if isinstance(status, int):
            return status
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
        if isinstance(status, int):
            return status
        exc = exc.__cause__ or exc.__context__
        seen += 1
    return None


def translate_error(exc: Exception, operation: str) -> NetworkError:
    """Map transport and RPC failures onto a structured NetworkError."""
    if isinstance(exc, NetworkError):
        return exc
    message = f"{operation}: {exc}"
    lowered = str(exc).lower()
    status = _http_status(exc)

    if isinstance(exc, asyncio.TimeoutError):
        return NetworkError(f"{operation}: request timed out", code="timeout")
    if status == 429 or "429" in lowered or "too many requests" in lowered:
        return NetworkError(message, code="rate_limited", status=status or 429)
    if status is not None and status >= 500:
        return NetworkError(message, code="service_unavailable", status=status)
    if "blockhash not found" in lowered or "blockhashnotfound" in lowered:
        return NetworkError(message, code="blockhash_not_found", status=status)
    if "insufficient funds" in lowered or "insufficient lamports" in lowered:
        return NetworkError(message, code="insufficient_funds", status=status)
    if isinstance(exc, RPCException):
        return NetworkError(message, code="rpc", status=status)
    if isinstance(exc, (SolanaRpcException, aiohttp.ClientError, ConnectionError, OSError)):
        return NetworkError(message, code="connection", status=status)
    return NetworkError(message, status=status)


class SolanaNetworkClient:
    """
    NetworkClient over solana-py's AsyncClient.

    The health primitive is a raw ``getHealth`` JSON-RPC call through
    aiohttp so it measures the node itself, not client-side retries.
    """

    def __init__(
        self,
        rpc_endpoint: str,
        poll_interval: float = 0.5,
        skip_preflight: bool = False,
        request_timeout: float = 10.0,
    ):
        self.rpc_endpoint = rpc_endpoint
        self.poll_interval = poll_interval
        self.skip_preflight = skip_preflight
        self.request_timeout = request_timeout
        self._client: Optional[AsyncClient] = None

    async def get_client(self) -> AsyncClient:
        if self._client is None:
            self._client = AsyncClient(self.rpc_endpoint)
        return self._client

    async def close(self):
        """Close the client connection."""
        if self._client:
            await self._client.close()
            self._client = None

    async def __aenter__(self) -> "SolanaNetworkClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _call(self, operation: str, method: str, *args, **kwargs) -> Any:
        client = await self.get_client()
        try:
            return await getattr(client, method)(*args, **kwargs)
        except Exception as e:
            raise translate_error(e, operation) from e

    async def get_latest_blockhash(self) -> Tuple[Hash, Optional[int]]:
        response = await self._call("get_latest_blockhash", "get_latest_blockhash", commitment=Confirmed)
        return response.value.blockhash, response.value.last_valid_block_height

    async def get_account_exists(self, address: str) -> bool:
        response = await self._call("get_account_info", "get_account_info", parse_address(address))
        return response.value is not None

    async def get_balance(self, address: str) -> int:
        response = await self._call("get_balance", "get_balance", parse_address(address))
        return int(response.value)

    async def get_token_balance(self, token_account: str) -> int:
        response = await self._call(
            "get_token_account_balance", "get_token_account_balance", parse_address(token_account)
        )
        return int(response.value.amount) if response.value else 0

    async def estimate_fee(self, instructions: Sequence[Any], fee_payer: str) -> int:
        blockhash, _ = await self.get_latest_blockhash()
        message = Message.new_with_blockhash(list(instructions), parse_address(fee_payer), blockhash)
        response = await self._call("get_fee_for_message", "get_fee_for_message", message)
        if response.value is None:
            logger.warning(f"Fee for message unavailable, using default {DEFAULT_FEE_LAMPORTS} lamports")
            return DEFAULT_FEE_LAMPORTS
        return int(response.value)

    async def simulate(self, signed_tx: Any) -> SimulationResult:
        response = await self._call("simulate_transaction", "simulate_transaction", signed_tx)
        value = response.value
        return SimulationResult(
            ok=value.err is None,
            error=None if value.err is None else str(value.err),
            logs=list(value.logs or []),
            units_consumed=value.units_consumed,
        )

    async def submit(self, signed_tx: Any) -> str:
        opts = TxOpts(skip_preflight=self.skip_preflight, preflight_commitment=Processed)
        response = await self._call("send_transaction", "send_transaction", signed_tx, opts)
        logger.info(f"Transaction sent: {response.value}")
        return str(response.value)

    async def confirm(self, tx_id: str, strategy: ConfirmationStrategy, timeout: float) -> ConfirmResult:
        """
        Poll signature status until ``strategy`` is reached.

        An on-ledger error is definitive; running out of ``timeout`` is
        reported as ``timed_out``.
        """
        signature = Signature.from_string(tx_id)
        deadline = time.monotonic() + timeout
        while True:
            response = await self._call("get_signature_statuses", "get_signature_statuses", [signature])
            status = response.value[0] if response.value else None
            if status is not None:
                if status.err is not None:
                    return ConfirmResult(ok=False, error=str(status.err))
                reached = _reached(status.confirmation_status)
                if reached.strength >= strategy.strength:
                    return ConfirmResult(ok=True)

            if time.monotonic() + self.poll_interval > deadline:
                return ConfirmResult(ok=False, error=f"not {strategy.value} within {timeout:.1f}s", timed_out=True)
            await asyncio.sleep(self.poll_interval)

    async def health_check_primitive(self) -> float:
        started = time.monotonic()
        result = await self.post_rpc({"jsonrpc": "2.0", "id": 1, "method": "getHealth"})
        latency = (time.monotonic() - started) * 1000
        if result.get("result") != "ok":
            error = result.get("error") or {}
            raise NetworkError(f"Node unhealthy: {error.get('message', result)}", code="service_unavailable")
        return latency

    async def post_rpc(self, body: dict[str, Any]) -> dict[str, Any]:
        """
        Send a raw JSON-RPC request to the node.

        Raises:
            NetworkError: transport failure, HTTP error or undecodable body
        """
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.rpc_endpoint,
                    json=body,
                    timeout=aiohttp.ClientTimeout(total=self.request_timeout),
                ) as response:
                    response.raise_for_status()
                    return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise translate_error(e, body.get("method", "rpc")) from e
        except json.JSONDecodeError as e:
            raise NetworkError(f"Failed to decode RPC response: {e}", code="rpc") from e
