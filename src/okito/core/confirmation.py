"""
Confirmation with strategy escalation.

The requested strength is tried first; a timeout falls back to the next weaker
strength inside whatever remains of the overall budget. A definitive on-ledger
failure is never retried at a weaker level.
"""
import asyncio
import time
from typing import Any, Callable, Optional

from okito.core.errors import ErrorCode, ErrorFactory, OkitoError, classify_error
from okito.core.network import ConfirmationStrategy
from okito.utils.logger import get_logger

logger = get_logger(__name__)


async def confirm_with_escalation(
    network: Any,
    tx_id: str,
    strategy: ConfirmationStrategy,
    timeout: float,
    clock: Callable[[], float] = time.monotonic,
) -> ConfirmationStrategy:
    """
    Wait for ``tx_id`` to reach ``strategy`` or a weaker fallback.

    Returns the strength actually reached. Raises ``OkitoError`` with
    TRANSACTION_FAILED on a definitive failure and TRANSACTION_TIMEOUT once
    every level has timed out or the budget is spent.
    """
    ladder = ConfirmationStrategy(strategy).weaker()
    deadline = clock() + timeout
    last_reason: Optional[str] = None

    for i, level in enumerate(ladder):
        remaining = deadline - clock()
        if remaining <= 0:
            break
        # remaining budget is split evenly across the levels still to try
        budget = remaining / (len(ladder) - i)

        try:
            result = await asyncio.wait_for(network.confirm(tx_id, level, budget), timeout=budget)
        except asyncio.TimeoutError:
            last_reason = f"no {level.value} confirmation within {budget:.1f}s"
            logger.warning(f"Confirmation of {tx_id[:16]}... timed out at '{level.value}', escalating")
            continue
        except Exception as e:
            classified = classify_error(e)
            if not classified.retryable:
                raise
            last_reason = classified.message
            logger.warning(f"Confirmation of {tx_id[:16]}... at '{level.value}' failed: {classified.message}")
            continue

        if result.ok:
            if level != ladder[0]:
                logger.info(f"Transaction {tx_id[:16]}... confirmed at weaker level '{level.value}'")
            return level

        if not result.timed_out:
            raise ErrorFactory.transaction_failed(tx_id, result.error)

        last_reason = result.error or f"no {level.value} confirmation"
        logger.warning(f"Confirmation of {tx_id[:16]}... timed out at '{level.value}', escalating")

    raise OkitoError(
        ErrorCode.TRANSACTION_TIMEOUT,
        f"Transaction {tx_id} not confirmed within {timeout:.1f}s",
        details={"transaction_id": tx_id, "last_reason": last_reason},
    )
