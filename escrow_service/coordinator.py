"""
Confirmation coordinator.

Called once by the purchase workflow after a purchase has succeeded. It asks
the ledger to release the escrowed funds to the merchant and classifies the
outcome; it never retries. A FAILED result leaves the record OPEN, and the
reconciliation scanner refunds it once it expires.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from escrow_service.client import LedgerClient
from escrow_service.errors import AlreadyCompleted, LedgerError, LedgerTransportError

logger = logging.getLogger("escrow.coordinator")


class ConfirmationOutcome(enum.Enum):
    SETTLED = "SETTLED"
    ALREADY_SETTLED = "ALREADY_SETTLED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ConfirmationResult:
    order_id: str
    outcome: ConfirmationOutcome
    settlement_ref: Optional[str] = None
    block: Optional[int] = None
    reason: Optional[str] = None

    @property
    def escrow_status(self) -> str:
        """Status shown to the payer: funds released, or still held in escrow."""
        if self.outcome == ConfirmationOutcome.FAILED:
            return "pending"
        return "confirmed"


class ConfirmationCoordinator:

    def __init__(self, client: LedgerClient):
        self.client = client

    async def confirm(self, order_id: str, evidence: Any) -> ConfirmationResult:
        if not evidence:
            logger.warning(
                f"Refusing to confirm {order_id}: no purchase evidence",
                extra={"order_id": order_id, "outcome": "FAILED"},
            )
            return ConfirmationResult(order_id, ConfirmationOutcome.FAILED, reason="missing purchase evidence")

        try:
            settlement = await self.client.submit_confirm(order_id)
        except AlreadyCompleted:
            logger.info(
                f"Order {order_id} already settled by another party",
                extra={"order_id": order_id, "outcome": "ALREADY_SETTLED"},
            )
            return ConfirmationResult(order_id, ConfirmationOutcome.ALREADY_SETTLED)
        except (LedgerError, LedgerTransportError, httpx.HTTPStatusError) as e:
            logger.warning(
                f"Confirmation failed for {order_id}, funds stay in escrow: {e}",
                extra={"order_id": order_id, "outcome": "FAILED"},
            )
            return ConfirmationResult(order_id, ConfirmationOutcome.FAILED, reason=str(e))

        logger.info(
            f"Funds released for {order_id}: tx={settlement.tx_ref} block={settlement.block}",
            extra={"order_id": order_id, "outcome": "SETTLED"},
        )
        return ConfirmationResult(
            order_id,
            ConfirmationOutcome.SETTLED,
            settlement_ref=settlement.tx_ref,
            block=settlement.block,
        )
