"""
Ledger client.

Thin read/submit/wait adapter over the ledger service. A mutation is only
reported once its receipt can be read back from the ledger's committed
history; submission plus receipt wait is bounded by a per-operation timeout.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Tuple

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_delay, wait_fixed

from escrow_service.errors import LEDGER_ERRORS, LedgerTransportError
from escrow_service.models import EventType, PaymentStatus
from escrow_service.schemas import EventsRead, PaymentRead, ReceiptRead

logger = logging.getLogger("escrow.client")


@dataclass(frozen=True)
class Settlement:
    order_id: str
    tx_ref: str
    block: int
    status: PaymentStatus


class CreationEvent(NamedTuple):
    order_id: str
    payer: str
    amount: int
    block: int


class ReceiptPending(Exception):
    pass


class LedgerClient:

    def __init__(
        self,
        http: httpx.AsyncClient,
        identity: str,
        op_timeout: float = 30.0,
        receipt_poll_interval: float = 0.5,
    ):
        self._http = http
        self.identity = identity
        self.op_timeout = op_timeout
        self.receipt_poll_interval = receipt_poll_interval

    @classmethod
    def from_settings(cls, settings, identity: str) -> "LedgerClient":
        http = httpx.AsyncClient(base_url=settings.ledger_url, timeout=settings.ledger_op_timeout_seconds)
        return cls(
            http,
            identity=identity,
            op_timeout=settings.ledger_op_timeout_seconds,
            receipt_poll_interval=settings.receipt_poll_interval_seconds,
        )

    async def aclose(self):
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, order_id: str = "", missing_ok: bool = False, **kwargs):
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise LedgerTransportError(f"{method} {path} failed: {e!r}") from e

        if missing_ok and response.status_code == 404:
            return response
        if response.status_code >= 400:
            self._raise_for_error(response, order_id)
        return response

    @staticmethod
    def _raise_for_error(response: httpx.Response, order_id: str):
        try:
            body = response.json()
        except ValueError:
            body = {}
        code = body.get("error") if isinstance(body, dict) else None
        error_cls = LEDGER_ERRORS.get(code)
        if error_cls is not None:
            raise error_cls(order_id, body.get("detail", ""))
        if response.status_code >= 500:
            raise LedgerTransportError(f"ledger answered {response.status_code}: {response.text[:200]}")
        response.raise_for_status()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, order_id: str) -> PaymentRead:
        response = await self._request("GET", f"/api/payments/{order_id}", order_id=order_id)
        return PaymentRead.model_validate(response.json())

    async def is_expired(self, order_id: str) -> bool:
        return (await self.get(order_id)).expired

    async def transaction(self, tx_ref: str) -> Optional[ReceiptRead]:
        response = await self._request("GET", f"/api/transactions/{tx_ref}", missing_ok=True)
        if response.status_code == 404:
            return None
        return ReceiptRead.model_validate(response.json())

    async def recent_creations(
        self, window: Optional[int] = None, from_block: Optional[int] = None
    ) -> Tuple[int, List[CreationEvent]]:
        """
        PaymentCreated events from the ledger's history and the current head.

        With ``window`` only the last ``window`` blocks are scanned, so older
        records are not returned. ``from_block`` scans forward from an
        explicit block instead.
        """
        params = {"event_type": EventType.PAYMENT_CREATED.value}
        if window is not None:
            params["lookback"] = window
        if from_block is not None:
            params["from_block"] = from_block
        response = await self._request("GET", "/api/events", params=params)
        page = EventsRead.model_validate(response.json())
        return page.head, [CreationEvent(e.order_id, e.payer, e.amount, e.block) for e in page.events]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_payment(self, order_id: str, payer: str, amount: int) -> ReceiptRead:
        response = await self._request(
            "POST", "/api/payments", order_id=order_id,
            json={"order_id": order_id, "payer": payer, "amount": amount},
        )
        return ReceiptRead.model_validate(response.json())

    async def submit_confirm(self, order_id: str) -> Settlement:
        return await self._submit(order_id, "confirm", PaymentStatus.CONFIRMED)

    async def submit_refund(self, order_id: str) -> Settlement:
        return await self._submit(order_id, "refund", PaymentStatus.REFUNDED)

    async def _submit(self, order_id: str, action: str, status: PaymentStatus) -> Settlement:
        async def _run():
            response = await self._request(
                "POST", f"/api/payments/{order_id}/{action}", order_id=order_id,
                json={"caller": self.identity},
            )
            submitted = ReceiptRead.model_validate(response.json())
            logger.debug(f"Submitted {action} for {order_id}: tx={submitted.tx_ref}")
            try:
                receipt = await self.wait_for_receipt(submitted.tx_ref)
            except ReceiptPending as e:
                raise LedgerTransportError(f"no receipt for {submitted.tx_ref}") from e
            return Settlement(order_id=order_id, tx_ref=receipt.tx_ref, block=receipt.block, status=status)

        try:
            return await asyncio.wait_for(_run(), timeout=self.op_timeout)
        except asyncio.TimeoutError as e:
            raise LedgerTransportError(f"{action} for {order_id} timed out after {self.op_timeout}s") from e

    async def wait_for_receipt(self, tx_ref: str) -> ReceiptRead:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type((ReceiptPending, LedgerTransportError)),
            wait=wait_fixed(self.receipt_poll_interval),
            stop=stop_after_delay(self.op_timeout),
            reraise=True,
        ):
            with attempt:
                receipt = await self.transaction(tx_ref)
                if receipt is None:
                    raise ReceiptPending(tx_ref)
        return receipt
