import logging
import uvicorn
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.responses import JSONResponse
from typing import Optional
from uuid import uuid4

from escrow_service import database
from escrow_service.config import settings
from escrow_service.errors import LedgerError
from escrow_service.ledger import EscrowLedger, Receipt
from escrow_service.messaging import ESCROW_EXCHANGE, publish_event, setup_rabbitmq, close_rabbitmq
from escrow_service.models import EventType, PaymentStatus
from escrow_service.schemas import (
    AccountRead,
    EventsRead,
    LedgerInfo,
    PaymentCreate,
    PaymentRead,
    ReceiptRead,
    SettleRequest,
)

logger = logging.getLogger("escrow.api")

_ledger = None

ROUTING_KEYS = {
    EventType.PAYMENT_CREATED: "payment.created",
    EventType.PAYMENT_CONFIRMED: "payment.confirmed",
    EventType.PAYMENT_REFUNDED: "payment.refunded",
}


def get_ledger() -> EscrowLedger:
    global _ledger
    if _ledger is None:
        session_factory = database.AsyncSessionLocal or database.configure()
        _ledger = EscrowLedger(
            session_factory,
            merchant=settings.merchant_id,
            timeout_seconds=settings.escrow_timeout_seconds,
            confirmers=settings.ledger_confirmers or [settings.confirmer_id],
        )
    return _ledger


@asynccontextmanager
async def lifespan(app: FastAPI):
    await database.init_db()
    await setup_rabbitmq()
    ledger = get_ledger()
    logger.info(
        f"Escrow ledger ready: merchant={ledger.merchant} "
        f"timeout={settings.escrow_timeout_seconds}s confirmers={sorted(ledger.confirmers)}"
    )
    yield
    await close_rabbitmq()


app = FastAPI(title="Escrow Ledger", lifespan=lifespan)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.detail})


async def announce(receipt: Receipt):
    event_data = {
        "event_id": str(uuid4()),
        "event_type": receipt.event_type.value,
        "timestamp": receipt.created_at.isoformat(),
        "order_id": receipt.order_id,
        "tx_ref": receipt.tx_ref,
        "block": receipt.block,
        "payer": receipt.payer,
        "amount": receipt.amount,
        "actor": receipt.actor,
    }
    await publish_event(ESCROW_EXCHANGE, ROUTING_KEYS[receipt.event_type], event_data)


@app.post("/api/payments", response_model=ReceiptRead, status_code=201)
async def create_payment(payment: PaymentCreate, ledger: EscrowLedger = Depends(get_ledger)):
    receipt = await ledger.create(payment.order_id, payment.payer, payment.amount)
    await announce(receipt)
    return ReceiptRead.model_validate(receipt)


@app.get("/api/payments/{order_id}", response_model=PaymentRead)
async def get_payment(order_id: str, ledger: EscrowLedger = Depends(get_ledger)):
    # Absent records come back zero-valued, never as 404
    record = await ledger.get(order_id)
    now = ledger.now()
    expires_at = ledger.expires_at(record)
    remaining = None
    if expires_at is not None and record.status == PaymentStatus.OPEN:
        remaining = max(0.0, (expires_at - now).total_seconds())
    return PaymentRead(
        order_id=record.order_id,
        payer=record.payer,
        amount=record.amount,
        created_at=record.created_at,
        status=record.status,
        expired=ledger.record_expired(record, now),
        expires_at=expires_at,
        seconds_remaining=remaining,
    )


@app.post("/api/payments/{order_id}/confirm", response_model=ReceiptRead)
async def confirm_payment(order_id: str, body: SettleRequest, ledger: EscrowLedger = Depends(get_ledger)):
    receipt = await ledger.confirm(order_id, body.caller)
    await announce(receipt)
    return ReceiptRead.model_validate(receipt)


@app.post("/api/payments/{order_id}/refund", response_model=ReceiptRead)
async def refund_payment(order_id: str, body: SettleRequest, ledger: EscrowLedger = Depends(get_ledger)):
    receipt = await ledger.refund(order_id, body.caller)
    await announce(receipt)
    return ReceiptRead.model_validate(receipt)


@app.get("/api/transactions/{tx_ref}", response_model=ReceiptRead)
async def get_transaction(tx_ref: str, ledger: EscrowLedger = Depends(get_ledger)):
    receipt = await ledger.transaction(tx_ref)
    if not receipt:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return ReceiptRead.model_validate(receipt)


@app.get("/api/events", response_model=EventsRead)
async def list_events(
    event_type: Optional[EventType] = EventType.PAYMENT_CREATED,
    from_block: Optional[int] = Query(None, ge=1),
    lookback: Optional[int] = Query(None, ge=1),
    ledger: EscrowLedger = Depends(get_ledger),
):
    head, events = await ledger.events(event_type=event_type, from_block=from_block, lookback=lookback)
    return EventsRead(head=head, events=[ReceiptRead.model_validate(e) for e in events])


@app.get("/api/accounts/{identity}", response_model=AccountRead)
async def get_account(identity: str, ledger: EscrowLedger = Depends(get_ledger)):
    return AccountRead(identity=identity, balance=await ledger.balance(identity))


@app.get("/api/ledger", response_model=LedgerInfo)
async def get_ledger_info(ledger: EscrowLedger = Depends(get_ledger)):
    return LedgerInfo(
        merchant=ledger.merchant,
        timeout_seconds=int(ledger.timeout.total_seconds()),
        head=await ledger.head(),
    )


def run():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
